"""Numeric process exit codes following `clig.dev <https://clig.dev/>`_ conventions.

Each constant maps to a specific error category and is referenced by the
corresponding :class:`~tokenrelay.exceptions.TokenRelayError` subclass.
Shell wrappers can inspect the exit code of the ``tokenrelay`` CLI to tell a
rejected refresh apart from a plain request failure without parsing stderr.

Example::

    $ tokenrelay fetch https://api.example.com/me
    $ echo $?
    3   # EXIT_AUTH_FAILURE -- log in again
"""

EXIT_SUCCESS = 0
"""The command completed successfully."""

EXIT_GENERIC_FAILURE = 1
"""An unclassified error occurred."""

EXIT_INVALID_USAGE = 2
"""The command was invoked with invalid arguments or missing required parameters."""

EXIT_AUTH_FAILURE = 3
"""Re-authentication is required (no refresh token, or the refresh was rejected)."""

EXIT_REQUEST_FAILED = 5
"""The protected request failed with a non-refreshable error."""

EXIT_CONNECTION_ERROR = 6
"""A network-level error occurred (timeout, DNS failure, connection refused)."""

EXIT_REFRESH_FAILED = 8
"""The refresh endpoint answered but no usable credential could be extracted."""
