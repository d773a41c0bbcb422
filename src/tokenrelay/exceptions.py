"""Exception hierarchy for tokenrelay.

All exceptions inherit from :class:`TokenRelayError`, which carries an
``exit_code`` attribute mapped to a constant from :mod:`tokenrelay.exit_codes`.

The refresh and retry executors raise these internally and convert them into
:class:`~tokenrelay.models.RefreshOutcome` or
:class:`~tokenrelay.models.OperationResult` at their boundary, so none of
them escape the public client operations.  The CLI entry point in
:func:`tokenrelay.app.main` catches ``TokenRelayError`` and exits with the
appropriate code.

Subclass hierarchy::

    TokenRelayError (exit 1)
    +-- InvalidUsageError           (exit 2)
    +-- AuthError                   (exit 3)
    |   +-- NeedsReauthenticationError (exit 3)
    +-- RequestFailedError          (exit 5)
    +-- TransportError              (exit 6)
    +-- RefreshError                (exit 8)
    +-- ConfigError                 (exit 1)
"""

from __future__ import annotations

from typing import Optional

from tokenrelay.exit_codes import (
    EXIT_AUTH_FAILURE,
    EXIT_CONNECTION_ERROR,
    EXIT_GENERIC_FAILURE,
    EXIT_INVALID_USAGE,
    EXIT_REFRESH_FAILED,
    EXIT_REQUEST_FAILED,
)
from tokenrelay.models import RefreshFailureReason


class TokenRelayError(Exception):
    """Base exception for all tokenrelay errors.

    Args:
        message: Human-readable error description.
        exit_code: Optional override for the class-level exit code.
    """

    exit_code: int = EXIT_GENERIC_FAILURE

    def __init__(self, message: str, exit_code: int | None = None):
        super().__init__(message)
        if exit_code is not None:
            self.exit_code = exit_code


class InvalidUsageError(TokenRelayError):
    """Raised for invalid CLI arguments or missing required options."""

    exit_code = EXIT_INVALID_USAGE


class AuthError(TokenRelayError):
    """Raised when a protected request is rejected for authentication reasons."""

    exit_code = EXIT_AUTH_FAILURE


class NeedsReauthenticationError(AuthError):
    """Terminal auth failure: the user has to log in again.

    Distinct from refreshable failures -- another refresh cannot help.
    """


class RequestFailedError(TokenRelayError):
    """Raised when a protected request fails with a non-refreshable error."""

    exit_code = EXIT_REQUEST_FAILED


class TransportError(TokenRelayError):
    """Raised by a transport on network-level failures (timeout, DNS, refused)."""

    exit_code = EXIT_CONNECTION_ERROR


class RefreshError(TokenRelayError):
    """Raised inside the refresh executor when a refresh cannot succeed.

    Args:
        reason: The structured failure reason.
        message: Human-readable description.
        status: HTTP status of the refresh response, when there was one.
    """

    exit_code = EXIT_REFRESH_FAILED

    def __init__(
        self,
        reason: RefreshFailureReason,
        message: str,
        status: Optional[int] = None,
    ):
        super().__init__(message)
        self.reason = reason
        self.status = status


class ConfigError(TokenRelayError):
    """Raised for configuration problems (unreadable or invalid config files)."""

    exit_code = EXIT_GENERIC_FAILURE
