"""Credential stores for tokenrelay.

The core reads and writes tokens exclusively through the
:class:`CredentialStore` interface.  Three implementations ship with the
package:

- :class:`MemoryCredentialStore` -- process-local dictionary.
- :class:`FileCredentialStore` -- per-profile JSON file on disk.
- :class:`CookieJarStore` -- request/response scoped cookie jar used by the
  inbound middleware.

Typical usage::

    from tokenrelay.credentials import FileCredentialStore

    store = FileCredentialStore("my-api")
    token = await store.get("accessToken")
"""

from tokenrelay.credentials.base import CredentialStore
from tokenrelay.credentials.cookie_jar import CookieJarStore, CookieMutation
from tokenrelay.credentials.file_store import CredentialEntry, FileCredentialStore
from tokenrelay.credentials.memory import MemoryCredentialStore

__all__ = [
    "CookieJarStore",
    "CookieMutation",
    "CredentialEntry",
    "CredentialStore",
    "FileCredentialStore",
    "MemoryCredentialStore",
]
