"""Abstract base class for credential stores.

A credential store is the only place tokens live between requests.  The
refresh executor writes new tokens here, the retry executor reads the access
token here immediately before every protected call, and the orchestrator
deletes both tokens here when re-authentication is required.

All methods are coroutines: every store access is a suspension point, so a
store backed by a remote service or a cookie jar fits the same interface as an
in-process dictionary.

To implement a new store, subclass :class:`CredentialStore` and implement
:meth:`~CredentialStore.get`, :meth:`~CredentialStore.set` and
:meth:`~CredentialStore.delete`.

See Also:
    :mod:`tokenrelay.credentials.memory`,
    :mod:`tokenrelay.credentials.file_store`,
    :mod:`tokenrelay.credentials.cookie_jar` for the built-in stores.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from tokenrelay.models import CookieAttributes


class CredentialStore(ABC):
    """Get/set/delete of named credential values.

    Implementations define their own persistence and visibility rules.  The
    core never caches a value read from a store; it always reads right before
    use, so stores that only become consistent at a lifecycle boundary are
    tolerated.
    """

    @abstractmethod
    async def get(self, name: str) -> Optional[str]:
        """Return the value stored under *name*, or ``None`` when absent or expired."""
        ...

    @abstractmethod
    async def set(
        self,
        name: str,
        value: str,
        attributes: Optional[CookieAttributes] = None,
    ) -> None:
        """Store *value* under *name* with the given storage attributes.

        A completed ``set`` must be visible to a subsequent ``get`` on the
        same store instance.
        """
        ...

    @abstractmethod
    async def delete(self, name: str) -> None:
        """Remove *name*.  Deleting an absent name is a no-op."""
        ...
