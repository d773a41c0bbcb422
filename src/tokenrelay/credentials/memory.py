"""Process-local credential store.

:class:`MemoryCredentialStore` keeps values in a dictionary together with the
attributes they were written with.  ``max_age`` is honoured on read, so an
access token written with a one-hour lifetime reads as absent afterwards.
Handy for tests and for long-running services that keep tokens in memory.
"""

from __future__ import annotations

import time
from typing import Optional

from tokenrelay.credentials.base import CredentialStore
from tokenrelay.models import CookieAttributes


class MemoryCredentialStore(CredentialStore):
    """Dictionary-backed :class:`~tokenrelay.credentials.base.CredentialStore`.

    Args:
        initial: Optional ``name -> value`` mapping to seed the store with.
            Seeded values never expire.

    Example::

        store = MemoryCredentialStore({"refreshToken": "r1"})
        await store.get("refreshToken")  # "r1"
    """

    def __init__(self, initial: Optional[dict[str, str]] = None) -> None:
        self._values: dict[str, str] = dict(initial or {})
        self._attributes: dict[str, CookieAttributes] = {}
        self._expires: dict[str, float] = {}

    async def get(self, name: str) -> Optional[str]:
        expires = self._expires.get(name)
        if expires is not None and time.monotonic() >= expires:
            self._forget(name)
            return None
        return self._values.get(name)

    async def set(
        self,
        name: str,
        value: str,
        attributes: Optional[CookieAttributes] = None,
    ) -> None:
        attributes = attributes or CookieAttributes()
        self._values[name] = value
        self._attributes[name] = attributes
        if attributes.max_age is not None:
            self._expires[name] = time.monotonic() + attributes.max_age
        else:
            self._expires.pop(name, None)

    async def delete(self, name: str) -> None:
        self._forget(name)

    def attributes(self, name: str) -> Optional[CookieAttributes]:
        """Return the attributes *name* was last written with."""
        return self._attributes.get(name)

    def snapshot(self) -> dict[str, str]:
        """Return a copy of all stored values (expired entries included)."""
        return dict(self._values)

    def _forget(self, name: str) -> None:
        self._values.pop(name, None)
        self._attributes.pop(name, None)
        self._expires.pop(name, None)
