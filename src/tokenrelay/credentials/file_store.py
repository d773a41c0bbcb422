"""Persistent credential store scoped per profile.

Stores credentials in ``~/.local/share/tokenrelay/credentials/<profile>.json``
(XDG) or the platform-equivalent directory.  Files are written atomically
via :func:`~tokenrelay.config.atomic_write` with ``0o600`` permissions so
that secrets are never world-readable, even momentarily.

Each profile maps to exactly one JSON file holding a ``name ->``
:class:`CredentialEntry` mapping.  Entries written with a ``max_age`` carry
an absolute ``expires_at`` and read as absent once it has passed.

See Also:
    :class:`~tokenrelay.credentials.base.CredentialStore` -- the interface.
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

from tokenrelay.config import atomic_write, get_data_dir
from tokenrelay.credentials.base import CredentialStore
from tokenrelay.models import CookieAttributes


class CredentialEntry(BaseModel):
    """A single stored credential.

    Attributes:
        value: The secret value (access or refresh token).
        attributes: Storage attributes the value was written with.
        expires_at: UTC expiry derived from ``attributes.max_age``.  ``None``
            means the credential never expires.
        updated_at: When the entry was last written.
    """

    value: str = Field(description="The credential value")
    attributes: CookieAttributes = Field(default_factory=CookieAttributes)
    expires_at: Optional[datetime] = Field(
        default=None, description="When this credential expires (None = never)"
    )
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def is_expired(self) -> bool:
        if self.expires_at is None:
            return False
        expires = self.expires_at
        if expires.tzinfo is None:
            expires = expires.replace(tzinfo=timezone.utc)
        return datetime.now(timezone.utc) >= expires


def _credentials_dir() -> Path:
    """Return the credentials directory, creating it if needed."""
    path = get_data_dir() / "credentials"
    path.mkdir(parents=True, exist_ok=True)
    return path


class FileCredentialStore(CredentialStore):
    """Read/write credentials for a single profile on disk.

    Every ``set`` and ``delete`` rewrites the whole file atomically, so a
    completed write is durably visible to the next ``get`` from any process.

    Args:
        profile_name: The profile identifier used to derive the file name.

    Example::

        store = FileCredentialStore("my-api")
        await store.set("accessToken", "tok123")
        assert await store.get("accessToken") == "tok123"
    """

    def __init__(self, profile_name: str = "default") -> None:
        self._profile_name = profile_name
        self._path = _credentials_dir() / f"{profile_name}.json"

    @property
    def path(self) -> Path:
        """The filesystem path to this profile's credential file."""
        return self._path

    async def get(self, name: str) -> Optional[str]:
        entry = self.load().get(name)
        if entry is None or entry.is_expired():
            return None
        return entry.value

    async def set(
        self,
        name: str,
        value: str,
        attributes: Optional[CookieAttributes] = None,
    ) -> None:
        attributes = attributes or CookieAttributes()
        expires_at = None
        if attributes.max_age is not None:
            expires_at = datetime.now(timezone.utc) + timedelta(seconds=attributes.max_age)
        entries = self.load()
        entries[name] = CredentialEntry(
            value=value, attributes=attributes, expires_at=expires_at
        )
        self.save(entries)

    async def delete(self, name: str) -> None:
        entries = self.load()
        if entries.pop(name, None) is not None:
            self.save(entries)

    def load(self) -> dict[str, CredentialEntry]:
        """Load all entries from disk.

        Returns:
            The stored entries, or an empty mapping if the file does not
            exist or cannot be parsed.
        """
        if not self._path.is_file():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
            return {
                name: CredentialEntry.model_validate(raw)
                for name, raw in data.items()
            }
        except (json.JSONDecodeError, ValueError, AttributeError, OSError):
            return {}

    def save(self, entries: dict[str, CredentialEntry]) -> None:
        """Persist *entries* atomically with ``0o600`` permissions.

        Raises:
            OSError: If the file cannot be written (permissions, disk full, etc.).
        """
        data = {name: entry.model_dump(mode="json") for name, entry in entries.items()}
        atomic_write(self._path, json.dumps(data, indent=2) + "\n", mode=0o600)

    def clear(self) -> None:
        """Delete the credential file if it exists."""
        if self._path.is_file():
            self._path.unlink()
