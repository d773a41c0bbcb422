"""Request/response scoped credential store backed by cookies.

:class:`CookieJarStore` is created per inbound request.  Reads come from the
cookies the client sent; writes and deletions are recorded as outbound cookie
mutations that the host framework turns into ``Set-Cookie`` headers when it
delivers the response.  Within the scope a write is readable straight away,
which is what lets the refresh executor and the middleware share one store.

The rendered header format follows :mod:`http.cookies`.
"""

from __future__ import annotations

from dataclasses import dataclass
from http.cookies import SimpleCookie
from typing import Mapping, Optional

from tokenrelay.credentials.base import CredentialStore
from tokenrelay.models import CookieAttributes


@dataclass(frozen=True)
class CookieMutation:
    """One outbound cookie change.

    ``value is None`` means the cookie is being cleared.
    """

    name: str
    value: Optional[str]
    attributes: CookieAttributes

    @property
    def is_deletion(self) -> bool:
        return self.value is None

    def to_header(self) -> str:
        """Render this mutation as a ``Set-Cookie`` header value."""
        jar: SimpleCookie = SimpleCookie()
        jar[self.name] = self.value or ""
        morsel = jar[self.name]
        morsel["path"] = self.attributes.path
        if self.is_deletion:
            morsel["max-age"] = 0
            morsel["expires"] = "Thu, 01 Jan 1970 00:00:00 GMT"
        elif self.attributes.max_age is not None:
            morsel["max-age"] = self.attributes.max_age
        if self.attributes.http_only:
            morsel["httponly"] = True
        if self.attributes.secure:
            morsel["secure"] = True
        morsel["samesite"] = self.attributes.same_site.capitalize()
        return morsel.OutputString()


class CookieJarStore(CredentialStore):
    """Credential store scoped to a single request/response exchange.

    Args:
        request_cookies: Cookies sent by the client with the inbound request.

    Example::

        store = CookieJarStore({"refreshToken": "r1"})
        await store.set("accessToken", "a2", CookieAttributes(max_age=3600))
        [m.name for m in store.mutations]  # ["accessToken"]
    """

    def __init__(self, request_cookies: Optional[Mapping[str, str]] = None) -> None:
        self._request_cookies: dict[str, str] = dict(request_cookies or {})
        self._mutations: dict[str, CookieMutation] = {}

    async def get(self, name: str) -> Optional[str]:
        mutation = self._mutations.get(name)
        if mutation is not None:
            return mutation.value
        return self._request_cookies.get(name)

    async def set(
        self,
        name: str,
        value: str,
        attributes: Optional[CookieAttributes] = None,
    ) -> None:
        self._mutations[name] = CookieMutation(
            name=name, value=value, attributes=attributes or CookieAttributes()
        )

    async def delete(self, name: str) -> None:
        self._mutations[name] = CookieMutation(
            name=name, value=None, attributes=CookieAttributes()
        )

    @property
    def mutations(self) -> list[CookieMutation]:
        """Outbound cookie changes in the order they were first made."""
        return list(self._mutations.values())

    def set_cookie_headers(self) -> list[str]:
        """Render every mutation as a ``Set-Cookie`` header value."""
        return [mutation.to_header() for mutation in self._mutations.values()]
