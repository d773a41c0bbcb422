"""Inbound refresh middleware for server-side request handling.

:class:`RefreshMiddleware` sits in front of a web application's protected
routes.  For each inbound request it decides between two actions:

* **pass through** -- the path is not protected, is the login page, or the
  access cookie is present and not expired.  After a successful refresh the
  response additionally carries the new token cookies.
* **redirect** -- the refresh failed (no refresh cookie, endpoint rejected it,
  malformed or unreachable); the client is sent to ``login_path`` with both
  token cookies cleared.

The middleware is framework-neutral: the host adapter builds an
:class:`InboundRequest` from its own request object and applies the returned
:class:`InboundResponse` (``set_cookie_headers()`` renders the cookie
changes).  Concurrent requests presenting the same refresh cookie share one
refresh call through the :class:`~tokenrelay.coordinator.RefreshCoordinator`.

Example::

    middleware = RefreshMiddleware(
        MiddlewareConfig(
            refresh_url="https://api.example.com/auth/refresh",
            protected_paths=["/dashboard", re.compile(r"^/account/")],
        )
    )
    response = await middleware.process(
        InboundRequest(path="/dashboard", cookies=request.cookies)
    )
"""

from __future__ import annotations

import enum
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Callable, Mapping, Optional, Sequence, Union
from urllib.parse import urljoin

import jwt
from pydantic import BaseModel, ConfigDict, Field

from tokenrelay.config import secure_cookies
from tokenrelay.coordinator import RefreshCoordinator, key_for_token
from tokenrelay.credentials.cookie_jar import CookieJarStore, CookieMutation
from tokenrelay.models import (
    RefreshFailureReason,
    RefreshOptions,
    RefreshOutcome,
    RelayConfig,
    RequestConfig,
    TokenConfig,
)
from tokenrelay.refresh import MESSAGE_NO_REFRESH_TOKEN, RefreshExecutor, persist_credentials
from tokenrelay.transport import HttpxTransport, Transport

logger = logging.getLogger(__name__)

PathPattern = Union[str, re.Pattern]
PathPredicate = Callable[[str], bool]
ExpiryPredicate = Callable[[str], bool]


def is_jwt_expired(token: str, leeway: float = 0) -> bool:
    """Return True if *token* is a JWT whose ``exp`` claim lies in the past.

    The signature is not verified; only the issuer can do that.  Tokens that
    are not decodable JWTs, or that carry no numeric ``exp``, are treated as
    not expired.
    """
    try:
        payload = jwt.decode(token, options={"verify_signature": False})
    except jwt.PyJWTError:
        return False
    exp = payload.get("exp")
    if isinstance(exp, bool) or not isinstance(exp, (int, float)):
        return False
    return exp <= time.time() - leeway


def path_matches(path: str, patterns: Union[Sequence[PathPattern], PathPredicate]) -> bool:
    """Return True if *path* is protected by *patterns*.

    *patterns* is either a predicate or a list of string prefixes and
    compiled regular expressions (``search`` semantics).  An empty list
    protects every path.
    """
    if callable(patterns):
        return bool(patterns(path))
    if not patterns:
        return True
    for pattern in patterns:
        if isinstance(pattern, str):
            if path.startswith(pattern):
                return True
        elif pattern.search(path):
            return True
    return False


class MiddlewareAction(str, enum.Enum):
    PASS_THROUGH = "pass_through"
    REDIRECT = "redirect"


@dataclass(frozen=True)
class InboundRequest:
    """What the middleware needs to know about an inbound request.

    ``url`` is optional; when given, redirects are resolved against it.
    """

    path: str
    cookies: Mapping[str, str] = field(default_factory=dict)
    url: Optional[str] = None


@dataclass
class InboundResponse:
    """The middleware's decision for one request."""

    action: MiddlewareAction
    location: Optional[str] = None
    cookies: list[CookieMutation] = field(default_factory=list)
    error: Optional[str] = None

    @classmethod
    def pass_through(cls, cookies: Optional[list[CookieMutation]] = None) -> InboundResponse:
        return cls(MiddlewareAction.PASS_THROUGH, cookies=list(cookies or []))

    @classmethod
    def redirect(
        cls,
        location: str,
        cookies: Optional[list[CookieMutation]] = None,
        error: Optional[str] = None,
    ) -> InboundResponse:
        return cls(
            MiddlewareAction.REDIRECT,
            location=location,
            cookies=list(cookies or []),
            error=error,
        )

    @property
    def is_redirect(self) -> bool:
        return self.action is MiddlewareAction.REDIRECT

    def set_cookie_headers(self) -> list[str]:
        """Render the cookie changes as ``Set-Cookie`` header values."""
        return [mutation.to_header() for mutation in self.cookies]


class MiddlewareConfig(BaseModel):
    """Settings of :class:`RefreshMiddleware`.

    ``refresh_options.token_names``, when set, takes precedence over
    ``token_names``.  ``is_expired`` replaces the default JWT ``exp`` check.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    refresh_url: str
    refresh_options: RefreshOptions = Field(default_factory=RefreshOptions)
    token_names: TokenConfig = Field(default_factory=TokenConfig)
    login_path: str = "/login"
    protected_paths: Union[list[PathPattern], PathPredicate] = Field(default_factory=list)
    is_expired: Optional[ExpiryPredicate] = None
    secure: bool = False

    @classmethod
    def from_config(cls, config: RelayConfig) -> MiddlewareConfig:
        """Build middleware settings from a resolved :class:`RelayConfig`."""
        if not config.refresh_url:
            raise ValueError("refresh_url is required for the middleware")
        return cls(
            refresh_url=config.refresh_url,
            refresh_options=RefreshOptions(
                method=config.refresh_method, response_type=config.response_type
            ),
            token_names=config.token_names,
            login_path=config.login_path,
            protected_paths=list(config.protected_paths),
            secure=secure_cookies(config),
        )

    @property
    def effective_token_names(self) -> TokenConfig:
        return self.refresh_options.token_names or self.token_names


class RefreshMiddleware:
    """Refreshes expired token cookies before protected requests reach the app.

    Args:
        config: Middleware settings.
        transport: Transport for the refresh call.  Defaults to an
            :class:`HttpxTransport` owned (and closed) by the middleware.
        coordinator: Shared single-flight coordinator.
        request_config: Settings of the default transport.
    """

    def __init__(
        self,
        config: MiddlewareConfig,
        transport: Optional[Transport] = None,
        coordinator: Optional[RefreshCoordinator] = None,
        request_config: Optional[RequestConfig] = None,
    ) -> None:
        self._config = config
        self._owns_transport = transport is None
        self._transport = transport or HttpxTransport(request_config=request_config)
        self._coordinator = coordinator or RefreshCoordinator()
        self._is_expired = config.is_expired or is_jwt_expired

    @property
    def coordinator(self) -> RefreshCoordinator:
        return self._coordinator

    async def __aenter__(self) -> RefreshMiddleware:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_transport:
            await self._transport.aclose()

    def is_protected(self, path: str) -> bool:
        if path == self._config.login_path:
            return False
        return path_matches(path, self._config.protected_paths)

    async def process(self, request: InboundRequest) -> InboundResponse:
        """Decide whether *request* passes through or is sent to the login page."""
        if not self.is_protected(request.path):
            return InboundResponse.pass_through()

        token_config = self._config.effective_token_names
        access_token = request.cookies.get(token_config.access_token_name)
        if access_token and not self._is_expired(access_token):
            return InboundResponse.pass_through()

        jar = CookieJarStore(request.cookies)
        outcome = await self._refresh(jar, token_config)
        if outcome.success:
            if outcome.credentials is not None:
                await persist_credentials(
                    jar, outcome.credentials, token_config, self._config.secure
                )
            return InboundResponse.pass_through(jar.mutations)

        logger.warning(
            "Token refresh failed in middleware for %s: %s", request.path, outcome.message
        )
        await jar.delete(token_config.access_token_name)
        await jar.delete(token_config.refresh_token_name)
        return InboundResponse.redirect(
            self._login_location(request), jar.mutations, error=outcome.message
        )

    async def _refresh(self, jar: CookieJarStore, token_config: TokenConfig) -> RefreshOutcome:
        refresh_token = await jar.get(token_config.refresh_token_name)
        if not refresh_token:
            return RefreshOutcome.failed(
                RefreshFailureReason.NO_REFRESH_TOKEN, MESSAGE_NO_REFRESH_TOKEN
            )
        executor = RefreshExecutor(self._transport, jar, secure=self._config.secure)
        options = self._config.refresh_options
        refresh_url = self._config.refresh_url
        key = options.key or key_for_token(refresh_url, refresh_token)
        return await self._coordinator.request_refresh(
            key,
            lambda: executor.execute_refresh(refresh_url, options, token_config),
        )

    def _login_location(self, request: InboundRequest) -> str:
        if request.url:
            return urljoin(request.url, self._config.login_path)
        return self._config.login_path
