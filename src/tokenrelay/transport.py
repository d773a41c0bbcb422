"""Transport layer -- performs the HTTP requests the core asks for.

The core never talks to :mod:`httpx` directly; it goes through the
:class:`Transport` interface so that hosts can plug in their own HTTP stack.
:class:`HttpxTransport` is the default implementation, wrapping
:class:`httpx.AsyncClient` with base-URL resolution, JSON body encoding and
decoding, and optional retry with exponential backoff.

A transport returns a :class:`TransportResponse` for every HTTP answer,
whatever its status, and raises :class:`~tokenrelay.exceptions.TransportError`
only for network-level failures.
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from tokenrelay.exceptions import TransportError
from tokenrelay.models import RequestConfig

logger = logging.getLogger(__name__)


@dataclass
class TransportResponse:
    """A completed HTTP exchange.

    Attributes:
        status: HTTP status code.
        headers: Response headers; multi-valued headers such as
            ``Set-Cookie`` keep every value.
        body: Parsed JSON when the response declares a JSON content type,
            the raw text otherwise, ``None`` for an empty body.
        text: The raw response text.
    """

    status: int
    headers: httpx.Headers = field(default_factory=httpx.Headers)
    body: Any = None
    text: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def header_values(self, name: str) -> list[str]:
        """Return every value of header *name* (case-insensitive)."""
        return self.headers.get_list(name)


def parse_body(response: httpx.Response) -> Any:
    """Decode the body of *response*.

    JSON is decoded when the ``Content-Type`` says so.  A body that claims to
    be JSON but fails to decode is returned as raw text; callers decide what
    a non-dict body means.
    """
    if not response.content:
        return None
    content_type = response.headers.get("content-type", "")
    if "json" in content_type.lower():
        try:
            return response.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return response.text
    return response.text


class Transport(ABC):
    """Performs a single HTTP-like request."""

    @abstractmethod
    async def request(
        self,
        url: str,
        method: str = "GET",
        headers: Optional[dict[str, str]] = None,
        body: Any = None,
    ) -> TransportResponse:
        """Send a request and return the response, whatever its status.

        Args:
            url: Absolute URL, or a path resolved against the transport's
                base URL.
            method: HTTP method.
            headers: Request headers.
            body: JSON-serialisable object, or a raw ``str``/``bytes`` body.

        Raises:
            TransportError: On network-level failures.
        """
        ...

    async def aclose(self) -> None:
        """Release any resources held by the transport."""


class HttpxTransport(Transport):
    """:class:`Transport` backed by :class:`httpx.AsyncClient`.

    Retries on 5xx status codes and connection / timeout errors up to
    ``request_config.max_retries`` times, doubling the delay each attempt
    (1 s, 2 s, 4 s, ...).  The default of zero retries keeps refresh calls
    single-shot, which matters for endpoints that rotate refresh tokens.

    Args:
        base_url: Prefix for relative request URLs.
        request_config: Timeout, SSL verification and retry settings.
        client: Pre-built client to use instead of creating one (tests pass
            a client wired to :class:`httpx.MockTransport`).  A supplied
            client is not closed by :meth:`aclose`.

    Example::

        async with HttpxTransport("https://api.example.com") as transport:
            response = await transport.request("/users")
    """

    def __init__(
        self,
        base_url: str = "",
        request_config: Optional[RequestConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._base_url = base_url
        self._config = request_config or RequestConfig()
        self._client = client
        self._owns_client = client is None

    async def __aenter__(self) -> HttpxTransport:
        self._ensure_client()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def request(
        self,
        url: str,
        method: str = "GET",
        headers: Optional[dict[str, str]] = None,
        body: Any = None,
    ) -> TransportResponse:
        response = await self._execute_with_retry(method.upper(), url, dict(headers or {}), body)
        return TransportResponse(
            status=response.status_code,
            headers=response.headers,
            body=parse_body(response),
            text=response.text,
        )

    # ------------------------------------------------------------------ #
    # Private helpers
    # ------------------------------------------------------------------ #

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._config.timeout,
                verify=self._config.verify_ssl,
                follow_redirects=True,
            )
        return self._client

    async def _execute_with_retry(
        self,
        method: str,
        url: str,
        headers: dict[str, str],
        body: Any,
    ) -> httpx.Response:
        client = self._ensure_client()
        max_retries = self._config.max_retries

        kwargs: dict[str, Any] = {"method": method, "url": url, "headers": headers}
        if isinstance(body, (str, bytes)):
            kwargs["content"] = body
        elif body is not None:
            kwargs["json"] = body

        for attempt in range(max_retries + 1):
            try:
                response = await client.request(**kwargs)
            except httpx.TransportError as exc:
                if attempt < max_retries:
                    delay = 2 ** attempt
                    logger.debug(
                        "Connection error on %s %s: %s, retrying in %ss (attempt %d/%d)",
                        method, url, exc, delay, attempt + 1, max_retries,
                    )
                    await asyncio.sleep(delay)
                    continue
                raise TransportError(
                    f"Connection failed after {max_retries + 1} attempts: {exc}"
                ) from exc
            except (httpx.HTTPError, httpx.InvalidURL) as exc:
                raise TransportError(f"Request failed: {exc}") from exc

            if response.status_code >= 500 and attempt < max_retries:
                delay = 2 ** attempt
                logger.debug(
                    "Server error %d on %s %s, retrying in %ss (attempt %d/%d)",
                    response.status_code, method, url, delay, attempt + 1, max_retries,
                )
                await asyncio.sleep(delay)
                continue

            return response

        raise TransportError("Request failed after all retries")  # pragma: no cover
