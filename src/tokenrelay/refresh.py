"""Refresh executor -- exchanges a refresh token for a new access token.

:class:`RefreshExecutor` performs one refresh call end to end:

1. Read the refresh token from the credential store.  No token means no
   network call.
2. POST (by default) ``{<refresh_token_name>: <token>}`` to the refresh
   endpoint.
3. Extract the new tokens, either from the JSON body or from ``Set-Cookie``
   headers, depending on ``response_type``.
4. Persist them with cookie-style attributes: the access token for one hour,
   a rotated refresh token (if the endpoint returned one) for one week.

Every failure is reported as a structured
:class:`~tokenrelay.models.RefreshOutcome`; no exception escapes
:meth:`RefreshExecutor.execute_refresh`.

See Also:
    :class:`~tokenrelay.coordinator.RefreshCoordinator` -- deduplicates
    concurrent calls to this executor.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Iterable, Optional

from tokenrelay.credentials.base import CredentialStore
from tokenrelay.exceptions import RefreshError, TransportError
from tokenrelay.models import (
    ACCESS_TOKEN_MAX_AGE,
    REFRESH_TOKEN_MAX_AGE,
    CookieAttributes,
    CredentialPair,
    RefreshFailureReason,
    RefreshOptions,
    RefreshOutcome,
    TokenConfig,
)
from tokenrelay.transport import Transport, TransportResponse

logger = logging.getLogger(__name__)

ACCESS_TOKEN_FALLBACK_KEYS = ("accessToken", "token", "access_token")
REFRESH_TOKEN_FALLBACK_KEYS = ("refreshToken", "refresh_token")

# A single Set-Cookie value may concatenate several cookies; split only on
# commas that precede a ``name=`` so ``Expires=Thu, 01 Jan ...`` survives.
_COOKIE_SPLIT_RE = re.compile(r",(?=\s*[\w.-]+=)")

MESSAGE_NO_REFRESH_TOKEN = "No refresh token available"
MESSAGE_REFRESH_REJECTED = "Token refresh failed"


def parse_set_cookie_header(header: str) -> dict[str, str]:
    """Parse a ``Set-Cookie`` header value into a ``name -> value`` mapping.

    Only the leading ``name=value`` pair of each cookie is kept; attributes
    such as ``Path`` or ``HttpOnly`` are ignored.  Values keep any ``=``
    characters after the first one (base64 padding).

    Example::

        >>> parse_set_cookie_header("a=1; Path=/, b=2; HttpOnly")
        {'a': '1', 'b': '2'}
    """
    cookies: dict[str, str] = {}
    for cookie_string in _COOKIE_SPLIT_RE.split(header):
        name_value = cookie_string.split(";", 1)[0]
        name, _, value = name_value.partition("=")
        name, value = name.strip(), value.strip()
        if name and value:
            cookies[name] = value
    return cookies


def parse_set_cookie_headers(headers: Iterable[str]) -> dict[str, str]:
    """Merge :func:`parse_set_cookie_header` over several header values."""
    cookies: dict[str, str] = {}
    for header in headers:
        cookies.update(parse_set_cookie_header(header))
    return cookies


def _first_token(data: dict[str, Any], keys: Iterable[str]) -> Optional[str]:
    for key in keys:
        value = data.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def extract_tokens_from_json(body: Any, token_config: TokenConfig) -> CredentialPair:
    """Find the new tokens in a JSON refresh response.

    The access token is looked up under the configured name, then
    ``accessToken``, ``token`` and ``access_token``; the refresh token under
    the configured name, then ``refreshToken`` and ``refresh_token``.  The
    first non-empty match wins.

    Raises:
        RefreshError: ``MALFORMED_REFRESH_RESPONSE`` when the body is not an
            object or carries no access token.
    """
    name = token_config.access_token_name
    if not isinstance(body, dict):
        raise RefreshError(
            RefreshFailureReason.MALFORMED_REFRESH_RESPONSE,
            "MalformedRefreshResponse: refresh response is not a JSON object",
        )
    access_token = _first_token(body, (name, *ACCESS_TOKEN_FALLBACK_KEYS))
    if access_token is None:
        raise RefreshError(
            RefreshFailureReason.MALFORMED_REFRESH_RESPONSE,
            f"MalformedRefreshResponse: access token not found in response "
            f"(looking for: {name})",
        )
    refresh_token = _first_token(
        body, (token_config.refresh_token_name, *REFRESH_TOKEN_FALLBACK_KEYS)
    )
    return CredentialPair(access_token=access_token, refresh_token=refresh_token)


def extract_tokens_from_cookies(
    response: TransportResponse, token_config: TokenConfig
) -> CredentialPair:
    """Find the new tokens in the ``Set-Cookie`` headers of a refresh response.

    Raises:
        RefreshError: ``MALFORMED_REFRESH_RESPONSE`` when there is no
            ``Set-Cookie`` header or it carries no access token.
    """
    headers = response.header_values("set-cookie")
    if not headers:
        raise RefreshError(
            RefreshFailureReason.MALFORMED_REFRESH_RESPONSE,
            "MalformedRefreshResponse: no cookies returned from refresh endpoint",
        )
    cookies = parse_set_cookie_headers(headers)
    access_token = cookies.get(token_config.access_token_name)
    if not access_token:
        raise RefreshError(
            RefreshFailureReason.MALFORMED_REFRESH_RESPONSE,
            f"MalformedRefreshResponse: access token not found in cookies "
            f"(looking for: {token_config.access_token_name})",
        )
    return CredentialPair(
        access_token=access_token,
        refresh_token=cookies.get(token_config.refresh_token_name) or None,
    )


def _json_body(response: TransportResponse) -> Any:
    """Return the refresh response body decoded as JSON, whatever its content type."""
    if not isinstance(response.body, str):
        return response.body
    try:
        return json.loads(response.text)
    except ValueError as exc:
        raise RefreshError(
            RefreshFailureReason.MALFORMED_REFRESH_RESPONSE,
            f"MalformedRefreshResponse: refresh response is not valid JSON ({exc})",
        ) from exc


async def persist_credentials(
    store: CredentialStore,
    credentials: CredentialPair,
    token_config: TokenConfig,
    secure: bool = False,
) -> None:
    """Write *credentials* to *store* with cookie-style attributes.

    The refresh token is only written when the endpoint rotated it.

    The two writes are separate store calls and not atomic: if writing the
    rotated refresh token fails, the new access token stays stored and the
    error propagates (the executor reports it as ``NETWORK_ERROR``).
    """
    await store.set(
        token_config.access_token_name,
        credentials.access_token,
        CookieAttributes(secure=secure, max_age=ACCESS_TOKEN_MAX_AGE),
    )
    if credentials.refresh_token:
        await store.set(
            token_config.refresh_token_name,
            credentials.refresh_token,
            CookieAttributes(secure=secure, max_age=REFRESH_TOKEN_MAX_AGE),
        )


class RefreshExecutor:
    """Invokes the refresh endpoint and persists the new credentials.

    Args:
        transport: Performs the refresh request.
        store: Holds the refresh token and receives the new tokens.
        secure: Value of the ``secure`` attribute for persisted tokens
            (normally :func:`tokenrelay.config.secure_cookies`).
    """

    def __init__(
        self,
        transport: Transport,
        store: CredentialStore,
        secure: bool = False,
    ) -> None:
        self._transport = transport
        self._store = store
        self._secure = secure

    async def execute_refresh(
        self,
        refresh_url: str,
        options: Optional[RefreshOptions] = None,
        token_config: Optional[TokenConfig] = None,
    ) -> RefreshOutcome:
        """Run one refresh call.

        Args:
            refresh_url: The refresh endpoint.
            options: Method, headers, body and extraction strategy.
                ``options.token_names`` takes precedence over *token_config*.
            token_config: Token names to use when *options* does not carry
                any.

        Returns:
            ``RefreshOutcome.succeeded`` once the new tokens are persisted,
            otherwise a failure with ``NO_REFRESH_TOKEN``,
            ``REFRESH_ENDPOINT_REJECTED``, ``MALFORMED_REFRESH_RESPONSE`` or
            ``NETWORK_ERROR``.
        """
        options = options or RefreshOptions()
        token_config = options.token_names or token_config or TokenConfig()
        try:
            credentials, status = await self._refresh(refresh_url, options, token_config)
        except RefreshError as exc:
            logger.warning("Token refresh via %s failed: %s", refresh_url, exc)
            return RefreshOutcome.failed(exc.reason, str(exc), status=exc.status)
        except TransportError as exc:
            logger.warning("Token refresh via %s failed: %s", refresh_url, exc)
            return RefreshOutcome.failed(
                RefreshFailureReason.NETWORK_ERROR, f"Refresh request failed: {exc}"
            )
        except Exception as exc:
            logger.exception("Unexpected error while refreshing via %s", refresh_url)
            return RefreshOutcome.failed(
                RefreshFailureReason.NETWORK_ERROR, f"Refresh request failed: {exc}"
            )

        logger.info(
            "Token refreshed via %s (refresh token rotated: %s)",
            refresh_url,
            credentials.refresh_token is not None,
        )
        return RefreshOutcome.succeeded(credentials, status=status)

    async def _refresh(
        self,
        refresh_url: str,
        options: RefreshOptions,
        token_config: TokenConfig,
    ) -> tuple[CredentialPair, int]:
        refresh_token = await self._store.get(token_config.refresh_token_name)
        if not refresh_token:
            raise RefreshError(
                RefreshFailureReason.NO_REFRESH_TOKEN, MESSAGE_NO_REFRESH_TOKEN
            )

        headers = {"Content-Type": "application/json", **options.headers}
        body = options.body
        if body is None:
            body = {token_config.refresh_token_name: refresh_token}

        response = await self._transport.request(
            refresh_url, method=options.method, headers=headers, body=body
        )
        if not response.ok:
            raise RefreshError(
                RefreshFailureReason.REFRESH_ENDPOINT_REJECTED,
                MESSAGE_REFRESH_REJECTED,
                status=response.status,
            )

        if options.response_type == "cookies":
            credentials = extract_tokens_from_cookies(response, token_config)
        else:
            credentials = extract_tokens_from_json(_json_body(response), token_config)

        await persist_credentials(self._store, credentials, token_config, self._secure)
        return credentials, response.status
