"""Retry executor -- replays a request with the freshly stored access token.

:class:`RetryExecutor` reads the access token from the credential store right
before the call (never from a cache), builds the ``Authorization`` header,
and sends the caller's original request.  The outcome is always an
:class:`~tokenrelay.models.OperationResult`:

* 2xx -- ``success=True`` with the parsed body.
* Any other status -- ``success=False`` with the server's message;
  ``needs_refresh`` is set on 401 so callers can tell that even the retried
  request was rejected.
* Network or parse failure -- ``success=False`` with ``needs_login`` set,
  the terminal signal that re-authentication is required.
"""

from __future__ import annotations

import logging
from typing import Optional

from tokenrelay.classifier import GENERIC_FAILURE_MESSAGE, extract_error_message
from tokenrelay.credentials.base import CredentialStore
from tokenrelay.models import OperationResult, RequestDescriptor, TokenConfig
from tokenrelay.transport import Transport

logger = logging.getLogger(__name__)

JSON_CONTENT_TYPE = "application/json"
MESSAGE_AUTHENTICATION_FAILED = "Authentication failed"


def _has_header(headers: dict[str, str], name: str) -> bool:
    lowered = name.lower()
    return any(key.lower() == lowered for key in headers)


def build_request_headers(
    headers: dict[str, str], auth_header: Optional[str]
) -> dict[str, str]:
    """Return *headers* plus ``Authorization`` and JSON ``Content-Type``/``Accept``.

    An existing ``Authorization`` header (in any casing) is replaced;
    ``Content-Type`` and ``Accept`` are only added when absent.
    """
    merged = {
        key: value for key, value in headers.items() if key.lower() != "authorization"
    }
    if auth_header:
        merged["Authorization"] = auth_header
    if not _has_header(merged, "Content-Type"):
        merged["Content-Type"] = JSON_CONTENT_TYPE
    if not _has_header(merged, "Accept"):
        merged["Accept"] = JSON_CONTENT_TYPE
    return merged


class RetryExecutor:
    """Issues a protected request with the currently stored access token.

    Args:
        transport: Performs the request.
        store: Source of the access token.
    """

    def __init__(self, transport: Transport, store: CredentialStore) -> None:
        self._transport = transport
        self._store = store

    async def authorization_header(self, token_config: TokenConfig) -> Optional[str]:
        """Return the ``Authorization`` value for the stored token, if any."""
        access_token = await self._store.get(token_config.access_token_name)
        if not access_token:
            return None
        return token_config.format_auth_header(access_token)

    async def retry(
        self,
        descriptor: RequestDescriptor,
        token_config: Optional[TokenConfig] = None,
    ) -> OperationResult:
        """Send *descriptor* with the current credentials.

        Args:
            descriptor: The caller's original request.
            token_config: Access token name and header format.

        Returns:
            The structured result; never raises for transport or parse errors.
        """
        token_config = token_config or TokenConfig()
        try:
            auth_header = await self.authorization_header(token_config)
            if auth_header is None:
                logger.debug(
                    "No %s stored; sending without Authorization",
                    token_config.access_token_name,
                )
            headers = build_request_headers(descriptor.headers, auth_header)
            response = await self._transport.request(
                descriptor.url,
                method=descriptor.method,
                headers=headers,
                body=descriptor.body,
            )
        except Exception as exc:
            logger.warning("Retry of %s %s failed: %s", descriptor.method, descriptor.url, exc)
            return OperationResult.fail(MESSAGE_AUTHENTICATION_FAILED, needs_login=True)

        if response.ok:
            return OperationResult.ok(response.body, status=response.status)

        message = extract_error_message(response.body) or GENERIC_FAILURE_MESSAGE
        logger.debug(
            "Retry of %s %s answered %d: %s",
            descriptor.method, descriptor.url, response.status, message,
        )
        return OperationResult.fail(
            message,
            status=response.status,
            needs_refresh=response.status == 401,
        )
