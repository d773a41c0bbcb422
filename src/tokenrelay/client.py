"""Refresh-and-retry client -- the public surface of tokenrelay.

:class:`TokenRelayClient` composes the pieces of the core into four
operations, all returning :class:`~tokenrelay.models.OperationResult` and
none of them raising for HTTP or network failures:

* :meth:`~TokenRelayClient.refresh` -- run the refresh executor once.
* :meth:`~TokenRelayClient.retry` -- send a request with the stored token.
* :meth:`~TokenRelayClient.refresh_and_retry` -- refresh (single-flight),
  then retry.
* :meth:`~TokenRelayClient.fetch_with_refresh_retry` -- the full flow:
  request, classify, refresh on expiry, retry once.

The full flow is a small state machine::

    INITIAL -> CLASSIFYING -> SUCCESS
                           -> FAILED
                           -> REFRESHING -> FAILED
                                         -> RETRYING_AFTER_REFRESH -> TERMINAL

At most one refresh-and-retry cycle happens per call.  A 401 on the retried
request is returned as-is (``needs_refresh=True``) instead of triggering a
second refresh, so a backend whose 401s are not caused by expiry cannot put
the client into a loop.

Example::

    from tokenrelay.client import TokenRelayClient
    from tokenrelay.credentials import FileCredentialStore

    async with TokenRelayClient(FileCredentialStore("my-api")) as client:
        result = await client.fetch_with_refresh_retry(
            "https://api.example.com/api/data",
            refresh_url="https://api.example.com/api/auth/refresh",
        )
"""

from __future__ import annotations

import enum
import logging
from typing import Optional

from tokenrelay.classifier import GENERIC_FAILURE_MESSAGE, ResponseClassifier
from tokenrelay.config import secure_cookies
from tokenrelay.coordinator import RefreshCoordinator, key_for
from tokenrelay.credentials.base import CredentialStore
from tokenrelay.exceptions import InvalidUsageError, TransportError
from tokenrelay.models import (
    OperationResult,
    RefreshFailureReason,
    RefreshOptions,
    RefreshOutcome,
    RelayConfig,
    RequestConfig,
    RequestOptions,
    TokenConfig,
)
from tokenrelay.refresh import RefreshExecutor
from tokenrelay.retry import RetryExecutor, build_request_headers
from tokenrelay.transport import HttpxTransport, Transport

logger = logging.getLogger(__name__)


class FlowState(str, enum.Enum):
    """States of :meth:`TokenRelayClient.fetch_with_refresh_retry`."""

    INITIAL = "initial"
    CLASSIFYING = "classifying"
    SUCCESS = "success"
    REFRESHING = "refreshing"
    RETRYING_AFTER_REFRESH = "retrying_after_refresh"
    FAILED = "failed"
    TERMINAL = "terminal"


def refresh_failure_result(outcome: RefreshOutcome) -> OperationResult:
    """Map a failed :class:`~tokenrelay.models.RefreshOutcome` to a result.

    ``needs_login`` is set when only re-authentication can help.  Network
    errors are reported with the generic message; their detail is logged.
    """
    if outcome.reason is RefreshFailureReason.NETWORK_ERROR or not outcome.message:
        error = GENERIC_FAILURE_MESSAGE
    else:
        error = outcome.message
    return OperationResult.fail(
        error,
        status=outcome.status,
        needs_login=outcome.requires_reauthentication,
    )


class TokenRelayClient:
    """Fetch-with-refresh-retry orchestrator.

    Args:
        store: Credential store holding the access and refresh tokens.
        transport: HTTP transport.  Defaults to an :class:`HttpxTransport`
            owned (and closed) by this client.
        coordinator: Shared single-flight coordinator.  Pass the same
            instance to every client that should share refreshes; a private
            one is created otherwise.
        token_config: Default token names and header format.
        refresh_url: Default refresh endpoint for the full flow.
        refresh_options: Default refresh options for the full flow.
        expiration_marker: Marker that turns a non-401 error into a refresh.
        secure: ``secure`` attribute for persisted tokens.
        base_url: Base URL of the default transport.
        request_config: Timeout/SSL/retry settings of the default transport.
    """

    def __init__(
        self,
        store: CredentialStore,
        transport: Optional[Transport] = None,
        coordinator: Optional[RefreshCoordinator] = None,
        token_config: Optional[TokenConfig] = None,
        refresh_url: Optional[str] = None,
        refresh_options: Optional[RefreshOptions] = None,
        expiration_marker: str = "expire",
        secure: bool = False,
        base_url: str = "",
        request_config: Optional[RequestConfig] = None,
    ) -> None:
        self._store = store
        self._owns_transport = transport is None
        self._transport = transport or HttpxTransport(base_url, request_config)
        self._coordinator = coordinator or RefreshCoordinator()
        self._token_config = token_config or TokenConfig()
        self._refresh_url = refresh_url
        self._refresh_options = refresh_options or RefreshOptions()
        self._classifier = ResponseClassifier(expiration_marker)
        self._refresher = RefreshExecutor(self._transport, store, secure=secure)
        self._retrier = RetryExecutor(self._transport, store)

    @classmethod
    def from_config(
        cls,
        config: RelayConfig,
        store: CredentialStore,
        transport: Optional[Transport] = None,
        coordinator: Optional[RefreshCoordinator] = None,
    ) -> TokenRelayClient:
        """Build a client from a resolved :class:`~tokenrelay.models.RelayConfig`."""
        return cls(
            store,
            transport=transport,
            coordinator=coordinator,
            token_config=config.token_names,
            refresh_url=config.refresh_url,
            refresh_options=RefreshOptions(
                method=config.refresh_method, response_type=config.response_type
            ),
            expiration_marker=config.expiration_marker,
            secure=secure_cookies(config),
            base_url=config.base_url or "",
            request_config=config.request,
        )

    @property
    def coordinator(self) -> RefreshCoordinator:
        return self._coordinator

    @property
    def store(self) -> CredentialStore:
        return self._store

    # ------------------------------------------------------------------ #
    # Async context manager
    # ------------------------------------------------------------------ #

    async def __aenter__(self) -> TokenRelayClient:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_transport:
            await self._transport.aclose()

    # ------------------------------------------------------------------ #
    # Public operations
    # ------------------------------------------------------------------ #

    async def refresh(
        self,
        refresh_url: Optional[str] = None,
        options: Optional[RefreshOptions] = None,
    ) -> OperationResult:
        """Run the refresh executor directly (no deduplication).

        Returns:
            ``success=True`` once the new tokens are stored, with
            ``data={"refreshed": True, "rotated": <bool>}``;
            otherwise the failure with ``needs_login`` when re-authentication
            is required.
        """
        try:
            refresh_url, options = self._refresh_target(refresh_url, options)
        except InvalidUsageError as exc:
            return OperationResult.fail(str(exc))
        outcome = await self._refresher.execute_refresh(refresh_url, options, self._token_config)
        if not outcome.success:
            return await self._fail_refresh(outcome, options)
        rotated = outcome.credentials is not None and bool(outcome.credentials.refresh_token)
        return OperationResult.ok(
            {"refreshed": True, "rotated": rotated}, status=outcome.status
        )

    async def retry(
        self,
        url: str,
        options: Optional[RequestOptions] = None,
    ) -> OperationResult:
        """Send *url* with the currently stored access token."""
        options = options or RequestOptions()
        return await self._retrier.retry(
            options.to_descriptor(url), options.token_names or self._token_config
        )

    async def refresh_and_retry(
        self,
        refresh_url: Optional[str] = None,
        refresh_options: Optional[RefreshOptions] = None,
        retry_url: Optional[str] = None,
        retry_options: Optional[RequestOptions] = None,
    ) -> OperationResult:
        """Refresh through the coordinator, then retry *retry_url*.

        No initial request is made.  Concurrent callers for the same refresh
        scope share one refresh call.
        """
        if retry_url is None:
            return OperationResult.fail("A retry URL is required")
        try:
            refresh_url, refresh_options = self._refresh_target(refresh_url, refresh_options)
        except InvalidUsageError as exc:
            return OperationResult.fail(str(exc))
        outcome = await self._coordinated_refresh(refresh_url, refresh_options)
        if not outcome.success:
            return await self._fail_refresh(outcome, refresh_options)
        return await self.retry(retry_url, retry_options)

    async def fetch_with_refresh_retry(
        self,
        url: str,
        options: Optional[RequestOptions] = None,
        refresh_url: Optional[str] = None,
        refresh_options: Optional[RefreshOptions] = None,
    ) -> OperationResult:
        """Send *url*; on expiry refresh once and retry once.

        Args:
            url: The protected resource.
            options: Method, headers, body and token names of the request.
            refresh_url: Refresh endpoint (defaults to the client's).
            refresh_options: Refresh request options (defaults to the
                client's).

        Returns:
            The final :class:`~tokenrelay.models.OperationResult`.
        """
        options = options or RequestOptions()
        descriptor = options.to_descriptor(url)
        token_config = options.token_names or self._token_config
        self._log_state(descriptor.url, FlowState.INITIAL)

        try:
            auth_header = await self._retrier.authorization_header(token_config)
            response = await self._transport.request(
                descriptor.url,
                method=descriptor.method,
                headers=build_request_headers(descriptor.headers, auth_header),
                body=descriptor.body,
            )
        except TransportError as exc:
            logger.warning("%s %s failed: %s", descriptor.method, descriptor.url, exc)
            self._log_state(descriptor.url, FlowState.FAILED)
            return OperationResult.fail(GENERIC_FAILURE_MESSAGE)
        except Exception:
            logger.exception(
                "Unexpected error sending %s %s", descriptor.method, descriptor.url
            )
            self._log_state(descriptor.url, FlowState.FAILED)
            return OperationResult.fail(GENERIC_FAILURE_MESSAGE)

        self._log_state(descriptor.url, FlowState.CLASSIFYING)
        classification = self._classifier.classify(response)
        if classification.ok:
            self._log_state(descriptor.url, FlowState.SUCCESS)
            return OperationResult.ok(classification.data, status=classification.status)
        if not classification.needs_refresh:
            self._log_state(descriptor.url, FlowState.FAILED)
            return OperationResult.fail(
                classification.reason or GENERIC_FAILURE_MESSAGE,
                status=classification.status,
            )

        self._log_state(descriptor.url, FlowState.REFRESHING)
        try:
            refresh_url, refresh_options = self._refresh_target(refresh_url, refresh_options)
        except InvalidUsageError as exc:
            self._log_state(descriptor.url, FlowState.FAILED)
            return OperationResult.fail(str(exc), status=classification.status)
        outcome = await self._coordinated_refresh(refresh_url, refresh_options)
        if not outcome.success:
            self._log_state(descriptor.url, FlowState.FAILED)
            return await self._fail_refresh(outcome, refresh_options)

        self._log_state(descriptor.url, FlowState.RETRYING_AFTER_REFRESH)
        result = await self._retrier.retry(descriptor, token_config)
        self._log_state(descriptor.url, FlowState.TERMINAL)
        return result

    # ------------------------------------------------------------------ #
    # Private helpers
    # ------------------------------------------------------------------ #

    def _refresh_target(
        self,
        refresh_url: Optional[str],
        options: Optional[RefreshOptions],
    ) -> tuple[str, RefreshOptions]:
        refresh_url = refresh_url or self._refresh_url
        if not refresh_url:
            raise InvalidUsageError("No refresh URL configured")
        return refresh_url, options or self._refresh_options

    def _refresh_token_config(self, options: RefreshOptions) -> TokenConfig:
        return options.token_names or self._token_config

    async def _coordinated_refresh(
        self, refresh_url: str, options: RefreshOptions
    ) -> RefreshOutcome:
        token_config = self._refresh_token_config(options)
        key = options.key or key_for(refresh_url, token_config)
        return await self._coordinator.request_refresh(
            key,
            lambda: self._refresher.execute_refresh(refresh_url, options, token_config),
        )

    async def _fail_refresh(
        self, outcome: RefreshOutcome, options: RefreshOptions
    ) -> OperationResult:
        if outcome.requires_reauthentication:
            token_config = self._refresh_token_config(options)
            logger.info("Refresh rejected (%s); clearing stored credentials", outcome.reason)
            try:
                await self._store.delete(token_config.access_token_name)
                await self._store.delete(token_config.refresh_token_name)
            except Exception as exc:
                logger.warning("Could not clear stored credentials: %s", exc)
        return refresh_failure_result(outcome)

    def _log_state(self, url: str, state: FlowState) -> None:
        logger.debug("%s: %s", url, state.value)
