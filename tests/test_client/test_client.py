"""Tests for the fetch-with-refresh-retry client."""

from __future__ import annotations

import asyncio
import logging

import httpx
import pytest

from tokenrelay.client import FlowState, TokenRelayClient, refresh_failure_result
from tokenrelay.coordinator import RefreshCoordinator
from tokenrelay.credentials import MemoryCredentialStore
from tokenrelay.models import (
    RefreshFailureReason,
    RefreshOptions,
    RefreshOutcome,
    RelayConfig,
    RequestOptions,
    TokenConfig,
)
from tokenrelay.transport import HttpxTransport


def _client(auth_server, transport, store, **kwargs) -> TokenRelayClient:
    return TokenRelayClient(
        store, transport=transport, refresh_url=auth_server.refresh_url, **kwargs
    )


def _seeded_store() -> MemoryCredentialStore:
    return MemoryCredentialStore({"accessToken": "A1", "refreshToken": "R1"})


# ---------------------------------------------------------------------------
# fetch_with_refresh_retry
# ---------------------------------------------------------------------------


class TestFetchWithRefreshRetry:
    @pytest.mark.asyncio
    async def test_valid_token_needs_no_refresh(self, auth_server, transport) -> None:
        auth_server.valid_access.add("A1")
        client = _client(auth_server, transport, _seeded_store())

        result = await client.fetch_with_refresh_retry("/api/data")

        assert result.success
        assert result.data == {"items": [1, 2, 3]}
        assert auth_server.refresh_calls == 0

    @pytest.mark.asyncio
    async def test_expired_token_is_refreshed_and_retried(self, auth_server, transport) -> None:
        auth_server.issue("R1", "A2", rotated="R2")
        store = _seeded_store()
        client = _client(auth_server, transport, store)

        result = await client.fetch_with_refresh_retry("/api/data")

        assert result.success is True
        assert result.status == 200
        assert result.data == {"items": [1, 2, 3]}
        assert auth_server.calls("/api/data") == 2
        assert auth_server.refresh_calls == 1
        retried = auth_server.requests[-1]
        assert retried.headers["authorization"] == "Bearer A2"
        assert store.snapshot() == {"accessToken": "A2", "refreshToken": "R2"}

    @pytest.mark.asyncio
    async def test_rotated_credentials_round_trip(self, auth_server, transport) -> None:
        auth_server.issue("R1", "A2", rotated="R2")
        auth_server.issue("R2", "A3", rotated="R3")
        store = _seeded_store()
        client = _client(auth_server, transport, store)

        await client.fetch_with_refresh_retry("/api/data")
        auth_server.valid_access.discard("A2")
        result = await client.fetch_with_refresh_retry("/api/data")

        assert result.success
        assert auth_server.bodies("/api/auth/refresh") == [
            {"refreshToken": "R1"},
            {"refreshToken": "R2"},
        ]
        assert store.snapshot() == {"accessToken": "A3", "refreshToken": "R3"}

    @pytest.mark.asyncio
    async def test_refresh_rejected(self, auth_server, transport) -> None:
        auth_server.refresh_status = 403
        store = _seeded_store()
        client = _client(auth_server, transport, store)

        result = await client.fetch_with_refresh_retry("/api/data")

        assert result.success is False
        assert result.error == "Token refresh failed"
        assert result.status == 403
        assert result.needs_login is True
        assert auth_server.calls("/api/data") == 1
        assert store.snapshot() == {}

    @pytest.mark.asyncio
    async def test_no_refresh_token(self, auth_server, transport) -> None:
        store = MemoryCredentialStore({"accessToken": "A1"})
        client = _client(auth_server, transport, store)

        result = await client.fetch_with_refresh_retry("/api/data")

        assert result.error == "No refresh token available"
        assert result.needs_login is True
        assert auth_server.refresh_calls == 0

    @pytest.mark.asyncio
    async def test_malformed_refresh_keeps_credentials(self, auth_server, transport) -> None:
        auth_server.issue("R1", "A2")
        auth_server.refresh_payload = {"unexpected": True}
        store = _seeded_store()
        client = _client(auth_server, transport, store)

        result = await client.fetch_with_refresh_retry("/api/data")

        assert result.success is False
        assert result.error.startswith("MalformedRefreshResponse")
        assert result.needs_login is False
        assert store.snapshot() == {"accessToken": "A1", "refreshToken": "R1"}
        assert auth_server.calls("/api/data") == 1

    @pytest.mark.asyncio
    async def test_hard_failure_is_not_refreshed(self, auth_server, transport) -> None:
        client = _client(auth_server, transport, _seeded_store())

        result = await client.fetch_with_refresh_retry("/api/forbidden")

        assert result.success is False
        assert result.status == 403
        assert result.error == "Forbidden"
        assert auth_server.refresh_calls == 0

    @pytest.mark.asyncio
    async def test_expiration_marker_triggers_refresh(self) -> None:
        seen: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.url.path)
            if request.url.path == "/api/auth/refresh":
                return httpx.Response(200, json={"token": "A2"})
            if request.headers.get("authorization") == "Bearer A2":
                return httpx.Response(200, json={"ok": True})
            return httpx.Response(403, json={"error": "JWT Expired"})

        transport = HttpxTransport(
            client=httpx.AsyncClient(
                transport=httpx.MockTransport(handler), base_url="https://api.example.com"
            )
        )
        client = TokenRelayClient(
            _seeded_store(), transport=transport, refresh_url="/api/auth/refresh"
        )

        result = await client.fetch_with_refresh_retry("/api/data")

        assert result.data == {"ok": True}
        assert seen == ["/api/data", "/api/auth/refresh", "/api/data"]

    @pytest.mark.asyncio
    async def test_second_401_is_returned_without_another_refresh(self) -> None:
        seen: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.url.path)
            if request.url.path == "/api/auth/refresh":
                return httpx.Response(200, json={"accessToken": "A2", "refreshToken": "R2"})
            return httpx.Response(401, json={"message": "Unauthorized"})

        transport = HttpxTransport(
            client=httpx.AsyncClient(
                transport=httpx.MockTransport(handler), base_url="https://api.example.com"
            )
        )
        client = TokenRelayClient(
            _seeded_store(), transport=transport, refresh_url="/api/auth/refresh"
        )

        result = await client.fetch_with_refresh_retry("/api/data")

        assert result.success is False
        assert result.status == 401
        assert result.needs_refresh is True
        assert seen == ["/api/data", "/api/auth/refresh", "/api/data"]

    @pytest.mark.asyncio
    async def test_initial_transport_failure(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused")

        transport = HttpxTransport(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
        store = _seeded_store()
        client = TokenRelayClient(store, transport=transport, refresh_url="https://x/refresh")

        result = await client.fetch_with_refresh_retry("https://x/api/data")

        assert result.success is False
        assert result.error == "Request failed"
        assert result.status is None
        assert store.snapshot() == {"accessToken": "A1", "refreshToken": "R1"}

    @pytest.mark.asyncio
    async def test_failing_header_formatter(self, auth_server, transport) -> None:
        def formatter(token: str) -> str:
            raise ValueError("formatter broke")

        store = _seeded_store()
        client = _client(
            auth_server, transport, store, token_config=TokenConfig(auth_header_format=formatter)
        )

        result = await client.fetch_with_refresh_retry("/api/data")

        assert result.success is False
        assert result.error == "Request failed"
        assert auth_server.requests == []
        assert store.snapshot() == {"accessToken": "A1", "refreshToken": "R1"}

    @pytest.mark.asyncio
    async def test_failing_store_read(self, auth_server, transport) -> None:
        class BrokenStore(MemoryCredentialStore):
            async def get(self, name: str):
                raise RuntimeError("store offline")

        client = _client(auth_server, transport, BrokenStore())

        result = await client.fetch_with_refresh_retry("/api/data")

        assert result.success is False
        assert result.error == "Request failed"

    @pytest.mark.asyncio
    async def test_unserialisable_body(self, auth_server, transport) -> None:
        client = _client(auth_server, transport, _seeded_store())

        result = await client.fetch_with_refresh_retry(
            "/api/data", RequestOptions(method="POST", body={"when": object()})
        )

        assert result.success is False
        assert result.error == "Request failed"

    @pytest.mark.asyncio
    async def test_missing_refresh_url(self, transport) -> None:
        client = TokenRelayClient(_seeded_store(), transport=transport)

        result = await client.fetch_with_refresh_retry("/api/data")

        assert result.success is False
        assert result.error == "No refresh URL configured"

    @pytest.mark.asyncio
    async def test_request_options_are_replayed(self, auth_server, transport) -> None:
        auth_server.issue("R1", "A2")
        client = _client(auth_server, transport, _seeded_store())
        options = RequestOptions(method="post", headers={"X-Trace": "t1"}, body={"q": 1})

        await client.fetch_with_refresh_retry("/api/data", options)

        first, retried = [r for r in auth_server.requests if r.url.path == "/api/data"]
        assert retried.method == first.method == "POST"
        assert retried.headers["x-trace"] == "t1"
        assert retried.content == first.content

    @pytest.mark.asyncio
    async def test_logs_flow_states(self, auth_server, transport, caplog) -> None:
        auth_server.issue("R1", "A2")
        client = _client(auth_server, transport, _seeded_store())

        with caplog.at_level(logging.DEBUG, logger="tokenrelay.client"):
            await client.fetch_with_refresh_retry("/api/data")

        text = caplog.text
        for state in (FlowState.REFRESHING, FlowState.RETRYING_AFTER_REFRESH, FlowState.TERMINAL):
            assert state.value in text
        assert "A2" not in text


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------


class TestConcurrentFetches:
    @pytest.mark.asyncio
    async def test_concurrent_expiries_share_one_refresh(self, auth_server, transport) -> None:
        auth_server.issue("R1", "A2", rotated="R2")
        auth_server.refresh_delay = 0.05
        client = _client(auth_server, transport, _seeded_store())

        results = await asyncio.gather(
            *(client.fetch_with_refresh_retry("/api/data") for _ in range(5))
        )

        assert all(result.success for result in results)
        assert auth_server.refresh_calls == 1

    @pytest.mark.asyncio
    async def test_clients_sharing_a_coordinator(self, auth_server, transport) -> None:
        auth_server.issue("R1", "A2")
        auth_server.refresh_delay = 0.05
        store = _seeded_store()
        coordinator = RefreshCoordinator()
        first = _client(auth_server, transport, store, coordinator=coordinator)
        second = _client(auth_server, transport, store, coordinator=coordinator)

        results = await asyncio.gather(
            first.fetch_with_refresh_retry("/api/data"),
            second.fetch_with_refresh_retry("/api/data"),
        )

        assert [r.success for r in results] == [True, True]
        assert auth_server.refresh_calls == 1


# ---------------------------------------------------------------------------
# refresh / retry / refresh_and_retry
# ---------------------------------------------------------------------------


class TestStandaloneOperations:
    @pytest.mark.asyncio
    async def test_refresh(self, auth_server, transport) -> None:
        auth_server.issue("R1", "A2")
        store = _seeded_store()
        client = _client(auth_server, transport, store)

        result = await client.refresh()

        assert result.success is True
        assert result.data == {"refreshed": True, "rotated": False}
        assert await store.get("accessToken") == "A2"

    @pytest.mark.asyncio
    async def test_refresh_failure_clears_credentials(self, auth_server, transport) -> None:
        store = _seeded_store()
        client = _client(auth_server, transport, store)

        result = await client.refresh()

        assert result.success is False
        assert result.needs_login is True
        assert store.snapshot() == {}

    @pytest.mark.asyncio
    async def test_retry(self, auth_server, transport) -> None:
        auth_server.valid_access.add("A1")
        client = _client(auth_server, transport, _seeded_store())

        result = await client.retry("/api/data")

        assert result.success
        assert auth_server.refresh_calls == 0

    @pytest.mark.asyncio
    async def test_refresh_and_retry(self, auth_server, transport) -> None:
        auth_server.issue("R1", "A2")
        client = _client(auth_server, transport, _seeded_store())

        result = await client.refresh_and_retry(retry_url="/api/data")

        assert result.success
        assert [r.url.path for r in auth_server.requests] == ["/api/auth/refresh", "/api/data"]

    @pytest.mark.asyncio
    async def test_refresh_and_retry_requires_url(self, auth_server, transport) -> None:
        client = _client(auth_server, transport, _seeded_store())

        result = await client.refresh_and_retry()

        assert result.success is False
        assert auth_server.requests == []

    @pytest.mark.asyncio
    async def test_custom_token_names(self, transport) -> None:
        store = MemoryCredentialStore({"jwt": "A1", "rt": "R1"})
        client = TokenRelayClient(
            store,
            transport=transport,
            token_config=TokenConfig(access_token_name="jwt", refresh_token_name="rt"),
        )

        result = await client.refresh(
            "/api/auth/refresh", RefreshOptions(body={"refreshToken": "unknown"})
        )

        assert result.needs_login is True
        assert store.snapshot() == {}


class TestFromConfig:
    @pytest.mark.asyncio
    async def test_uses_config_values(self, auth_server, transport) -> None:
        auth_server.issue("R1", "A2")
        config = RelayConfig(refresh_url=auth_server.refresh_url, environment="production")
        store = _seeded_store()
        client = TokenRelayClient.from_config(config, store, transport=transport)

        result = await client.fetch_with_refresh_retry("/api/data")

        assert result.success
        assert store.attributes("accessToken").secure is True


class TestRefreshFailureResult:
    def test_network_error_uses_generic_message(self) -> None:
        outcome = RefreshOutcome.failed(
            RefreshFailureReason.NETWORK_ERROR, "Refresh request failed: x"
        )
        result = refresh_failure_result(outcome)
        assert result.error == "Request failed"
        assert result.needs_login is False
