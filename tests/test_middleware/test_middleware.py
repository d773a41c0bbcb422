"""Tests for the inbound refresh middleware."""

from __future__ import annotations

import asyncio
import re
import time

import jwt
import pytest

from tokenrelay.coordinator import RefreshCoordinator
from tokenrelay.middleware import (
    InboundRequest,
    MiddlewareAction,
    MiddlewareConfig,
    RefreshMiddleware,
    is_jwt_expired,
    path_matches,
)
from tokenrelay.models import RefreshOptions, RelayConfig, TokenConfig


def _jwt(exp_offset: float) -> str:
    return jwt.encode({"sub": "u1", "exp": int(time.time() + exp_offset)}, "secret", algorithm="HS256")


def _middleware(auth_server, transport, **kwargs) -> RefreshMiddleware:
    config = MiddlewareConfig(refresh_url=auth_server.refresh_url, **kwargs)
    return RefreshMiddleware(config, transport=transport)


def _cookies(response) -> dict:
    return {m.name: m.value for m in response.cookies}


class TestIsJwtExpired:
    def test_expired(self) -> None:
        assert is_jwt_expired(_jwt(-60)) is True

    def test_not_expired(self) -> None:
        assert is_jwt_expired(_jwt(3600)) is False

    def test_leeway(self) -> None:
        assert is_jwt_expired(_jwt(-5), leeway=30) is False

    def test_opaque_token_is_trusted(self) -> None:
        assert is_jwt_expired("opaque-token") is False

    def test_jwt_without_exp(self) -> None:
        token = jwt.encode({"sub": "u1"}, "secret", algorithm="HS256")
        assert is_jwt_expired(token) is False


class TestPathMatches:
    def test_empty_list_protects_everything(self) -> None:
        assert path_matches("/anything", []) is True

    def test_prefixes_and_regexes(self) -> None:
        patterns = ["/dashboard", re.compile(r"^/account/\d+$")]
        assert path_matches("/dashboard/settings", patterns)
        assert path_matches("/account/42", patterns)
        assert not path_matches("/account/me", patterns)
        assert not path_matches("/public", patterns)

    def test_predicate(self) -> None:
        assert path_matches("/admin", lambda path: path.startswith("/adm"))
        assert not path_matches("/home", lambda path: path.startswith("/adm"))


class TestPassThrough:
    @pytest.mark.asyncio
    async def test_unprotected_path(self, auth_server, transport) -> None:
        middleware = _middleware(auth_server, transport, protected_paths=["/dashboard"])

        response = await middleware.process(InboundRequest(path="/public"))

        assert response.action is MiddlewareAction.PASS_THROUGH
        assert response.cookies == []
        assert auth_server.requests == []

    @pytest.mark.asyncio
    async def test_login_path_is_never_intercepted(self, auth_server, transport) -> None:
        middleware = _middleware(auth_server, transport)

        response = await middleware.process(InboundRequest(path="/login"))

        assert response.action is MiddlewareAction.PASS_THROUGH
        assert auth_server.requests == []

    @pytest.mark.asyncio
    async def test_valid_access_cookie(self, auth_server, transport) -> None:
        middleware = _middleware(auth_server, transport)
        cookies = {"accessToken": _jwt(3600), "refreshToken": "R1"}

        response = await middleware.process(InboundRequest(path="/dashboard", cookies=cookies))

        assert response.action is MiddlewareAction.PASS_THROUGH
        assert response.set_cookie_headers() == []
        assert auth_server.refresh_calls == 0

    @pytest.mark.asyncio
    async def test_custom_expiry_predicate(self, auth_server, transport) -> None:
        auth_server.issue("R1", "A2")
        middleware = _middleware(auth_server, transport, is_expired=lambda token: token == "old")

        response = await middleware.process(
            InboundRequest(path="/dashboard", cookies={"accessToken": "old", "refreshToken": "R1"})
        )

        assert _cookies(response) == {"accessToken": "A2"}


class TestRefresh:
    @pytest.mark.asyncio
    async def test_expired_access_cookie_is_refreshed(self, auth_server, transport) -> None:
        auth_server.issue("R1", "A2", rotated="R2")
        middleware = _middleware(auth_server, transport)
        cookies = {"accessToken": _jwt(-60), "refreshToken": "R1"}

        response = await middleware.process(InboundRequest(path="/dashboard", cookies=cookies))

        assert response.action is MiddlewareAction.PASS_THROUGH
        assert _cookies(response) == {"accessToken": "A2", "refreshToken": "R2"}
        headers = response.set_cookie_headers()
        assert any(h.startswith("accessToken=A2") and "Max-Age=3600" in h for h in headers)
        assert any(h.startswith("refreshToken=R2") and "Max-Age=604800" in h for h in headers)

    @pytest.mark.asyncio
    async def test_missing_access_cookie_is_refreshed(self, auth_server, transport) -> None:
        auth_server.issue("R1", "A2")
        middleware = _middleware(auth_server, transport)

        response = await middleware.process(
            InboundRequest(path="/dashboard", cookies={"refreshToken": "R1"})
        )

        assert _cookies(response) == {"accessToken": "A2"}
        assert auth_server.bodies("/api/auth/refresh") == [{"refreshToken": "R1"}]

    @pytest.mark.asyncio
    async def test_secure_cookies(self, auth_server, transport) -> None:
        auth_server.issue("R1", "A2")
        middleware = _middleware(auth_server, transport, secure=True)

        response = await middleware.process(
            InboundRequest(path="/dashboard", cookies={"refreshToken": "R1"})
        )

        assert "Secure" in response.set_cookie_headers()[0]

    @pytest.mark.asyncio
    async def test_refresh_option_token_names_win(self, auth_server, transport) -> None:
        middleware = _middleware(
            auth_server,
            transport,
            token_names=TokenConfig(access_token_name="ignored", refresh_token_name="ignored_rt"),
            refresh_options=RefreshOptions(
                token_names=TokenConfig(access_token_name="at", refresh_token_name="rt")
            ),
        )

        response = await middleware.process(
            InboundRequest(path="/dashboard", cookies={"rt": "R1"})
        )

        # "rt" was found and sent, but the fake server only accepts "refreshToken".
        assert auth_server.bodies("/api/auth/refresh") == [{"rt": "R1"}]
        assert set(_cookies(response)) == {"at", "rt"}

    @pytest.mark.asyncio
    async def test_concurrent_requests_share_one_refresh(self, auth_server, transport) -> None:
        auth_server.issue("R1", "A2", rotated="R2")
        auth_server.refresh_delay = 0.05
        middleware = _middleware(auth_server, transport)
        request = InboundRequest(path="/dashboard", cookies={"refreshToken": "R1"})

        responses = await asyncio.gather(*(middleware.process(request) for _ in range(3)))

        assert auth_server.refresh_calls == 1
        for response in responses:
            assert response.action is MiddlewareAction.PASS_THROUGH
            assert _cookies(response) == {"accessToken": "A2", "refreshToken": "R2"}

    @pytest.mark.asyncio
    async def test_shared_coordinator(self, auth_server, transport) -> None:
        coordinator = RefreshCoordinator()
        config = MiddlewareConfig(refresh_url=auth_server.refresh_url)
        middleware = RefreshMiddleware(config, transport=transport, coordinator=coordinator)
        assert middleware.coordinator is coordinator


class TestRedirect:
    @pytest.mark.asyncio
    async def test_no_refresh_cookie(self, auth_server, transport) -> None:
        middleware = _middleware(auth_server, transport)

        response = await middleware.process(InboundRequest(path="/dashboard"))

        assert response.action is MiddlewareAction.REDIRECT
        assert response.is_redirect
        assert response.location == "/login"
        assert _cookies(response) == {"accessToken": None, "refreshToken": None}
        assert all("Max-Age=0" in header for header in response.set_cookie_headers())
        assert auth_server.requests == []

    @pytest.mark.asyncio
    async def test_rejected_refresh(self, auth_server, transport) -> None:
        auth_server.refresh_status = 401
        middleware = _middleware(auth_server, transport, login_path="/signin")

        response = await middleware.process(
            InboundRequest(
                path="/dashboard",
                cookies={"accessToken": _jwt(-60), "refreshToken": "R1"},
                url="https://app.example.com/dashboard?tab=1",
            )
        )

        assert response.is_redirect
        assert response.location == "https://app.example.com/signin"
        assert response.error == "Token refresh failed"
        assert _cookies(response) == {"accessToken": None, "refreshToken": None}

    @pytest.mark.asyncio
    async def test_malformed_refresh(self, auth_server, transport) -> None:
        auth_server.issue("R1", "A2")
        auth_server.refresh_payload = {"nothing": "here"}
        middleware = _middleware(auth_server, transport)

        response = await middleware.process(
            InboundRequest(path="/dashboard", cookies={"refreshToken": "R1"})
        )

        assert response.is_redirect
        assert response.error.startswith("MalformedRefreshResponse")


class TestMiddlewareConfig:
    def test_from_config(self) -> None:
        relay = RelayConfig(
            refresh_url="https://api.example.com/api/auth/refresh",
            response_type="cookies",
            protected_paths=["/dashboard"],
            login_path="/signin",
            secure_cookies=True,
        )

        config = MiddlewareConfig.from_config(relay)

        assert config.refresh_options.response_type == "cookies"
        assert config.protected_paths == ["/dashboard"]
        assert config.login_path == "/signin"
        assert config.secure is True

    def test_from_config_requires_refresh_url(self) -> None:
        with pytest.raises(ValueError):
            MiddlewareConfig.from_config(RelayConfig())

    def test_effective_token_names(self) -> None:
        config = MiddlewareConfig(
            refresh_url="/refresh",
            token_names=TokenConfig(access_token_name="a"),
            refresh_options=RefreshOptions(token_names=TokenConfig(access_token_name="b")),
        )
        assert config.effective_token_names.access_token_name == "b"
