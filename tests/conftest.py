"""Shared test fixtures for tokenrelay.

Provides an isolated config environment, output-state management, a CLI
runner and :class:`FakeAuthServer`, an in-memory API served through
:class:`httpx.MockTransport` with a protected endpoint and a rotating
refresh endpoint.
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Optional

import httpx
import pytest

from tokenrelay.output import OutputFormat, OutputManager, reset_output, set_output
from tokenrelay.transport import HttpxTransport

BASE_URL = "https://api.example.com"
REFRESH_PATH = "/api/auth/refresh"
DATA_PATH = "/api/data"


# ---------------------------------------------------------------------------
# Auto-reset global output state between tests
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_output_between_tests() -> None:
    """Reset the global OutputManager after every test.

    The OutputManager caches references to sys.stdout/sys.stderr at
    creation time; CliRunner swaps those streams, so a manager left over
    from one test would write to a closed file in the next.  The same goes
    for the log handler the CLI installs on the ``tokenrelay`` logger.
    """
    yield
    reset_output()
    package_logger = logging.getLogger("tokenrelay")
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
    package_logger.setLevel(logging.NOTSET)


# ---------------------------------------------------------------------------
# Fake API
# ---------------------------------------------------------------------------


class FakeAuthServer:
    """A token-protected API with a refresh endpoint that rotates tokens.

    * ``GET /api/data`` -- 200 with a valid ``Bearer`` access token, 401
      ``{"message": "Token expired"}`` otherwise.
    * ``GET /api/forbidden`` -- always 403.
    * ``POST /api/auth/refresh`` -- exchanges a known refresh token (single
      use) for the access/refresh pair registered with :meth:`issue`.

    ``refresh_status`` forces the refresh endpoint's status,
    ``refresh_payload`` replaces its JSON body and ``refresh_delay`` keeps it
    pending so concurrent callers can pile up.
    """

    base_url = BASE_URL
    refresh_url = BASE_URL + REFRESH_PATH
    data_url = BASE_URL + DATA_PATH

    def __init__(self) -> None:
        self.valid_access: set[str] = set()
        self.refresh_tokens: dict[str, tuple[str, Optional[str]]] = {}
        self.requests: list[httpx.Request] = []
        self.refresh_status: Optional[int] = None
        self.refresh_payload: Any = None
        self.refresh_headers: list[tuple[str, str]] = []
        self.refresh_delay = 0.0

    def issue(self, refresh_token: str, access: str, rotated: Optional[str] = None) -> None:
        """Make *refresh_token* exchangeable for *access* (and *rotated*)."""
        self.refresh_tokens[refresh_token] = (access, rotated)

    def calls(self, path: str) -> int:
        return sum(1 for request in self.requests if request.url.path == path)

    @property
    def refresh_calls(self) -> int:
        return self.calls(REFRESH_PATH)

    def bodies(self, path: str) -> list[Any]:
        return [
            json.loads(request.content) if request.content else None
            for request in self.requests
            if request.url.path == path
        ]

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == REFRESH_PATH:
            return await self._refresh(request)
        if path == DATA_PATH:
            auth = request.headers.get("authorization", "")
            if auth.startswith("Bearer ") and auth[len("Bearer "):] in self.valid_access:
                return httpx.Response(200, json={"items": [1, 2, 3]})
            return httpx.Response(401, json={"message": "Token expired"})
        if path == "/api/forbidden":
            return httpx.Response(403, json={"message": "Forbidden"})
        return httpx.Response(404, json={"message": "Not found"})

    async def _refresh(self, request: httpx.Request) -> httpx.Response:
        if self.refresh_delay:
            await asyncio.sleep(self.refresh_delay)
        if self.refresh_status is not None:
            return httpx.Response(self.refresh_status, json={"message": "Refresh denied"})
        body = json.loads(request.content) if request.content else {}
        token = body.get("refreshToken")
        if token not in self.refresh_tokens:
            return httpx.Response(401, json={"message": "Invalid refresh token"})
        access, rotated = self.refresh_tokens.pop(token)
        self.valid_access.add(access)
        if self.refresh_headers:
            return httpx.Response(200, headers=self.refresh_headers)
        if self.refresh_payload is not None:
            return httpx.Response(200, json=self.refresh_payload)
        payload = {"accessToken": access}
        if rotated is not None:
            payload["refreshToken"] = rotated
        return httpx.Response(200, json=payload)


@pytest.fixture
def auth_server() -> FakeAuthServer:
    return FakeAuthServer()


@pytest.fixture
def transport(auth_server: FakeAuthServer) -> HttpxTransport:
    """An HttpxTransport wired to the fake API."""
    client = httpx.AsyncClient(
        transport=httpx.MockTransport(auth_server.handler), base_url=BASE_URL
    )
    return HttpxTransport(BASE_URL, client=client)


# ---------------------------------------------------------------------------
# Config isolation fixture
# ---------------------------------------------------------------------------


@pytest.fixture
def isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Isolate configuration to a temporary directory.

    Points XDG_CONFIG_HOME and XDG_DATA_HOME at subdirectories of tmp_path,
    clears the TOKENRELAY_* environment variables and changes the working
    directory to tmp_path.
    """
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "config"))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))
    for var in [
        "TOKENRELAY_PROFILE",
        "TOKENRELAY_BASE_URL",
        "TOKENRELAY_REFRESH_URL",
        "TOKENRELAY_ENV",
        "NO_COLOR",
    ]:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)
    return tmp_path


# ---------------------------------------------------------------------------
# Output fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def quiet_output() -> OutputManager:
    output = OutputManager(format=OutputFormat.PLAIN, quiet=True)
    set_output(output)
    yield output
    reset_output()


@pytest.fixture
def cli_runner():
    from typer.testing import CliRunner

    return CliRunner()
