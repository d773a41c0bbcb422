"""Request commands -- run the refresh-and-retry operations from a shell.

Each command resolves the effective configuration (CLI flags, environment,
``./tokenrelay.json``, user config), opens the active profile's
:class:`~tokenrelay.credentials.FileCredentialStore` and runs one
:class:`~tokenrelay.client.TokenRelayClient` operation.  The response body
goes to stdout; failures go to stderr and set the exit code.

Typical workflow::

    tokenrelay credentials set --access-token A1 --refresh-token R1
    tokenrelay --refresh-url https://api.example.com/auth/refresh \\
        fetch https://api.example.com/api/data
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Optional

import typer

from tokenrelay.client import TokenRelayClient
from tokenrelay.credentials import FileCredentialStore
from tokenrelay.exceptions import (
    NeedsReauthenticationError,
    RefreshError,
    RequestFailedError,
    TokenRelayError,
    TransportError,
)
from tokenrelay.exit_codes import EXIT_INVALID_USAGE
from tokenrelay.models import OperationResult, RefreshOptions, RelayConfig, RequestOptions
from tokenrelay.output import debug, error, format_result, success


def exit_code_for(result: OperationResult, refresh: bool = False) -> int:
    """Map a failed result to a process exit code.

    ``needs_login`` wins over everything else.  A failure without an HTTP
    status never reached the server.
    """
    if result.needs_login:
        return NeedsReauthenticationError.exit_code
    if refresh:
        return RefreshError.exit_code
    if result.status is None:
        return TransportError.exit_code
    return RequestFailedError.exit_code


def parse_headers(values: Optional[list[str]]) -> dict[str, str]:
    """Parse repeated ``--header "Name: value"`` options.

    Raises:
        typer.BadParameter: If a value has no colon or an empty name.
    """
    headers: dict[str, str] = {}
    for raw in values or []:
        name, sep, value = raw.partition(":")
        if not sep or not name.strip():
            raise typer.BadParameter(f"Expected 'Name: value', got: {raw}", param_hint="--header")
        headers[name.strip()] = value.strip()
    return headers


def parse_body(body: Optional[str]) -> Any:
    """Parse *body* as JSON if possible, returning the raw string on failure."""
    if body is None:
        return None
    try:
        return json.loads(body)
    except (json.JSONDecodeError, TypeError):
        return body


def _resolve(ctx: typer.Context, refresh_url: Optional[str] = None) -> RelayConfig:
    from tokenrelay.config import resolve_config

    obj = ctx.obj or {}
    try:
        return resolve_config(
            cli_base_url=obj.get("base_url"),
            cli_refresh_url=refresh_url or obj.get("refresh_url"),
            cli_profile=obj.get("profile"),
        )
    except TokenRelayError as exc:
        error(str(exc))
        raise typer.Exit(code=exc.exit_code) from None


def _require_refresh_url(config: RelayConfig) -> None:
    if not config.refresh_url:
        error("No refresh URL configured.")
        raise typer.Exit(code=EXIT_INVALID_USAGE)


def _client(config: RelayConfig) -> TokenRelayClient:
    debug(f"Using credential profile: {config.store_profile}")
    return TokenRelayClient.from_config(config, FileCredentialStore(config.store_profile))


def _finish(result: OperationResult, refresh: bool = False) -> None:
    format_result(result)
    if not result.success:
        raise typer.Exit(code=exit_code_for(result, refresh=refresh))


def fetch_command(
    ctx: typer.Context,
    url: str = typer.Argument(help="URL (or path relative to --base-url) to request."),
    method: str = typer.Option("GET", "--method", "-X", help="HTTP method."),
    header: Optional[list[str]] = typer.Option(
        None, "--header", "-H", help="Extra header, 'Name: value' (repeatable)."
    ),
    body: Optional[str] = typer.Option(None, "--body", "-d", help="Request body (JSON or text)."),
    refresh_url: Optional[str] = typer.Option(
        None, "--refresh-url", help="Refresh endpoint override."
    ),
) -> None:
    """Request a protected URL, refreshing and retrying once on expiry.

    Example::

        tokenrelay fetch /api/data
        tokenrelay fetch /api/items -X POST -d '{"name": "x"}'
    """
    config = _resolve(ctx, refresh_url)
    options = RequestOptions(method=method, headers=parse_headers(header), body=parse_body(body))

    async def _run() -> OperationResult:
        async with _client(config) as client:
            return await client.fetch_with_refresh_retry(url, options)

    _finish(asyncio.run(_run()))


def refresh_command(
    ctx: typer.Context,
    refresh_url: Optional[str] = typer.Option(
        None, "--refresh-url", help="Refresh endpoint override."
    ),
    response_type: Optional[str] = typer.Option(
        None, "--response-type", help="Where the endpoint returns tokens: json or cookies."
    ),
) -> None:
    """Exchange the stored refresh token for new tokens.

    Example::

        tokenrelay refresh --refresh-url https://api.example.com/auth/refresh
    """
    config = _resolve(ctx, refresh_url)
    _require_refresh_url(config)
    if response_type is not None:
        if response_type not in ("json", "cookies"):
            error(f"Unknown response type: {response_type}")
            raise typer.Exit(code=EXIT_INVALID_USAGE)
        config.response_type = response_type  # type: ignore[assignment]
    options = RefreshOptions(method=config.refresh_method, response_type=config.response_type)

    async def _run() -> OperationResult:
        async with _client(config) as client:
            return await client.refresh(options=options)

    result = asyncio.run(_run())
    if result.success:
        success("Tokens refreshed.")
    _finish(result, refresh=True)


def retry_command(
    ctx: typer.Context,
    url: str = typer.Argument(help="URL (or path relative to --base-url) to request."),
    method: str = typer.Option("GET", "--method", "-X", help="HTTP method."),
    header: Optional[list[str]] = typer.Option(
        None, "--header", "-H", help="Extra header, 'Name: value' (repeatable)."
    ),
    body: Optional[str] = typer.Option(None, "--body", "-d", help="Request body (JSON or text)."),
) -> None:
    """Send a request with the stored access token, without refreshing."""
    config = _resolve(ctx)
    options = RequestOptions(method=method, headers=parse_headers(header), body=parse_body(body))

    async def _run() -> OperationResult:
        async with _client(config) as client:
            return await client.retry(url, options)

    _finish(asyncio.run(_run()))


def refresh_and_retry_command(
    ctx: typer.Context,
    url: str = typer.Argument(help="URL to request after the refresh."),
    method: str = typer.Option("GET", "--method", "-X", help="HTTP method."),
    header: Optional[list[str]] = typer.Option(
        None, "--header", "-H", help="Extra header, 'Name: value' (repeatable)."
    ),
    body: Optional[str] = typer.Option(None, "--body", "-d", help="Request body (JSON or text)."),
    refresh_url: Optional[str] = typer.Option(
        None, "--refresh-url", help="Refresh endpoint override."
    ),
) -> None:
    """Refresh the tokens first, then send the request."""
    config = _resolve(ctx, refresh_url)
    _require_refresh_url(config)
    options = RequestOptions(method=method, headers=parse_headers(header), body=parse_body(body))

    async def _run() -> OperationResult:
        async with _client(config) as client:
            return await client.refresh_and_retry(retry_url=url, retry_options=options)

    _finish(asyncio.run(_run()))
