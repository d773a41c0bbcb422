"""Credential commands -- manage the tokens stored for a profile.

The profile comes from ``--profile``, ``TOKENRELAY_PROFILE`` or the
``store_profile`` config key.  Token values are never printed in full.

Typical workflow::

    tokenrelay credentials set --access-token A1 --refresh-token R1
    tokenrelay credentials show
    tokenrelay credentials clear --force
"""

from __future__ import annotations

import asyncio
from typing import Optional

import typer

from tokenrelay.output import error, get_output, info, success

credentials_app = typer.Typer(no_args_is_help=True)


def mask(value: str) -> str:
    """Return a short, non-secret preview of a token."""
    return value[:8] + "..." if len(value) > 8 else "*" * len(value)


def _store(ctx: typer.Context):  # noqa: ANN202
    from tokenrelay.config import resolve_config
    from tokenrelay.credentials import FileCredentialStore
    from tokenrelay.exceptions import TokenRelayError

    obj = ctx.obj or {}
    try:
        config = resolve_config(cli_profile=obj.get("profile"))
    except TokenRelayError as exc:
        error(str(exc))
        raise typer.Exit(code=exc.exit_code) from None
    return config, FileCredentialStore(config.store_profile)


@credentials_app.command("set")
def credentials_set(
    ctx: typer.Context,
    access_token: Optional[str] = typer.Option(None, "--access-token", help="Access token."),
    refresh_token: Optional[str] = typer.Option(None, "--refresh-token", help="Refresh token."),
) -> None:
    """Store tokens obtained from a login.

    Tokens are written without an expiry; the server decides when they are
    no longer valid.

    Example::

        tokenrelay credentials set --access-token "$ACCESS" --refresh-token "$REFRESH"
    """
    from tokenrelay.config import secure_cookies
    from tokenrelay.models import CookieAttributes

    if access_token is None and refresh_token is None:
        error("Provide --access-token and/or --refresh-token.")
        raise typer.Exit(code=2)

    config, store = _store(ctx)
    names = config.token_names
    attributes = CookieAttributes(secure=secure_cookies(config))

    async def _write() -> None:
        if access_token is not None:
            await store.set(names.access_token_name, access_token, attributes)
        if refresh_token is not None:
            await store.set(names.refresh_token_name, refresh_token, attributes)

    asyncio.run(_write())
    success(f'Credentials stored for "{config.store_profile}".')


@credentials_app.command("show")
def credentials_show(ctx: typer.Context) -> None:
    """Show the stored tokens (masked) with their expiry.

    Example::

        tokenrelay credentials show
        tokenrelay --json credentials show
    """
    config, store = _store(ctx)
    entries = store.load()
    if not entries:
        info(f'No stored credentials for "{config.store_profile}".')
        return

    rows = [
        [
            name,
            mask(entry.value),
            str(entry.expires_at) if entry.expires_at else "never",
            str(not entry.is_expired()),
        ]
        for name, entry in entries.items()
    ]
    get_output().print_table(
        ["Name", "Value", "Expires At", "Valid"],
        rows,
        title=f"Credentials ({config.store_profile})",
    )


@credentials_app.command("clear")
def credentials_clear(
    ctx: typer.Context,
    force: bool = typer.Option(False, "--force", "-f", help="Skip confirmation."),
) -> None:
    """Delete every stored token of the profile.

    Example::

        tokenrelay credentials clear --force
    """
    config, store = _store(ctx)
    if not store.load():
        info(f'No stored credentials for "{config.store_profile}".')
        return

    if not force:
        confirmed = typer.confirm(f'Clear stored credentials for "{config.store_profile}"?')
        if not confirmed:
            info("Cancelled.")
            raise typer.Exit()

    store.clear()
    success(f'Stored credentials cleared for "{config.store_profile}".')
