"""Typer application and CLI entry point for tokenrelay.

The root app carries the global options (profile, endpoint overrides and
output flags) and registers the built-in commands: ``fetch``, ``refresh``,
``retry``, ``refresh-and-retry`` and the ``credentials`` and ``config``
groups.

:func:`main` is the console-script entry point declared in
``pyproject.toml``.  Unhandled exceptions are written to a crash log under
the data directory.
"""

from __future__ import annotations

import signal
import sys
import traceback
from datetime import datetime
from typing import Any, Optional

import typer

from tokenrelay import __version__
from tokenrelay.commands.config import config_app
from tokenrelay.commands.credentials import credentials_app
from tokenrelay.commands.request import (
    fetch_command,
    refresh_and_retry_command,
    refresh_command,
    retry_command,
)
from tokenrelay.exit_codes import EXIT_GENERIC_FAILURE

app = typer.Typer(
    name="tokenrelay",
    help="Call token-protected APIs, refreshing expired access tokens transparently.",
    no_args_is_help=True,
    add_completion=False,
    rich_markup_mode="rich",
)

app.command("fetch")(fetch_command)
app.command("refresh")(refresh_command)
app.command("retry")(retry_command)
app.command("refresh-and-retry")(refresh_and_retry_command)
app.add_typer(credentials_app, name="credentials", help="Stored token management.")
app.add_typer(config_app, name="config", help="Configuration management.")


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"tokenrelay {__version__}")
        raise typer.Exit()


@app.callback()
def main_callback(
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    profile: Optional[str] = typer.Option(
        None, "--profile", "-p", help="Credential profile to use."
    ),
    base_url: Optional[str] = typer.Option(
        None, "--base-url", help="Prefix for relative request URLs."
    ),
    refresh_url: Optional[str] = typer.Option(
        None, "--refresh-url", help="Refresh endpoint."
    ),
    json_output: bool = typer.Option(False, "--json", help="JSON output format."),
    plain_output: bool = typer.Option(False, "--plain", help="Plain text output."),
    no_color: bool = typer.Option(False, "--no-color", help="Disable color output."),
    quiet: bool = typer.Option(
        False, "--quiet", "-q", help="Suppress non-essential output."
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug output."),
) -> None:
    """Root callback executed before every sub-command.

    Installs the global :class:`~tokenrelay.output.OutputManager`, routes
    library logging to stderr and stores the shared options in ``ctx.obj``.
    """
    from tokenrelay.output import OutputFormat, OutputManager, set_output

    fmt = OutputFormat.AUTO
    if json_output:
        fmt = OutputFormat.JSON
    elif plain_output:
        fmt = OutputFormat.PLAIN

    output = OutputManager(format=fmt, no_color=no_color, quiet=quiet, verbose=verbose)
    output.configure_logging()
    set_output(output)

    ctx.ensure_object(dict)
    ctx.obj["profile"] = profile
    ctx.obj["base_url"] = base_url
    ctx.obj["refresh_url"] = refresh_url
    ctx.obj["verbose"] = verbose


def _setup_signal_handlers() -> None:
    """Install a SIGINT handler so Ctrl-C exits cleanly."""

    def _handler(signum: int, frame: Any) -> None:  # noqa: ANN401
        sys.stderr.write("\nCancelled.\n")
        sys.exit(130)

    signal.signal(signal.SIGINT, _handler)


def _write_crash_log(exc: Exception) -> str:
    """Write the current traceback to disk and return the log file path."""
    from tokenrelay.config import get_data_dir

    logs_dir = get_data_dir() / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    log_path = logs_dir / f"crash-{timestamp}.log"
    log_path.write_text(f"{type(exc).__name__}: {exc}\n\n{traceback.format_exc()}")
    return str(log_path)


def main() -> None:
    """CLI entry point invoked by the ``tokenrelay`` console script.

    :class:`~tokenrelay.exceptions.TokenRelayError` exits with the error's
    ``exit_code``; anything else produces a crash log and a generic failure.

    Raises:
        SystemExit: Always raised (either by Typer or explicitly).
    """
    _setup_signal_handlers()
    try:
        app()
    except SystemExit:
        raise
    except KeyboardInterrupt:
        sys.stderr.write("\nCancelled.\n")
        sys.exit(130)
    except Exception as exc:
        from tokenrelay.exceptions import TokenRelayError
        from tokenrelay.output import error

        if isinstance(exc, TokenRelayError):
            error(str(exc))
            sys.exit(exc.exit_code)
        log_path = _write_crash_log(exc)
        error(f"Unexpected error. Debug log: {log_path}")
        sys.exit(EXIT_GENERIC_FAILURE)
