"""Config commands -- view and modify the user configuration.

Settings live in ``config.json`` in the tokenrelay config directory and
hold the refresh endpoint, token names, cookie and request defaults.
"""

from __future__ import annotations

from typing import Any

import typer

from tokenrelay.output import error, format_response, info, success

config_app = typer.Typer(no_args_is_help=True)


def coerce_value(current: Any, value: str, key: str) -> Any:
    """Coerce *value* to the type of the existing setting *current*.

    Raises:
        typer.Exit: With code 2 when a number cannot be parsed.
    """
    if isinstance(current, bool):
        return value.lower() in ("true", "1", "yes")
    if isinstance(current, (int, float)):
        try:
            return type(current)(value)
        except ValueError:
            error(f"Expected {type(current).__name__} for {key}, got: {value}")
            raise typer.Exit(code=2) from None
    if isinstance(current, list):
        return [item.strip() for item in value.split(",") if item.strip()]
    if current is None and value.lower() in ("none", "null", ""):
        return None
    return value


@config_app.command("show")
def config_show(
    effective: bool = typer.Option(
        False, "--effective", help="Show the resolved config (env and project file applied)."
    ),
) -> None:
    """Show the current configuration.

    Example::

        tokenrelay config show
        tokenrelay --json config show --effective
    """
    from tokenrelay.config import get_config_dir, load_config, resolve_config

    config = resolve_config() if effective else load_config()
    info(f"Config directory: {get_config_dir()}")
    format_response(config.model_dump(mode="json"))


@config_app.command("set")
def config_set(
    key: str = typer.Argument(help="Config key (dot notation, e.g. 'token_names.access_token_name')."),
    value: str = typer.Argument(help="Value to set; lists are comma separated."),
) -> None:
    """Set a configuration value.

    The updated config is validated before it is saved.

    Example::

        tokenrelay config set refresh_url https://api.example.com/auth/refresh
        tokenrelay config set response_type cookies
        tokenrelay config set protected_paths /dashboard,/account
        tokenrelay config set request.timeout 10
    """
    from tokenrelay.config import load_config, save_config
    from tokenrelay.models import RelayConfig

    data = load_config().model_dump(mode="json")

    keys = key.split(".")
    target = data
    for k in keys[:-1]:
        if k not in target or not isinstance(target[k], dict):
            error(f"Invalid config key: {key}")
            raise typer.Exit(code=2)
        target = target[k]

    final_key = keys[-1]
    if final_key not in target:
        error(f"Unknown config key: {key}")
        raise typer.Exit(code=2)

    coerced = coerce_value(target[final_key], value, key)
    target[final_key] = coerced

    try:
        new_config = RelayConfig.model_validate(data)
    except ValueError as exc:
        error(f"Validation error: {exc}")
        raise typer.Exit(code=2) from None

    save_config(new_config)
    success(f"Set {key} = {coerced}")
