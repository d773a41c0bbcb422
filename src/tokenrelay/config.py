"""Configuration management with XDG paths, atomic writes, and precedence resolution.

This module handles all persistent configuration for tokenrelay:

* **Directory layout** -- XDG Base Directory compliant on Linux/BSD,
  ``~/.tokenrelay/`` on macOS and Windows. See :func:`get_config_dir` and
  :func:`get_data_dir`.
* **User config** -- A single :class:`~tokenrelay.models.RelayConfig` JSON
  file storing the refresh endpoint, token names and request defaults.
* **Precedence resolution** -- :func:`resolve_config` merges CLI flags,
  environment variables, project-local config, and user config into the
  final effective configuration.
* **Environment** -- :func:`is_production` decides whether persisted
  credentials get the ``secure`` attribute.

All file writes use an atomic temp-file-then-rename strategy
(:func:`atomic_write`) to prevent data loss on crash or power failure.
"""

from __future__ import annotations

import json
import os
import platform
import tempfile
from pathlib import Path
from typing import Any, Optional

from tokenrelay.exceptions import ConfigError
from tokenrelay.models import RelayConfig

_APP_NAME = "tokenrelay"
_CONFIG_FILENAME = "config.json"
_PROJECT_CONFIG_FILENAME = "tokenrelay.json"

ENV_PROFILE = "TOKENRELAY_PROFILE"
ENV_BASE_URL = "TOKENRELAY_BASE_URL"
ENV_REFRESH_URL = "TOKENRELAY_REFRESH_URL"
ENV_ENVIRONMENT = "TOKENRELAY_ENV"


# --- XDG path resolution ---


def _is_xdg_platform() -> bool:
    """Return True if the platform supports XDG Base Directory spec (Linux/FreeBSD)."""
    return platform.system() == "Linux" or platform.system().endswith("BSD")


def _fallback_base_dir() -> Path:
    """Fallback base directory for non-XDG platforms (macOS, Windows)."""
    return Path.home() / f".{_APP_NAME}"


def _xdg_base(env_var: str, default_segments: tuple[str, ...]) -> Path:
    """Resolve an XDG base directory from an env var with fallback segments under $HOME."""
    env_value = os.environ.get(env_var, "")
    if env_value:
        return Path(env_value)
    base = Path.home()
    for seg in default_segments:
        base = base / seg
    return base


def get_config_dir() -> Path:
    """Return the configuration directory, creating it if necessary.

    On Linux/BSD: ``$XDG_CONFIG_HOME/tokenrelay/`` (default ``~/.config/tokenrelay/``).
    On macOS/Windows: ``~/.tokenrelay/``.
    """
    if _is_xdg_platform():
        base = _xdg_base("XDG_CONFIG_HOME", (".config",))
        path = base / _APP_NAME
    else:
        path = _fallback_base_dir()
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_data_dir() -> Path:
    """Return the data directory (credentials, crash logs), creating it if necessary.

    On Linux/BSD: ``$XDG_DATA_HOME/tokenrelay/`` (default ``~/.local/share/tokenrelay/``).
    On macOS/Windows: ``~/.tokenrelay/data/``.
    """
    if _is_xdg_platform():
        base = _xdg_base("XDG_DATA_HOME", (".local", "share"))
        path = base / _APP_NAME
    else:
        path = _fallback_base_dir() / "data"
    path.mkdir(parents=True, exist_ok=True)
    return path


# --- Atomic file writes ---


def atomic_write(path: Path, data: str, mode: Optional[int] = None) -> None:
    """Write data to file atomically using temp file + rename.

    The temporary file is created in the same directory as *path* so that
    ``os.replace`` is an atomic rename on POSIX systems.  When *mode* is
    given it is applied to the temp file before any content is written, so
    secrets are never readable by others, even momentarily.
    """
    path.parent.mkdir(parents=True, exist_ok=True)

    fd = None
    tmp_path: Optional[str] = None
    try:
        fd = tempfile.NamedTemporaryFile(
            mode="w",
            dir=path.parent,
            prefix=f".{path.name}.",
            suffix=".tmp",
            delete=False,
            encoding="utf-8",
        )
        tmp_path = fd.name
        if mode is not None:
            os.chmod(tmp_path, mode)
        fd.write(data)
        fd.flush()
        os.fsync(fd.fileno())
        fd.close()
        fd = None  # prevent double-close below
        os.replace(tmp_path, path)
    except BaseException:
        if fd is not None:
            fd.close()
        if tmp_path is not None:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
        raise


# --- User config ---


def _config_path() -> Path:
    return get_config_dir() / _CONFIG_FILENAME


def load_config() -> RelayConfig:
    """Load the user configuration from the XDG config directory.

    Returns:
        The deserialised :class:`~tokenrelay.models.RelayConfig`, or a
        default instance when the file does not exist.

    Raises:
        ConfigError: If the file exists but contains invalid JSON or fails
            Pydantic validation.
    """
    path = _config_path()
    if not path.is_file():
        return RelayConfig()
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        return RelayConfig.model_validate(data)
    except (json.JSONDecodeError, ValueError) as exc:
        raise ConfigError(f"Invalid config at {path}: {exc}") from exc


def save_config(config: RelayConfig) -> None:
    """Persist the user configuration atomically to disk."""
    data = config.model_dump(mode="json")
    atomic_write(_config_path(), json.dumps(data, indent=2) + "\n")


def load_project_config() -> Optional[dict[str, Any]]:
    """Load ``./tokenrelay.json`` from the current working directory.

    Returns:
        The parsed JSON object, or ``None`` when the file does not exist.

    Raises:
        ConfigError: If the file exists but is not a JSON object.
    """
    path = Path.cwd() / _PROJECT_CONFIG_FILENAME
    if not path.is_file():
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Invalid project config at {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Project config at {path} must be a JSON object")
    return data


def resolve_config(
    cli_base_url: Optional[str] = None,
    cli_refresh_url: Optional[str] = None,
    cli_profile: Optional[str] = None,
) -> RelayConfig:
    """Resolve config with full precedence chain.

    Precedence (high to low):
        1. CLI flags (``cli_base_url``, ``cli_refresh_url``, ``cli_profile``)
        2. Environment variables (``TOKENRELAY_BASE_URL``,
           ``TOKENRELAY_REFRESH_URL``, ``TOKENRELAY_PROFILE``,
           ``TOKENRELAY_ENV``)
        3. Project config (``./tokenrelay.json``)
        4. User config (``~/.config/tokenrelay/config.json``)
        5. Defaults

    Returns:
        The effective :class:`~tokenrelay.models.RelayConfig`.
    """
    # 5 + 4.
    config = load_config()

    # 3. Project file keys override user config keys one level deep.
    project = load_project_config()
    if project is not None:
        merged = config.model_dump(mode="json")
        for key, value in project.items():
            if isinstance(value, dict) and isinstance(merged.get(key), dict):
                merged[key] = {**merged[key], **value}
            else:
                merged[key] = value
        try:
            config = RelayConfig.model_validate(merged)
        except ValueError as exc:
            raise ConfigError(f"Invalid project config: {exc}") from exc

    # 2. Environment
    env_map = {
        "base_url": os.environ.get(ENV_BASE_URL),
        "refresh_url": os.environ.get(ENV_REFRESH_URL),
        "store_profile": os.environ.get(ENV_PROFILE),
        "environment": os.environ.get(ENV_ENVIRONMENT),
    }
    for field_name, value in env_map.items():
        if value:
            setattr(config, field_name, value)

    # 1. CLI flags
    if cli_base_url is not None:
        config.base_url = cli_base_url
    if cli_refresh_url is not None:
        config.refresh_url = cli_refresh_url
    if cli_profile is not None:
        config.store_profile = cli_profile

    return config


def is_production(config: Optional[RelayConfig] = None) -> bool:
    """Return True when running in production.

    ``TOKENRELAY_ENV`` wins over the ``environment`` field of *config*.
    """
    env_value = os.environ.get(ENV_ENVIRONMENT)
    if env_value:
        return env_value.lower() == "production"
    if config is not None:
        return config.environment.lower() == "production"
    return False


def secure_cookies(config: Optional[RelayConfig] = None) -> bool:
    """Return the ``secure`` attribute to use for persisted credentials."""
    if config is not None and config.secure_cookies is not None:
        return config.secure_cookies
    return is_production(config)
