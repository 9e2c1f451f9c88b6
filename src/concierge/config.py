"""Concierge configuration loading and validation.

Reads concierge.toml from a config directory, parses all sections, and returns
a validated ConciergeConfig dataclass. Module sections (``[modules.*]``) are
kept as plain dicts; each module validates its own section with its pydantic
``config_schema`` at daemon startup.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

CONFIG_FILENAME = "concierge.toml"

_PLACEHOLDER = re.compile(r"\$\{(?P<var>[A-Za-z_]\w*)\}", re.ASCII)


class ConfigError(Exception):
    """Raised when concierge configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from [concierge.logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class ConciergeConfig:
    """Parsed and validated concierge configuration."""

    name: str
    port: int
    description: str | None = None
    db_enabled: bool = True
    db_name: str = ""
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    modules: dict[str, dict] = field(default_factory=dict)
    env_required: list[str] = field(default_factory=list)
    shutdown_timeout_s: float = 30.0


def _substitute(text: str) -> str:
    unset = [m["var"] for m in _PLACEHOLDER.finditer(text) if m["var"] not in os.environ]
    if unset:
        raise ConfigError(f"Environment variable(s) not set: {', '.join(unset)} (in {text!r})")
    return _PLACEHOLDER.sub(lambda m: os.environ[m["var"]], text)


def resolve_env_vars(value: Any) -> Any:
    """Substitute ``${NAME}`` placeholders from the environment, at any depth.

    Strings inside dicts and lists are rewritten; other scalars pass through.
    Every unset name in one string is reported in a single :class:`ConfigError`.
    """
    if isinstance(value, str):
        return _substitute(value)
    if isinstance(value, dict):
        return {key: resolve_env_vars(item) for key, item in value.items()}
    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]
    return value


def _parse_port(raw: Any) -> int:
    try:
        port = int(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid concierge.port: {raw!r}. Must be an integer.") from exc
    if not 0 < port < 65536:
        raise ConfigError(f"Invalid concierge.port: {port}. Must be between 1 and 65535.")
    return port


def _parse_logging(raw: dict[str, Any]) -> LoggingConfig:
    fmt = str(raw.get("format", "text")).lower()
    if fmt not in ("text", "json"):
        raise ConfigError(
            f"Invalid concierge.logging.format: {fmt!r}. Expected 'text' or 'json'."
        )
    return LoggingConfig(
        level=str(raw.get("level", "INFO")).upper(),
        format=fmt,
        log_root=raw.get("log_root"),
    )


def _read_toml(path: Path) -> dict[str, Any]:
    if not path.is_file():
        raise ConfigError(f"Config file not found: {path}")
    with path.open("rb") as fh:
        try:
            return tomllib.load(fh)
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc


def load_config(config_dir: Path) -> ConciergeConfig:
    """Load ``concierge.toml`` from *config_dir*.

    Raises :class:`ConfigError` for a missing file, invalid TOML, an unset
    ``${VAR}`` reference, or a missing or invalid ``[concierge]`` field.
    """
    data = resolve_env_vars(_read_toml(Path(config_dir) / CONFIG_FILENAME))

    section = data.get("concierge")
    if not isinstance(section, dict):
        raise ConfigError("Missing [concierge] section in config")

    name = section.get("name")
    if not (isinstance(name, str) and name.strip()):
        raise ConfigError("Missing required field: concierge.name")
    if "port" not in section:
        raise ConfigError("Missing required field: concierge.port")

    db = section.get("db", {})
    db_enabled = bool(db.get("enabled", True))
    db_name = str(db.get("name", f"concierge_{name}")).strip()
    if db_enabled and not db_name:
        raise ConfigError("concierge.db.name must be a non-empty string")

    return ConciergeConfig(
        name=name,
        port=_parse_port(section["port"]),
        description=section.get("description"),
        db_enabled=db_enabled,
        db_name=db_name,
        logging=_parse_logging(section.get("logging", {})),
        modules={
            mod: dict(body) if isinstance(body, dict) else {}
            for mod, body in data.get("modules", {}).items()
        },
        env_required=[str(var) for var in section.get("env", {}).get("required", [])],
        shutdown_timeout_s=float(section.get("shutdown", {}).get("timeout_s", 30.0)),
    )
