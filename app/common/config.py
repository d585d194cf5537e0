from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, fields, replace
from functools import lru_cache
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml

APP_NAME = "clamav-rest"
# Checked in order; the first one present is used
CONFIG_FILE_NAMES = ("config.json", "config.yaml", "config.env")

LOG_LEVELS = {
    "trace": logging.DEBUG,
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "fatal": logging.CRITICAL,
    "panic": logging.CRITICAL,
}
LOG_FORMATS = ("json", "console")
DURATION_UNITS = {"ms": "ms", "millisecond": "ms", "s": "s", "second": "s"}
CLAMAV_NETWORKS = ("tcp", "unix")

_LOWERCASE_KEYS = {
    "logger_log_level",
    "logger_duration_field_unit",
    "logger_format",
    "clamav_network",
}


def _env_str(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None or str(raw).strip() == "":
        return default
    return str(raw).strip()


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or str(raw).strip() == "":
        return default
    return _to_float(name, str(raw).strip())


def _to_float(name: str, raw: Any) -> float:
    try:
        return float(raw)
    except (TypeError, ValueError) as e:
        raise RuntimeError(f"{name} must be a number, got {raw!r}") from e


def _require_range(
    name: str,
    value: float,
    *,
    min_value: Optional[float] = None,
    max_value: Optional[float] = None,
) -> None:
    if min_value is not None and value < min_value:
        raise RuntimeError(f"{name} must be >= {min_value}")
    if max_value is not None and value > max_value:
        raise RuntimeError(f"{name} must be <= {max_value}")


def _require_choice(name: str, value: str, choices) -> None:
    if value not in choices:
        raise RuntimeError(f"{name} must be one of: {', '.join(sorted(choices))}")


def split_server_addr(addr: str) -> tuple[str, int]:
    """``":8080"`` -> ``("0.0.0.0", 8080)``; ``"127.0.0.1:9000"`` -> ``("127.0.0.1", 9000)``."""
    host, sep, port = (addr or "").strip().rpartition(":")
    if not sep or not port.isdigit():
        raise RuntimeError(f"SERVER_ADDR must look like host:port, got {addr!r}")
    return host.strip("[]") or "0.0.0.0", int(port)


def parse_dotenv(text: str) -> dict[str, str]:
    """``KEY=value`` lines; blank lines, ``#`` comments and ``export`` prefixes are allowed."""
    values = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue

        if line.startswith("export "):
            line = line[7:].strip()

        if "=" not in line:
            continue

        key, val = line.split("=", 1)
        key = key.strip()
        val = val.strip()

        # Remove quotes if present around the whole value
        if len(val) >= 2 and val[0] == val[-1] and val[0] in ("'", '"'):
            val = val[1:-1]

        values[key] = val
    return values


@dataclass(frozen=True)
class AppConfig:
    server_addr: str = ":8080"
    server_shutdown_timeout: float = 10.0

    logger_log_level: str = "info"
    logger_duration_field_unit: str = "ms"
    logger_format: str = "json"

    clamav_addr: str = "127.0.0.1:3310"
    clamav_network: str = "tcp"
    clamav_timeout: float = 30.0
    clamav_keepalive: float = 30.0
    clamav_command_timeout: float = 60.0

    @staticmethod
    def from_env() -> AppConfig:
        d = AppConfig()
        config = AppConfig(
            server_addr=_env_str("SERVER_ADDR", d.server_addr),
            server_shutdown_timeout=_env_float(
                "SERVER_SHUTDOWN_TIMEOUT", d.server_shutdown_timeout
            ),
            logger_log_level=_env_str("LOGGER_LOG_LEVEL", d.logger_log_level).lower(),
            logger_duration_field_unit=_env_str(
                "LOGGER_DURATION_FIELD_UNIT", d.logger_duration_field_unit
            ).lower(),
            logger_format=_env_str("LOGGER_FORMAT", d.logger_format).lower(),
            clamav_addr=_env_str("CLAMAV_ADDR", d.clamav_addr),
            clamav_network=_env_str("CLAMAV_NETWORK", d.clamav_network).lower(),
            clamav_timeout=_env_float("CLAMAV_TIMEOUT", d.clamav_timeout),
            clamav_keepalive=_env_float("CLAMAV_KEEPALIVE", d.clamav_keepalive),
            clamav_command_timeout=_env_float(
                "CLAMAV_COMMAND_TIMEOUT", d.clamav_command_timeout
            ),
        )
        config.validate()
        return config

    @staticmethod
    def from_mapping(values: Mapping[str, Any]) -> AppConfig:
        """Build a config from a decoded config file; unknown keys are rejected."""
        known = {f.name: f for f in fields(AppConfig)}
        unknown = sorted(str(k) for k in set(values) - set(known))
        if unknown:
            raise RuntimeError(f"unknown configuration keys: {', '.join(unknown)}")

        overrides: dict[str, Any] = {}
        for key, value in values.items():
            if known[key].type in ("float", float):
                overrides[key] = _to_float(key.upper(), value)
            else:
                text = str(value).strip()
                overrides[key] = text.lower() if key in _LOWERCASE_KEYS else text
        config = replace(AppConfig(), **overrides)
        config.validate()
        return config

    def validate(self) -> None:
        split_server_addr(self.server_addr)
        _require_range(
            "SERVER_SHUTDOWN_TIMEOUT", float(self.server_shutdown_timeout), min_value=0
        )
        _require_choice("LOGGER_LOG_LEVEL", self.logger_log_level, LOG_LEVELS)
        _require_choice(
            "LOGGER_DURATION_FIELD_UNIT", self.logger_duration_field_unit, DURATION_UNITS
        )
        _require_choice("LOGGER_FORMAT", self.logger_format, LOG_FORMATS)
        _require_choice("CLAMAV_NETWORK", self.clamav_network, CLAMAV_NETWORKS)
        if not self.clamav_addr:
            raise RuntimeError("CLAMAV_ADDR is required")
        _require_range("CLAMAV_TIMEOUT", float(self.clamav_timeout), min_value=0)
        _require_range("CLAMAV_KEEPALIVE", float(self.clamav_keepalive), min_value=0)
        _require_range(
            "CLAMAV_COMMAND_TIMEOUT", float(self.clamav_command_timeout), min_value=0
        )

    @property
    def log_level(self) -> int:
        return LOG_LEVELS[self.logger_log_level]

    @property
    def duration_unit(self) -> str:
        return DURATION_UNITS[self.logger_duration_field_unit]


def _parse_file(path: Path) -> Any:
    text = path.read_text(encoding="utf-8")
    if path.suffix == ".json":
        return json.loads(text)
    if path.suffix == ".yaml":
        return yaml.safe_load(text) or {}
    return {key.lower(): value for key, value in parse_dotenv(text).items()}


def load_config(config_dir: Optional[Path] = None) -> AppConfig:
    """
    Resolve the runtime configuration.

    The first of ``config.json``, ``config.yaml`` and ``config.env`` found in
    ``config_dir`` (default: the working directory) wins; without one,
    environment variables are used. Missing keys fall back to the defaults
    in either case.
    """
    base = Path(config_dir or Path.cwd())
    for name in CONFIG_FILE_NAMES:
        path = base / name
        if path.is_file():
            break
    else:
        return AppConfig.from_env()

    try:
        values = _parse_file(path)
    except (OSError, ValueError, yaml.YAMLError) as e:
        raise RuntimeError(f"error while loading config file {path}: {e}") from e
    if not isinstance(values, dict):
        raise RuntimeError(f"config file {path} must contain a mapping of settings")
    return AppConfig.from_mapping(values)


@lru_cache(maxsize=1)
def get_config() -> AppConfig:
    return load_config()
