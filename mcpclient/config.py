"""Client configuration: built-in defaults, an optional YAML file and MCP_* overrides."""

from __future__ import annotations

import os
import re
import sys
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable

import yaml

__all__ = ["PolicyConfig", "Config", "load_config", "expand_path", "home_dir"]

ENV_PREFIX = "MCP"
DEFAULT_REGISTRY_URL = "https://registry.mcp-hub.info"
CONFIG_FILE_NAMES = ("config.yaml", "config.yml")

_TRUE_WORDS = frozenset({"1", "t", "T", "TRUE", "true", "True"})
_FALSE_WORDS = frozenset({"0", "f", "F", "FALSE", "false", "False"})

_NANOS_PER_UNIT = {
    "ns": 1,
    "us": 1_000,
    "\u00b5s": 1_000,
    "\u03bcs": 1_000,
    "ms": 1_000_000,
    "s": 1_000_000_000,
    "m": 60_000_000_000,
    "h": 3_600_000_000_000,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|\u00b5s|\u03bcs|ms|s|m|h)")


@dataclass
class PolicyConfig:
    """Policy enforcement settings."""

    allowed_origins: list[str] = field(default_factory=list)  # empty: allow all
    min_cert_level: int = 0
    cert_level_mode: str = "disabled"  # strict, warn or disabled
    environments: dict[str, dict[str, Any]] = field(default_factory=dict)


@dataclass
class Config:
    """Application configuration."""

    registry_url: str = DEFAULT_REGISTRY_URL
    cache_dir: str = ""
    timeout: timedelta = timedelta(minutes=5)
    max_cpu: int = 1000  # millicores
    max_memory: str = "512M"
    max_pids: int = 256
    max_fds: int = 1024
    log_level: str = "info"
    audit_enabled: bool = True
    audit_log_file: str = ""

    # Mandatory floor limits, always applied.
    default_max_cpu: int = 1000
    default_max_memory: str = "512M"
    default_max_pids: int = 32
    default_max_fds: int = 256
    default_timeout: str = "5m"

    policy: PolicyConfig = field(default_factory=PolicyConfig)


def home_dir() -> str:
    """Return the user's home directory, or "." when it cannot be determined."""
    variable = "USERPROFILE" if sys.platform.startswith("win") else "HOME"
    return os.environ.get(variable) or "."


def expand_path(path: str) -> str:
    """Replace a leading "~" with the home directory."""
    if not path or not path.startswith("~"):
        return path
    rest = path[1:].lstrip("/\\")
    return os.path.normpath(os.path.join(home_dir(), rest))


# --- weak type conversion ------------------------------------------------


def _to_int(value: Any, key: str) -> int:
    if value is None:
        return 0
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        if value == "":
            return 0
        try:
            return int(value, 0)
        except ValueError:
            raise ValueError(f"cannot parse '{key}' as int: {value!r}") from None
    raise ValueError(f"'{key}' expected an integer, got {type(value).__name__}")


def _to_str(value: Any, key: str) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, (int, float)):
        return str(value)
    raise ValueError(f"'{key}' expected a string, got {type(value).__name__}")


def _to_bool(value: Any, key: str) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        if value == "":
            return False
        if value in _TRUE_WORDS:
            return True
        if value in _FALSE_WORDS:
            return False
        raise ValueError(f"cannot parse '{key}' as bool: {value!r}")
    raise ValueError(f"'{key}' expected a boolean, got {type(value).__name__}")


def _parse_duration(text: str) -> timedelta:
    """Parse a duration such as "5m", "1h30m" or "250ms"."""
    body = text
    sign = 1
    if body[:1] in ("+", "-"):
        sign = -1 if body[0] == "-" else 1
        body = body[1:]
    if body == "0":
        return timedelta(0)
    if not body:
        raise ValueError(f"invalid duration {text!r}")
    nanos = 0.0
    pos = 0
    while pos < len(body):
        match = _DURATION_PART.match(body, pos)
        if match is None:
            raise ValueError(f"invalid duration {text!r}")
        nanos += float(match.group(1)) * _NANOS_PER_UNIT[match.group(2)]
        pos = match.end()
    return timedelta(microseconds=sign * nanos / 1000)


def _to_duration(value: Any, key: str) -> timedelta:
    if value is None:
        return timedelta(0)
    if isinstance(value, timedelta):
        return value
    if isinstance(value, bool):
        raise ValueError(f"'{key}' expected a duration, got bool")
    if isinstance(value, (int, float)):
        # Bare numbers are nanoseconds.
        return timedelta(microseconds=value / 1000)
    if isinstance(value, str):
        try:
            return _parse_duration(value)
        except ValueError as exc:
            raise ValueError(f"cannot parse '{key}' as duration: {exc}") from None
    raise ValueError(f"'{key}' expected a duration, got {type(value).__name__}")


def _to_str_list(value: Any, key: str) -> list[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [_to_str(item, f"{key}[{pos}]") for pos, item in enumerate(value)]
    return [_to_str(value, key)]


def _to_environments(value: Any, key: str) -> dict[str, dict[str, Any]]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"'{key}' expected a mapping")
    result: dict[str, dict[str, Any]] = {}
    for name, overrides in value.items():
        if overrides is None:
            overrides = {}
        if not isinstance(overrides, dict):
            raise ValueError(f"'{key}.{name}' expected a mapping")
        result[str(name)] = {str(k): v for k, v in overrides.items()}
    return result


_TOP_LEVEL: dict[str, Callable[[Any, str], Any]] = {
    "registry_url": _to_str,
    "cache_dir": _to_str,
    "timeout": _to_duration,
    "max_cpu": _to_int,
    "max_memory": _to_str,
    "max_pids": _to_int,
    "max_fds": _to_int,
    "log_level": _to_str,
    "audit_enabled": _to_bool,
    "audit_log_file": _to_str,
    "default_max_cpu": _to_int,
    "default_max_memory": _to_str,
    "default_max_pids": _to_int,
    "default_max_fds": _to_int,
    "default_timeout": _to_str,
}

_POLICY: dict[str, Callable[[Any, str], Any]] = {
    "allowed_origins": _to_str_list,
    "min_cert_level": _to_int,
    "cert_level_mode": _to_str,
    "environments": _to_environments,
}


def _defaults(mcp_dir: str) -> tuple[dict[str, Any], dict[str, Any]]:
    values: dict[str, Any] = {
        "registry_url": DEFAULT_REGISTRY_URL,
        "cache_dir": os.path.join(mcp_dir, "cache"),
        "timeout": timedelta(minutes=5),
        "max_cpu": 1000,
        "max_memory": "512M",
        "max_pids": 256,
        "max_fds": 1024,
        "log_level": "info",
        "audit_enabled": True,
        "audit_log_file": os.path.join(mcp_dir, "audit.log"),
        "default_max_cpu": 1000,
        "default_max_memory": "512M",
        "default_max_pids": 32,
        "default_max_fds": 256,
        "default_timeout": "5m",
    }
    policy: dict[str, Any] = {"min_cert_level": 0, "cert_level_mode": "disabled"}
    return values, policy


def _read_config_file(directory: str) -> dict[str, Any]:
    """Load the optional config file; a missing or unreadable file yields nothing."""
    for name in CONFIG_FILE_NAMES:
        path = os.path.join(directory, name)
        if not os.path.isfile(path):
            continue
        try:
            with open(path, encoding="utf-8") as handle:
                data = yaml.safe_load(handle)
        except (OSError, UnicodeDecodeError, yaml.YAMLError):
            return {}
        return data if isinstance(data, dict) else {}
    return {}


def load_config() -> Config:
    """Build the configuration from defaults, ~/.mcp/config.yaml and MCP_* variables."""
    mcp_dir = os.path.join(home_dir(), ".mcp")
    values, policy = _defaults(mcp_dir)

    for key, value in _read_config_file(mcp_dir).items():
        key = str(key).lower()
        if key == "policy":
            if isinstance(value, dict):
                policy.update({str(k).lower(): v for k, v in value.items()})
            elif value is not None:
                raise ValueError("'policy' expected a mapping")
        else:
            values[key] = value

    for key in _TOP_LEVEL:
        env_value = os.environ.get(f"{ENV_PREFIX}_{key.upper()}")
        if env_value:
            values[key] = env_value

    fields = {key: convert(values.get(key), key) for key, convert in _TOP_LEVEL.items()}
    policy_fields = {
        key: convert(policy.get(key), f"policy.{key}")
        for key, convert in _POLICY.items()
    }
    config = Config(**fields, policy=PolicyConfig(**policy_fields))
    config.cache_dir = expand_path(config.cache_dir)
    config.audit_log_file = expand_path(config.audit_log_file)
    return config