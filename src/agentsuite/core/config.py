# Copyright (C) 2026 StableLlama
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
# Purpose: Defines the config unit so this responsibility stays isolated, testable, and easy to evolve.

"""
Configuration loading utilities for the AgentSuite relay server.

Conventions:
- Machine-specific config: resources/config/machine.json
- Environment variables override JSON values.
- JSON values can reference environment variables using ${VAR_NAME} placeholders.

Configs are plain JSON dicts; only the relay tuning knobs are lifted into a
typed ``RelaySettings`` object because the streaming core reads them on every
request.
"""

from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional

BASE_DIR = Path(__file__).resolve().parent.parent.parent.parent
CONFIG_DIR = BASE_DIR / "resources" / "config"
DATA_DIR = BASE_DIR / "data"
DEFAULT_UPLOADS_DIR = DATA_DIR / "uploads"

DEFAULT_ALLOWED_TOOLS = (
    "Read",
    "Write",
    "Edit",
    "Bash",
    "Glob",
    "Grep",
    "WebSearch",
    "WebFetch",
    "TodoWrite",
    "Skill",
)

DEFAULT_ALLOWED_ORIGINS = ("http://localhost:3000", "http://127.0.0.1:3000")


@dataclass(frozen=True)
class RelaySettings:
    """Tuning knobs for the streaming generation relay."""

    flush_interval_s: float = 0.3
    keepalive_interval_s: float = 15.0
    write_timeout_s: float = 5.0
    client_buffer_size: int = 256
    final_flush_attempts: int = 3
    final_flush_backoff_s: float = 0.25
    allowed_tools: tuple[str, ...] = field(default=DEFAULT_ALLOWED_TOOLS)


_ENV_PATTERN = re.compile(r"\$\{([A-Z0-9_]+)\}")


def _interpolate_env(value: Any) -> Any:
    """Interpolate ${VAR} placeholders within strings using environment variables.

    Non-string types are returned unchanged.
    """
    if isinstance(value, str):

        def replace(match: re.Match[str]) -> str:
            var = match.group(1)
            return os.getenv(var, match.group(0))  # leave placeholder if unset

        return _ENV_PATTERN.sub(replace, value)
    if isinstance(value, dict):
        return {k: _interpolate_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_interpolate_env(v) for v in value]
    return value


def _deep_merge(base: Dict[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    """Deeply merge mapping 'override' into dict 'base'. Returns new dict.

    - For dict values, merges recursively.
    - For lists and scalars, override replaces base.
    """
    result: Dict[str, Any] = dict(base)
    for k, v in override.items():
        if isinstance(v, Mapping) and isinstance(result.get(k), Mapping):
            result[k] = _deep_merge(dict(result[k]), v)  # type: ignore[index]
        else:
            result[k] = v
    return result


def load_json_file(path: os.PathLike[str] | str | None) -> Dict[str, Any]:
    """Load JSON from path if it exists; return empty dict if missing.

    Raises ValueError for malformed JSON.
    """
    if path is None:
        return {}
    p = Path(path)
    if not p.exists():
        return {}
    try:
        with p.open("r", encoding="utf-8") as f:
            data = json.load(f)
        return data if isinstance(data, dict) else {}
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON at {p}: {e}") from e


def _int_if_possible(raw: str) -> Any:
    try:
        return int(raw)
    except ValueError:
        return raw


def _comma_list(raw: str) -> list[str]:
    return [item.strip() for item in raw.split(",") if item.strip()]


# Environment variable -> (config path, parser)
_ENV_OVERRIDES: tuple[tuple[str, tuple[str, str], Callable[[str], Any]], ...] = (
    ("OPENAI_API_KEY", ("openai", "api_key"), str),
    ("OPENAI_BASE_URL", ("openai", "base_url"), str),
    ("OPENAI_MODEL", ("openai", "model"), str),
    ("OPENAI_TIMEOUT_S", ("openai", "timeout_s"), _int_if_possible),
    ("CONVEX_URL", ("store", "convex_url"), str),
    ("AGENTSUITE_UPLOADS_DIR", ("server", "uploads_dir"), str),
    ("AGENTSUITE_ALLOWED_ORIGINS", ("server", "allowed_origins"), _comma_list),
)


def _env_overrides() -> Dict[str, Any]:
    """Collect the supported environment variables into a nested dict.

    OPENAI_TIMEOUT_S becomes an int when parseable; AGENTSUITE_ALLOWED_ORIGINS
    is a comma separated list.
    """
    result: Dict[str, Any] = {}
    for var, (section, key), parse in _ENV_OVERRIDES:
        raw = os.getenv(var)
        if raw is None:
            continue
        result.setdefault(section, {})[key] = parse(raw)
    return result


def load_machine_config(
    path: os.PathLike[str] | str | None = CONFIG_DIR / "machine.json",
    defaults: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    """Load machine configuration applying precedence and interpolation.

    Precedence: env overrides > JSON file > defaults
    """
    defaults = dict(defaults or {})
    json_config = load_json_file(path)
    json_config = _interpolate_env(json_config)
    # Merge JSON over defaults, then env over that
    merged = _deep_merge(defaults, json_config)
    merged = _deep_merge(merged, _env_overrides())
    return merged


def _positive_float(value: Any, fallback: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return fallback
    return number if number > 0 else fallback


def _positive_int(value: Any, fallback: int) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return fallback
    return number if number > 0 else fallback


def resolve_relay_settings(machine: Mapping[str, Any] | None) -> RelaySettings:
    """Build RelaySettings from the ``relay`` section of the machine config.

    Unknown keys are ignored and out-of-range values fall back to defaults.
    """
    defaults = RelaySettings()
    relay_cfg = (machine or {}).get("relay") or {}
    if not isinstance(relay_cfg, Mapping):
        return defaults

    tools = relay_cfg.get("allowed_tools")
    if isinstance(tools, list):
        allowed_tools = tuple(str(t) for t in tools if isinstance(t, str) and t)
    else:
        allowed_tools = defaults.allowed_tools

    return RelaySettings(
        flush_interval_s=_positive_float(
            relay_cfg.get("flush_interval_s"), defaults.flush_interval_s
        ),
        keepalive_interval_s=_positive_float(
            relay_cfg.get("keepalive_interval_s"), defaults.keepalive_interval_s
        ),
        write_timeout_s=_positive_float(
            relay_cfg.get("write_timeout_s"), defaults.write_timeout_s
        ),
        client_buffer_size=_positive_int(
            relay_cfg.get("client_buffer_size"), defaults.client_buffer_size
        ),
        final_flush_attempts=_positive_int(
            relay_cfg.get("final_flush_attempts"), defaults.final_flush_attempts
        ),
        final_flush_backoff_s=_positive_float(
            relay_cfg.get("final_flush_backoff_s"), defaults.final_flush_backoff_s
        ),
        allowed_tools=allowed_tools,
    )


def resolve_uploads_dir(machine: Mapping[str, Any] | None) -> Path:
    server_cfg = (machine or {}).get("server") or {}
    configured = server_cfg.get("uploads_dir") if isinstance(server_cfg, Mapping) else None
    return Path(configured) if configured else DEFAULT_UPLOADS_DIR


def resolve_allowed_origins(machine: Mapping[str, Any] | None) -> list[str]:
    server_cfg = (machine or {}).get("server") or {}
    origins = (
        server_cfg.get("allowed_origins") if isinstance(server_cfg, Mapping) else None
    )
    if isinstance(origins, list) and origins:
        return [str(o) for o in origins]
    return list(DEFAULT_ALLOWED_ORIGINS)
