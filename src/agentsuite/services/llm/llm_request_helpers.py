# Copyright (C) 2026 StableLlama
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""Defines the llm request helpers unit so this responsibility stays isolated, testable, and easy to evolve."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from typing import Any, Dict, Mapping

import httpx

from agentsuite.services.exceptions import ConfigurationError

DEFAULT_TIMEOUT_S = 600

_LOCAL_URL_PATTERN = re.compile(
    r"^https?://(localhost|127\.0\.0\.1|0\.0\.0\.0)(:\d{1,5})?(/.*)?$",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class EngineCredentials:
    name: str
    base_url: str
    api_key: str | None
    model_id: str
    timeout_s: int


def build_headers(api_key: str | None) -> Dict[str, str]:
    headers: Dict[str, str] = {"Content-Type": "application/json"}
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    return headers


def build_timeout(timeout_s: int | float | None) -> httpx.Timeout:
    try:
        return httpx.Timeout(float(timeout_s or DEFAULT_TIMEOUT_S))
    except (TypeError, ValueError):
        return httpx.Timeout(float(DEFAULT_TIMEOUT_S))


def _engine_section(machine: Mapping[str, Any] | None) -> Mapping[str, Any]:
    section = (machine or {}).get("openai") or {}
    return section if isinstance(section, Mapping) else {}


def configured_engines(machine: Mapping[str, Any] | None) -> list[dict]:
    models = _engine_section(machine).get("models")
    if not isinstance(models, list):
        return []
    return [m for m in models if isinstance(m, dict) and m.get("name")]


def find_model_in_list(models: list, selected_name: str | None) -> dict | None:
    """Return the first model config dict whose "name" matches selected_name.

    Returns None when selected_name is falsy or no match is found, signalling
    that the caller should fall back to the default engine.
    """
    if not selected_name:
        return None
    for m in models:
        if isinstance(m, dict) and m.get("name") == selected_name:
            return m
    return None


def list_providers(machine: Mapping[str, Any] | None) -> dict:
    """Names of the configured engines plus the default selection."""
    names = [str(m["name"]) for m in configured_engines(machine)]
    selected = _engine_section(machine).get("selected")
    if not names:
        return {"providers": [], "default": None}
    default = selected if selected in names else names[0]
    return {"providers": names, "default": default}


def resolve_engine_credentials(
    machine: Mapping[str, Any] | None,
    provider: str | None = None,
    model_override: str | None = None,
) -> EngineCredentials:
    """Resolve the engine endpoint for a request.

    Precedence:
    1. Environment variables OPENAI_BASE_URL / OPENAI_API_KEY (already merged
       into the top-level ``openai`` section by load_machine_config)
    2. The named engine entry from ``openai.models[]`` (``provider``), else the
       selected entry, else the first one
    3. ``model_override`` replaces the model id of the chosen entry
    """
    section = _engine_section(machine)
    models = configured_engines(machine)
    chosen = (
        find_model_in_list(models, provider)
        or find_model_in_list(models, section.get("selected"))
        or (models[0] if models else {})
    )

    base_url = section.get("base_url") or chosen.get("base_url") or ""
    api_key = section.get("api_key") or chosen.get("api_key")
    model_id = model_override or section.get("model") or chosen.get("model") or ""
    timeout_s = chosen.get("timeout_s") or section.get("timeout_s") or DEFAULT_TIMEOUT_S
    try:
        timeout_s = int(timeout_s)
    except (TypeError, ValueError):
        timeout_s = DEFAULT_TIMEOUT_S

    if not base_url or not model_id:
        raise ConfigurationError("Missing base_url or model in engine configuration")

    return EngineCredentials(
        name=str(chosen.get("name") or provider or "default"),
        base_url=str(base_url),
        api_key=api_key,
        model_id=str(model_id),
        timeout_s=timeout_s,
    )


def validate_base_url(base_url: str, machine: Mapping[str, Any] | None) -> None:
    """Validate base_url against configured engines or environment overrides to prevent SSRF."""
    if not (base_url.startswith("http://") or base_url.startswith("https://")):
        raise ConfigurationError(f"Invalid base_url scheme: {base_url}")

    if any(c in base_url for c in "@[]"):
        raise ConfigurationError(f"Potentially dangerous base_url: {base_url}")

    if base_url == os.getenv("OPENAI_BASE_URL"):
        return
    if base_url == _engine_section(machine).get("base_url"):
        return
    for model in configured_engines(machine):
        if model.get("base_url") == base_url:
            return

    # Local inference servers (Ollama, LM Studio, a local agent gateway)
    if _LOCAL_URL_PATTERN.match(base_url):
        return

    raise ConfigurationError(f"Untrusted or unconfirmed base_url: {base_url}")
