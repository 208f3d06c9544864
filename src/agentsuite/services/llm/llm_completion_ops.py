# Copyright (C) 2026 StableLlama
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""Defines the llm completion ops unit so this responsibility stays isolated, testable, and easy to evolve."""

from __future__ import annotations

from typing import Any, Dict, Mapping

import httpx

from agentsuite.services.exceptions import UpstreamError
from agentsuite.services.llm.llm_logging import (
    add_llm_log,
    create_log_entry,
    finish_log_entry,
)
from agentsuite.services.llm.llm_request_helpers import (
    build_headers,
    build_timeout,
    resolve_engine_credentials,
    validate_base_url,
)


async def chat_complete_text(
    *,
    machine: Mapping[str, Any] | None,
    messages: list[dict],
    provider: str | None = None,
    temperature: float = 0.7,
    max_tokens: int | None = None,
) -> str:
    """Run a non-streaming completion and return the assistant text."""
    creds = resolve_engine_credentials(machine, provider)
    validate_base_url(creds.base_url, machine)

    url = creds.base_url.rstrip("/") + "/chat/completions"
    headers = build_headers(creds.api_key)
    body: Dict[str, Any] = {
        "model": creds.model_id,
        "messages": messages,
        "temperature": temperature,
    }
    if isinstance(max_tokens, int):
        body["max_tokens"] = max_tokens

    log_entry = create_log_entry(url, "POST", headers, body)
    add_llm_log(log_entry)

    try:
        async with httpx.AsyncClient(timeout=build_timeout(creds.timeout_s)) as client:
            response = await client.post(url, headers=headers, json=body)
    except httpx.HTTPError as exc:
        finish_log_entry(log_entry, str(exc))
        raise UpstreamError(f"Engine request failed: {exc}") from exc

    log_entry["response"]["status_code"] = response.status_code
    if response.status_code >= 400:
        finish_log_entry(log_entry, response.text[:500])
        raise UpstreamError(
            f"Engine returned HTTP {response.status_code}",
            upstream_status=response.status_code,
        )

    try:
        data = response.json()
    except ValueError as exc:
        finish_log_entry(log_entry, "non-JSON response")
        raise UpstreamError("Engine returned a non-JSON response") from exc

    log_entry["response"]["body"] = data
    finish_log_entry(log_entry)

    choices = data.get("choices") if isinstance(data, dict) else None
    if not choices:
        return ""
    first = choices[0] if isinstance(choices, list) else None
    message = first.get("message") if isinstance(first, dict) else None
    if not isinstance(message, dict):
        raise UpstreamError("Engine returned a malformed completion")
    return str(message.get("content") or "")
