# Copyright (C) 2026 StableLlama
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""Defines the llm stream ops unit so this responsibility stays isolated, testable, and easy to evolve.

Chunk source backed by an OpenAI-compatible ``/chat/completions`` stream.

A chunk source is any callable taking an ``EngineQuery`` and a cancel token
and returning an async iterator of typed chunk dicts:

- ``{"type": "text", "content": str}``
- ``{"type": "thinking", "content": str}``
- ``{"type": "tool_call", "tool_calls": list}``
- ``{"type": "error", "message": str}``
- ``{"type": "done"}``

Failures to reach the engine are raised, not yielded.
"""

from __future__ import annotations

import json as _json
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Mapping, Protocol

import httpx

from agentsuite.core.prompts import DEFAULT_SYSTEM_PROMPT
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
from agentsuite.services.relay.cancellation_registry import CancelToken


@dataclass(frozen=True)
class EngineQuery:
    prompt: str
    conversation_id: str
    provider: str | None = None
    model: str | None = None
    allowed_tools: tuple[str, ...] = field(default_factory=tuple)


class ChunkSource(Protocol):
    def __call__(
        self, query: EngineQuery, token: CancelToken
    ) -> AsyncIterator[Dict[str, Any]]: ...


def build_tool_schemas(tool_names: tuple[str, ...]) -> list[dict]:
    """Advertise each permitted capability as a free-form function tool."""
    return [
        {
            "type": "function",
            "function": {
                "name": name,
                "description": f"Invoke the {name} capability.",
                "parameters": {"type": "object", "properties": {}},
            },
        }
        for name in tool_names
    ]


def _chunks_from_delta(delta: Mapping[str, Any]) -> list[Dict[str, Any]]:
    chunks: list[Dict[str, Any]] = []
    reasoning = delta.get("reasoning_content")
    if reasoning:
        chunks.append({"type": "thinking", "content": reasoning})
    content = delta.get("content")
    if content:
        chunks.append({"type": "text", "content": content})
    tool_calls = delta.get("tool_calls")
    if tool_calls:
        chunks.append({"type": "tool_call", "tool_calls": tool_calls})
    return chunks


class OpenAIChunkSource:
    """Stream one prompt through the configured engine.

    The cancel token is checked between upstream lines; once it is set the
    source stops reading and closes the upstream request without emitting a
    terminal chunk.
    """

    def __init__(
        self,
        machine: Mapping[str, Any] | None = None,
        *,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        temperature: float = 0.7,
    ) -> None:
        self._machine = machine or {}
        self._system_prompt = system_prompt
        self._temperature = temperature

    def _build_body(self, query: EngineQuery, model_id: str) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "model": model_id,
            "messages": [
                {"role": "system", "content": self._system_prompt},
                {"role": "user", "content": query.prompt},
            ],
            "temperature": self._temperature,
            "stream": True,
        }
        if query.allowed_tools:
            body["tools"] = build_tool_schemas(query.allowed_tools)
        return body

    async def __call__(
        self, query: EngineQuery, token: CancelToken
    ) -> AsyncIterator[Dict[str, Any]]:
        creds = resolve_engine_credentials(self._machine, query.provider, query.model)
        validate_base_url(creds.base_url, self._machine)

        url = creds.base_url.rstrip("/") + "/chat/completions"
        headers = build_headers(creds.api_key)
        body = self._build_body(query, creds.model_id)

        log_entry = create_log_entry(
            url,
            "POST",
            headers,
            body,
            streaming=True,
            conversation_id=query.conversation_id,
        )
        add_llm_log(log_entry)

        error_detail: str | None = None
        try:
            async with httpx.AsyncClient(timeout=build_timeout(creds.timeout_s)) as client:
                async with client.stream("POST", url, headers=headers, json=body) as resp:
                    log_entry["response"]["status_code"] = resp.status_code

                    if resp.status_code >= 400:
                        error_content = await resp.aread()
                        error_detail = error_content.decode("utf-8", errors="ignore")
                        raise UpstreamError(
                            f"Engine returned HTTP {resp.status_code}: {error_detail[:300]}",
                            upstream_status=resp.status_code,
                        )

                    async for line in resp.aiter_lines():
                        if token.cancelled:
                            log_entry["response"]["cancelled"] = True
                            return
                        if not line.strip() or not line.startswith("data:"):
                            continue
                        data_str = line[len("data:") :].strip()
                        if data_str == "[DONE]":
                            yield {"type": "done"}
                            return

                        try:
                            chunk = _json.loads(data_str)
                        except ValueError:
                            continue
                        log_entry["response"]["chunks"].append(chunk)

                        if isinstance(chunk, dict) and chunk.get("error"):
                            err = chunk["error"]
                            message = err.get("message") if isinstance(err, dict) else err
                            yield {"type": "error", "message": str(message)}
                            return

                        choices = chunk.get("choices") if isinstance(chunk, dict) else None
                        if not choices:
                            continue
                        delta = choices[0].get("delta") or {}
                        for event in _chunks_from_delta(delta):
                            if event["type"] == "text":
                                log_entry["response"]["full_content"] += event["content"]
                            yield event

                    if not token.cancelled:
                        yield {"type": "done"}
        except httpx.HTTPError as exc:
            error_detail = str(exc)
            raise UpstreamError(f"Engine request failed: {exc}") from exc
        finally:
            finish_log_entry(log_entry, error_detail)
