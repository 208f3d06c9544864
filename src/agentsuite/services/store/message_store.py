# Copyright (C) 2026 StableLlama
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""Defines the message store unit so this responsibility stays isolated, testable, and easy to evolve.

Adapters for the durable message store that holds assistant responses. The
relay only patches two fields of an existing record: ``content`` while
streaming and ``status`` (optionally with the final content) at the end.
"""

from __future__ import annotations

import copy
import time
import uuid
from typing import Any, Dict, Protocol

import httpx

from agentsuite.services.exceptions import NotFoundError, PersistenceError

# The messages:updateStatus validator only accepts these values. A stopped
# response is kept as a complete message with its partial text.
CONVEX_STATUSES = frozenset({"streaming", "complete", "error"})
CONVEX_STATUS_ALIASES = {"aborted": "complete"}


class MessageStore(Protocol):
    async def update_content(self, record_id: str, text: str) -> None: ...

    async def update_status(
        self, record_id: str, status: str, text: str | None = None
    ) -> None: ...


class ConvexMessageStore:
    """Patch message documents through a Convex deployment's HTTP API.

    Mutations are addressed by function path (``messages:updateContent``) and
    take JSON arguments; Convex answers ``{"status": "success"|"error", ...}``.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout_s: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if not base_url:
            raise ValueError("base_url is required for the Convex message store")
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(float(timeout_s))
        )

    async def _mutation(self, path: str, args: Dict[str, Any]) -> Any:
        url = f"{self.base_url}/api/mutation"
        record_id = args.get("messageId")
        body = {"path": path, "args": args, "format": "json"}
        try:
            response = await self._client.post(url, json=body)
        except httpx.HTTPError as exc:
            raise PersistenceError(
                f"Store request {path} failed: {exc}", record_id=record_id
            ) from exc

        if response.status_code >= 400:
            raise PersistenceError(
                f"Store request {path} failed with HTTP {response.status_code}: "
                f"{response.text[:200]}",
                record_id=record_id,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise PersistenceError(
                f"Store returned non-JSON for {path}", record_id=record_id
            ) from exc
        if isinstance(payload, dict) and payload.get("status") == "error":
            raise PersistenceError(
                f"Store rejected {path}: {payload.get('errorMessage') or 'unknown error'}",
                record_id=record_id,
            )
        return payload.get("value") if isinstance(payload, dict) else None

    async def update_content(self, record_id: str, text: str) -> None:
        await self._mutation(
            "messages:updateContent", {"messageId": record_id, "content": text}
        )

    async def update_status(
        self, record_id: str, status: str, text: str | None = None
    ) -> None:
        status = CONVEX_STATUS_ALIASES.get(status, status)
        if status not in CONVEX_STATUSES:
            raise PersistenceError(
                f"Status {status!r} is not accepted by the store", record_id=record_id
            )
        args: Dict[str, Any] = {"messageId": record_id, "status": status}
        if text is not None:
            args["content"] = text
        await self._mutation("messages:updateStatus", args)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class InMemoryMessageStore:
    """Dict-backed store used when no Convex deployment is configured."""

    def __init__(self) -> None:
        self._records: Dict[str, Dict[str, Any]] = {}

    def create(
        self,
        conversation_id: str,
        *,
        role: str = "assistant",
        content: str = "",
        status: str = "streaming",
        record_id: str | None = None,
    ) -> str:
        record_id = record_id or uuid.uuid4().hex
        self._records[record_id] = {
            "_id": record_id,
            "conversationId": conversation_id,
            "role": role,
            "content": content,
            "status": status,
            "createdAt": int(time.time() * 1000),
        }
        return record_id

    def get(self, record_id: str) -> Dict[str, Any]:
        record = self._records.get(record_id)
        if record is None:
            raise NotFoundError(f"Message {record_id} not found")
        return copy.deepcopy(record)

    async def update_content(self, record_id: str, text: str) -> None:
        record = self._records.get(record_id)
        if record is None:
            raise PersistenceError(
                f"Message {record_id} does not exist", record_id=record_id
            )
        record["content"] = text

    async def update_status(
        self, record_id: str, status: str, text: str | None = None
    ) -> None:
        record = self._records.get(record_id)
        if record is None:
            raise PersistenceError(
                f"Message {record_id} does not exist", record_id=record_id
            )
        record["status"] = status
        if text is not None:
            record["content"] = text

    async def aclose(self) -> None:
        return None
