# Copyright (C) 2026 StableLlama
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""Defines the llm logging unit so this responsibility stays isolated, testable, and easy to evolve."""

from __future__ import annotations

import datetime
import json
import logging
import os
import uuid
from typing import Any, Dict, List

logger = logging.getLogger(__name__)

MAX_LOG_ENTRIES = 100

DUMP_SEPARATOR = "=" * 80

# Engine exchanges of the current server session, newest last.
llm_logs: List[Dict[str, Any]] = []

_SECRET_BODY_KEYS = ("api_key", "secret", "password")
_SECRET_HEADERS = ("authorization", "x-api-key")


def _dump_path() -> str:
    return os.getenv("AGENTSUITE_LLM_DUMP_PATH") or os.path.join(
        "data", "logs", "llm_raw.log"
    )


def _dump_raw(log_entry: Dict[str, Any]) -> None:
    log_path = _dump_path()
    try:
        os.makedirs(os.path.dirname(log_path) or ".", exist_ok=True)
        with open(log_path, "a", encoding="utf-8") as f:
            f.write(f"{DUMP_SEPARATOR}\n")
            f.write(f"TIMESTAMP: {datetime.datetime.now().isoformat()}\n")
            f.write(f"CONVERSATION: {log_entry.get('conversation_id') or '-'}\n")
            f.write("-" * len(DUMP_SEPARATOR) + "\n")
            f.write(json.dumps(log_entry, indent=2, default=str) + "\n")
            f.write(f"{DUMP_SEPARATOR}\n\n")
    except OSError as exc:
        # dev-only feature; never break a generation over it
        logger.debug("could not write raw LLM dump to %s: %s", log_path, exc)


def add_llm_log(log_entry: Dict[str, Any]) -> None:
    """Record an engine exchange, keeping only the last MAX_LOG_ENTRIES.

    Calling it again with the same entry (e.g. once the stream finished) does
    not duplicate it. If AGENTSUITE_LLM_DUMP is set, the entry is also
    appended to a raw dump file.
    """
    if log_entry not in llm_logs:
        llm_logs.append(log_entry)
        del llm_logs[:-MAX_LOG_ENTRIES]

    if os.getenv("AGENTSUITE_LLM_DUMP") == "1":
        _dump_raw(log_entry)


def create_log_entry(
    url: str,
    method: str,
    headers: Dict[str, str],
    body: Any,
    streaming: bool = False,
    conversation_id: str | None = None,
) -> Dict[str, Any]:
    """Create a new log entry with credentials masked."""
    safe_body = body
    if isinstance(body, dict):
        safe_body = {
            k: ("REDACTED" if k in _SECRET_BODY_KEYS else v) for k, v in body.items()
        }

    return {
        "id": str(uuid.uuid4()),
        "conversation_id": conversation_id,
        "timestamp_start": datetime.datetime.now().isoformat(),
        "timestamp_end": None,
        "request": {
            "url": url,
            "method": method,
            "headers": {
                k: ("***" if k.lower() in _SECRET_HEADERS else v)
                for k, v in headers.items()
            },
            "body": safe_body,
        },
        "response": {
            "status_code": None,
            "streaming": streaming,
            "chunks": [] if streaming else None,
            "full_content": "" if streaming else None,
            "cancelled": False,
            "body": None,
            "error_detail": None,
        },
    }


def finish_log_entry(log_entry: Dict[str, Any], error: str | None = None) -> None:
    log_entry["timestamp_end"] = datetime.datetime.now().isoformat()
    if error:
        log_entry["response"]["error_detail"] = error
    add_llm_log(log_entry)
