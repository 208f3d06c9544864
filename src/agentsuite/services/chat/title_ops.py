# Copyright (C) 2026 StableLlama
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""Defines the title ops unit so this responsibility stays isolated, testable, and easy to evolve."""

from __future__ import annotations

import logging
from typing import Any, Mapping

from agentsuite.core.prompts import build_title_prompt
from agentsuite.services.exceptions import ServiceError
from agentsuite.services.llm import llm_completion_ops

logger = logging.getLogger(__name__)

FALLBACK_TITLE_LENGTH = 40
TITLE_MAX_TOKENS = 20


def fallback_title(message: str) -> str:
    title = message[:FALLBACK_TITLE_LENGTH]
    if len(message) > FALLBACK_TITLE_LENGTH:
        title += "..."
    return title


def _clean_title(raw: str) -> str:
    title = raw.strip().splitlines()[0] if raw.strip() else ""
    return title.strip().strip('"').strip("'").strip()


async def generate_title(
    message: str,
    machine: Mapping[str, Any] | None,
    provider: str | None = None,
) -> str:
    """Ask the engine for a short conversation title; truncate the message on failure."""
    try:
        raw = await llm_completion_ops.chat_complete_text(
            machine=machine,
            messages=[{"role": "user", "content": build_title_prompt(message)}],
            provider=provider,
            max_tokens=TITLE_MAX_TOKENS,
        )
    except ServiceError as exc:
        logger.info("title generation fell back to truncation: %s", exc.detail)
        return fallback_title(message)
    return _clean_title(raw) or fallback_title(message)
