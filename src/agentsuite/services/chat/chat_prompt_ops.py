# Copyright (C) 2026 StableLlama
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""Defines the chat prompt ops unit so this responsibility stays isolated, testable, and easy to evolve."""

from __future__ import annotations

import logging
from pathlib import Path

from agentsuite.core.prompts import build_attachment_preamble
from agentsuite.models.chat import ChatRequest
from agentsuite.services.chat.upload_ops import save_image
from agentsuite.services.exceptions import BadRequestError, ServiceError

logger = logging.getLogger(__name__)


def validate_chat_request(chat: ChatRequest) -> None:
    if not chat.message.strip() and not chat.attachments:
        raise BadRequestError("Message or images required")
    if not chat.conversation_id:
        raise BadRequestError("conversationId is required")
    if not chat.target_record_id:
        raise BadRequestError("targetRecordId is required")


def resolve_attachment_paths(chat: ChatRequest, uploads_dir: Path) -> list[str]:
    """File paths the engine should read, storing inline images first.

    An attachment that cannot be stored is skipped; the prompt still goes out.
    """
    paths: list[str] = []
    for attachment in chat.attachments:
        if attachment.path:
            paths.append(attachment.path)
            continue
        if not attachment.data:
            continue
        try:
            paths.append(save_image(attachment, uploads_dir).path)
        except ServiceError as exc:
            logger.warning("dropping attachment %s: %s", attachment.name, exc.detail)
    return paths


def build_chat_prompt(chat: ChatRequest, uploads_dir: Path) -> str:
    """Prompt text for the engine: attachment notes, a blank line, then the message."""
    prompt = chat.message or ""
    paths = resolve_attachment_paths(chat, uploads_dir)
    if paths:
        prompt = build_attachment_preamble(paths) + "\n\n" + prompt
    return prompt
