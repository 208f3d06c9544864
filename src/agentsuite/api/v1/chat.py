# Copyright (C) 2026 StableLlama
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""Defines the chat unit so this responsibility stays isolated, testable, and easy to evolve.

API endpoints for streamed chat generation, aborts, titles and image uploads.
"""

from __future__ import annotations

import logging
from pathlib import Path

from fastapi import APIRouter, Request
from fastapi.responses import StreamingResponse

from agentsuite.api.v1.http_responses import parse_model_body
from agentsuite.models.chat import (
    AbortRequest,
    AbortResponse,
    ChatRequest,
    ProvidersResponse,
    TitleRequest,
    TitleResponse,
    UploadRequest,
    UploadResponse,
)
from agentsuite.services.chat.chat_prompt_ops import (
    build_chat_prompt,
    validate_chat_request,
)
from agentsuite.services.chat.title_ops import generate_title
from agentsuite.services.chat.upload_ops import save_images
from agentsuite.services.exceptions import BadRequestError
from agentsuite.services.llm.llm_request_helpers import list_providers
from agentsuite.services.relay.relay_runtime import RelayRuntime
from agentsuite.services.relay.stream_relay import SSE_HEADERS

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Chat"])


def _runtime(request: Request) -> RelayRuntime:
    return request.app.state.relay_runtime


def _uploads_dir(request: Request) -> Path:
    return request.app.state.uploads_dir


@router.post("/chat")
async def api_chat(request: Request) -> StreamingResponse:
    """Stream an assistant response for one prompt as server-sent events.

    Body JSON:
      {
        "message": str,
        "conversationId": str,
        "targetRecordId": str,   // assistant message created by the caller
        "attachments"?: [{"path": str} | {"name": str, "type": str, "data": base64}],
        "provider"?: str,
        "model"?: str
      }

    The generation keeps running (and keeps saving to the message store) if
    the client disconnects; reconnecting clients re-read the stored message.
    """
    chat = await parse_model_body(request, ChatRequest)
    validate_chat_request(chat)
    # Reject a busy conversation before attachments are written to disk.
    _runtime(request).registry.ensure_idle(chat.conversation_id)

    prompt = build_chat_prompt(chat, _uploads_dir(request))
    logger.info(
        "chat request for conversation %s (%d attachments)",
        chat.conversation_id,
        len(chat.attachments),
    )

    _, relay = _runtime(request).start_generation(
        prompt=prompt,
        conversation_id=chat.conversation_id,
        target_record_id=chat.target_record_id,
        provider=chat.provider,
        model=chat.model,
    )
    return StreamingResponse(
        relay.attach(), media_type="text/event-stream", headers=SSE_HEADERS
    )


@router.post("/abort", response_model=AbortResponse)
async def api_abort(request: Request) -> AbortResponse:
    """Signal the in-flight generation of a conversation to stop."""
    body = await parse_model_body(request, AbortRequest)
    if not body.conversation_id:
        raise BadRequestError("conversationId is required")
    aborted = _runtime(request).abort(body.conversation_id)
    return AbortResponse(success=aborted, message="aborted" if aborted else "none found")


@router.post("/generate-title", response_model=TitleResponse)
async def api_generate_title(request: Request) -> TitleResponse:
    body = await parse_model_body(request, TitleRequest)
    if not body.message:
        raise BadRequestError("Message is required")
    title = await generate_title(
        body.message, request.app.state.machine, provider=body.provider
    )
    return TitleResponse(title=title)


@router.post("/upload", response_model=UploadResponse)
async def api_upload(request: Request) -> UploadResponse:
    body = await parse_model_body(request, UploadRequest)
    if not body.images:
        raise BadRequestError("No images provided")
    uploaded = save_images(body.images, _uploads_dir(request))
    return UploadResponse(success=True, uploadedImages=uploaded)


@router.get("/providers", response_model=ProvidersResponse)
async def api_providers(request: Request) -> ProvidersResponse:
    return ProvidersResponse(**list_providers(request.app.state.machine))
