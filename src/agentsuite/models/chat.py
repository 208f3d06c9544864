# Copyright (C) 2026 StableLlama
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""Defines the chat unit so this responsibility stays isolated, testable, and easy to evolve.

Pydantic models for the chat relay API. Field names follow the JSON the
desktop frontend sends (camelCase); older clients used ``chatId`` and
``assistantMessageId``, which are accepted as aliases.
"""

from __future__ import annotations

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class ImageAttachment(BaseModel):
    """An image attached to a prompt, either inline (base64) or already uploaded."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str = Field(
        default="", validation_alias=AliasChoices("name", "originalName")
    )
    type: str | None = None
    data: str | None = None
    path: str | None = None
    url: str | None = None


class UploadedImage(BaseModel):
    originalName: str
    filename: str
    path: str
    url: str


class ChatRequest(BaseModel):
    """Body of ``POST /api/v1/chat``."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    message: str = Field(default="", validation_alias=AliasChoices("message", "prompt"))
    conversation_id: str = Field(
        default="", validation_alias=AliasChoices("conversationId", "chatId")
    )
    target_record_id: str = Field(
        default="",
        validation_alias=AliasChoices("targetRecordId", "assistantMessageId"),
    )
    attachments: list[ImageAttachment] = Field(
        default_factory=list, validation_alias=AliasChoices("attachments", "images")
    )
    provider: str | None = None
    model: str | None = None


class AbortRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    conversation_id: str = Field(
        default="", validation_alias=AliasChoices("conversationId", "chatId")
    )


class AbortResponse(BaseModel):
    success: bool
    message: str


class TitleRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    message: str = ""
    provider: str | None = None


class TitleResponse(BaseModel):
    title: str


class UploadRequest(BaseModel):
    images: list[ImageAttachment] = Field(default_factory=list)


class UploadResponse(BaseModel):
    success: bool
    uploadedImages: list[UploadedImage]


class ProvidersResponse(BaseModel):
    providers: list[str]
    default: str | None
