# Copyright (C) 2026 StableLlama
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""Prompt templates sent to the reasoning engine."""

from __future__ import annotations

DEFAULT_SYSTEM_PROMPT = (
    "You are a capable desktop assistant. You can use the tools you are given "
    "to read and edit files, run commands and search the web on the user's "
    "behalf. Answer in Markdown."
)

TITLE_PROMPT_TEMPLATE = (
    "Generate a concise 3-5 word title for a conversation that starts with this "
    'message. Return ONLY the title, nothing else.\n\nMessage: "{message}"'
)

IMAGE_ATTACHMENT_TEMPLATE = (
    "[User attached an image file at: {path}. "
    "Please use the Read tool to view and analyze this image.]"
)


def build_title_prompt(message: str) -> str:
    return TITLE_PROMPT_TEMPLATE.format(message=message[:200])


def build_attachment_preamble(paths: list[str]) -> str:
    return "\n".join(IMAGE_ATTACHMENT_TEMPLATE.format(path=p) for p in paths)
