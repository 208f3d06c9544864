# Copyright (C) 2026 StableLlama
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""Defines the upload ops unit so this responsibility stays isolated, testable, and easy to evolve.

Stores user-supplied images on disk so the reasoning engine can read them by
path and the frontend can display them under ``/images``.
"""

from __future__ import annotations

import base64
import binascii
import logging
import re
import secrets
import time
from pathlib import Path
from typing import Iterable

from agentsuite.models.chat import ImageAttachment, UploadedImage
from agentsuite.services.exceptions import BadRequestError, PersistenceError

logger = logging.getLogger(__name__)

IMAGES_URL_PREFIX = "/images"

_SAFE_EXT = re.compile(r"^[A-Za-z0-9]{1,8}$")


def _extension_for(name: str, mime_type: str | None) -> str:
    ext = name.rsplit(".", 1)[-1] if "." in name else ""
    if not _SAFE_EXT.match(ext) and mime_type and "/" in mime_type:
        ext = mime_type.split("/", 1)[1]
    return ext.lower() if _SAFE_EXT.match(ext) else "png"


def _unique_filename(name: str, mime_type: str | None) -> str:
    stamp = int(time.time() * 1000)
    return f"{stamp}-{secrets.token_hex(4)}.{_extension_for(name, mime_type)}"


def save_image(image: ImageAttachment, uploads_dir: Path) -> UploadedImage:
    """Decode one base64 image into ``uploads_dir``."""
    if not image.data:
        raise BadRequestError(f"Image {image.name or '(unnamed)'} has no data")
    try:
        raw = base64.b64decode(image.data, validate=False)
    except (binascii.Error, ValueError) as exc:
        raise BadRequestError(f"Image {image.name} is not valid base64") from exc

    filename = _unique_filename(image.name or "image", image.type)
    target = uploads_dir / filename
    try:
        uploads_dir.mkdir(parents=True, exist_ok=True)
        target.write_bytes(raw)
    except OSError as exc:
        raise PersistenceError(f"Could not store image {image.name}: {exc}") from exc

    logger.info("saved uploaded image %s (%d bytes)", target, len(raw))
    return UploadedImage(
        originalName=image.name or filename,
        filename=filename,
        path=str(target.resolve()),
        url=f"{IMAGES_URL_PREFIX}/{filename}",
    )


def save_images(images: Iterable[ImageAttachment], uploads_dir: Path) -> list[UploadedImage]:
    """Store every image that carries data; entries without data are skipped."""
    saved: list[UploadedImage] = []
    for image in images:
        if not image.data or not image.name:
            continue
        saved.append(save_image(image, uploads_dir))
    return saved
