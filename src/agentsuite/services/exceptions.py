# Copyright (C) 2026 StableLlama
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""Service-layer errors for the relay server.

Each error carries the HTTP status the API layer answers with. Handlers and
services raise these instead of ``HTTPException``; the exception handler
registered in ``main.py`` renders them as ``{"ok": false, "detail": ...}``.

Errors raised inside a running generation never reach that handler: the
generation supervisor turns them into an ``error`` event and a stored
``error`` status instead.
"""

from __future__ import annotations

from typing import Any, Dict


class ServiceError(Exception):
    """Base error with an HTTP-equivalent status code."""

    default_status_code: int = 500

    def __init__(self, detail: str, status_code: int | None = None):
        super().__init__(detail)
        self.detail = detail
        self.status_code = (
            status_code if status_code is not None else self.default_status_code
        )

    def response_fields(self) -> Dict[str, Any]:
        """Extra JSON fields for the error response besides ``detail``."""
        return {}


class BadRequestError(ServiceError):
    """Invalid or missing input (HTTP 400)."""

    default_status_code = 400


class NotFoundError(ServiceError):
    default_status_code = 404


class ConflictError(ServiceError):
    """The conversation already has a live generation (HTTP 409)."""

    default_status_code = 409


class ConfigurationError(ServiceError):
    """Engine or store settings are missing or unusable (HTTP 400)."""

    default_status_code = 400


class PersistenceError(ServiceError):
    """A write to the durable message store failed (HTTP 500)."""

    default_status_code = 500

    def __init__(
        self,
        detail: str,
        status_code: int | None = None,
        *,
        record_id: str | None = None,
    ):
        super().__init__(detail, status_code)
        self.record_id = record_id


class UpstreamError(ServiceError):
    """The reasoning engine could not be reached or answered with an error (HTTP 502)."""

    default_status_code = 502

    def __init__(
        self,
        detail: str,
        status_code: int | None = None,
        *,
        upstream_status: int | None = None,
    ):
        super().__init__(detail, status_code)
        self.upstream_status = upstream_status

    def response_fields(self) -> Dict[str, Any]:
        if self.upstream_status is None:
            return {}
        return {"upstream_status": self.upstream_status}
