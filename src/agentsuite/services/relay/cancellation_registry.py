# Copyright (C) 2026 StableLlama
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""Defines the cancellation registry unit so this responsibility stays isolated, testable, and easy to evolve.

Maps a conversation id to the cancellation handle of its in-flight generation
so that an out-of-band abort request can reach the running supervisor.

The registry is a plain object owned by the application runtime. Handlers may
run on the event loop or in the threadpool FastAPI uses for sync endpoints,
so every mutation happens under a ``threading.Lock`` and nothing awaits while
holding it.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Dict

from agentsuite.services.exceptions import ConflictError

logger = logging.getLogger(__name__)


class CancelToken:
    """Cooperative cancellation flag shared between the supervisor and its chunk source."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> bool:
        """Set the flag; returns True only for the call that flipped it."""
        if self._event.is_set():
            return False
        self._event.set()
        return True

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass(eq=False)
class CancellationHandle:
    key: str
    request_id: str
    token: CancelToken = field(default_factory=CancelToken)


def _conflict(key: str) -> ConflictError:
    return ConflictError(
        f"A response is already being generated for conversation {key}"
    )


class CancellationRegistry:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handles: Dict[str, CancellationHandle] = {}

    def register(self, key: str, request_id: str) -> CancellationHandle:
        """Register a live generation for ``key``.

        Raises ConflictError while another generation for the same key is
        still live; the caller must wait for it to finish or abort it first.
        """
        with self._lock:
            if key in self._handles:
                raise _conflict(key)
            handle = CancellationHandle(key=key, request_id=request_id)
            self._handles[key] = handle
        logger.debug("registered generation %s for %s", request_id, key)
        return handle

    def cancel(self, key: str) -> bool:
        """Signal the live handle for ``key``.

        Returns False when nothing is registered or the handle was already
        signalled. Neither case is an error.
        """
        with self._lock:
            handle = self._handles.get(key)
            if handle is None:
                return False
            signalled = handle.token.cancel()
        if signalled:
            logger.info("abort requested for %s (request %s)", key, handle.request_id)
        return signalled

    def release(self, key: str, handle: CancellationHandle) -> bool:
        """Drop ``handle`` if it is still the live entry for ``key``."""
        with self._lock:
            if self._handles.get(key) is not handle:
                return False
            del self._handles[key]
        return True

    def is_live(self, key: str) -> bool:
        with self._lock:
            return key in self._handles

    def ensure_idle(self, key: str) -> None:
        """Raise ConflictError if ``key`` already has a live generation."""
        if self.is_live(key):
            raise _conflict(key)

    def __len__(self) -> int:
        with self._lock:
            return len(self._handles)
