# Copyright (C) 2026 StableLlama
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""Defines the persistence flusher unit so this responsibility stays isolated, testable, and easy to evolve.

Throttled write-through of a generation's accumulated text into the durable
message store.

While streaming, ``notify`` is called for every text chunk. The first call
after an idle period arms a timer; when it fires, the latest text seen so far
is written (trailing edge), so any number of chunks inside one interval cost a
single write. A terminal ``flush(force=True)`` disarms the timer, waits for a
write that is already on the wire, and then writes synchronously.

Phases::

    IDLE --notify--> PENDING --timer--> FLUSHING --written--> IDLE
                                                 \\--newer text--> PENDING
    any  --flush(force, status)--> CLOSED
"""

from __future__ import annotations

import asyncio
import enum
import logging

from agentsuite.services.exceptions import PersistenceError
from agentsuite.services.relay.generation_state import GenerationRequest
from agentsuite.services.store.message_store import MessageStore

logger = logging.getLogger(__name__)


class FlushPhase(str, enum.Enum):
    IDLE = "idle"
    PENDING = "pending"
    FLUSHING = "flushing"
    CLOSED = "closed"


class PersistenceFlusher:
    def __init__(
        self,
        store: MessageStore,
        request: GenerationRequest,
        *,
        interval_s: float = 0.3,
        final_attempts: int = 3,
        final_backoff_s: float = 0.25,
    ) -> None:
        self._store = store
        self._request = request
        self._interval_s = interval_s
        self._final_attempts = max(1, final_attempts)
        self._final_backoff_s = final_backoff_s

        self.phase = FlushPhase.IDLE
        self._latest_text = request.accumulated_text
        self._timer: asyncio.Task | None = None
        self._stop_requested = False

        self.throttled_writes = 0
        self.forced_writes = 0
        self.failed_writes = 0

    @property
    def last_flushed_text(self) -> str:
        return self._request.last_flushed_text

    def notify(self, current_text: str) -> None:
        """Record the newest text and make sure a trailing write is scheduled."""
        if self.phase is FlushPhase.CLOSED:
            return
        self._latest_text = current_text
        if self.phase is FlushPhase.IDLE:
            self.phase = FlushPhase.PENDING
            self._timer = asyncio.get_running_loop().create_task(
                self._run_timer(),
                name=f"flush-timer-{self._request.request_id}",
            )

    async def flush(
        self, current_text: str, force: bool = False, status: str | None = None
    ) -> None:
        """Write ``current_text`` to the store.

        Without ``force`` this only schedules a throttled write. A forced
        flush is synchronous; with no ``status`` it is a no-op when the text
        has already been written. With a terminal ``status`` the record's
        status and content are written together, retried with backoff, and
        the flusher accepts no further writes. Raises PersistenceError when
        every attempt failed.
        """
        if not force:
            self.notify(current_text)
            return

        await self._disarm_timer()
        self._latest_text = current_text
        if status is not None:
            self.phase = FlushPhase.CLOSED
        elif self.phase is not FlushPhase.CLOSED:
            self.phase = FlushPhase.IDLE

        if status is None and current_text == self.last_flushed_text:
            return
        if not current_text.startswith(self.last_flushed_text):
            raise ValueError("forced flush would shorten the stored response")

        await self._write_forced(current_text, status)

    async def _disarm_timer(self) -> None:
        timer = self._timer
        if timer is None or timer.done():
            return
        self._stop_requested = True
        if self.phase is FlushPhase.PENDING:
            # Sleeping; nothing is on the wire yet.
            timer.cancel()
        # A FLUSHING timer finishes its in-flight write and then exits.
        await asyncio.wait({timer})
        self._stop_requested = False

    async def _run_timer(self) -> None:
        try:
            while True:
                await asyncio.sleep(self._interval_s)
                self.phase = FlushPhase.FLUSHING
                written = await self._write_throttled(self._latest_text)
                if self._stop_requested:
                    return
                if written and self._latest_text != self.last_flushed_text:
                    self.phase = FlushPhase.PENDING
                    continue
                # Either caught up, or the write failed and the next notify retries.
                self.phase = FlushPhase.IDLE
                return
        finally:
            if self._timer is asyncio.current_task():
                self._timer = None

    def _extends_flushed(self, text: str) -> bool:
        flushed = self.last_flushed_text
        return len(text) > len(flushed) and text.startswith(flushed)

    async def _write_throttled(self, text: str) -> bool:
        if not self._extends_flushed(text):
            return True
        try:
            await self._store.update_content(self._request.target_record_id, text)
        except Exception as exc:
            self.failed_writes += 1
            logger.warning(
                "throttled write of record %s failed (%d chars); will retry: %s",
                self._request.target_record_id,
                len(text),
                exc,
            )
            return False
        self._request.last_flushed_text = text
        self.throttled_writes += 1
        return True

    async def _write_forced(self, text: str, status: str | None) -> None:
        record_id = self._request.target_record_id
        delay = self._final_backoff_s
        last_exc: Exception | None = None

        for attempt in range(1, self._final_attempts + 1):
            try:
                if status is None:
                    await self._store.update_content(record_id, text)
                else:
                    await self._store.update_status(record_id, status, text)
            except Exception as exc:
                last_exc = exc
                self.failed_writes += 1
                logger.warning(
                    "forced write of record %s failed (attempt %d/%d): %s",
                    record_id,
                    attempt,
                    self._final_attempts,
                    exc,
                )
                if attempt < self._final_attempts:
                    await asyncio.sleep(delay)
                    delay *= 2
                continue

            self._request.last_flushed_text = text
            self.forced_writes += 1
            return

        raise PersistenceError(
            f"Could not save message {record_id} after {self._final_attempts} attempts",
            record_id=record_id,
        ) from last_exc
