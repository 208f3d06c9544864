# Copyright (C) 2026 StableLlama
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

import asyncio
from unittest import TestCase

from agentsuite.services.exceptions import PersistenceError
from agentsuite.services.relay.generation_state import GenerationRequest
from agentsuite.services.relay.persistence_flusher import (
    FlushPhase,
    PersistenceFlusher,
)


class RecordingStore:
    """Message store double that records writes and can fail or stall on demand."""

    def __init__(self, fail_content=0, fail_status=0, content_delay=0.0):
        self.fail_content = fail_content
        self.fail_status = fail_status
        self.content_delay = content_delay
        self.content_writes = []
        self.status_writes = []
        self.events = []

    async def update_content(self, record_id, text):
        self.events.append("content_start")
        if self.content_delay:
            await asyncio.sleep(self.content_delay)
        if self.fail_content > 0:
            self.fail_content -= 1
            self.events.append("content_failed")
            raise PersistenceError("store unavailable")
        self.content_writes.append(text)
        self.events.append("content_end")

    async def update_status(self, record_id, status, text=None):
        self.events.append("status_start")
        if self.fail_status > 0:
            self.fail_status -= 1
            raise PersistenceError("store unavailable")
        self.status_writes.append((status, text))
        self.events.append("status_end")


def _flusher(store, interval_s=0.05, **kwargs):
    request = GenerationRequest(conversation_id="conv-1", target_record_id="msg-1")
    kwargs.setdefault("final_backoff_s", 0.001)
    return request, PersistenceFlusher(store, request, interval_s=interval_s, **kwargs)


class PersistenceFlusherTest(TestCase):
    def test_burst_of_notifications_coalesces_into_one_write(self):
        async def scenario():
            store = RecordingStore()
            request, flusher = _flusher(store)
            for i in range(50):
                flusher.notify(request.append_text(str(i % 10)))
            self.assertIs(flusher.phase, FlushPhase.PENDING)
            await asyncio.sleep(0.15)
            return store, request, flusher

        store, request, flusher = asyncio.run(scenario())
        self.assertEqual(store.content_writes, [request.accumulated_text])
        self.assertEqual(flusher.throttled_writes, 1)
        self.assertEqual(request.last_flushed_text, request.accumulated_text)
        self.assertIs(flusher.phase, FlushPhase.IDLE)

    def test_steady_stream_is_throttled_and_monotonic(self):
        async def scenario():
            store = RecordingStore()
            request, flusher = _flusher(store, interval_s=0.05)
            for _ in range(20):
                flusher.notify(request.append_text("word "))
                await asyncio.sleep(0.01)
            await flusher.flush(request.accumulated_text, force=True, status="complete")
            return store, request, flusher

        store, request, flusher = asyncio.run(scenario())

        # 20 chunks over ~0.2s with a 0.05s interval: far fewer writes than chunks
        self.assertGreaterEqual(len(store.content_writes), 1)
        self.assertLessEqual(len(store.content_writes), 8)
        previous = ""
        for written in store.content_writes:
            self.assertTrue(written.startswith(previous))
            self.assertGreater(len(written), len(previous))
            previous = written

        self.assertEqual(store.status_writes, [("complete", request.accumulated_text)])
        self.assertEqual(flusher.forced_writes, 1)
        self.assertIs(flusher.phase, FlushPhase.CLOSED)

    def test_failed_throttled_write_is_swallowed_and_retried_later(self):
        async def scenario():
            store = RecordingStore(fail_content=1)
            request, flusher = _flusher(store)
            flusher.notify(request.append_text("Hello"))
            await asyncio.sleep(0.1)
            self.assertEqual(flusher.failed_writes, 1)
            self.assertEqual(request.last_flushed_text, "")
            self.assertIs(flusher.phase, FlushPhase.IDLE)

            flusher.notify(request.append_text(", world"))
            await asyncio.sleep(0.1)
            return store, request

        store, request = asyncio.run(scenario())
        self.assertEqual(store.content_writes, ["Hello, world"])
        self.assertEqual(request.last_flushed_text, "Hello, world")

    def test_forced_flush_retries_with_backoff(self):
        async def scenario():
            store = RecordingStore(fail_status=2)
            request, flusher = _flusher(store, final_attempts=3)
            request.append_text("partial")
            await flusher.flush(request.accumulated_text, force=True, status="aborted")
            return store, flusher

        store, flusher = asyncio.run(scenario())
        self.assertEqual(store.status_writes, [("aborted", "partial")])
        self.assertEqual(flusher.failed_writes, 2)
        self.assertEqual(flusher.forced_writes, 1)

    def test_forced_flush_raises_after_exhausting_attempts(self):
        async def scenario():
            store = RecordingStore(fail_status=10)
            request, flusher = _flusher(store, final_attempts=3)
            request.append_text("lost?")
            with self.assertRaises(PersistenceError):
                await flusher.flush(
                    request.accumulated_text, force=True, status="complete"
                )
            return store, request, flusher

        store, request, flusher = asyncio.run(scenario())
        self.assertEqual(store.events.count("status_start"), 3)
        self.assertEqual(flusher.forced_writes, 0)
        self.assertEqual(request.last_flushed_text, "")

    def test_forced_flush_without_status_is_noop_when_up_to_date(self):
        async def scenario():
            store = RecordingStore()
            request, flusher = _flusher(store)
            request.append_text("same")
            await flusher.flush("same", force=True)
            await flusher.flush("same", force=True)
            return store

        store = asyncio.run(scenario())
        self.assertEqual(store.content_writes, ["same"])

    def test_forced_flush_waits_for_in_flight_write(self):
        async def scenario():
            store = RecordingStore(content_delay=0.05)
            request, flusher = _flusher(store, interval_s=0.01)
            flusher.notify(request.append_text("abc"))
            await asyncio.sleep(0.03)
            self.assertIs(flusher.phase, FlushPhase.FLUSHING)
            request.append_text("def")
            await flusher.flush(request.accumulated_text, force=True, status="complete")
            return store

        store = asyncio.run(scenario())
        self.assertEqual(
            store.events, ["content_start", "content_end", "status_start", "status_end"]
        )
        self.assertEqual(store.content_writes, ["abc"])
        self.assertEqual(store.status_writes, [("complete", "abcdef")])

    def test_pending_timer_is_cancelled_by_forced_flush(self):
        async def scenario():
            store = RecordingStore()
            request, flusher = _flusher(store, interval_s=0.5)
            flusher.notify(request.append_text("quick"))
            await flusher.flush(request.accumulated_text, force=True, status="complete")
            # The cancelled timer must not write after the final flush
            await asyncio.sleep(0.05)
            flusher.notify(request.accumulated_text + " ignored")
            return store, flusher

        store, flusher = asyncio.run(scenario())
        self.assertEqual(store.content_writes, [])
        self.assertEqual(store.status_writes, [("complete", "quick")])
        self.assertIs(flusher.phase, FlushPhase.CLOSED)

    def test_forced_flush_never_shortens_stored_text(self):
        async def scenario():
            store = RecordingStore()
            request, flusher = _flusher(store)
            request.append_text("longer text")
            await flusher.flush(request.accumulated_text, force=True)
            with self.assertRaises(ValueError):
                await flusher.flush("longer", force=True)
            return store

        store = asyncio.run(scenario())
        self.assertEqual(store.content_writes, ["longer text"])
