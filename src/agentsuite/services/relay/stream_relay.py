# Copyright (C) 2026 StableLlama
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""Defines the stream relay unit so this responsibility stays isolated, testable, and easy to evolve.

Utility for forwarding generation events to one connected client as
server-sent events (SSE).

The relay sits between the generation supervisor (producer, calls ``send``)
and the HTTP response body (consumer, iterates ``attach()``). A bounded queue
decouples them: a client that stops reading fills the queue, and a ``send``
that cannot enqueue within the write timeout treats the client as gone.
Closing the relay never affects the producer.
"""

from __future__ import annotations

import asyncio
import json as _json
import logging
from typing import Any, AsyncIterator, Dict

from agentsuite.services.relay.generation_state import connected_event

logger = logging.getLogger(__name__)

KEEPALIVE_FRAME = ": keep-alive\n\n"

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

_END_OF_STREAM = object()


def encode_sse(event: Dict[str, Any]) -> str:
    return f"data: {_json.dumps(event, default=str)}\n\n"


class StreamRelay:
    def __init__(
        self,
        *,
        keepalive_interval_s: float = 15.0,
        write_timeout_s: float = 5.0,
        buffer_size: int = 256,
    ) -> None:
        self._keepalive_interval_s = keepalive_interval_s
        self._write_timeout_s = write_timeout_s
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max(1, buffer_size))
        self._open = True
        self._attached = False
        self._finished = False
        self.sent_frames = 0
        self.keepalives_sent = 0

    @property
    def is_open(self) -> bool:
        return self._open

    def attach(self) -> AsyncIterator[str]:
        """Return the frame iterator backing the client's HTTP response.

        A relay can be attached once; a reconnecting client gets a new relay
        and must re-read the durable record instead of replaying this one.
        """
        if self._attached:
            raise RuntimeError("stream relay is already attached to a client")
        self._attached = True
        return self._frames()

    async def _frames(self) -> AsyncIterator[str]:
        loop = asyncio.get_running_loop()
        interval = self._keepalive_interval_s
        next_keepalive = loop.time() + interval
        try:
            yield encode_sse(connected_event())
            while self._open:
                remaining = next_keepalive - loop.time()
                if remaining <= 0:
                    next_keepalive += interval
                    if next_keepalive <= loop.time():
                        next_keepalive = loop.time() + interval
                    self.keepalives_sent += 1
                    yield KEEPALIVE_FRAME
                    continue
                try:
                    item = await asyncio.wait_for(self._queue.get(), remaining)
                except asyncio.TimeoutError:
                    continue
                if item is _END_OF_STREAM:
                    return
                yield item
        finally:
            self.detach_on_close()

    async def send(self, event: Dict[str, Any]) -> bool:
        """Forward ``event`` if the client is still connected.

        Returns whether the frame was queued. Never raises: writing after the
        client left is an expected race.
        """
        if not self._open or self._finished:
            return False
        frame = encode_sse(event)
        try:
            self._queue.put_nowait(frame)
        except asyncio.QueueFull:
            try:
                await asyncio.wait_for(self._queue.put(frame), self._write_timeout_s)
            except asyncio.TimeoutError:
                logger.info(
                    "client stopped reading for %.1fs; detaching relay",
                    self._write_timeout_s,
                )
                self.detach_on_close()
                return False
        if not self._open:
            return False
        self.sent_frames += 1
        return True

    def finish(self) -> None:
        """End the client stream once the queued frames have been delivered."""
        if self._finished:
            return
        self._finished = True
        if not self._open:
            return
        try:
            self._queue.put_nowait(_END_OF_STREAM)
        except asyncio.QueueFull:
            self.detach_on_close()

    def detach_on_close(self) -> None:
        """Mark the client connection closed. Idempotent; never reopens."""
        if not self._open:
            return
        self._open = False
        # Unblock any send() waiting for room; the frames are discarded.
        while not self._queue.empty():
            self._queue.get_nowait()
        # Wake a consumer still waiting on the queue so the response ends.
        self._queue.put_nowait(_END_OF_STREAM)
        logger.debug("client stream closed after %d frames", self.sent_frames)
