# Copyright (C) 2026 StableLlama
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""Defines the relay runtime unit so this responsibility stays isolated, testable, and easy to evolve.

Process-wide wiring for streamed generations. One ``RelayRuntime`` is created
by the application factory and stored on ``app.state``; request handlers use
it to start generations and to deliver aborts.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Set, Tuple

from agentsuite.core.config import RelaySettings
from agentsuite.services.llm.llm_stream_ops import ChunkSource, EngineQuery
from agentsuite.services.relay.cancellation_registry import CancellationRegistry
from agentsuite.services.relay.generation_state import GenerationRequest
from agentsuite.services.relay.generation_supervisor import GenerationSupervisor
from agentsuite.services.relay.persistence_flusher import PersistenceFlusher
from agentsuite.services.relay.stream_relay import StreamRelay
from agentsuite.services.store.message_store import MessageStore

logger = logging.getLogger(__name__)


class RelayRuntime:
    def __init__(
        self,
        *,
        store: MessageStore,
        chunk_source: ChunkSource,
        settings: RelaySettings | None = None,
        registry: CancellationRegistry | None = None,
    ) -> None:
        self.store = store
        self.chunk_source = chunk_source
        self.settings = settings or RelaySettings()
        self.registry = registry or CancellationRegistry()
        self._tasks: Set[asyncio.Task] = set()

    @property
    def active_generations(self) -> int:
        return len(self._tasks)

    def start_generation(
        self,
        *,
        prompt: str,
        conversation_id: str,
        target_record_id: str,
        provider: str | None = None,
        model: str | None = None,
    ) -> Tuple[GenerationRequest, StreamRelay]:
        """Accept a prompt and start its supervisor in the background.

        Raises ConflictError if the conversation already has a live
        generation. Must be called from a running event loop.
        """
        request = GenerationRequest(
            conversation_id=conversation_id, target_record_id=target_record_id
        )
        handle = self.registry.register(conversation_id, request.request_id)

        settings = self.settings
        relay = StreamRelay(
            keepalive_interval_s=settings.keepalive_interval_s,
            write_timeout_s=settings.write_timeout_s,
            buffer_size=settings.client_buffer_size,
        )
        flusher = PersistenceFlusher(
            self.store,
            request,
            interval_s=settings.flush_interval_s,
            final_attempts=settings.final_flush_attempts,
            final_backoff_s=settings.final_flush_backoff_s,
        )
        query = EngineQuery(
            prompt=prompt,
            conversation_id=conversation_id,
            provider=provider,
            model=model,
            allowed_tools=settings.allowed_tools,
        )
        supervisor = GenerationSupervisor(
            request=request,
            chunk_source=self.chunk_source,
            query=query,
            flusher=flusher,
            relay=relay,
            token=handle.token,
            on_finished=lambda: self.registry.release(conversation_id, handle),
        )

        try:
            task = asyncio.get_running_loop().create_task(
                supervisor.run(), name=f"generation-{request.request_id}"
            )
        except RuntimeError:
            self.registry.release(conversation_id, handle)
            raise
        # The loop only keeps weak references to tasks.
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

        logger.info(
            "started generation %s for conversation %s -> record %s",
            request.request_id,
            conversation_id,
            target_record_id,
        )
        return request, relay

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("generation task %s crashed", task.get_name(), exc_info=exc)

    def abort(self, conversation_id: str) -> bool:
        return self.registry.cancel(conversation_id)

    async def wait_idle(self) -> None:
        """Wait until every running generation reached a terminal state."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        """Abort running generations (each saves its partial text) and close the store."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        aclose = getattr(self.store, "aclose", None)
        if aclose is not None:
            await aclose()
