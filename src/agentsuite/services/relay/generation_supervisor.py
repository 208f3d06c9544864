# Copyright (C) 2026 StableLlama
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""Defines the generation supervisor unit so this responsibility stays isolated, testable, and easy to evolve.

Drives one generation from the first chunk to a terminal state.

The supervisor is the only writer of ``GenerationRequest.accumulated_text``.
Every chunk goes to the persistence flusher (throttled, guaranteed at the
end) and to the stream relay (best effort). Its task is started detached from
the HTTP request, so a client that disconnects only loses the live view; the
supervisor still reaches a terminal state and performs exactly one forced
flush.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, Tuple

from agentsuite.services.exceptions import PersistenceError
from agentsuite.services.llm.llm_stream_ops import ChunkSource, EngineQuery
from agentsuite.services.relay.cancellation_registry import CancelToken
from agentsuite.services.relay.generation_state import (
    GenerationRequest,
    GenerationState,
    RECORD_STATUS_BY_STATE,
    done_event,
    error_event,
    text_event,
)
from agentsuite.services.relay.persistence_flusher import PersistenceFlusher
from agentsuite.services.relay.stream_relay import StreamRelay

logger = logging.getLogger(__name__)

SAVE_FAILED_MESSAGE = "The response could not be saved. Please try again."

Outcome = Tuple[GenerationState, str | None]


class GenerationSupervisor:
    def __init__(
        self,
        *,
        request: GenerationRequest,
        chunk_source: ChunkSource,
        query: EngineQuery,
        flusher: PersistenceFlusher,
        relay: StreamRelay,
        token: CancelToken,
        on_finished: Callable[[], Any] | None = None,
    ) -> None:
        self.request = request
        self._chunk_source = chunk_source
        self._query = query
        self._flusher = flusher
        self._relay = relay
        self._token = token
        self._on_finished = on_finished
        self._finalized = False
        self._interrupted = False

    async def run(self) -> GenerationState:
        """Consume the chunk source to a terminal state and persist the result."""
        try:
            try:
                state, message = await self._consume()
            except asyncio.CancelledError:
                # Server shutdown: keep what we have, then let the cancellation through.
                logger.info(
                    "generation %s cancelled by the server; saving partial text",
                    self.request.request_id,
                )
                self.request.mark_cancel_requested()
                await self._finalize(GenerationState.ABORTED, None)
                raise
            await self._finalize(state, message)
            return self.request.state
        finally:
            self._release()

    def _cancel_observed(self) -> bool:
        if self._token.cancelled:
            if not self.request.cancel_requested:
                self.request.mark_cancel_requested()
            return True
        return False

    async def _consume(self) -> Outcome:
        stream = self._chunk_source(self._query, self._token)
        try:
            async for chunk in stream:
                if self._cancel_observed():
                    return GenerationState.ABORTED, None
                if self.request.state is GenerationState.PENDING:
                    self.request.transition(GenerationState.STREAMING)

                outcome = await self._handle_chunk(chunk)
                if outcome is not None:
                    return outcome
                if self._cancel_observed():
                    return GenerationState.ABORTED, None
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception(
                "chunk source failed for conversation %s", self.request.conversation_id
            )
            return GenerationState.ERRORED, str(exc) or exc.__class__.__name__
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

        if self._cancel_observed():
            return GenerationState.ABORTED, None
        return GenerationState.COMPLETE, None

    async def _handle_chunk(self, chunk: Dict[str, Any]) -> Outcome | None:
        if not isinstance(chunk, dict):
            return None
        kind = chunk.get("type")

        if kind == "text":
            content = chunk.get("content")
            if isinstance(content, str) and content:
                text = self.request.append_text(content)
                self._flusher.notify(text)
                await self._relay.send(text_event(content))
            return None
        if kind == "done":
            return GenerationState.COMPLETE, None
        if kind == "error":
            message = chunk.get("message") or chunk.get("error") or "Generation failed"
            logger.warning(
                "engine reported an error for conversation %s: %s",
                self.request.conversation_id,
                message,
            )
            return GenerationState.ERRORED, str(message)

        # thinking, tool_call and anything else informational
        await self._relay.send(chunk)
        return None

    async def _finalize(self, state: GenerationState, message: str | None) -> None:
        if self._finalized:
            return
        self._finalized = True
        request = self.request

        try:
            await self._save_final(state)
        except PersistenceError:
            logger.error(
                "final save of record %s failed; unsaved response for manual recovery "
                "(conversation %s, %d chars):\n%s",
                request.target_record_id,
                request.conversation_id,
                len(request.accumulated_text),
                request.accumulated_text,
            )
            state = GenerationState.ERRORED
            message = message or SAVE_FAILED_MESSAGE

        request.error_message = message
        request.transition(state)
        logger.info(
            "generation %s finished as %s (%d chars)",
            request.request_id,
            state.value,
            len(request.accumulated_text),
        )

        # Free the conversation before the client hears about the end.
        self._release()

        if state is GenerationState.ERRORED:
            await self._relay.send(error_event(message or "Generation failed"))
        else:
            await self._relay.send(done_event(state))
        self._relay.finish()
        if self._interrupted:
            raise asyncio.CancelledError()

    async def _save_final(self, state: GenerationState) -> None:
        """Run the forced flush to completion even if this task is cancelled.

        A cancellation that arrives meanwhile is recorded and re-raised once
        the terminal state is set.
        """
        save = asyncio.ensure_future(
            self._flusher.flush(
                self.request.accumulated_text,
                force=True,
                status=RECORD_STATUS_BY_STATE[state],
            )
        )
        while True:
            try:
                await asyncio.shield(save)
                return
            except asyncio.CancelledError:
                if save.cancelled():
                    raise
                self._interrupted = True

    def _release(self) -> None:
        callback, self._on_finished = self._on_finished, None
        if callback is not None:
            callback()
