# Copyright (C) 2026 StableLlama
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

import asyncio
from unittest import TestCase

from agentsuite.core.config import RelaySettings
from agentsuite.services.exceptions import ConflictError
from agentsuite.services.relay.generation_state import GenerationState
from agentsuite.services.relay.relay_runtime import RelayRuntime
from agentsuite.services.store.message_store import InMemoryMessageStore

FAST = RelaySettings(flush_interval_s=0.01, final_flush_backoff_s=0.001)


async def slow_source(query, token):
    for word in query.prompt.split():
        await asyncio.sleep(0.01)
        yield {"type": "text", "content": word + " "}
    yield {"type": "done"}


class RelayRuntimeTest(TestCase):
    def setUp(self):
        self.store = InMemoryMessageStore()
        self.runtime = RelayRuntime(
            store=self.store, chunk_source=slow_source, settings=FAST
        )

    def test_generation_finishes_without_a_client(self):
        record_id = self.store.create("conv-1")

        async def scenario():
            request, relay = self.runtime.start_generation(
                prompt="one two three",
                conversation_id="conv-1",
                target_record_id=record_id,
            )
            self.assertEqual(self.runtime.active_generations, 1)
            # Nobody ever attaches to the relay
            await self.runtime.wait_idle()
            return request

        request = asyncio.run(scenario())
        self.assertIs(request.state, GenerationState.COMPLETE)
        self.assertEqual(self.store.get(record_id)["content"], "one two three ")
        self.assertEqual(self.runtime.active_generations, 0)
        self.assertEqual(len(self.runtime.registry), 0)

    def test_concurrent_prompt_to_same_conversation_is_rejected(self):
        first = self.store.create("conv-1")
        other = self.store.create("conv-2")

        async def scenario():
            self.runtime.start_generation(
                prompt="a b c", conversation_id="conv-1", target_record_id=first
            )
            with self.assertRaises(ConflictError):
                self.runtime.start_generation(
                    prompt="x", conversation_id="conv-1", target_record_id=first
                )
            self.runtime.start_generation(
                prompt="y", conversation_id="conv-2", target_record_id=other
            )
            await self.runtime.wait_idle()

            # Once finished, the conversation accepts the next prompt
            self.runtime.start_generation(
                prompt="again", conversation_id="conv-1", target_record_id=first
            )
            await self.runtime.wait_idle()

        asyncio.run(scenario())
        self.assertEqual(self.store.get(first)["content"], "again ")
        self.assertEqual(self.store.get(other)["content"], "y ")

    def test_abort_reaches_running_generation(self):
        record_id = self.store.create("conv-1")

        async def scenario():
            request, _ = self.runtime.start_generation(
                prompt="w " * 50, conversation_id="conv-1", target_record_id=record_id
            )
            await asyncio.sleep(0.035)
            self.assertTrue(self.runtime.abort("conv-1"))
            self.assertFalse(self.runtime.abort("conv-1"))
            await self.runtime.wait_idle()
            return request

        request = asyncio.run(scenario())
        self.assertIs(request.state, GenerationState.ABORTED)
        record = self.store.get(record_id)
        self.assertEqual(record["status"], "aborted")
        self.assertTrue(record["content"].startswith("w "))
        self.assertLess(len(record["content"]), len("w " * 50))
        self.assertFalse(self.runtime.abort("conv-1"))

    def test_shutdown_saves_running_generations_as_aborted(self):
        record_id = self.store.create("conv-1")

        async def scenario():
            request, _ = self.runtime.start_generation(
                prompt="w " * 50, conversation_id="conv-1", target_record_id=record_id
            )
            await asyncio.sleep(0.035)
            await self.runtime.shutdown()
            return request

        request = asyncio.run(scenario())
        self.assertIs(request.state, GenerationState.ABORTED)
        self.assertEqual(self.store.get(record_id)["status"], "aborted")
        self.assertEqual(self.runtime.active_generations, 0)
