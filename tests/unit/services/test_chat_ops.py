# Copyright (C) 2026 StableLlama
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

import asyncio
import base64
import tempfile
from pathlib import Path
from unittest import TestCase
from unittest.mock import AsyncMock, MagicMock, patch

from agentsuite.models.chat import ChatRequest, ImageAttachment
from agentsuite.services.chat.chat_prompt_ops import (
    build_chat_prompt,
    validate_chat_request,
)
from agentsuite.services.chat.title_ops import fallback_title, generate_title
from agentsuite.services.chat.upload_ops import save_image, save_images
from agentsuite.services.exceptions import BadRequestError, UpstreamError

PNG_B64 = base64.b64encode(b"\x89PNG\r\n\x1a\nfake").decode("ascii")


class ChatPromptTest(TestCase):
    def setUp(self):
        self.td = tempfile.TemporaryDirectory()
        self.addCleanup(self.td.cleanup)
        self.uploads = Path(self.td.name) / "uploads"

    def test_validation(self):
        ok = ChatRequest.model_validate(
            {"message": "hi", "conversationId": "c", "targetRecordId": "m"}
        )
        validate_chat_request(ok)

        cases = [
            ({"message": "  ", "conversationId": "c", "targetRecordId": "m"}, "Message"),
            ({"message": "hi", "targetRecordId": "m"}, "conversationId"),
            ({"message": "hi", "conversationId": "c"}, "targetRecordId"),
        ]
        for payload, needle in cases:
            with self.assertRaises(BadRequestError) as ctx:
                validate_chat_request(ChatRequest.model_validate(payload))
            self.assertIn(needle, ctx.exception.detail)

    def test_legacy_field_names_are_accepted(self):
        chat = ChatRequest.model_validate(
            {
                "prompt": "hi",
                "chatId": "c",
                "assistantMessageId": "m",
                "images": [{"originalName": "a.png", "path": "/tmp/a.png"}],
            }
        )
        self.assertEqual(chat.message, "hi")
        self.assertEqual(chat.conversation_id, "c")
        self.assertEqual(chat.target_record_id, "m")
        self.assertEqual(chat.attachments[0].name, "a.png")

    def test_prompt_without_attachments_is_the_message(self):
        chat = ChatRequest(message="Hello", conversation_id="c", target_record_id="m")
        self.assertEqual(build_chat_prompt(chat, self.uploads), "Hello")

    def test_attachments_become_read_instructions(self):
        chat = ChatRequest(
            message="What is this?",
            conversation_id="c",
            target_record_id="m",
            attachments=[
                ImageAttachment(name="old.png", path="/data/uploads/old.png"),
                ImageAttachment(name="new.png", type="image/png", data=PNG_B64),
                ImageAttachment(name="empty.png"),
            ],
        )
        prompt = build_chat_prompt(chat, self.uploads)
        lines = prompt.split("\n")
        self.assertIn("/data/uploads/old.png", lines[0])
        self.assertIn("Read tool", lines[0])
        self.assertIn(str(self.uploads.resolve()), lines[1])
        self.assertTrue(prompt.endswith("\n\nWhat is this?"))
        self.assertEqual(len(list(self.uploads.iterdir())), 1)


class UploadTest(TestCase):
    def setUp(self):
        self.td = tempfile.TemporaryDirectory()
        self.addCleanup(self.td.cleanup)
        self.uploads = Path(self.td.name) / "uploads"

    def test_save_image_writes_file_and_reports_url(self):
        saved = save_image(
            ImageAttachment(name="photo.JPG", type="image/jpeg", data=PNG_B64),
            self.uploads,
        )
        self.assertEqual(saved.originalName, "photo.JPG")
        self.assertTrue(saved.filename.endswith(".jpg"))
        self.assertEqual(saved.url, f"/images/{saved.filename}")
        self.assertEqual(
            Path(saved.path).read_bytes(), base64.b64decode(PNG_B64)
        )

    def test_extension_falls_back_to_mime_type(self):
        saved = save_image(
            ImageAttachment(name="clipboard", type="image/webp", data=PNG_B64),
            self.uploads,
        )
        self.assertTrue(saved.filename.endswith(".webp"))

    def test_save_images_skips_entries_without_data(self):
        saved = save_images(
            [
                ImageAttachment(name="a.png", data=PNG_B64),
                ImageAttachment(name="b.png"),
                ImageAttachment(name="", data=PNG_B64),
            ],
            self.uploads,
        )
        self.assertEqual([s.originalName for s in saved], ["a.png"])

    def test_missing_data_is_rejected(self):
        with self.assertRaises(BadRequestError):
            save_image(ImageAttachment(name="a.png"), self.uploads)


class TitleTest(TestCase):
    def test_fallback_title(self):
        self.assertEqual(fallback_title("short"), "short")
        long_message = "x" * 50
        self.assertEqual(fallback_title(long_message), "x" * 40 + "...")

    @patch(
        "agentsuite.services.chat.title_ops.llm_completion_ops.chat_complete_text",
        new_callable=AsyncMock,
    )
    def test_engine_title_is_cleaned(self, mock_complete):
        mock_complete.return_value = '  "Planning a Trip"\nextra line'
        title = asyncio.run(generate_title("Help me plan a trip to Rome", {}))
        self.assertEqual(title, "Planning a Trip")
        kwargs = mock_complete.call_args.kwargs
        self.assertIn("Help me plan a trip to Rome", kwargs["messages"][0]["content"])
        self.assertEqual(kwargs["max_tokens"], 20)

    @patch(
        "agentsuite.services.chat.title_ops.llm_completion_ops.chat_complete_text",
        new_callable=AsyncMock,
    )
    def test_engine_failure_falls_back(self, mock_complete):
        mock_complete.side_effect = UpstreamError("down")
        message = "A question that is definitely longer than forty characters"
        title = asyncio.run(generate_title(message, {}))
        self.assertEqual(title, message[:40] + "...")

    def test_unconfigured_engine_falls_back(self):
        self.assertEqual(asyncio.run(generate_title("Hi there", {})), "Hi there")

    @patch("agentsuite.services.llm.llm_completion_ops.httpx.AsyncClient")
    def test_malformed_engine_reply_falls_back(self, MockClientClass):
        client = MagicMock()
        MockClientClass.return_value = client
        client.__aenter__ = AsyncMock(return_value=client)
        client.__aexit__ = AsyncMock(return_value=False)
        response = MagicMock()
        response.status_code = 200
        response.json.return_value = {"choices": ["x"]}
        client.post = AsyncMock(return_value=response)

        machine = {
            "openai": {
                "models": [
                    {"name": "local", "base_url": "http://localhost:11434/v1", "model": "m"}
                ],
                "selected": "local",
            }
        }
        self.assertEqual(asyncio.run(generate_title("Hi there", machine)), "Hi there")
        client.post.assert_awaited_once()
