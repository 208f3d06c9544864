# Copyright (C) 2026 StableLlama
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

import os
import tempfile
from pathlib import Path
from unittest import TestCase
from unittest.mock import patch

from agentsuite.services.llm import llm_logging
from agentsuite.services.llm.llm_logging import (
    MAX_LOG_ENTRIES,
    add_llm_log,
    create_log_entry,
    finish_log_entry,
)


class LlmLoggingTest(TestCase):
    def setUp(self):
        llm_logging.llm_logs.clear()
        self.addCleanup(llm_logging.llm_logs.clear)

    def test_secrets_are_masked(self):
        entry = create_log_entry(
            "http://fake/chat/completions",
            "POST",
            {"Authorization": "Bearer k", "Content-Type": "application/json"},
            {"model": "m", "api_key": "k"},
            conversation_id="conv-1",
        )
        self.assertEqual(entry["request"]["headers"]["Authorization"], "***")
        self.assertEqual(entry["request"]["headers"]["Content-Type"], "application/json")
        self.assertEqual(entry["request"]["body"], {"model": "m", "api_key": "REDACTED"})
        self.assertEqual(entry["conversation_id"], "conv-1")
        self.assertIsNone(entry["response"]["chunks"])

    def test_log_is_bounded_and_not_duplicated(self):
        entries = [create_log_entry("u", "POST", {}, {}) for _ in range(MAX_LOG_ENTRIES + 5)]
        for entry in entries:
            add_llm_log(entry)
        finish_log_entry(entries[-1], "boom")

        self.assertEqual(len(llm_logging.llm_logs), MAX_LOG_ENTRIES)
        self.assertIs(llm_logging.llm_logs[0], entries[5])
        self.assertEqual(llm_logging.llm_logs[-1]["response"]["error_detail"], "boom")

    def test_raw_dump_file(self):
        with tempfile.TemporaryDirectory() as td:
            dump = Path(td) / "logs" / "raw.log"
            env = {"AGENTSUITE_LLM_DUMP": "1", "AGENTSUITE_LLM_DUMP_PATH": str(dump)}
            with patch.dict(os.environ, env):
                add_llm_log(create_log_entry("u", "POST", {}, {"x": 1}, conversation_id="c9"))
            text = dump.read_text(encoding="utf-8")
        self.assertIn("CONVERSATION: c9", text)
        self.assertIn('"x": 1', text)
