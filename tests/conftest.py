# Copyright (C) 2026 StableLlama
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""Defines the conftest unit so this responsibility stays isolated, testable, and easy to evolve."""

import os
import tempfile
import pytest
from pathlib import Path

# Global temporary directory for the whole test session
# This acts as a safety net to prevent tests from writing uploads or raw
# engine dumps into the real data folder if an individual test forgets to redirect.
_SESSION_TEMP_DIR = None

_REDIRECTED_VARS = (
    "AGENTSUITE_UPLOADS_DIR",
    "AGENTSUITE_LLM_DUMP",
    "AGENTSUITE_LLM_DUMP_PATH",
    "CONVEX_URL",
)


@pytest.fixture(scope="session", autouse=True)
def session_temp_env():
    global _SESSION_TEMP_DIR
    _SESSION_TEMP_DIR = tempfile.TemporaryDirectory(prefix="agentsuite_test_session_")

    temp_uploads = Path(_SESSION_TEMP_DIR.name) / "uploads"
    temp_uploads.mkdir(parents=True, exist_ok=True)

    # Store originals
    originals = {name: os.environ.get(name) for name in _REDIRECTED_VARS}

    # Set session-wide defaults; no test talks to a real Convex deployment
    os.environ["AGENTSUITE_UPLOADS_DIR"] = str(temp_uploads)
    os.environ["AGENTSUITE_LLM_DUMP_PATH"] = str(
        Path(_SESSION_TEMP_DIR.name) / "llm_raw.log"
    )
    os.environ.pop("AGENTSUITE_LLM_DUMP", None)
    os.environ.pop("CONVEX_URL", None)

    yield

    # Clean up
    if _SESSION_TEMP_DIR:
        _SESSION_TEMP_DIR.cleanup()

    # Restore originals if they were there
    for name, value in originals.items():
        if value is not None:
            os.environ[name] = value
        else:
            os.environ.pop(name, None)
