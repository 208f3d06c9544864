# Copyright (C) 2026 StableLlama
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""Defines the generation state unit so this responsibility stays isolated, testable, and easy to evolve.

Shared types for one streamed generation: the lifecycle enum, the mutable
request record owned by the supervisor, and the JSON event frames sent to
clients.
"""

from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict


class GenerationState(str, enum.Enum):
    PENDING = "pending"
    STREAMING = "streaming"
    COMPLETE = "complete"
    ERRORED = "errored"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATES


_TERMINAL_STATES = frozenset(
    {GenerationState.COMPLETE, GenerationState.ERRORED, GenerationState.ABORTED}
)

_ALLOWED_TRANSITIONS = {
    GenerationState.PENDING: frozenset(
        {GenerationState.STREAMING} | _TERMINAL_STATES
    ),
    GenerationState.STREAMING: _TERMINAL_STATES,
}

# Values written to the durable record's ``status`` field.
MESSAGE_STATUS_STREAMING = "streaming"
RECORD_STATUS_BY_STATE = {
    GenerationState.COMPLETE: "complete",
    GenerationState.ERRORED: "error",
    GenerationState.ABORTED: "aborted",
}


class InvalidTransitionError(RuntimeError):
    """Raised when a state change would leave a terminal state."""


@dataclass
class GenerationRequest:
    """One prompt submission and the text produced for it so far.

    ``accumulated_text`` only ever grows; ``last_flushed_text`` is the value
    most recently acknowledged by the durable store and is always a prefix of
    ``accumulated_text``.
    """

    conversation_id: str
    target_record_id: str
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    state: GenerationState = GenerationState.PENDING
    accumulated_text: str = ""
    last_flushed_text: str = ""
    cancel_requested: bool = False
    error_message: str | None = None

    def append_text(self, fragment: str) -> str:
        if self.state.is_terminal:
            raise InvalidTransitionError(
                f"request {self.request_id} is {self.state.value}; text is frozen"
            )
        self.accumulated_text += fragment
        return self.accumulated_text

    def transition(self, new_state: GenerationState) -> None:
        if new_state == self.state:
            return
        allowed = _ALLOWED_TRANSITIONS.get(self.state, frozenset())
        if new_state not in allowed:
            raise InvalidTransitionError(
                f"cannot move request {self.request_id} from "
                f"{self.state.value} to {new_state.value}"
            )
        self.state = new_state

    def mark_cancel_requested(self) -> None:
        self.cancel_requested = True

    @property
    def record_status(self) -> str:
        return RECORD_STATUS_BY_STATE.get(self.state, MESSAGE_STATUS_STREAMING)


def connected_event(message: str = "Processing request...") -> Dict[str, Any]:
    return {"type": "connected", "message": message}


def text_event(content: str) -> Dict[str, Any]:
    return {"type": "text", "content": content}


def error_event(message: str) -> Dict[str, Any]:
    return {"type": "error", "message": message}


def done_event(state: GenerationState) -> Dict[str, Any]:
    return {"type": "done", "status": RECORD_STATUS_BY_STATE.get(state, state.value)}
