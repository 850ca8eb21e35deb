"""Shared session state."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class SessionPhase(str, Enum):
    """Phase of the voice-visual query session."""

    IDLE = "idle"
    AWAITING_PERMISSION = "awaiting_permission"
    PROMPTING = "prompting"
    LISTENING = "listening"
    CAPTURING = "capturing"
    ANALYZING = "analyzing"
    SPEAKING = "speaking"
    ERROR = "error"


class PermissionState(str, Enum):
    """Authorization state of one capability."""

    UNKNOWN = "unknown"
    GRANTED = "granted"
    DENIED = "denied"


@dataclass
class SessionState:
    """Single state holder shared by reference with every component.

    ``phase`` and the turn results are written only by the orchestrator;
    ``microphone_permission`` only by the permission gate. Everyone else
    reads.
    """

    phase: SessionPhase = SessionPhase.IDLE
    microphone_permission: PermissionState = PermissionState.UNKNOWN
    current_question: str = ""
    last_answer: str | None = None
    last_error: str | None = None
    captured_image: bytes | None = None

    def clear_turn(self) -> None:
        """Reset per-turn results before a new turn."""
        self.current_question = ""
        self.last_answer = None
        self.last_error = None
