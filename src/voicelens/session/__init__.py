"""Voice-visual query session."""

from voicelens.session.app import VoiceSession
from voicelens.session.orchestrator import SessionOrchestrator, Turn

__all__ = ["SessionOrchestrator", "Turn", "VoiceSession"]
