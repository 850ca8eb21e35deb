"""Common utilities for VoiceLens."""

from voicelens.common.logging import get_logger, setup_logging
from voicelens.common.service import BaseComponent, ComponentState
from voicelens.common.events import EventBus, Event
from voicelens.common.state import PermissionState, SessionPhase, SessionState

__all__ = [
    "get_logger",
    "setup_logging",
    "BaseComponent",
    "ComponentState",
    "EventBus",
    "Event",
    "PermissionState",
    "SessionPhase",
    "SessionState",
]
