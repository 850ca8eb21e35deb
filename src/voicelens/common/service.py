"""Base class for session components."""

from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any

from voicelens.common.events import EventBus
from voicelens.common.logging import get_logger
from voicelens.common.state import SessionState
from voicelens.config import Config


class ComponentState(Enum):
    """Component lifecycle state."""

    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERROR = "error"


class BaseComponent(ABC):
    """Base class for all session components.

    Provides common functionality:
    - Lifecycle (setup/teardown wrapped by open/close)
    - Liveness flag for late callbacks
    - Logging
    - Configuration and shared session state
    """

    def __init__(
        self,
        name: str,
        config: Config,
        state: SessionState,
        events: EventBus | None = None,
    ) -> None:
        """Initialize the component.

        Args:
            name: Component name.
            config: Configuration object.
            state: Shared session state holder.
            events: Event bus for observers. A private bus is created if None.
        """
        self.name = name
        self.config = config
        self.session = state
        self.events = events or EventBus()
        self.logger = get_logger(name, component=name)
        self._state = ComponentState.STOPPED

    @property
    def state(self) -> ComponentState:
        """Get current lifecycle state."""
        return self._state

    @property
    def alive(self) -> bool:
        """Whether callbacks arriving now may still act on this component."""
        return self._state in (ComponentState.STARTING, ComponentState.RUNNING)

    @abstractmethod
    async def setup(self) -> None:
        """Acquire component resources."""

    @abstractmethod
    async def teardown(self) -> None:
        """Release component resources. Must be safe to call after a failed setup."""

    async def open(self) -> None:
        """Open the component."""
        if self.alive:
            return

        self.logger.debug("opening_component")
        self._state = ComponentState.STARTING
        try:
            await self.setup()
        except Exception as e:
            self._state = ComponentState.ERROR
            self.logger.exception("component_open_failed", error=str(e))
            raise

        self._state = ComponentState.RUNNING
        self.logger.debug("component_opened")

    async def close(self) -> None:
        """Close the component. Idempotent."""
        if self._state in (ComponentState.STOPPING, ComponentState.STOPPED):
            return

        self.logger.debug("closing_component")
        self._state = ComponentState.STOPPING
        try:
            await self.teardown()
            self._state = ComponentState.STOPPED
            self.logger.debug("component_closed")
        except Exception as e:
            self._state = ComponentState.ERROR
            self.logger.exception("component_close_failed", error=str(e))

    def get_status(self) -> dict[str, Any]:
        """Get component status."""
        return {"name": self.name, "state": self._state.value}
