"""Permission gate implementation."""

from __future__ import annotations

from typing import Any, Callable

from voicelens.common import BaseComponent, get_logger
from voicelens.common.events import EventBus
from voicelens.common.state import PermissionState, SessionState
from voicelens.config import Config

PermissionListener = Callable[[PermissionState], None]


class PermissionBackend:
    """Abstract platform permission provider."""

    async def query(self, capability: str) -> PermissionState:
        """Query the current state of a capability."""
        raise NotImplementedError

    def subscribe(self, capability: str, listener: PermissionListener) -> Callable[[], None]:
        """Register for change notifications. Returns an unsubscribe function."""
        raise NotImplementedError


class StaticPermissionBackend(PermissionBackend):
    """Permission provider whose states are declared up front.

    Desktop platforms have no permission prompt for audio devices; the
    declared state stands in for the user's decision. :meth:`set_state`
    pushes a change to subscribers the way a platform notification would.
    """

    def __init__(self, states: dict[str, PermissionState] | None = None) -> None:
        self._states: dict[str, PermissionState] = dict(states or {})
        self._listeners: dict[str, list[PermissionListener]] = {}
        self.query_count = 0
        self.fail_queries = False
        self.logger = get_logger("static_permission_backend")

    async def query(self, capability: str) -> PermissionState:
        self.query_count += 1
        if self.fail_queries:
            raise RuntimeError(f"permission query for {capability} unsupported")
        return self._states.get(capability, PermissionState.UNKNOWN)

    def subscribe(self, capability: str, listener: PermissionListener) -> Callable[[], None]:
        self._listeners.setdefault(capability, []).append(listener)

        def unsubscribe() -> None:
            listeners = self._listeners.get(capability, [])
            if listener in listeners:
                listeners.remove(listener)

        return unsubscribe

    def set_state(self, capability: str, state: PermissionState) -> None:
        """Change a capability state and notify subscribers."""
        self._states[capability] = state
        self.logger.debug("permission_state_set", capability=capability, state=state.value)
        for listener in list(self._listeners.get(capability, [])):
            listener(state)


class PermissionGate(BaseComponent):
    """Permission gate.

    Responsibilities:
    - Cache the microphone authorization state in the session state
    - Follow platform change notifications
    - Answer the "may a turn start?" question
    """

    CAPABILITY = "microphone"

    def __init__(
        self,
        backend: PermissionBackend,
        config: Config,
        state: SessionState,
        events: EventBus | None = None,
    ) -> None:
        super().__init__("permissions", config, state, events)
        self._backend = backend
        self._unsubscribe: Callable[[], None] | None = None

    async def setup(self) -> None:
        await self.query_microphone()

    async def teardown(self) -> None:
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None

    @property
    def microphone(self) -> PermissionState:
        """Cached microphone state."""
        return self.session.microphone_permission

    async def query_microphone(self) -> PermissionState:
        """Query the platform and cache the result.

        A failing query is treated as a denial.

        Returns:
            The cached microphone state.
        """
        try:
            state = await self._backend.query(self.CAPABILITY)
        except Exception as e:
            self.logger.error("permission_query_failed", error=str(e))
            state = PermissionState.DENIED
        else:
            if self._unsubscribe is None:
                self._unsubscribe = self._backend.subscribe(self.CAPABILITY, self._on_change)

        self._update(state, source="query")
        return state

    def require_granted(self) -> bool:
        """Whether a turn may start."""
        return self.microphone == PermissionState.GRANTED

    def revise(self, state: PermissionState) -> None:
        """Apply a state learned outside the platform notification path."""
        self._update(state, source="revision")

    def _on_change(self, state: PermissionState) -> None:
        self._update(state, source="platform")

    def _update(self, state: PermissionState, source: str) -> None:
        previous = self.session.microphone_permission
        self.session.microphone_permission = state
        if previous != state:
            self.logger.info(
                "microphone_permission_changed",
                previous=previous.value,
                state=state.value,
                source=source,
            )
            self.events.emit(
                "permission.microphone",
                self.name,
                state=state.value,
                previous=previous.value,
                origin=source,
            )

    def get_status(self) -> dict[str, Any]:
        status = super().get_status()
        status["microphone"] = self.microphone.value
        return status
