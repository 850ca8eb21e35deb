"""VoiceSession - wires the components of one voice-visual query session."""

from __future__ import annotations

from typing import Any

import httpx

from voicelens.common.events import EventBus
from voicelens.common.logging import get_logger, setup_logging
from voicelens.common.state import PermissionState, SessionState
from voicelens.config import Config, load_config
from voicelens.foundation.audio import (
    AudioOutputController,
    MockSynthesisBackend,
    Pyttsx3SynthesisBackend,
    SynthesisBackend,
)
from voicelens.foundation.camera import (
    CameraBackend,
    CaptureController,
    Facing,
    MockCameraBackend,
    OpenCVCameraBackend,
)
from voicelens.foundation.permissions import (
    PermissionBackend,
    PermissionGate,
    StaticPermissionBackend,
)
from voicelens.foundation.speech import (
    GoogleRecognitionBackend,
    MockRecognitionBackend,
    RecognitionBackend,
    SpeechInputController,
)
from voicelens.foundation.vision import VisionQueryService, mock_transport
from voicelens.session.orchestrator import SessionOrchestrator, Turn


class VoiceSession:
    """One voice-visual query session.

    Builds the backends (mock or hardware), opens every component in
    dependency order and closes them in reverse.

    Example:
        async with VoiceSession() as session:
            await session.start_camera()
            turn = await session.ask()
            print(turn.answer)
    """

    def __init__(
        self,
        config: Config | None = None,
        mock_mode: bool | None = None,
        *,
        permission_backend: PermissionBackend | None = None,
        camera_backend: CameraBackend | None = None,
        recognition_backend: RecognitionBackend | None = None,
        synthesis_backend: SynthesisBackend | None = None,
        vision_transport: httpx.AsyncBaseTransport | None = None,
        configure_logging: bool = False,
    ) -> None:
        """Initialize the session.

        Args:
            config: Configuration (loaded from env/file if None).
            mock_mode: Use mock backends. Defaults to ``config.mock_mode``.
            permission_backend: Override the permission provider.
            camera_backend: Override the camera backend.
            recognition_backend: Override the speech-to-text engine.
            synthesis_backend: Override the text-to-speech engine.
            vision_transport: HTTP transport for the vision endpoint.
            configure_logging: Configure structlog from the device config.
        """
        self.config = config or load_config()
        self.mock_mode = self.config.mock_mode if mock_mode is None else mock_mode

        if configure_logging:
            setup_logging(
                level=self.config.device.log_level,
                json_output=self.config.device.mode == "production",
                component=self.config.device.name,
            )
        self.logger = get_logger("voice_session")

        self.state = SessionState()
        self.events = EventBus()

        if permission_backend is None:
            permission_backend = StaticPermissionBackend(
                {PermissionGate.CAPABILITY: PermissionState(self.config.permissions.microphone)}
            )
        if self.mock_mode:
            camera_backend = camera_backend or MockCameraBackend()
            recognition_backend = recognition_backend or MockRecognitionBackend()
            synthesis_backend = synthesis_backend or MockSynthesisBackend()
            if vision_transport is None:
                vision_transport = mock_transport()
        else:
            camera_backend = camera_backend or OpenCVCameraBackend(self.config)
            recognition_backend = recognition_backend or GoogleRecognitionBackend(self.config)
            synthesis_backend = synthesis_backend or Pyttsx3SynthesisBackend(self.config)

        self.permission_backend = permission_backend
        self.camera_backend = camera_backend
        self.recognition_backend = recognition_backend
        self.synthesis_backend = synthesis_backend

        self.permissions = PermissionGate(permission_backend, self.config, self.state, self.events)
        self.camera = CaptureController(camera_backend, self.config, self.state, self.events)
        self.speech = SpeechInputController(recognition_backend, self.config, self.state, self.events)
        self.audio = AudioOutputController(synthesis_backend, self.config, self.state, self.events)
        self.vision = VisionQueryService(self.config, transport=vision_transport)
        self.orchestrator = SessionOrchestrator(
            self.config,
            self.state,
            permissions=self.permissions,
            camera=self.camera,
            speech=self.speech,
            audio=self.audio,
            vision=self.vision,
            events=self.events,
        )

        self._components = [
            self.permissions,
            self.camera,
            self.speech,
            self.audio,
            self.orchestrator,
        ]
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    async def start(self) -> None:
        """Open every component."""
        if self._started:
            return

        self.logger.info("session_starting", mock_mode=self.mock_mode)
        opened = []
        try:
            for component in self._components:
                await component.open()
                opened.append(component)
        except Exception:
            for component in reversed(opened):
                await component.close()
            raise

        self._started = True
        self.logger.info(
            "session_started",
            microphone=self.state.microphone_permission.value,
            vision_configured=self.vision.configured,
        )

    async def close(self) -> None:
        """Cancel any turn and release every device. Idempotent."""
        if not self._started:
            return

        self.logger.info("session_stopping")
        for component in reversed(self._components):
            await component.close()
        await self.events.drain()

        self._started = False
        self.logger.info("session_stopped")

    async def start_camera(
        self,
        facing: Facing | None = None,
        wait_for_frame: bool = True,
        timeout: float = 5.0,
    ) -> bool:
        """Turn the camera on, optionally waiting until the feed has a frame."""
        started = await self.orchestrator.start_camera(facing)
        if started and wait_for_frame:
            if not await self.camera.wait_for_frame(timeout):
                self.logger.warning("camera_first_frame_timeout", timeout=timeout)
        return started

    async def ask(self) -> Turn:
        """Run one full turn."""
        return await self.orchestrator.ask()

    def get_status(self) -> dict[str, Any]:
        """Get status of every component."""
        return {
            "mock_mode": self.mock_mode,
            "phase": self.state.phase.value,
            "microphone": self.state.microphone_permission.value,
            "components": {
                component.name: component.get_status() for component in self._components
            },
            "vision": self.vision.get_status(),
        }

    async def __aenter__(self) -> VoiceSession:
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()
