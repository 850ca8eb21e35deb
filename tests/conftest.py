"""Pytest configuration and fixtures for VoiceLens tests."""

from __future__ import annotations

import io

import pytest

from voicelens.common.events import EventBus
from voicelens.common.state import PermissionState, SessionState
from voicelens.config import Config


def pytest_addoption(parser: pytest.Parser) -> None:
    """Add custom command line options."""
    parser.addoption(
        "--hil",
        action="store_true",
        default=False,
        help="Run hardware-in-the-loop tests (requires camera, microphone and speakers)",
    )


def pytest_configure(config: pytest.Config) -> None:
    """Configure test markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "hil: Hardware-in-the-loop tests")


def pytest_collection_modifyitems(
    config: pytest.Config, items: list[pytest.Item]
) -> None:
    """Skip HIL tests unless --hil flag is set."""
    if config.getoption("--hil"):
        return

    skip_hil = pytest.mark.skip(reason="Need --hil option to run")
    for item in items:
        if "hil" in item.keywords:
            item.add_marker(skip_hil)


@pytest.fixture
def config() -> Config:
    """Get test configuration."""
    cfg = Config()
    cfg.mock_mode = True
    cfg.device.mode = "development"
    cfg.device.log_level = "DEBUG"
    cfg.vision.api_key = "sk-test"
    cfg.camera.fps = 100
    # Turns are driven by hand; continuous listening tests opt back in
    cfg.speech.auto_restart = False
    return cfg


@pytest.fixture
def mock_config(config: Config) -> Config:
    """Get mock configuration with short speech timings."""
    config.speech.restart_delay_seconds = 0.01
    config.voice.watchdog_floor_seconds = 0.5
    return config


@pytest.fixture
def session_state() -> SessionState:
    """Fresh shared state with microphone access granted."""
    return SessionState(microphone_permission=PermissionState.GRANTED)


@pytest.fixture
def event_bus() -> EventBus:
    """Create a fresh event bus for each test."""
    return EventBus()


# Component fixtures


@pytest.fixture
def permission_backend():
    """Permission provider with microphone access granted."""
    from voicelens.foundation.permissions import StaticPermissionBackend

    return StaticPermissionBackend({"microphone": PermissionState.GRANTED})


@pytest.fixture
async def permissions(permission_backend, mock_config: Config, session_state, event_bus):
    """Create permission gate for testing."""
    from voicelens.foundation.permissions import PermissionGate

    gate = PermissionGate(permission_backend, mock_config, session_state, event_bus)
    await gate.open()
    yield gate
    await gate.close()


@pytest.fixture
def camera_backend():
    """Create mock camera backend."""
    from voicelens.foundation.camera import MockCameraBackend

    return MockCameraBackend()


@pytest.fixture
async def camera(camera_backend, mock_config: Config, session_state, event_bus):
    """Create capture controller for testing."""
    from voicelens.foundation.camera import CaptureController

    controller = CaptureController(camera_backend, mock_config, session_state, event_bus)
    await controller.open()
    yield controller
    await controller.close()


@pytest.fixture
def recognition_backend():
    """Create scripted recognition backend."""
    from voicelens.foundation.speech import MockRecognitionBackend

    return MockRecognitionBackend(delay=0.01)


@pytest.fixture
async def speech(recognition_backend, mock_config: Config, session_state, event_bus):
    """Create speech input controller for testing."""
    from voicelens.foundation.speech import SpeechInputController

    controller = SpeechInputController(recognition_backend, mock_config, session_state, event_bus)
    await controller.open()
    yield controller
    await controller.close()


@pytest.fixture
def synthesis_backend():
    """Create mock synthesis backend."""
    from voicelens.foundation.audio import MockSynthesisBackend

    return MockSynthesisBackend()


@pytest.fixture
async def audio(synthesis_backend, mock_config: Config, session_state, event_bus):
    """Create audio output controller for testing."""
    from voicelens.foundation.audio import AudioOutputController

    controller = AudioOutputController(synthesis_backend, mock_config, session_state, event_bus)
    await controller.open()
    yield controller
    await controller.close()


@pytest.fixture
async def voice_session(
    mock_config: Config,
    permission_backend,
    camera_backend,
    recognition_backend,
    synthesis_backend,
):
    """Create a fully wired mock session."""
    from voicelens.session import VoiceSession

    session = VoiceSession(
        mock_config,
        mock_mode=True,
        permission_backend=permission_backend,
        camera_backend=camera_backend,
        recognition_backend=recognition_backend,
        synthesis_backend=synthesis_backend,
    )
    await session.start()
    yield session
    await session.close()


# Mock data fixtures


@pytest.fixture
def mock_image_bytes() -> bytes:
    """Create mock JPEG image."""
    from PIL import Image

    img = Image.new("RGB", (640, 480), color=(73, 109, 137))
    buffer = io.BytesIO()
    img.save(buffer, format="JPEG", quality=80)
    return buffer.getvalue()


@pytest.fixture
def captured_frame(mock_image_bytes: bytes):
    """Encoded still frame."""
    from voicelens.foundation.camera import CapturedFrame

    return CapturedFrame(data=mock_image_bytes, width=640, height=480)
