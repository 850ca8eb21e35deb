"""Live video feed and still-frame capture."""

from voicelens.foundation.camera.service import (
    CameraBackend,
    CaptureController,
    CapturedFrame,
    CaptureSession,
    Facing,
    MockCameraBackend,
    OpenCVCameraBackend,
    VideoDevice,
)

__all__ = [
    "CameraBackend",
    "CaptureController",
    "CapturedFrame",
    "CaptureSession",
    "Facing",
    "MockCameraBackend",
    "OpenCVCameraBackend",
    "VideoDevice",
]
