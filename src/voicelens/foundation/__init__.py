"""Foundation layer components for VoiceLens."""

from voicelens.foundation.permissions import PermissionGate
from voicelens.foundation.camera import CaptureController
from voicelens.foundation.speech import SpeechInputController
from voicelens.foundation.audio import AudioOutputController
from voicelens.foundation.vision import VisionQueryService

__all__ = [
    "PermissionGate",
    "CaptureController",
    "SpeechInputController",
    "AudioOutputController",
    "VisionQueryService",
]
