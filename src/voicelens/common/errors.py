"""Error taxonomy for VoiceLens.

Every error carries a ``user_message``: the single sentence that is spoken
and displayed when the error reaches the user. Internal detail goes into the
exception message and the logs, never into ``user_message``.
"""

from __future__ import annotations

from enum import Enum


class VoicelensError(Exception):
    """Base class for all VoiceLens errors."""

    default_user_message = "Something went wrong. Please try again."

    def __init__(self, message: str = "", user_message: str | None = None) -> None:
        super().__init__(message or self.default_user_message)
        self.user_message = (
            user_message if user_message is not None else self.default_user_message
        )


class PermissionDeniedError(VoicelensError):
    """A capability is denied or unsupported on this platform."""

    default_user_message = (
        "Microphone permission is required to ask questions. Please allow access."
    )


class CaptureErrorKind(str, Enum):
    """Capture failure classes."""

    PERMISSION_DENIED = "permission_denied"
    DEVICE_NOT_FOUND = "device_not_found"
    DEVICE_BUSY = "device_busy"
    UNSUPPORTED = "unsupported"
    NOT_READY = "not_ready"


CAPTURE_MESSAGES: dict[CaptureErrorKind, str] = {
    CaptureErrorKind.PERMISSION_DENIED: (
        "Unable to access camera. Please allow camera permissions and try again."
    ),
    CaptureErrorKind.DEVICE_NOT_FOUND: "Unable to access camera. No camera found on this device.",
    CaptureErrorKind.DEVICE_BUSY: (
        "Unable to access camera. Camera is being used by another application."
    ),
    CaptureErrorKind.UNSUPPORTED: (
        "Unable to access camera. Please check your camera settings and try again."
    ),
    CaptureErrorKind.NOT_READY: "Unable to capture image. Please ensure the camera is working.",
}


class CaptureError(VoicelensError):
    """Camera device or frame capture failure."""

    def __init__(self, kind: CaptureErrorKind, message: str = "") -> None:
        self.kind = kind
        super().__init__(message or kind.value, CAPTURE_MESSAGES[kind])


class RecognitionErrorCode(str, Enum):
    """Speech recognition failure codes, as reported by the engine."""

    NOT_ALLOWED = "not-allowed"
    SERVICE_NOT_ALLOWED = "service-not-allowed"
    NO_SPEECH = "no-speech"
    AUDIO_CAPTURE = "audio-capture"
    NETWORK = "network"
    ABORTED = "aborted"
    OTHER = "other"

    @classmethod
    def parse(cls, code: str) -> RecognitionErrorCode:
        """Map an engine error string onto a known code."""
        try:
            return cls(code)
        except ValueError:
            return cls.OTHER


# code -> (message, user_facing, revise permission to denied)
RECOGNITION_POLICY: dict[RecognitionErrorCode, tuple[str, bool, bool]] = {
    RecognitionErrorCode.NOT_ALLOWED: (
        "Microphone access denied. Please allow microphone permissions and try again.",
        True,
        True,
    ),
    RecognitionErrorCode.SERVICE_NOT_ALLOWED: (
        "Microphone access denied. Please allow microphone permissions and try again.",
        True,
        True,
    ),
    RecognitionErrorCode.NO_SPEECH: (
        "No speech detected. Please try speaking more clearly.",
        False,
        False,
    ),
    RecognitionErrorCode.AUDIO_CAPTURE: (
        "No microphone found. Please check your microphone.",
        True,
        False,
    ),
    RecognitionErrorCode.NETWORK: (
        "Network error. Please check your internet connection.",
        True,
        False,
    ),
    RecognitionErrorCode.ABORTED: ("", False, False),
    RecognitionErrorCode.OTHER: ("Speech recognition failed. Please try again.", True, False),
}


class RecognitionError(VoicelensError):
    """Classified speech recognition failure."""

    def __init__(self, code: RecognitionErrorCode | str, user_message: str | None = None) -> None:
        if not isinstance(code, RecognitionErrorCode):
            code = RecognitionErrorCode.parse(code)
        self.code = code
        message, self.user_facing, self.revokes_permission = RECOGNITION_POLICY[code]
        super().__init__(code.value, user_message if user_message is not None else message)


class QueryErrorKind(str, Enum):
    """Vision query failure classes."""

    UNCONFIGURED = "unconfigured"
    TRANSPORT = "transport"
    MALFORMED_RESPONSE = "malformed_response"


QUERY_MESSAGES: dict[QueryErrorKind, str] = {
    QueryErrorKind.UNCONFIGURED: (
        "The vision service is not configured. Please add an API key and try again."
    ),
    QueryErrorKind.TRANSPORT: "Sorry, I encountered an error analyzing the image. Please try again.",
    QueryErrorKind.MALFORMED_RESPONSE: (
        "Sorry, I encountered an error analyzing the image. Please try again."
    ),
}


class QueryError(VoicelensError):
    """Vision query failure."""

    def __init__(self, kind: QueryErrorKind, message: str = "") -> None:
        self.kind = kind
        super().__init__(message or kind.value, QUERY_MESSAGES[kind])


class SynthesisError(VoicelensError):
    """Speech output failure reported by the engine. Never fatal."""

    def __init__(self, code: str = "synthesis-failed") -> None:
        self.code = code
        super().__init__(code)
