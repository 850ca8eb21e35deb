"""Speech-to-text channel."""

from voicelens.foundation.speech.service import (
    GoogleRecognitionBackend,
    MockRecognitionBackend,
    RecognitionBackend,
    RecognitionCallbacks,
    RecognitionOutcome,
    SpeechInputController,
    Transcript,
)

__all__ = [
    "GoogleRecognitionBackend",
    "MockRecognitionBackend",
    "RecognitionBackend",
    "RecognitionCallbacks",
    "RecognitionOutcome",
    "SpeechInputController",
    "Transcript",
]
