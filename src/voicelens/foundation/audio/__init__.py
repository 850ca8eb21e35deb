"""Text-to-speech channel."""

from voicelens.foundation.audio.service import (
    AudioOutputController,
    MockSynthesisBackend,
    Pyttsx3SynthesisBackend,
    SpeechRequest,
    SynthesisBackend,
    SynthesisCallbacks,
    Utterance,
    Voice,
    select_voice,
)

__all__ = [
    "AudioOutputController",
    "MockSynthesisBackend",
    "Pyttsx3SynthesisBackend",
    "SpeechRequest",
    "SynthesisBackend",
    "SynthesisCallbacks",
    "Utterance",
    "Voice",
    "select_voice",
]
