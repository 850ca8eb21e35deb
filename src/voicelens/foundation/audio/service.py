"""Audio output controller implementation."""

from __future__ import annotations

import asyncio
import itertools
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Generator

from voicelens.common import BaseComponent, get_logger
from voicelens.common.errors import SynthesisError
from voicelens.common.events import EventBus
from voicelens.common.state import PermissionState, SessionState
from voicelens.config import Config

logger = get_logger("audio_output")

# Voice names that mark a higher-quality engine voice
PREFERRED_VOICE_MARKERS = ("Natural", "Enhanced", "Neural", "Premium", "Google", "Microsoft")

# Engine errors that only report a deliberate cancellation
CANCEL_CODES = ("interrupted", "canceled", "cancelled")

_utterance_ids = itertools.count(1)


@dataclass
class Voice:
    """Engine voice."""

    voice_id: str
    name: str
    lang: str
    local_service: bool = True


@dataclass
class SpeechRequest:
    """One synthesis request handed to the engine."""

    text: str
    lang: str
    voice: Voice | None
    rate: float
    pitch: float
    volume: float


@dataclass
class SynthesisCallbacks:
    """Engine events for one utterance. Must be invoked on the event loop."""

    on_start: Callable[[], None]
    on_end: Callable[[], None]
    on_error: Callable[[str], None]


class Utterance:
    """One speech-output request.

    Completes exactly once, whichever of natural end, cancellation, engine
    error, watchdog or skip happens first. Awaiting an utterance waits for
    that completion and returns the outcome name.
    """

    def __init__(
        self,
        text: str,
        on_complete: Callable[[], None] | None,
        loop: asyncio.AbstractEventLoop,
    ) -> None:
        self.utterance_id = next(_utterance_ids)
        self.text = text
        self.outcome: str | None = None
        self._on_complete = on_complete
        self._future: asyncio.Future[str] = loop.create_future()

    @property
    def done(self) -> bool:
        return self.outcome is not None

    def complete(self, outcome: str) -> bool:
        """Mark the utterance complete and fire its callback.

        Returns:
            False if it had already completed.
        """
        if self.outcome is not None:
            return False

        self.outcome = outcome
        if not self._future.done():
            self._future.set_result(outcome)

        if self._on_complete:
            try:
                self._on_complete()
            except Exception as e:
                logger.exception("utterance_callback_failed", utterance_id=self.utterance_id, error=str(e))
        return True

    async def wait(self) -> str:
        """Wait for completion."""
        return await self._future

    def __await__(self) -> Generator[Any, None, str]:
        return self.wait().__await__()


def _normalize_lang(lang: str) -> str:
    return lang.lower().replace("_", "-")


def select_voice(voices: list[Voice], locale: str) -> Voice | None:
    """Pick the best voice for a locale.

    Preference: a matching natural/enhanced voice, then a matching
    local-service voice, then any matching voice. None leaves the choice to
    the engine default.
    """
    prefix = _normalize_lang(locale)
    matching = [v for v in voices if _normalize_lang(v.lang).startswith(prefix)]

    for voice in matching:
        if any(marker in voice.name for marker in PREFERRED_VOICE_MARKERS):
            return voice
    for voice in matching:
        if voice.local_service:
            return voice
    return matching[0] if matching else None


class SynthesisBackend:
    """Abstract text-to-speech engine."""

    @property
    def available(self) -> bool:
        """Whether the engine can produce speech."""
        raise NotImplementedError

    async def load(self) -> None:
        """Prepare the engine and its voice list."""

    def voices(self) -> list[Voice]:
        """Voices known so far. May be empty until loaded."""
        raise NotImplementedError

    def speak(self, request: SpeechRequest, callbacks: SynthesisCallbacks) -> None:
        """Start speaking."""
        raise NotImplementedError

    def cancel(self) -> None:
        """Cancel any active or pending speech."""
        raise NotImplementedError

    def close(self) -> None:
        """Release engine resources."""

    def get_status(self) -> dict:
        """Get engine status."""
        raise NotImplementedError


class MockSynthesisBackend(SynthesisBackend):
    """Mock text-to-speech engine for testing.

    ``hang`` makes the engine never report completion; ``fail_with`` makes
    it report an engine error instead of speaking.
    """

    def __init__(
        self,
        voices: list[Voice] | None = None,
        seconds_per_char: float = 0.0,
        available: bool = True,
    ) -> None:
        self._voices = voices if voices is not None else [
            Voice("mock-default", "Mock Default", "en-US", local_service=False),
        ]
        self.seconds_per_char = seconds_per_char
        self._available = available
        self.hang = False
        self.fail_with: str | None = None
        self.raise_on_speak = False
        self.spoken: list[SpeechRequest] = []
        self.cancel_count = 0
        self._pending: asyncio.TimerHandle | None = None
        self._callbacks: SynthesisCallbacks | None = None

    @property
    def available(self) -> bool:
        return self._available

    @property
    def texts(self) -> list[str]:
        return [request.text for request in self.spoken]

    def voices(self) -> list[Voice]:
        return list(self._voices)

    def speak(self, request: SpeechRequest, callbacks: SynthesisCallbacks) -> None:
        if self.raise_on_speak:
            raise RuntimeError("speech engine unavailable")

        self.spoken.append(request)
        self._callbacks = callbacks
        loop = asyncio.get_running_loop()
        loop.call_soon(callbacks.on_start)

        if self.fail_with:
            loop.call_soon(callbacks.on_error, self.fail_with)
        elif not self.hang:
            duration = len(request.text) * self.seconds_per_char
            self._pending = loop.call_later(duration, callbacks.on_end)

    def cancel(self) -> None:
        self.cancel_count += 1
        if self._pending:
            self._pending.cancel()
            self._pending = None
        if self._callbacks:
            asyncio.get_running_loop().call_soon(self._callbacks.on_error, "canceled")
            self._callbacks = None

    def get_status(self) -> dict:
        return {
            "backend": "mock",
            "available": self._available,
            "spoken": len(self.spoken),
        }


class Pyttsx3SynthesisBackend(SynthesisBackend):
    """Offline text-to-speech through pyttsx3.

    pyttsx3 engines are not thread-safe, so every engine call runs on one
    dedicated worker thread. Cancelling only flags the request; the engine
    thread stops itself at the next word boundary, and requests queued
    behind a cancelled one are skipped before they reach the engine.
    """

    # pyttsx3 rate is words per minute; 1.0 maps to the engine's usual default
    BASE_WORDS_PER_MINUTE = 200

    def __init__(self, config: Config, engine_factory: Callable[[], Any] | None = None) -> None:
        self.config = config
        self._engine_factory = engine_factory
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="pyttsx3")
        self._engine: Any = None
        self._voices: list[Voice] = []
        self._cancelled = threading.Event()
        self._load_error: str | None = None
        self.logger = get_logger("pyttsx3_synthesis_backend")

    @property
    def available(self) -> bool:
        return self._engine is not None

    async def load(self) -> None:
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(self._executor, self._init_engine)
        except Exception as e:
            self._load_error = str(e)
            self.logger.error("pyttsx3_init_failed", error=str(e))

    def _init_engine(self) -> None:
        engine_factory = self._engine_factory
        if engine_factory is None:
            import pyttsx3

            engine_factory = pyttsx3.init

        self._engine = engine_factory()
        voices = []
        for voice in self._engine.getProperty("voices") or []:
            languages = getattr(voice, "languages", None) or []
            lang = languages[0] if languages else ""
            if isinstance(lang, bytes):
                lang = lang.decode("utf-8", errors="ignore").lstrip("\x05")
            voices.append(Voice(voice_id=voice.id, name=voice.name or voice.id, lang=lang or ""))
        self._voices = voices
        self.logger.info("pyttsx3_initialized", voices=len(voices))

    def voices(self) -> list[Voice]:
        return list(self._voices)

    def speak(self, request: SpeechRequest, callbacks: SynthesisCallbacks) -> None:
        loop = asyncio.get_running_loop()
        cancelled = threading.Event()
        self._cancelled = cancelled
        loop.run_in_executor(self._executor, self._say, loop, request, callbacks, cancelled)

    def _say(
        self,
        loop: asyncio.AbstractEventLoop,
        request: SpeechRequest,
        callbacks: SynthesisCallbacks,
        cancelled: threading.Event,
    ) -> None:
        if cancelled.is_set():
            loop.call_soon_threadsafe(callbacks.on_error, "interrupted")
            return

        engine = self._engine

        def on_word(name: str, location: int, length: int) -> None:
            # Called from inside runAndWait on this thread
            if cancelled.is_set():
                engine.stop()

        token = None
        try:
            engine.setProperty("rate", int(self.BASE_WORDS_PER_MINUTE * request.rate))
            engine.setProperty("volume", request.volume)
            if request.voice:
                engine.setProperty("voice", request.voice.voice_id)

            token = engine.connect("started-word", on_word)
            loop.call_soon_threadsafe(callbacks.on_start)
            engine.say(request.text)
            engine.runAndWait()
        except Exception as e:
            self.logger.exception("pyttsx3_speak_failed", error=str(e))
            loop.call_soon_threadsafe(callbacks.on_error, "synthesis-failed")
            return
        finally:
            if token is not None:
                engine.disconnect(token)

        if cancelled.is_set():
            loop.call_soon_threadsafe(callbacks.on_error, "interrupted")
        else:
            loop.call_soon_threadsafe(callbacks.on_end)

    def cancel(self) -> None:
        self._cancelled.set()

    def close(self) -> None:
        self._cancelled.set()
        self._executor.shutdown(wait=False)

    def get_status(self) -> dict:
        return {
            "backend": "pyttsx3",
            "available": self.available,
            "voices": len(self._voices),
            "error": self._load_error,
        }


class AudioOutputController(BaseComponent):
    """Audio output controller.

    Responsibilities:
    - Keep at most one utterance active
    - Fire each utterance's completion callback exactly once
    - Bound utterance duration with a watchdog
    """

    def __init__(
        self,
        backend: SynthesisBackend,
        config: Config,
        state: SessionState,
        events: EventBus | None = None,
    ) -> None:
        super().__init__("audio_output", config, state, events)
        self._backend = backend
        self._active: Utterance | None = None
        self._watchdog: asyncio.TimerHandle | None = None
        self.enabled = config.voice.enabled
        self.speaking = False

    async def setup(self) -> None:
        await self._backend.load()
        self.logger.info(
            "audio_output_setup",
            backend=type(self._backend).__name__,
            available=self._backend.available,
            voices=len(self._backend.voices()),
        )

    async def teardown(self) -> None:
        self.stop()
        self._backend.close()

    @property
    def active(self) -> Utterance | None:
        return self._active

    def watchdog_timeout(self, text: str) -> float:
        """Upper bound on how long an utterance of this text may take."""
        voice = self.config.voice
        return max(voice.watchdog_floor_seconds, len(text) * voice.watchdog_seconds_per_char)

    def speak(self, text: str, on_complete: Callable[[], None] | None = None) -> Utterance:
        """Speak text, replacing any utterance in flight.

        When output is disabled or unavailable, the text is blank, or the
        microphone permission is not granted, the utterance completes
        immediately without audio.

        Args:
            text: Text to speak.
            on_complete: Called exactly once when the utterance completes.

        Returns:
            The utterance; await it to wait for completion.
        """
        utterance = Utterance(text, on_complete, asyncio.get_running_loop())

        skip_reason = self._skip_reason(text)
        if skip_reason:
            self.logger.debug("speech_skipped", reason=skip_reason, utterance_id=utterance.utterance_id)
            utterance.complete("skipped")
            return utterance

        self._cancel_active("cancelled")

        voice_config = self.config.voice
        request = SpeechRequest(
            text=text.strip(),
            lang=voice_config.locale,
            voice=select_voice(self._backend.voices(), voice_config.locale),
            rate=voice_config.rate,
            pitch=voice_config.pitch,
            volume=voice_config.volume,
        )

        self._active = utterance
        callbacks = SynthesisCallbacks(
            on_start=lambda: self._on_start(utterance),
            on_end=lambda: self._on_end(utterance),
            on_error=lambda code: self._on_error(utterance, code),
        )

        try:
            self._backend.speak(request, callbacks)
        except Exception as e:
            self.logger.error("speech_start_failed", error=str(e), utterance_id=utterance.utterance_id)
            self._finish(utterance, "error")
            return utterance

        timeout = self.watchdog_timeout(request.text)
        self._watchdog = asyncio.get_running_loop().call_later(
            timeout, self._on_watchdog, utterance
        )
        self.logger.debug(
            "speech_started",
            utterance_id=utterance.utterance_id,
            chars=len(request.text),
            voice=request.voice.name if request.voice else None,
            watchdog_seconds=timeout,
        )
        self.events.emit(
            "speech.utterance",
            self.name,
            utterance_id=utterance.utterance_id,
            text=request.text,
        )
        return utterance

    async def say(self, text: str) -> str:
        """Speak text and wait for the utterance to complete.

        Returns:
            The completion outcome.
        """
        return await self.speak(text)

    def stop(self) -> None:
        """Cancel any active utterance and reset speaking state. Idempotent."""
        self._cancel_active("cancelled")
        self._cancel_watchdog()
        self.speaking = False

    def _skip_reason(self, text: str) -> str | None:
        if not self.enabled:
            return "disabled"
        if not self._backend.available:
            return "unavailable"
        if not text or not text.strip():
            return "empty"
        if self.session.microphone_permission != PermissionState.GRANTED:
            return "permission"
        return None

    def _cancel_active(self, outcome: str) -> None:
        utterance = self._active
        if utterance is None:
            return

        self._active = None
        self._cancel_watchdog()
        self.speaking = False
        try:
            self._backend.cancel()
        except Exception as e:
            self.logger.warning("speech_cancel_failed", error=str(e))
        self.logger.debug("speech_cancelled", utterance_id=utterance.utterance_id)
        utterance.complete(outcome)

    def _finish(self, utterance: Utterance, outcome: str) -> None:
        if self._active is utterance:
            self._active = None
            self._cancel_watchdog()
            self.speaking = False
        utterance.complete(outcome)

    def _on_start(self, utterance: Utterance) -> None:
        if self._active is utterance:
            self.speaking = True

    def _on_end(self, utterance: Utterance) -> None:
        if self._active is utterance:
            self.logger.debug("speech_ended", utterance_id=utterance.utterance_id)
            self._finish(utterance, "ended")

    def _on_error(self, utterance: Utterance, code: str) -> None:
        if self._active is not utterance:
            return

        error = SynthesisError(code)
        if code in CANCEL_CODES:
            self.logger.debug("speech_interrupted", code=code)
        else:
            # Non-fatal: the turn carries on silently
            self.logger.warning("speech_synthesis_failed", code=error.code)
        self._finish(utterance, "error")

    def _on_watchdog(self, utterance: Utterance) -> None:
        self._watchdog = None
        if self._active is not utterance:
            return

        self.logger.warning("speech_watchdog_expired", utterance_id=utterance.utterance_id)
        self._active = None
        self.speaking = False
        try:
            self._backend.cancel()
        except Exception as e:
            self.logger.warning("speech_cancel_failed", error=str(e))
        utterance.complete("timeout")

    def _cancel_watchdog(self) -> None:
        if self._watchdog:
            self._watchdog.cancel()
            self._watchdog = None

    def get_status(self) -> dict[str, Any]:
        status = super().get_status()
        status.update(
            {
                "enabled": self.enabled,
                "speaking": self.speaking,
                "backend": self._backend.get_status(),
            }
        )
        return status
