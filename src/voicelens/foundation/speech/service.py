"""Speech input controller implementation."""

from __future__ import annotations

import asyncio
import importlib.util
import threading
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Union

from voicelens.common import BaseComponent, get_logger
from voicelens.common.errors import RecognitionError, RecognitionErrorCode
from voicelens.common.events import EventBus
from voicelens.common.state import PermissionState, SessionState
from voicelens.config import Config

START_FAILED_MESSAGE = "Unable to start voice recognition. Please try again."


@dataclass
class Transcript:
    """Result of one recognition attempt."""

    text: str
    confidence: float = 1.0

    def is_answer(self, min_length: int = 3) -> bool:
        """Whether the transcript is long enough to be treated as a question."""
        return len(self.text.strip()) >= min_length


@dataclass
class RecognitionOutcome:
    """How a recognition attempt ended.

    Neither transcript nor error means the attempt ended without a result
    (stopped, or the engine gave up silently).
    """

    transcript: Transcript | None = None
    error: RecognitionError | None = None

    @property
    def clean(self) -> bool:
        return self.error is None


@dataclass
class RecognitionCallbacks:
    """Engine events for one attempt. Must be invoked on the event loop."""

    on_start: Callable[[], None]
    on_result: Callable[[str, float], None]
    on_error: Callable[[str], None]
    on_end: Callable[[], None]


@dataclass
class _Attempt:
    generation: int
    future: asyncio.Future
    solicited: bool = False
    transcript: Transcript | None = None
    error: RecognitionError | None = None


class RecognitionBackend:
    """Abstract speech-to-text engine."""

    @property
    def supported(self) -> bool:
        """Whether recognition is available on this platform."""
        raise NotImplementedError

    def start(self, callbacks: RecognitionCallbacks) -> None:
        """Begin one recognition attempt. Raises if an attempt is running."""
        raise NotImplementedError

    def stop(self) -> None:
        """Stop the running attempt."""
        raise NotImplementedError

    def close(self) -> None:
        """Release engine resources."""

    def get_status(self) -> dict:
        """Get engine status."""
        raise NotImplementedError


ScriptItem = Union[str, Transcript, RecognitionErrorCode, None]


class MockRecognitionBackend(RecognitionBackend):
    """Scripted recognition engine for testing.

    Each attempt consumes one script item: a ``str`` or ``Transcript`` is
    recognized speech, a ``RecognitionErrorCode`` is an engine error and
    ``None`` ends without a result. With an empty script the attempt stays
    open until stopped.
    """

    def __init__(
        self,
        script: Iterable[ScriptItem] = (),
        delay: float = 0.0,
        supported: bool = True,
    ) -> None:
        self.script: deque[ScriptItem] = deque(script)
        self.delay = delay
        self._supported = supported
        self.fail_start = False
        self.start_count = 0
        self.stop_count = 0
        self._busy = False
        self._pending: asyncio.TimerHandle | None = None
        self._callbacks: RecognitionCallbacks | None = None

    @property
    def supported(self) -> bool:
        return self._supported

    @property
    def busy(self) -> bool:
        return self._busy

    def queue(self, *items: ScriptItem) -> None:
        """Append script items."""
        self.script.extend(items)

    def start(self, callbacks: RecognitionCallbacks) -> None:
        if self._busy:
            raise RuntimeError("recognition has already started")
        if self.fail_start:
            raise RuntimeError("recognition engine refused to start")

        self._busy = True
        self._callbacks = callbacks
        self.start_count += 1

        loop = asyncio.get_running_loop()
        loop.call_soon(callbacks.on_start)
        if self.script:
            item = self.script.popleft()
            self._pending = loop.call_later(self.delay, self._deliver, callbacks, item)

    def _deliver(self, callbacks: RecognitionCallbacks, item: ScriptItem) -> None:
        self._pending = None
        self._busy = False
        if isinstance(item, RecognitionErrorCode):
            callbacks.on_error(item.value)
        elif isinstance(item, Transcript):
            callbacks.on_result(item.text, item.confidence)
        elif isinstance(item, str):
            callbacks.on_result(item, 0.9)
        callbacks.on_end()

    def stop(self) -> None:
        self.stop_count += 1
        if self._pending:
            self._pending.cancel()
            self._pending = None
        if self._busy and self._callbacks:
            # Engines still report the end of a stopped attempt
            asyncio.get_running_loop().call_soon(self._callbacks.on_end)
        self._busy = False

    def get_status(self) -> dict:
        return {
            "backend": "mock",
            "supported": self._supported,
            "busy": self._busy,
            "remaining_script": len(self.script),
        }


class GoogleRecognitionBackend(RecognitionBackend):
    """Recognition via the SpeechRecognition package and Google's web API.

    Attempts run one at a time on a dedicated worker thread and every event
    is marshalled back onto the loop. The microphone is read in short
    chunks, so a stopped attempt closes the device at its next chunk
    boundary and a new attempt queues behind it instead of failing.
    """

    def __init__(
        self,
        config: Config,
        poll_seconds: float = 0.5,
        recognizer_factory: Callable[[], Any] | None = None,
        microphone_factory: Callable[[], Any] | None = None,
    ) -> None:
        self.config = config
        self.poll_seconds = poll_seconds
        self._recognizer_factory = recognizer_factory
        self._microphone_factory = microphone_factory
        self._executor: ThreadPoolExecutor | None = None
        self._worker: asyncio.Future | None = None
        self._cancelled = threading.Event()
        self.logger = get_logger("google_recognition_backend")

    @property
    def supported(self) -> bool:
        return importlib.util.find_spec("speech_recognition") is not None

    def start(self, callbacks: RecognitionCallbacks) -> None:
        if self._worker and not self._worker.done() and not self._cancelled.is_set():
            raise RuntimeError("recognition has already started")

        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="recognition")

        loop = asyncio.get_running_loop()
        cancelled = threading.Event()
        self._cancelled = cancelled
        loop.call_soon(callbacks.on_start)
        self._worker = loop.run_in_executor(
            self._executor, self._recognize, loop, callbacks, cancelled
        )

    def _recognize(
        self,
        loop: asyncio.AbstractEventLoop,
        callbacks: RecognitionCallbacks,
        cancelled: threading.Event,
    ) -> None:
        import speech_recognition as sr

        speech = self.config.speech
        try:
            if cancelled.is_set():
                loop.call_soon_threadsafe(callbacks.on_error, RecognitionErrorCode.ABORTED.value)
                return

            recognizer = (self._recognizer_factory or sr.Recognizer)()
            with (self._microphone_factory or sr.Microphone)() as source:
                recognizer.adjust_for_ambient_noise(source, duration=0.3)
                audio = self._capture(recognizer, source, cancelled)

            if audio is None or cancelled.is_set():
                loop.call_soon_threadsafe(callbacks.on_error, RecognitionErrorCode.ABORTED.value)
                return

            response = recognizer.recognize_google(audio, language=speech.language, show_all=True)
            text, confidence = self._best_alternative(response)
            if text:
                loop.call_soon_threadsafe(callbacks.on_result, text, confidence)
            else:
                loop.call_soon_threadsafe(callbacks.on_error, RecognitionErrorCode.NO_SPEECH.value)

        except (sr.WaitTimeoutError, sr.UnknownValueError):
            loop.call_soon_threadsafe(callbacks.on_error, RecognitionErrorCode.NO_SPEECH.value)
        except sr.RequestError as e:
            self.logger.warning("recognition_request_failed", error=str(e))
            loop.call_soon_threadsafe(callbacks.on_error, RecognitionErrorCode.NETWORK.value)
        except (OSError, AttributeError) as e:
            # No input device, or PyAudio missing
            self.logger.warning("microphone_unavailable", error=str(e))
            loop.call_soon_threadsafe(callbacks.on_error, RecognitionErrorCode.AUDIO_CAPTURE.value)
        except Exception as e:
            self.logger.exception("recognition_failed", error=str(e))
            loop.call_soon_threadsafe(callbacks.on_error, RecognitionErrorCode.OTHER.value)
        finally:
            loop.call_soon_threadsafe(callbacks.on_end)

    def _capture(self, recognizer: Any, source: Any, cancelled: threading.Event) -> Any:
        """Wait for a phrase in short reads. Returns None once cancelled."""
        import speech_recognition as sr

        speech = self.config.speech
        deadline = time.monotonic() + speech.listen_timeout_seconds
        while not cancelled.is_set():
            try:
                return recognizer.listen(
                    source,
                    timeout=self.poll_seconds,
                    phrase_time_limit=speech.phrase_time_limit_seconds,
                )
            except sr.WaitTimeoutError:
                if time.monotonic() >= deadline:
                    raise
        return None

    @staticmethod
    def _best_alternative(response: Any) -> tuple[str, float]:
        if not isinstance(response, dict):
            return "", 0.0
        alternatives = response.get("alternative") or []
        if not alternatives:
            return "", 0.0
        best = alternatives[0]
        return best.get("transcript", "").strip(), float(best.get("confidence", 1.0))

    def stop(self) -> None:
        self._cancelled.set()

    def close(self) -> None:
        self._cancelled.set()
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None

    def get_status(self) -> dict:
        return {
            "backend": "google",
            "supported": self.supported,
            "busy": bool(self._worker and not self._worker.done()),
        }


OutcomeListener = Callable[[RecognitionOutcome], None]


class SpeechInputController(BaseComponent):
    """Speech input controller.

    Responsibilities:
    - Run at most one recognition attempt at a time
    - Classify engine errors
    - Restart listening after clean ends (continuous listening)

    Each attempt is tagged with a generation number. Stopping, tearing down
    or starting a new attempt bumps the generation, so engine events and
    scheduled restarts belonging to an older generation are dropped.
    """

    def __init__(
        self,
        backend: RecognitionBackend,
        config: Config,
        state: SessionState,
        events: EventBus | None = None,
    ) -> None:
        super().__init__("speech", config, state, events)
        self._backend = backend
        self._attempt: _Attempt | None = None
        self._generation = 0
        self._restart_handle: asyncio.TimerHandle | None = None
        self._listener: OutcomeListener | None = None
        self._restart_guard: Callable[[], bool] | None = None

    async def setup(self) -> None:
        self.logger.info(
            "speech_setup",
            backend=type(self._backend).__name__,
            supported=self.supported,
        )

    async def teardown(self) -> None:
        self.stop()
        self._backend.close()

    @property
    def supported(self) -> bool:
        return self._backend.supported

    @property
    def listening(self) -> bool:
        return self._attempt is not None

    @property
    def generation(self) -> int:
        return self._generation

    def set_listener(self, listener: OutcomeListener | None) -> None:
        """Receive outcomes of attempts nobody is awaiting (auto-restarts)."""
        self._listener = listener

    def set_restart_guard(self, guard: Callable[[], bool] | None) -> None:
        """Extra condition checked before every automatic restart."""
        self._restart_guard = guard

    def start(self) -> bool:
        """Start a recognition attempt.

        When an attempt is already running it is stopped instead.

        Returns:
            True if a new attempt was started.
        """
        if self.listening:
            self.logger.info("recognition_already_active")
            self.stop()
            return False
        return self._begin(solicited=False) is not None

    async def listen(self) -> RecognitionOutcome:
        """Run one attempt and wait for its outcome."""
        if self.listening:
            self.stop()

        attempt = self._begin(solicited=True)
        if attempt is None:
            return RecognitionOutcome()
        return await attempt.future

    def stop(self) -> None:
        """End the current attempt without a result. Idempotent."""
        self._cancel_restart()
        self._generation += 1

        attempt = self._attempt
        if attempt is None:
            return

        try:
            self._backend.stop()
        except Exception as e:
            self.logger.warning("recognition_stop_failed", error=str(e))

        self.logger.info("recognition_stopped")
        self._finish(attempt, restart=False)

    def _begin(self, solicited: bool) -> _Attempt | None:
        if not self.alive:
            self.logger.warning("recognition_start_ignored", reason="not_open")
            return None

        self._cancel_restart()
        self._generation += 1
        loop = asyncio.get_running_loop()
        attempt = _Attempt(
            generation=self._generation,
            future=loop.create_future(),
            solicited=solicited,
        )
        self._attempt = attempt

        callbacks = RecognitionCallbacks(
            on_start=lambda: self._on_start(attempt),
            on_result=lambda text, confidence: self._on_result(attempt, text, confidence),
            on_error=lambda code: self._on_error(attempt, code),
            on_end=lambda: self._on_end(attempt),
        )

        try:
            self._backend.start(callbacks)
        except Exception as e:
            self.logger.error("recognition_start_failed", error=str(e))
            attempt.error = RecognitionError(RecognitionErrorCode.OTHER, START_FAILED_MESSAGE)
            self._finish(attempt, restart=False)
            return attempt

        self.logger.debug("recognition_started", generation=attempt.generation)
        return attempt

    def _current(self, attempt: _Attempt) -> bool:
        return self._attempt is attempt and attempt.generation == self._generation

    def _on_start(self, attempt: _Attempt) -> None:
        if self._current(attempt):
            self.logger.info("recognition_listening")

    def _on_result(self, attempt: _Attempt, text: str, confidence: float) -> None:
        if not self._current(attempt) or attempt.transcript is not None:
            return
        attempt.transcript = Transcript(text=text.strip(), confidence=confidence)
        self.logger.info("speech_recognized", text=attempt.transcript.text, confidence=confidence)

    def _on_error(self, attempt: _Attempt, code: str) -> None:
        if not self._current(attempt):
            return
        attempt.error = RecognitionError(code)
        self.logger.warning(
            "recognition_error",
            code=attempt.error.code.value,
            user_facing=attempt.error.user_facing,
        )

    def _on_end(self, attempt: _Attempt) -> None:
        if self._current(attempt):
            self._finish(attempt, restart=True)

    def _finish(self, attempt: _Attempt, restart: bool) -> None:
        if self._attempt is attempt:
            self._attempt = None

        outcome = RecognitionOutcome(transcript=attempt.transcript, error=attempt.error)
        if not attempt.future.done():
            attempt.future.set_result(outcome)

        if not attempt.solicited and self._listener:
            try:
                self._listener(outcome)
            except Exception as e:
                self.logger.exception("recognition_listener_failed", error=str(e))

        if restart and outcome.clean:
            self._schedule_restart()

    def schedule_restart(self) -> None:
        """Resume continuous listening after the restart delay, if allowed."""
        if not self.listening:
            self._schedule_restart()

    def _restart_allowed(self) -> bool:
        if not self.alive or not self.config.speech.auto_restart or not self.supported:
            return False
        if self.session.microphone_permission != PermissionState.GRANTED:
            return False
        return self._restart_guard() if self._restart_guard else True

    def _schedule_restart(self) -> None:
        if not self._restart_allowed():
            return
        generation = self._generation
        self._restart_handle = asyncio.get_running_loop().call_later(
            self.config.speech.restart_delay_seconds, self._restart, generation
        )

    def _restart(self, generation: int) -> None:
        self._restart_handle = None
        if generation != self._generation or self.listening:
            return
        if not self._restart_allowed():
            self.logger.debug("recognition_restart_skipped")
            return
        self.logger.info("recognition_restarting")
        self.start()

    def _cancel_restart(self) -> None:
        if self._restart_handle:
            self._restart_handle.cancel()
            self._restart_handle = None

    def get_status(self) -> dict[str, Any]:
        status = super().get_status()
        status.update(
            {
                "supported": self.supported,
                "listening": self.listening,
                "auto_restart": self.config.speech.auto_restart,
                "backend": self._backend.get_status(),
            }
        )
        return status
