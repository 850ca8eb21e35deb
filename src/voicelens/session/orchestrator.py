"""Turn state machine coordinating the session components."""

from __future__ import annotations

import asyncio
import itertools
import time
from dataclasses import dataclass, field
from typing import Any

from voicelens.common import BaseComponent
from voicelens.common.errors import (
    CaptureError,
    PermissionDeniedError,
    RecognitionError,
    VoicelensError,
)
from voicelens.common.events import EventBus
from voicelens.common.logging import bind_turn, clear_turn
from voicelens.common.state import PermissionState, SessionPhase, SessionState
from voicelens.config import Config
from voicelens.foundation.audio import AudioOutputController
from voicelens.foundation.camera import CaptureController, Facing
from voicelens.foundation.permissions import PermissionGate
from voicelens.foundation.speech import RecognitionOutcome, SpeechInputController
from voicelens.foundation.vision import VisionQueryService

LISTENING_PROMPT = "I'm listening. Please ask your question about what I see."
ACKNOWLEDGEMENT = "I heard: {question}. Let me analyze what I can see."
NOT_CAUGHT = "I didn't catch that clearly. Please try asking your question again."
GAVE_UP = "I still couldn't catch that. Ask again whenever you're ready."
RECOGNITION_UNSUPPORTED = (
    "Speech recognition is not supported on this device. "
    "Please install a speech recognition engine and try again."
)
CAMERA_REQUIRED = "Please turn on the camera first."
CAMERA_INACTIVE = "Camera is not active. Please turn on the camera first."
CAMERA_STARTED = "Camera started. You can now ask questions about what I see."
CAMERA_STOPPED = "Camera stopped."
CAMERA_SWITCHED = "Switched to {facing} camera."
CAMERA_FACING_SET = "Camera mode set to {facing} camera."
CAMERA_SWITCH_FAILED = "Unable to switch camera. Please try again."

_turn_ids = itertools.count(1)


@dataclass
class Turn:
    """One question-answer cycle."""

    generation: int
    turn_id: int = field(default_factory=lambda: next(_turn_ids))
    question: str | None = None
    answer: str | None = None
    error: str | None = None
    status: str = "active"
    reprompts: int = 0
    started_at: float = field(default_factory=time.time)
    finished_at: float | None = None
    recognition_error: str | None = None

    @property
    def finished(self) -> bool:
        return self.finished_at is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "turn_id": self.turn_id,
            "question": self.question,
            "answer": self.answer,
            "error": self.error,
            "status": self.status,
            "reprompts": self.reprompts,
        }


class SessionOrchestrator(BaseComponent):
    """Session orchestrator.

    Drives a turn through permission check, prompt, recognition,
    acknowledgement, capture, analysis and answer. Each turn runs as its own
    task tagged with a generation number; starting a new turn or cancelling
    bumps the generation and stops recognition and speech, and the old task
    returns at its next suspension point without touching the session state.
    """

    def __init__(
        self,
        config: Config,
        state: SessionState,
        permissions: PermissionGate,
        camera: CaptureController,
        speech: SpeechInputController,
        audio: AudioOutputController,
        vision: VisionQueryService,
        events: EventBus | None = None,
    ) -> None:
        super().__init__("session", config, state, events)
        self.permissions = permissions
        self.camera = camera
        self.speech = speech
        self.audio = audio
        self.vision = vision
        self._generation = 0
        self._task: asyncio.Task[Turn] | None = None
        self._turn: Turn | None = None

    async def setup(self) -> None:
        self.speech.set_listener(self._on_unsolicited)
        self.speech.set_restart_guard(self._restart_allowed)
        self._set_phase(SessionPhase.IDLE)

    async def teardown(self) -> None:
        self.cancel()
        self.speech.set_listener(None)
        self.speech.set_restart_guard(None)

    @property
    def phase(self) -> SessionPhase:
        return self.session.phase

    @property
    def busy(self) -> bool:
        """Whether a turn is in progress."""
        return self._task is not None and not self._task.done()

    @property
    def current_turn(self) -> Turn | None:
        return self._turn

    # Turns

    def begin_turn(self) -> asyncio.Task[Turn]:
        """Start a new turn, superseding any turn in progress.

        Returns:
            Task resolving to the finished turn.
        """
        return self._launch(question=None)

    async def ask(self) -> Turn:
        """Run one full turn and wait for it to finish."""
        return await self.begin_turn()

    def cancel(self) -> None:
        """Abandon the active turn and release recognition and speech."""
        self._generation += 1
        self.speech.stop()
        self.audio.stop()

        turn = self._turn
        if turn and not turn.finished:
            self._finish(turn, "cancelled")
            self.logger.info("turn_cancelled", turn_id=turn.turn_id)
        self._set_phase(SessionPhase.IDLE)

    def _launch(self, question: str | None) -> asyncio.Task[Turn]:
        previous = self._turn
        self._generation += 1
        self.speech.stop()
        self.audio.stop()
        if previous and not previous.finished:
            self._finish(previous, "superseded")
            self.logger.info("turn_superseded", turn_id=previous.turn_id)

        turn = Turn(generation=self._generation, question=question)
        self._turn = turn
        self._task = asyncio.get_running_loop().create_task(self._run(turn))
        return self._task

    async def _run(self, turn: Turn) -> Turn:
        bind_turn(turn.turn_id)
        self.logger.info("turn_started", solicited=turn.question is None)
        self.session.clear_turn()
        try:
            if turn.question is None:
                await self._solicit(turn)
            if turn.question is not None and not turn.finished:
                await self._answer(turn)
        except Exception as e:
            # Components convert their own failures; anything here is a bug
            self.logger.exception("turn_failed", error=str(e))
            if self._current(turn):
                turn.error = VoicelensError.default_user_message
                self.session.last_error = turn.error
                self._end(turn, "failed")
        finally:
            clear_turn()
        return turn

    async def _solicit(self, turn: Turn) -> None:
        """Check preconditions, prompt and listen until a question is accepted."""
        self._set_phase(SessionPhase.AWAITING_PERMISSION)

        reason = await self._precondition_failure()
        if not self._current(turn):
            return
        if reason:
            self.logger.info("turn_precondition_failed", reason=reason)
            await self._fail(turn, reason, status="aborted")
            return

        self._set_phase(SessionPhase.PROMPTING)
        await self.audio.say(LISTENING_PROMPT)

        min_length = self.config.speech.min_transcript_length
        while self._current(turn):
            self._set_phase(SessionPhase.LISTENING)
            outcome = await self.speech.listen()
            if not self._current(turn):
                return

            if outcome.error:
                await self._recognition_failed(turn, outcome.error)
                return

            transcript = outcome.transcript
            if transcript is None:
                self.logger.info("turn_no_transcript")
                self._end(turn, "aborted")
                return

            if transcript.is_answer(min_length):
                turn.question = transcript.text
                return

            self.logger.info("transcript_too_short", text=transcript.text, reprompts=turn.reprompts)
            if turn.reprompts >= self.config.speech.max_reprompts:
                await self._fail(turn, GAVE_UP, status="aborted")
                return

            turn.reprompts += 1
            self._set_phase(SessionPhase.PROMPTING)
            await self.audio.say(NOT_CAUGHT)

    async def _answer(self, turn: Turn) -> None:
        """Acknowledge, capture, analyze and speak the answer."""
        question = turn.question
        self.session.current_question = question

        self._set_phase(SessionPhase.CAPTURING)
        await self.audio.say(ACKNOWLEDGEMENT.format(question=question))
        if not self._current(turn):
            return

        if not self.camera.active:
            await self._fail(turn, CAMERA_INACTIVE, status="aborted")
            return
        try:
            frame = self.camera.capture_frame()
        except CaptureError as e:
            self.logger.warning("capture_failed", kind=e.kind.value, error=str(e))
            await self._fail(turn, e.user_message, status="aborted")
            return
        self.session.captured_image = frame.data

        self._set_phase(SessionPhase.ANALYZING)
        result = await self.vision.answer(frame, question)
        if not self._current(turn):
            self.logger.info("late_answer_discarded", ok=result.ok)
            return

        if not result.ok:
            self.logger.warning("analysis_failed", kind=result.kind.value)
            await self._fail(turn, result.message, status="failed")
            return

        turn.answer = result.text
        self.session.last_answer = result.text
        self.session.last_error = None
        self._set_phase(SessionPhase.SPEAKING)
        await self.audio.say(result.text)
        if self._current(turn):
            self._end(turn, "answered")

    async def _precondition_failure(self) -> str | None:
        if not self.speech.supported:
            return RECOGNITION_UNSUPPORTED

        if self.permissions.microphone == PermissionState.UNKNOWN:
            await self.permissions.query_microphone()
        if not self.permissions.require_granted():
            return PermissionDeniedError().user_message

        if not self.camera.active:
            return CAMERA_REQUIRED
        return None

    async def _recognition_failed(self, turn: Turn, error: RecognitionError) -> None:
        turn.recognition_error = error.code.value
        if error.revokes_permission:
            self.permissions.revise(PermissionState.DENIED)

        if error.user_facing:
            await self._fail(turn, error.user_message, status="failed")
        else:
            self.logger.info("recognition_ended_quietly", code=error.code.value)
            self._end(turn, "aborted")

    async def _fail(self, turn: Turn, message: str, status: str) -> None:
        """Surface a failure to the user and end the turn."""
        turn.error = message
        self.session.last_error = message
        self._set_phase(SessionPhase.ERROR)
        await self.audio.say(message)
        if self._current(turn):
            self._end(turn, status)

    def _current(self, turn: Turn) -> bool:
        return self.alive and turn.generation == self._generation

    def _end(self, turn: Turn, status: str) -> None:
        self._finish(turn, status)
        self._set_phase(SessionPhase.IDLE)
        self.logger.info("turn_finished", status=status, duration_ms=self._duration_ms(turn))
        # Listening resumes after any turn whose recognition ended cleanly
        if turn.recognition_error is None:
            self.speech.schedule_restart()

    def _finish(self, turn: Turn, status: str) -> None:
        turn.status = status
        turn.finished_at = time.time()
        self.events.emit("session.turn", self.name, **turn.to_dict())

    @staticmethod
    def _duration_ms(turn: Turn) -> int:
        return int(((turn.finished_at or time.time()) - turn.started_at) * 1000)

    def _set_phase(self, phase: SessionPhase) -> None:
        previous = self.session.phase
        self.session.phase = phase
        if previous != phase:
            self.logger.debug("phase_changed", previous=previous.value, phase=phase.value)
            self.events.emit("session.phase", self.name, phase=phase.value, previous=previous.value)

    # Continuous listening

    def _restart_allowed(self) -> bool:
        turn = self._turn
        idle = turn is None or turn.finished
        return idle and self.camera.active and self.phase == SessionPhase.IDLE

    def _on_unsolicited(self, outcome: RecognitionOutcome) -> None:
        """Handle an outcome of a listening attempt no turn is waiting for."""
        if self.busy:
            return

        error = outcome.error
        if error:
            if error.revokes_permission:
                self.permissions.revise(PermissionState.DENIED)
            if error.user_facing:
                self.session.last_error = error.user_message
                self.audio.speak(error.user_message)
            return

        transcript = outcome.transcript
        if transcript is None:
            return

        if transcript.is_answer(self.config.speech.min_transcript_length):
            self.logger.info("unsolicited_question", text=transcript.text)
            self._launch(question=transcript.text)
        else:
            self.audio.speak(NOT_CAUGHT)

    # Camera controls

    async def start_camera(self, facing: Facing | None = None) -> bool:
        """Turn the camera on and announce it."""
        try:
            await self.camera.start(facing)
        except CaptureError as e:
            self.session.last_error = e.user_message
            self.audio.speak(e.user_message)
            return False

        self.session.last_error = None
        self.audio.speak(CAMERA_STARTED)
        return True

    async def stop_camera(self) -> None:
        """Turn the camera off and announce it."""
        await self.camera.stop()
        self.session.last_error = None
        self.audio.speak(CAMERA_STOPPED)

    async def toggle_camera(self) -> bool:
        """Turn the camera off when on, on when off.

        Returns:
            Whether the camera is active afterwards.
        """
        if self.camera.active:
            await self.stop_camera()
            return False
        return await self.start_camera()

    async def switch_camera(self) -> bool:
        """Flip between front and back camera and announce the result."""
        was_active = self.camera.active
        try:
            facing = await self.camera.switch_facing()
        except CaptureError:
            self.audio.speak(CAMERA_SWITCH_FAILED)
            return False

        template = CAMERA_SWITCHED if was_active else CAMERA_FACING_SET
        self.audio.speak(template.format(facing=facing.value))
        return True

    def repeat_answer(self) -> bool:
        """Speak the last answer again, if there is one."""
        if not self.session.last_answer:
            return False
        self.audio.speak(self.session.last_answer)
        return True

    def get_status(self) -> dict[str, Any]:
        status = super().get_status()
        status.update(
            {
                "phase": self.phase.value,
                "busy": self.busy,
                "turn": self._turn.to_dict() if self._turn else None,
            }
        )
        return status
