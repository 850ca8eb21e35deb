"""Tests for the speech input controller."""

import asyncio
import time

import pytest

from voicelens.common.errors import RecognitionError, RecognitionErrorCode
from voicelens.common.state import PermissionState
from voicelens.foundation.speech import (
    GoogleRecognitionBackend,
    MockRecognitionBackend,
    SpeechInputController,
    Transcript,
)
from voicelens.foundation.speech.service import START_FAILED_MESSAGE, RecognitionCallbacks


class TestRecognitionErrors:
    """Tests for the recognition error policy."""

    @pytest.mark.parametrize(
        "code,user_facing,revokes",
        [
            ("not-allowed", True, True),
            ("service-not-allowed", True, True),
            ("no-speech", False, False),
            ("audio-capture", True, False),
            ("network", True, False),
            ("aborted", False, False),
            ("bad-grammar", True, False),
        ],
    )
    def test_policy(self, code, user_facing, revokes):
        error = RecognitionError(code)

        assert error.user_facing is user_facing
        assert error.revokes_permission is revokes

    def test_unknown_code_maps_to_other(self):
        error = RecognitionError("bad-grammar")

        assert error.code == RecognitionErrorCode.OTHER
        assert error.user_message == "Speech recognition failed. Please try again."

    def test_aborted_has_no_message(self):
        assert RecognitionError(RecognitionErrorCode.ABORTED).user_message == ""


class TestTranscript:
    """Tests for Transcript."""

    def test_is_answer(self):
        assert Transcript("What is this?").is_answer()
        assert Transcript("abc").is_answer()
        assert not Transcript("hi").is_answer()
        assert not Transcript("  a  ").is_answer()


class TestSpeechInputController:
    """Tests for SpeechInputController."""

    @pytest.mark.asyncio
    async def test_listen_transcript(self, speech, recognition_backend):
        """Test one attempt producing a transcript."""
        recognition_backend.queue(Transcript("What do you see?", 0.9))

        outcome = await speech.listen()

        assert outcome.transcript.text == "What do you see?"
        assert outcome.transcript.confidence == 0.9
        assert outcome.error is None
        assert not speech.listening

    @pytest.mark.asyncio
    async def test_listen_error(self, speech, recognition_backend):
        """Test one attempt ending in an engine error."""
        recognition_backend.queue(RecognitionErrorCode.NETWORK)

        outcome = await speech.listen()

        assert outcome.transcript is None
        assert outcome.error.code == RecognitionErrorCode.NETWORK
        assert not outcome.clean

    @pytest.mark.asyncio
    async def test_listen_without_result(self, speech, recognition_backend):
        """Test an attempt that ends silently."""
        recognition_backend.queue(None)

        outcome = await speech.listen()

        assert outcome.transcript is None
        assert outcome.error is None

    @pytest.mark.asyncio
    async def test_stop_resolves_pending_listen(self, speech, recognition_backend):
        """Test that stopping ends a waiting attempt without a result."""
        task = asyncio.create_task(speech.listen())
        await asyncio.sleep(0.01)
        assert speech.listening

        speech.stop()
        outcome = await asyncio.wait_for(task, timeout=1.0)

        assert outcome.transcript is None
        assert outcome.error is None
        assert not speech.listening
        assert recognition_backend.stop_count == 1

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, speech):
        """Test stopping while idle."""
        speech.stop()
        speech.stop()
        assert not speech.listening

    @pytest.mark.asyncio
    async def test_start_while_listening_stops(self, speech, recognition_backend):
        """Test that a second start stops the running attempt instead."""
        assert speech.start() is True
        assert speech.listening

        assert speech.start() is False

        assert not speech.listening
        assert recognition_backend.start_count == 1

    @pytest.mark.asyncio
    async def test_start_failure(self, speech, recognition_backend):
        """Test that an engine refusing to start is reported as an outcome."""
        recognition_backend.fail_start = True

        outcome = await speech.listen()

        assert outcome.error.code == RecognitionErrorCode.OTHER
        assert outcome.error.user_message == START_FAILED_MESSAGE
        assert not speech.listening

    @pytest.mark.asyncio
    async def test_late_events_ignored(self, speech, recognition_backend):
        """Test that events from a stopped attempt never reach a new one."""
        recognition_backend.delay = 0.05
        recognition_backend.queue("old question", "new question")

        first = asyncio.create_task(speech.listen())
        await asyncio.sleep(0)
        second = await speech.listen()
        stale = await first

        assert stale.transcript is None
        assert second.transcript.text == "new question"

    @pytest.mark.asyncio
    async def test_unsupported(self, mock_config, session_state):
        """Test reporting an unsupported engine."""
        controller = SpeechInputController(
            MockRecognitionBackend(supported=False), mock_config, session_state
        )
        assert not controller.supported

    @pytest.mark.asyncio
    async def test_closed_controller_does_not_start(self, mock_config, session_state):
        """Test that nothing starts before the controller is opened."""
        backend = MockRecognitionBackend()
        controller = SpeechInputController(backend, mock_config, session_state)

        outcome = await controller.listen()

        assert outcome.transcript is None
        assert backend.start_count == 0


class TestAutoRestart:
    """Tests for continuous listening."""

    @pytest.fixture
    def outcomes(self, speech):
        received = []
        speech.set_listener(received.append)
        return received

    @pytest.mark.asyncio
    async def test_restart_after_clean_end(self, speech, recognition_backend, mock_config, outcomes):
        """Test that a clean end restarts listening."""
        mock_config.speech.auto_restart = True
        recognition_backend.queue("first question", "second question")

        speech.start()
        await asyncio.sleep(0.2)

        assert [o.transcript.text for o in outcomes] == ["first question", "second question"]
        assert recognition_backend.start_count == 3
        assert speech.listening

    @pytest.mark.asyncio
    async def test_no_restart_after_error(self, speech, recognition_backend, mock_config, outcomes):
        """Test that an error-terminated end does not restart."""
        mock_config.speech.auto_restart = True
        recognition_backend.queue(RecognitionErrorCode.NO_SPEECH, "never heard")

        speech.start()
        await asyncio.sleep(0.1)

        assert len(outcomes) == 1
        assert outcomes[0].error.code == RecognitionErrorCode.NO_SPEECH
        assert recognition_backend.start_count == 1
        assert not speech.listening

    @pytest.mark.asyncio
    async def test_no_restart_without_permission(
        self, speech, recognition_backend, mock_config, session_state, outcomes
    ):
        """Test that a revoked permission stops continuous listening."""
        mock_config.speech.auto_restart = True
        recognition_backend.queue("first question", "second question")

        speech.start()
        session_state.microphone_permission = PermissionState.DENIED
        await asyncio.sleep(0.1)

        assert len(outcomes) == 1
        assert recognition_backend.start_count == 1

    @pytest.mark.asyncio
    async def test_no_restart_when_guard_refuses(
        self, speech, recognition_backend, mock_config, outcomes
    ):
        """Test the owner's restart guard."""
        mock_config.speech.auto_restart = True
        speech.set_restart_guard(lambda: False)
        recognition_backend.queue("first question", "second question")

        speech.start()
        await asyncio.sleep(0.1)

        assert recognition_backend.start_count == 1

    @pytest.mark.asyncio
    async def test_no_restart_after_close(self, mock_config, session_state):
        """Test that a pending restart dies with the controller."""
        mock_config.speech.auto_restart = True
        mock_config.speech.restart_delay_seconds = 0.05
        backend = MockRecognitionBackend(["only question"], delay=0.0)
        controller = SpeechInputController(backend, mock_config, session_state)
        await controller.open()

        controller.start()
        await asyncio.sleep(0.01)
        await controller.close()
        await asyncio.sleep(0.1)

        assert backend.start_count == 1

    @pytest.mark.asyncio
    async def test_disabled(self, speech, recognition_backend, mock_config, outcomes):
        """Test that continuous listening can be switched off."""
        mock_config.speech.auto_restart = False
        recognition_backend.queue("first question", "second question")

        speech.start()
        await asyncio.sleep(0.1)

        assert len(outcomes) == 1
        assert recognition_backend.start_count == 1


class FakeMicrophone:
    """Microphone stand-in that counts concurrent opens."""

    def __init__(self):
        self.opens = 0
        self.open_now = 0
        self.max_open = 0

    def __call__(self):
        return self

    def __enter__(self):
        self.opens += 1
        self.open_now += 1
        self.max_open = max(self.max_open, self.open_now)
        return self

    def __exit__(self, *exc_info):
        self.open_now -= 1
        return False


class FakeRecognizer:
    """Recognizer stand-in: silent unless given a phrase."""

    def __init__(self, sr, phrase=None):
        self.sr = sr
        self.phrase = phrase

    def adjust_for_ambient_noise(self, source, duration=1):
        pass

    def listen(self, source, timeout=None, phrase_time_limit=None):
        if self.phrase is None:
            time.sleep(timeout)
            raise self.sr.WaitTimeoutError("listening timed out while waiting for phrase to start")
        return self.phrase

    def recognize_google(self, audio_data, language=None, show_all=False):
        return {"alternative": [{"transcript": audio_data, "confidence": 0.92}]}


class TestGoogleRecognitionBackend:
    """Tests for the SpeechRecognition engine wrapper."""

    @pytest.fixture
    def sr(self):
        return pytest.importorskip("speech_recognition")

    @pytest.fixture
    def microphone(self):
        return FakeMicrophone()

    @pytest.mark.asyncio
    async def test_stop_releases_microphone(self, sr, microphone, mock_config, session_state):
        """Test that a stopped attempt frees the device for the next one."""
        recognizers = iter([FakeRecognizer(sr), FakeRecognizer(sr, "what do you see")])
        backend = GoogleRecognitionBackend(
            mock_config,
            poll_seconds=0.02,
            recognizer_factory=lambda: next(recognizers),
            microphone_factory=microphone,
        )
        controller = SpeechInputController(backend, mock_config, session_state)
        await controller.open()

        first = asyncio.ensure_future(controller.listen())
        await asyncio.sleep(0.1)
        assert microphone.open_now == 1

        controller.stop()
        stopped = await first
        assert stopped.transcript is None
        assert stopped.error is None

        outcome = await asyncio.wait_for(controller.listen(), timeout=2.0)

        assert outcome.error is None
        assert outcome.transcript.text == "what do you see"
        assert microphone.opens == 2
        assert microphone.max_open == 1
        await controller.close()

    @pytest.mark.asyncio
    async def test_silence_times_out(self, sr, microphone, mock_config, session_state):
        """Test that silence past the listen timeout reports no-speech."""
        mock_config.speech.listen_timeout_seconds = 0.05
        backend = GoogleRecognitionBackend(
            mock_config,
            poll_seconds=0.02,
            recognizer_factory=lambda: FakeRecognizer(sr),
            microphone_factory=microphone,
        )
        controller = SpeechInputController(backend, mock_config, session_state)
        await controller.open()

        outcome = await asyncio.wait_for(controller.listen(), timeout=2.0)

        assert outcome.error.code == RecognitionErrorCode.NO_SPEECH
        assert microphone.open_now == 0
        await controller.close()

    @pytest.mark.asyncio
    async def test_second_start_while_listening(self, sr, microphone, mock_config):
        """Test that only one attempt may hold the microphone."""
        backend = GoogleRecognitionBackend(
            mock_config,
            poll_seconds=0.02,
            recognizer_factory=lambda: FakeRecognizer(sr),
            microphone_factory=microphone,
        )
        callbacks = RecognitionCallbacks(
            on_start=lambda: None,
            on_result=lambda text, confidence: None,
            on_error=lambda code: None,
            on_end=lambda: None,
        )

        backend.start(callbacks)
        with pytest.raises(RuntimeError):
            backend.start(callbacks)

        backend.stop()
        backend.start(callbacks)
        backend.close()
        await asyncio.sleep(0.1)

        assert microphone.max_open == 1
