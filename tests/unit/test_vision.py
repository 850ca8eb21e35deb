"""Tests for the vision query service."""

import json

import httpx
import pytest

from voicelens.common.errors import QueryError, QueryErrorKind
from voicelens.foundation.vision import VisionQueryService, build_prompt, mock_transport


def completion(content):
    return {"choices": [{"index": 0, "message": {"role": "assistant", "content": content}}]}


class RecordingTransport(httpx.MockTransport):
    """Mock transport that keeps the requests it served."""

    def __init__(self, status_code=200, body=None):
        self.requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            return httpx.Response(status_code, json=body)

        super().__init__(handler)


class TestPrompt:
    """Tests for the answering instructions."""

    def test_wraps_question(self):
        prompt = build_prompt("What color is the mug?")

        assert 'answer the question: "What color is the mug?"' in prompt
        assert "under 200 words" in prompt
        assert "read it accurately" in prompt


class TestVisionQueryService:
    """Tests for VisionQueryService."""

    @pytest.mark.asyncio
    async def test_query(self, config, captured_frame):
        """Test a successful query and the request it sends."""
        transport = RecordingTransport(body=completion("A red mug on a wooden table."))
        service = VisionQueryService(config, transport=transport)

        answer = await service.query(captured_frame, "What do you see?")

        assert answer == "A red mug on a wooden table."
        request = transport.requests[0]
        assert request.method == "POST"
        assert str(request.url) == "https://api.openai.com/v1/chat/completions"
        assert request.headers["Authorization"] == "Bearer sk-test"

        payload = json.loads(request.content)
        assert payload["model"] == "gpt-4o"
        assert payload["max_tokens"] == 1024
        text, image = payload["messages"][0]["content"]
        assert text["type"] == "text"
        assert '"What do you see?"' in text["text"]
        assert image["image_url"]["detail"] == "low"
        assert image["image_url"]["url"] == captured_frame.data_url

    @pytest.mark.asyncio
    async def test_unconfigured(self, config, captured_frame):
        """Test that a missing credential is a configuration error."""
        config.vision.api_key = None
        service = VisionQueryService(config)

        with pytest.raises(QueryError) as exc_info:
            await service.query(captured_frame, "What do you see?")

        assert exc_info.value.kind == QueryErrorKind.UNCONFIGURED
        assert not service.configured

    @pytest.mark.asyncio
    async def test_http_error_includes_upstream_message(self, config, captured_frame):
        """Test that a non-2xx response carries status and upstream text."""
        body = {"error": {"message": "Incorrect API key provided", "type": "invalid_request_error"}}
        service = VisionQueryService(config, transport=RecordingTransport(401, body))

        with pytest.raises(QueryError) as exc_info:
            await service.query(captured_frame, "What do you see?")

        error = exc_info.value
        assert error.kind == QueryErrorKind.TRANSPORT
        assert str(error) == "API request failed: 401 - Incorrect API key provided"
        assert error.user_message == (
            "Sorry, I encountered an error analyzing the image. Please try again."
        )

    @pytest.mark.asyncio
    async def test_http_error_without_body(self, config, captured_frame):
        """Test falling back to the status reason."""

        def handler(request):
            return httpx.Response(503, text="upstream down")

        service = VisionQueryService(config, transport=httpx.MockTransport(handler))

        with pytest.raises(QueryError) as exc_info:
            await service.query(captured_frame, "What do you see?")

        assert str(exc_info.value) == "API request failed: 503 - Service Unavailable"

    @pytest.mark.asyncio
    async def test_network_error(self, config, captured_frame):
        """Test that connection failures are transport errors."""

        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        service = VisionQueryService(config, transport=httpx.MockTransport(handler))

        with pytest.raises(QueryError) as exc_info:
            await service.query(captured_frame, "What do you see?")

        assert exc_info.value.kind == QueryErrorKind.TRANSPORT
        assert "connection refused" in str(exc_info.value)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [
            {"choices": []},
            {"choices": [{"message": {}}]},
            {"choices": [{"message": {"content": None}}]},
            {"id": "no-choices"},
        ],
    )
    async def test_malformed_response(self, config, captured_frame, body):
        """Test that a response without an answer is malformed."""
        service = VisionQueryService(config, transport=RecordingTransport(body=body))

        with pytest.raises(QueryError) as exc_info:
            await service.query(captured_frame, "What do you see?")

        assert exc_info.value.kind == QueryErrorKind.MALFORMED_RESPONSE

    @pytest.mark.asyncio
    async def test_single_attempt(self, config, captured_frame):
        """Test that failures are not retried."""
        transport = RecordingTransport(500, {"error": {"message": "boom"}})
        service = VisionQueryService(config, transport=transport)

        with pytest.raises(QueryError):
            await service.query(captured_frame, "What do you see?")

        assert len(transport.requests) == 1

    @pytest.mark.asyncio
    async def test_answer_success(self, config, captured_frame):
        """Test the non-raising variant on success."""
        service = VisionQueryService(config, transport=mock_transport("A cat."))

        result = await service.answer(captured_frame, "What is that?")

        assert result.ok
        assert result.text == "A cat."
        assert result.spoken == "A cat."

    @pytest.mark.asyncio
    async def test_answer_failure(self, config, captured_frame):
        """Test the non-raising variant on failure."""
        service = VisionQueryService(config, transport=RecordingTransport(500, {}))

        result = await service.answer(captured_frame, "What is that?")

        assert not result.ok
        assert result.kind == QueryErrorKind.TRANSPORT
        assert result.spoken == result.message
        assert "error analyzing the image" in result.message

    @pytest.mark.asyncio
    async def test_custom_endpoint(self, config, captured_frame):
        """Test a local OpenAI-compatible server."""
        config.vision.endpoint = "http://localhost:11434/v1/"
        transport = RecordingTransport(body=completion("ok"))
        service = VisionQueryService(config, transport=transport)

        await service.query(captured_frame, "Anything?")

        assert str(transport.requests[0].url) == "http://localhost:11434/v1/chat/completions"

    @pytest.mark.asyncio
    async def test_get_status(self, config, captured_frame):
        service = VisionQueryService(config, transport=mock_transport())
        await service.query(captured_frame, "What do you see?")

        status = service.get_status()

        assert status["configured"] is True
        assert status["queries"] == 1
        assert status["error"] is None
