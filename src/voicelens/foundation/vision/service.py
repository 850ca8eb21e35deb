"""Vision query service implementation."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any

import httpx

from voicelens.common import get_logger
from voicelens.common.errors import QueryError, QueryErrorKind
from voicelens.config import Config
from voicelens.foundation.camera import CapturedFrame

PROMPT_TEMPLATE = """You are a visual assistant helping users understand what they see. Analyze this image and answer the question: "{question}"

Please provide a clear, detailed, and helpful response. Focus on:
- Being descriptive and specific about what you observe
- Answering the user's question directly
- Including relevant details about colors, objects, people, text, or scenes
- Keeping the response conversational and accessible
- If there's text in the image, read it accurately
- If asked about safety or navigation, provide practical guidance

Keep your response under 200 words but be thorough and helpful."""

MOCK_ANSWER = "I can see a red mug on a wooden desk next to a laptop."


def build_prompt(question: str) -> str:
    """Wrap a spoken question in the answering instructions."""
    return PROMPT_TEMPLATE.format(question=question)


@dataclass
class QueryResult:
    """Outcome of one vision query: an answer or a classified failure."""

    text: str | None = None
    kind: QueryErrorKind | None = None
    message: str | None = None
    latency_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.kind is None

    @property
    def spoken(self) -> str:
        """What to say to the user."""
        return self.text if self.ok else self.message


def mock_transport(answer: str = MOCK_ANSWER) -> httpx.MockTransport:
    """Transport that answers every chat completion with a fixed text."""

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "id": "chatcmpl-mock",
                "object": "chat.completion",
                "choices": [
                    {
                        "index": 0,
                        "message": {"role": "assistant", "content": answer},
                        "finish_reason": "stop",
                    }
                ],
            },
        )

    return httpx.MockTransport(handler)


class VisionQueryService:
    """Stateless adapter to an OpenAI-compatible vision endpoint.

    Sends one chat completion per question with the still image attached as a
    data URL. There are no retries; timeouts come from the HTTP client.
    """

    def __init__(
        self,
        config: Config,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self._transport = transport
        self._last_latency_ms = 0
        self._last_error: str | None = None
        self._query_count = 0
        self.logger = get_logger("vision_query")

    @property
    def endpoint(self) -> str:
        return self.config.vision.endpoint.rstrip("/")

    @property
    def configured(self) -> bool:
        return bool(self.config.vision.api_key) or self._transport is not None

    def build_payload(self, image: CapturedFrame, question: str) -> dict[str, Any]:
        """Build the chat completion request body."""
        vision = self.config.vision
        return {
            "model": vision.model,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": build_prompt(question)},
                        {
                            "type": "image_url",
                            "image_url": {"url": image.data_url, "detail": vision.detail},
                        },
                    ],
                }
            ],
            "max_tokens": vision.max_tokens,
        }

    async def query(self, image: CapturedFrame, question: str) -> str:
        """Ask a question about an image.

        Args:
            image: Encoded still frame.
            question: The user's question, verbatim.

        Returns:
            The answer text.

        Raises:
            QueryError: The service is unconfigured, the request failed, or
                the response carries no answer.
        """
        if not self.configured:
            raise QueryError(QueryErrorKind.UNCONFIGURED, "no vision API key configured")

        headers = {"Content-Type": "application/json"}
        if self.config.vision.api_key:
            headers["Authorization"] = f"Bearer {self.config.vision.api_key}"

        payload = self.build_payload(image, question)
        self._query_count += 1
        start_time = time.time()

        self.logger.info(
            "vision_query_started",
            model=payload["model"],
            image_bytes=len(image.data),
            question_chars=len(question),
        )

        try:
            async with httpx.AsyncClient(
                timeout=self.config.vision.timeout_seconds,
                transport=self._transport,
            ) as client:
                response = await client.post(
                    f"{self.endpoint}/chat/completions",
                    headers=headers,
                    json=payload,
                )
        except httpx.HTTPError as e:
            self._last_error = str(e) or type(e).__name__
            self.logger.error("vision_query_failed", error=self._last_error)
            raise QueryError(QueryErrorKind.TRANSPORT, f"API request failed: {self._last_error}") from e
        finally:
            self._last_latency_ms = int((time.time() - start_time) * 1000)

        if response.is_error:
            message = f"API request failed: {response.status_code} - {self._error_text(response)}"
            self._last_error = message
            self.logger.error(
                "vision_query_failed",
                status=response.status_code,
                error=message,
            )
            raise QueryError(QueryErrorKind.TRANSPORT, message)

        answer = self._extract_answer(response)
        if answer is None:
            self._last_error = "Invalid response from AI service"
            self.logger.error("vision_response_malformed", body=response.text[:500])
            raise QueryError(QueryErrorKind.MALFORMED_RESPONSE, self._last_error)

        self._last_error = None
        self.logger.info(
            "vision_query_completed",
            latency_ms=self._last_latency_ms,
            answer_chars=len(answer),
        )
        return answer

    async def answer(self, image: CapturedFrame, question: str) -> QueryResult:
        """Like :meth:`query`, but failures come back as a result instead of raising."""
        try:
            text = await self.query(image, question)
        except QueryError as e:
            return QueryResult(
                kind=e.kind,
                message=e.user_message,
                latency_ms=self._last_latency_ms,
            )
        return QueryResult(text=text, latency_ms=self._last_latency_ms)

    @staticmethod
    def _error_text(response: httpx.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            data = None

        if isinstance(data, dict):
            error = data.get("error")
            if isinstance(error, dict) and error.get("message"):
                return error["message"]
        return response.reason_phrase

    @staticmethod
    def _extract_answer(response: httpx.Response) -> str | None:
        try:
            data = response.json()
            content = data["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError):
            return None
        if not isinstance(content, str) or not content:
            return None
        return content

    def get_status(self) -> dict[str, Any]:
        return {
            "name": "vision",
            "endpoint": self.endpoint,
            "model": self.config.vision.model,
            "configured": self.configured,
            "queries": self._query_count,
            "latency_ms": self._last_latency_ms,
            "error": self._last_error,
        }
