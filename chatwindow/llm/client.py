"""Completion fetch strategies: mocked, single-shot and server-streamed."""

import json
import logging
import random
from abc import ABC, abstractmethod

from chatwindow.llm.errors import APIError
from chatwindow.llm.streaming import ProgressCallback, StreamAccumulator
from chatwindow.llm.transport import Transport, TransportRequest, TransportResponse
from chatwindow.messages.schemas import CompletionResult, Role

logger = logging.getLogger(__name__)

MOCK_REPLIES = (
    "I agree",
    "Please don't expect too much from me, I'm just an AI langue model",
)


async def raise_for_status(response: TransportResponse) -> None:
    if response.ok:
        return
    reason = await response.text()
    raise APIError(
        f"OpenAI error {response.status_code or response.status_text}: {reason}",
        status_code=response.status_code,
        status_text=response.status_text,
        detail=reason,
    )


def _error_detail(payload) -> str:
    if not isinstance(payload, dict):
        return "unknown"
    detail = payload.get("detail")
    if isinstance(detail, dict) and detail.get("message"):
        return str(detail["message"])
    if detail:
        return str(detail)
    error = payload.get("error")
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    return "unknown"


def _completion_message(payload) -> dict | None:
    """Return ``choices[0].message`` when it has the expected shape."""
    if not isinstance(payload, dict):
        return None
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return None
    message = choices[0].get("message")
    if not isinstance(message, dict) or not message:
        return None
    for key in ("role", "content"):
        if message.get(key) is not None and not isinstance(message[key], str):
            return None
    return message


class CompletionFetcher(ABC):
    def __init__(self, transport: Transport | None = None, debug: bool = False):
        self._transport = transport
        self._debug = debug

    @abstractmethod
    async def fetch(
        self,
        url: str,
        request: TransportRequest,
        on_progress: ProgressCallback | None = None,
    ) -> CompletionResult:
        """Execute ``request`` against ``url`` and return the normalized completion."""
        ...


class MockedFetcher(CompletionFetcher):
    """Answers with a canned reply and never touches the transport."""

    def __init__(self, transport: Transport | None = None, debug: bool = False, rng: random.Random | None = None):
        super().__init__(transport, debug)
        self._rng = rng or random.Random()

    async def fetch(self, url, request, on_progress=None) -> CompletionResult:
        content = MOCK_REPLIES[0] if self._rng.random() > 0.5 else MOCK_REPLIES[1]
        return CompletionResult(role=Role.ASSISTANT.value, content=content)


class SingleShotFetcher(CompletionFetcher):
    async def fetch(self, url, request, on_progress=None) -> CompletionResult:
        response = await self._transport.send(url, request)
        await raise_for_status(response)

        body = await response.text()
        try:
            payload = json.loads(body)
        except json.JSONDecodeError as e:
            raise APIError(
                f"OpenAI error: {body or 'unknown'}",
                status_code=response.status_code,
                status_text=response.status_text,
                detail=body,
                original_error=e,
            ) from e
        if self._debug:
            logger.info("[CreateChatCompletionResponse] %s", payload)

        message = _completion_message(payload)
        if message is None:
            detail = _error_detail(payload)
            raise APIError(
                f"OpenAI error: {detail}",
                status_code=response.status_code,
                status_text=response.status_text,
                detail=detail,
            )

        result = CompletionResult(content=message.get("content") or "", raw_response=payload)
        if message.get("role"):
            result.role = message["role"]
        return result


class StreamedFetcher(CompletionFetcher):
    async def fetch(self, url, request, on_progress=None) -> CompletionResult:
        accumulator = StreamAccumulator()
        accumulator.subscribe(on_progress)
        async with self._transport.stream(url, request) as response:
            await raise_for_status(response)
            return await accumulator.consume(response.aiter_events())


def get_fetcher(transport: Transport, *, stream: bool, mock: bool = False, debug: bool = False) -> CompletionFetcher:
    if mock:
        return MockedFetcher(transport, debug)
    if stream:
        return StreamedFetcher(transport, debug)
    return SingleShotFetcher(transport, debug)
