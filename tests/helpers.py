"""Fakes shared across the test modules."""

import json

import httpx

from chatwindow.llm.token_counter import estimate_token_usage
from chatwindow.llm.transport import HttpxTransport
from chatwindow.messages.schemas import ChatMessage


def whitespace_tokenize(text: str) -> list[str]:
    """Deterministic stand-in tokenizer: one token per whitespace-separated word."""
    return text.split()


async def estimate_words(messages: list[ChatMessage]) -> int:
    return await estimate_token_usage(messages, whitespace_tokenize)


def completion_body(content: str, role: str = "assistant") -> dict:
    return {
        "id": "chatcmpl-test",
        "object": "chat.completion",
        "choices": [{"index": 0, "message": {"role": role, "content": content}, "finish_reason": "stop"}],
        "usage": {"prompt_tokens": 10, "completion_tokens": 2, "total_tokens": 12},
    }


def sse_body(*events) -> bytes:
    frames = []
    for event in events:
        data = event if isinstance(event, str) else json.dumps(event)
        frames.append(f"data: {data}\n\n")
    return "".join(frames).encode()


def delta(content: str | None = None, role: str | None = None) -> dict:
    payload = {}
    if role is not None:
        payload["role"] = role
    if content is not None:
        payload["content"] = content
    return {"choices": [{"index": 0, "delta": payload}]}


class RecordingHandler:
    """httpx.MockTransport handler that records requests and replays a canned response."""

    def __init__(self, respond):
        self._respond = respond
        self.requests: list[httpx.Request] = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return await self._respond(request)

    @property
    def last_body(self) -> dict:
        return json.loads(self.requests[-1].content)


def make_transport(handler) -> HttpxTransport:
    return HttpxTransport(httpx.AsyncClient(transport=httpx.MockTransport(handler)))
