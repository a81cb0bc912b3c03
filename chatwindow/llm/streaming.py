"""Server-sent event parsing and streamed completion accumulation."""

import json
import logging
from collections.abc import AsyncIterator, Callable
from enum import Enum

from chatwindow.llm.errors import StreamParseError
from chatwindow.messages.schemas import CompletionResult, Role

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"

ProgressCallback = Callable[[CompletionResult], None]


async def iter_sse_data(lines: AsyncIterator[str]) -> AsyncIterator[str]:
    """Yield the joined ``data:`` payload of each event in an SSE line stream."""
    data_lines: list[str] = []
    async for line in lines:
        if not line:
            if data_lines:
                yield "\n".join(data_lines)
                data_lines = []
            continue
        if line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "data":
            data_lines.append(value)
    if data_lines:
        yield "\n".join(data_lines)


class StreamState(str, Enum):
    ACCUMULATING = "accumulating"
    DONE = "done"
    FAILED = "failed"


class StreamAccumulator:
    """Merge streamed completion deltas into one result.

    ``feed`` takes the payload of one event and returns True once the
    ``[DONE]`` sentinel has been seen. Content is appended verbatim and only
    right-stripped at the end; a delta role replaces the current role.
    Subscribers receive a snapshot of the cumulative result after every
    content delta. A malformed event, or an exception raised by a
    subscriber, moves the accumulator to FAILED and is re-raised.
    """

    def __init__(self, role: str = Role.ASSISTANT.value):
        self.state = StreamState.ACCUMULATING
        self._role = role
        self._content = ""
        self._subscribers: list[ProgressCallback] = []

    def subscribe(self, callback: ProgressCallback | None) -> None:
        if callback is not None:
            self._subscribers.append(callback)

    @property
    def content(self) -> str:
        return self._content

    @property
    def role(self) -> str:
        return self._role

    def snapshot(self) -> CompletionResult:
        return CompletionResult(role=self._role, content=self._content)

    def feed(self, data: str) -> bool:
        if self.state is not StreamState.ACCUMULATING:
            raise StreamParseError(f"Cannot feed events to a {self.state.value} stream")

        if data == DONE_SENTINEL:
            self._content = self._content.rstrip()
            self.state = StreamState.DONE
            return True

        try:
            delta = self._parse_delta(data)
        except StreamParseError:
            self.state = StreamState.FAILED
            logger.warning("OpenAI stream SSE event unexpected error: %r", data)
            raise

        if delta is None:
            return False

        role = delta.get("role")
        if role:
            self._role = role

        content = delta.get("content")
        if content:
            self._content += content
            self._notify()
        return False

    def _notify(self) -> None:
        snapshot = self.snapshot()
        for callback in self._subscribers:
            try:
                callback(snapshot)
            except Exception:
                self.state = StreamState.FAILED
                raise

    @staticmethod
    def _parse_delta(data: str) -> dict | None:
        try:
            payload = json.loads(data)
        except json.JSONDecodeError as e:
            raise StreamParseError(f"Malformed stream event: {e}", original_error=e) from e

        if not isinstance(payload, dict):
            raise StreamParseError("Stream event is not a JSON object", details={"data": data})

        choices = payload.get("choices")
        if not choices:
            return None
        if not isinstance(choices, list) or not isinstance(choices[0], dict):
            raise StreamParseError("Stream event has malformed choices", details={"data": data})

        delta = choices[0].get("delta")
        if delta is None:
            return None
        if not isinstance(delta, dict):
            raise StreamParseError("Stream event has malformed delta", details={"data": data})
        for key in ("role", "content"):
            if delta.get(key) is not None and not isinstance(delta[key], str):
                raise StreamParseError(f"Stream delta {key} is not a string", details={"data": data})
        return delta

    def result(self) -> CompletionResult:
        if self.state is not StreamState.DONE:
            raise StreamParseError(f"Stream result requested while {self.state.value}")
        return self.snapshot()

    async def consume(self, events: AsyncIterator[str]) -> CompletionResult:
        """Feed every event from ``events`` and return the final result."""
        async for data in events:
            if self.feed(data):
                return self.result()
        self.state = StreamState.FAILED
        raise StreamParseError("Stream ended before [DONE]")
