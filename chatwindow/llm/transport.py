"""HTTP transport for the completion fetchers, with cancellation support."""

import asyncio
import json
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

import httpx

from chatwindow.llm.errors import RequestAbortedError
from chatwindow.llm.streaming import iter_sse_data
from chatwindow.llm.token_counter import resolve


class CancelToken:
    """One-shot abort signal shared between a caller, a timer and the transport."""

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


async def race_cancel(awaitable: Awaitable, cancel: CancelToken | None):
    """Await ``awaitable`` unless ``cancel`` fires first, in which case abort it."""
    if cancel is None:
        return await awaitable

    task = asyncio.ensure_future(awaitable)
    if cancel.cancelled:
        task.cancel()
        raise RequestAbortedError("Request aborted")

    waiter = asyncio.ensure_future(cancel.wait())
    try:
        await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except BaseException:
        task.cancel()
        raise
    finally:
        waiter.cancel()

    if not task.done():
        task.cancel()
        raise RequestAbortedError("Request aborted")
    return task.result()


@dataclass
class TransportRequest:
    method: str = "POST"
    headers: dict[str, str] = field(default_factory=dict)
    body: str | None = None
    cancel: CancelToken | None = None


class TransportResponse(ABC):
    status_code: int
    status_text: str

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    @abstractmethod
    async def text(self) -> str:
        ...

    async def json(self) -> Any:
        return json.loads(await self.text())

    @abstractmethod
    def aiter_events(self) -> AsyncIterator[str]:
        """Yield the ``data`` payload of each server-sent event."""
        ...


class Transport(ABC):
    @abstractmethod
    async def send(self, url: str, request: TransportRequest) -> TransportResponse:
        ...

    @abstractmethod
    def stream(self, url: str, request: TransportRequest):
        """Async context manager yielding a response whose body is read as events."""
        ...

    async def aclose(self) -> None:
        return None


class HttpxResponse(TransportResponse):
    def __init__(self, response: httpx.Response, cancel: CancelToken | None = None):
        self._response = response
        self._cancel = cancel
        self.status_code = response.status_code
        self.status_text = response.reason_phrase

    async def text(self) -> str:
        await race_cancel(self._response.aread(), self._cancel)
        return self._response.text

    async def aiter_events(self) -> AsyncIterator[str]:
        async for data in iter_sse_data(self._aiter_lines()):
            yield data

    async def _aiter_lines(self) -> AsyncIterator[str]:
        lines = self._response.aiter_lines()
        while True:
            line = await race_cancel(_next_or_none(lines), self._cancel)
            if line is None:
                return
            yield line


async def _next_or_none(iterator: AsyncIterator[str]) -> str | None:
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return None


class HttpxTransport(Transport):
    """Default transport backed by ``httpx.AsyncClient``."""

    def __init__(self, client: httpx.AsyncClient | None = None, timeout: float | None = 600.0):
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def send(self, url: str, request: TransportRequest) -> TransportResponse:
        response = await race_cancel(
            self._client.request(request.method, url, headers=request.headers, content=request.body),
            request.cancel,
        )
        return HttpxResponse(response, request.cancel)

    @asynccontextmanager
    async def stream(self, url: str, request: TransportRequest) -> AsyncIterator[TransportResponse]:
        outgoing = self._client.build_request(
            request.method, url, headers=request.headers, content=request.body
        )
        response = await race_cancel(self._client.send(outgoing, stream=True), request.cancel)
        try:
            yield HttpxResponse(response, request.cancel)
        finally:
            await response.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


FetchFn = Callable[[str, TransportRequest], TransportResponse | Awaitable[TransportResponse]]


class FunctionTransport(Transport):
    """Adapts a fetch-like ``(url, request) -> response`` callable."""

    def __init__(self, fetch: FetchFn):
        self._fetch = fetch

    async def send(self, url: str, request: TransportRequest) -> TransportResponse:
        return await race_cancel(resolve(self._fetch(url, request)), request.cancel)

    @asynccontextmanager
    async def stream(self, url: str, request: TransportRequest) -> AsyncIterator[TransportResponse]:
        response = await self.send(url, request)
        yield _CancellableEvents(response, request.cancel)


class _CancellableEvents(TransportResponse):
    """Wraps a callable's response so each event read races the cancel token."""

    def __init__(self, response: TransportResponse, cancel: CancelToken | None):
        self._response = response
        self._cancel = cancel
        self.status_code = response.status_code
        self.status_text = response.status_text

    async def text(self) -> str:
        return await race_cancel(self._response.text(), self._cancel)

    async def aiter_events(self) -> AsyncIterator[str]:
        events = self._response.aiter_events()
        while True:
            data = await race_cancel(_next_or_none(events), self._cancel)
            if data is None:
                return
            yield data
