"""Tests for the completion fetch strategies and the httpx transport."""

import asyncio
import json

import httpx
import pytest

from chatwindow.llm.client import (
    MOCK_REPLIES,
    MockedFetcher,
    SingleShotFetcher,
    StreamedFetcher,
    get_fetcher,
)
from chatwindow.llm.errors import APIError, RequestAbortedError, StreamParseError
from chatwindow.llm.transport import CancelToken, FunctionTransport, TransportRequest, race_cancel
from helpers import RecordingHandler, completion_body, delta, make_transport, sse_body

URL = "https://api.test/v1/chat/completions"


def _request(**kwargs) -> TransportRequest:
    return TransportRequest(method="POST", headers={"Authorization": "Bearer sk-test"}, body="{}", **kwargs)


class _FixedRandom:
    def __init__(self, value):
        self._value = value

    def random(self):
        return self._value


@pytest.mark.asyncio
@pytest.mark.parametrize("roll,expected", [(0.9, MOCK_REPLIES[0]), (0.1, MOCK_REPLIES[1])])
async def test_mocked_fetcher_never_touches_transport(roll, expected):
    async def fail(request):
        raise AssertionError("mocked fetcher must not send requests")

    fetcher = MockedFetcher(make_transport(fail), rng=_FixedRandom(roll))
    result = await fetcher.fetch(URL, _request())
    assert result.role == "assistant"
    assert result.content == expected


@pytest.mark.asyncio
async def test_single_shot_returns_message_and_raw_response():
    async def respond(request):
        return httpx.Response(200, json=completion_body("It is Monday."))

    handler = RecordingHandler(respond)
    result = await SingleShotFetcher(make_transport(handler)).fetch(URL, _request())
    assert result.content == "It is Monday."
    assert result.role == "assistant"
    assert result.raw_response["id"] == "chatcmpl-test"
    assert handler.requests[0].method == "POST"
    assert handler.requests[0].headers["Authorization"] == "Bearer sk-test"


@pytest.mark.asyncio
async def test_single_shot_keeps_default_role_when_absent():
    async def respond(request):
        return httpx.Response(200, json={"choices": [{"message": {"content": "ok"}}]})

    result = await SingleShotFetcher(make_transport(respond)).fetch(URL, _request())
    assert result.role == "assistant"
    assert result.content == "ok"


@pytest.mark.asyncio
async def test_single_shot_non_success_status():
    async def respond(request):
        return httpx.Response(401, text="Incorrect API key provided")

    with pytest.raises(APIError) as exc_info:
        await SingleShotFetcher(make_transport(respond)).fetch(URL, _request())
    err = exc_info.value
    assert err.status_code == 401
    assert err.status_text == "Unauthorized"
    assert "Incorrect API key provided" in str(err)
    assert str(err).startswith("OpenAI error 401")


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload,detail",
    [
        ({"detail": {"message": "model overloaded"}}, "model overloaded"),
        ({"detail": "bad request"}, "bad request"),
        ({"choices": []}, "unknown"),
        ({}, "unknown"),
        ({"choices": [{"message": "oops"}]}, "unknown"),
        ({"choices": {"a": 1}}, "unknown"),
        ({"choices": [{"message": {"content": ["not", "text"]}}]}, "unknown"),
        ({"choices": [{"message": {}}], "error": {"message": "server error"}}, "server error"),
    ],
)
async def test_single_shot_missing_message(payload, detail):
    async def respond(request):
        return httpx.Response(200, json=payload)

    with pytest.raises(APIError) as exc_info:
        await SingleShotFetcher(make_transport(respond)).fetch(URL, _request())
    assert str(exc_info.value) == f"OpenAI error: {detail}"


@pytest.mark.asyncio
async def test_single_shot_non_json_body():
    async def respond(request):
        return httpx.Response(200, text="<html>Bad Gateway</html>")

    with pytest.raises(APIError) as exc_info:
        await SingleShotFetcher(make_transport(respond)).fetch(URL, _request())
    err = exc_info.value
    assert err.status_code == 200
    assert err.detail == "<html>Bad Gateway</html>"
    assert str(err) == "OpenAI error: <html>Bad Gateway</html>"


@pytest.mark.asyncio
async def test_streamed_fetcher_accumulates_and_reports_progress():
    async def respond(request):
        body = sse_body(delta(role="assistant"), delta("Hel"), delta("lo "), "[DONE]")
        return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})

    progress = []
    result = await StreamedFetcher(make_transport(respond)).fetch(
        URL, _request(), lambda partial: progress.append(partial.content)
    )
    assert result.content == "Hello"
    assert result.role == "assistant"
    assert progress == ["Hel", "Hello "]


@pytest.mark.asyncio
async def test_streamed_fetcher_malformed_event():
    async def respond(request):
        return httpx.Response(200, content=sse_body(delta("a"), "{oops", "[DONE]"))

    with pytest.raises(StreamParseError):
        await StreamedFetcher(make_transport(respond)).fetch(URL, _request(), lambda partial: None)


@pytest.mark.asyncio
async def test_streamed_fetcher_error_status():
    async def respond(request):
        return httpx.Response(429, text="Rate limit reached")

    with pytest.raises(APIError) as exc_info:
        await StreamedFetcher(make_transport(respond)).fetch(URL, _request(), lambda partial: None)
    assert exc_info.value.status_code == 429


def test_get_fetcher_selects_strategy():
    transport = make_transport(None)
    assert isinstance(get_fetcher(transport, stream=True, mock=True), MockedFetcher)
    assert isinstance(get_fetcher(transport, stream=True), StreamedFetcher)
    assert isinstance(get_fetcher(transport, stream=False), SingleShotFetcher)


@pytest.mark.asyncio
async def test_cancel_token_aborts_in_flight_request():
    started = asyncio.Event()
    aborted = asyncio.Event()

    async def respond(request):
        started.set()
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            aborted.set()
            raise
        return httpx.Response(200, json=completion_body("too late"))

    token = CancelToken()
    pending = asyncio.ensure_future(SingleShotFetcher(make_transport(respond)).fetch(URL, _request(cancel=token)))
    await started.wait()
    token.cancel()

    with pytest.raises(RequestAbortedError):
        await pending
    await asyncio.wait_for(aborted.wait(), timeout=1)


@pytest.mark.asyncio
async def test_pre_cancelled_token_skips_request():
    token = CancelToken()
    token.cancel()

    async def respond(request):
        raise AssertionError("request should not be sent")

    with pytest.raises(RequestAbortedError):
        await SingleShotFetcher(make_transport(respond)).fetch(URL, _request(cancel=token))


@pytest.mark.asyncio
async def test_race_cancel_without_token_just_awaits():
    async def value():
        return 42

    assert await race_cancel(value(), None) == 42


class _StubResponse:
    status_code = 200
    status_text = "OK"
    ok = True

    def __init__(self, payload):
        self._payload = payload

    async def text(self):
        return json.dumps(self._payload)

    async def json(self):
        return self._payload


@pytest.mark.asyncio
async def test_function_transport_wraps_fetch_callable():
    calls = []

    def fetch(url, request):
        calls.append((url, request.method))
        return _StubResponse(completion_body("from a plain function"))

    result = await SingleShotFetcher(FunctionTransport(fetch)).fetch(URL, _request())
    assert result.content == "from a plain function"
    assert calls == [(URL, "POST")]
