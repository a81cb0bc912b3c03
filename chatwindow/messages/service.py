"""Chat client: windows a conversation into the token budget and fetches a completion."""

import asyncio
import json
import logging
from collections.abc import Awaitable
from typing import Any

from chatwindow.config.settings import Settings, get_settings
from chatwindow.llm.client import get_fetcher, raise_for_status
from chatwindow.llm.context import TokenBudget, WindowResult, autoscale_messages
from chatwindow.llm.errors import CompletionTimeoutError, ConfigurationError, EmptyConversationError
from chatwindow.llm.models import DEFAULT_COMPLETION_PARAMS
from chatwindow.llm.request import (
    CHAT_COMPLETIONS_PATH,
    MODELS_PATH,
    build_completion_request,
    build_headers,
)
from chatwindow.llm import token_counter
from chatwindow.llm.streaming import ProgressCallback
from chatwindow.llm.token_counter import (
    NormalizeFn,
    Separator,
    Tokenizer,
    default_normalize_message,
    encode,
    make_tokenizer,
)
from chatwindow.llm.transport import (
    CancelToken,
    FunctionTransport,
    HttpxTransport,
    Transport,
    TransportRequest,
)
from chatwindow.messages.schemas import ChatMessage, CompletionResult, ModelInfo, ModelListResponse, coerce_messages

logger = logging.getLogger(__name__)

DEFAULT_API_BASE_URL = "https://api.openai.com"
TIMEOUT_MESSAGE = "OpenAI timed out waiting for response"


def _coerce_transport(transport) -> Transport:
    if transport is None:
        return HttpxTransport()
    if isinstance(transport, Transport):
        return transport
    if callable(transport):
        return FunctionTransport(transport)
    raise ConfigurationError('Invalid "transport" is not a function')


def _discard_outcome(task: asyncio.Task) -> None:
    if not task.cancelled() and task.exception() is not None:
        logger.debug("Abandoned completion request finished with %r", task.exception())


class ChatClient:
    """Client for a token-budgeted chat completions API.

    Conversations are trimmed to fit ``max_model_tokens`` while leaving at
    least ``min_response_tokens`` for the reply. Completions are fetched in a
    single request, or streamed when an ``on_progress`` callback is given.
    With ``debug_mock`` no request is sent and a canned reply is returned.
    """

    def __init__(
        self,
        api_key: str,
        *,
        api_base_url: str = DEFAULT_API_BASE_URL,
        debug: bool = False,
        debug_mock: bool = False,
        completion_params: dict[str, Any] | None = None,
        max_model_tokens: int = 4090,
        max_response_tokens: int = 1024,
        min_response_tokens: int = 4,
        organization: str = "",
        timeout_ms: int | None = None,
        transport=None,
        tokenize: Tokenizer | None = None,
        normalize_message: NormalizeFn | None = None,
    ):
        if not api_key:
            raise ConfigurationError("OpenAI missing required api_key")

        self._api_key = api_key
        self._api_base_url = api_base_url.rstrip("/")
        self._organization = organization
        self._timeout_ms = timeout_ms
        self._debug = bool(debug)
        self._debug_mock = bool(debug_mock)
        self._completion_params = {**DEFAULT_COMPLETION_PARAMS, **(completion_params or {})}
        self._budget = TokenBudget(
            model_max_tokens=max_model_tokens,
            response_max_tokens=max_response_tokens,
            response_min_tokens=min_response_tokens,
        )
        self._transport = _coerce_transport(transport)

        self._tokenize = tokenize or encode
        if not callable(self._tokenize):
            raise ConfigurationError('Invalid "tokenize" is not a function')
        self._normalize_message = normalize_message or default_normalize_message

    @classmethod
    def from_settings(cls, settings: Settings | None = None, **overrides) -> "ChatClient":
        settings = settings or get_settings()
        options = {
            "api_base_url": settings.OPENAI_API_BASE_URL,
            "debug": settings.DEBUG,
            "debug_mock": settings.DEBUG_MOCK,
            "completion_params": settings.completion_params,
            "max_model_tokens": settings.MAX_MODEL_TOKENS,
            "max_response_tokens": settings.MAX_RESPONSE_TOKENS,
            "min_response_tokens": settings.MIN_RESPONSE_TOKENS,
            "organization": settings.OPENAI_ORGANIZATION,
            "timeout_ms": settings.REQUEST_TIMEOUT_MS,
            "tokenize": make_tokenizer(settings.TOKENIZER_ENCODING),
        }
        options.update(overrides)
        api_key = options.pop("api_key", None) or settings.OPENAI_API_KEY
        return cls(api_key, **options)

    @property
    def api_key(self) -> str:
        return self._api_key

    @api_key.setter
    def api_key(self, api_key: str) -> None:
        self._api_key = api_key

    @property
    def budget(self) -> TokenBudget:
        return self._budget

    async def aclose(self) -> None:
        await self._transport.aclose()

    async def __aenter__(self) -> "ChatClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def normalize_messages(
        self,
        messages: list[ChatMessage | dict],
        normalize_fn: NormalizeFn | None = None,
        separator: Separator | None = None,
    ) -> str:
        return await token_counter.normalize_messages(
            coerce_messages(messages), normalize_fn or self._normalize_message, separator
        )

    async def estimate_token_usage(
        self,
        messages: list[ChatMessage | dict],
        normalize_fn: NormalizeFn | None = None,
        separator: Separator | None = None,
    ) -> int:
        return await token_counter.estimate_token_usage(
            coerce_messages(messages), self._tokenize, normalize_fn or self._normalize_message, separator
        )

    async def autoscale_messages(
        self,
        messages: list[ChatMessage | dict],
        model_max_tokens: int | None = None,
        response_min_tokens: int | None = None,
    ) -> WindowResult:
        return await autoscale_messages(
            coerce_messages(messages),
            model_max_tokens or self._budget.model_max_tokens,
            response_min_tokens or self._budget.response_min_tokens,
            self.estimate_token_usage,
        )

    async def list_models(self, organization: str = "") -> list[ModelInfo]:
        """List the models visible to the API key, mainly to check that the key is valid."""
        url = f"{self._api_base_url}{MODELS_PATH}"
        headers = build_headers(self._api_key, organization or self._organization)
        request = TransportRequest(method="GET", headers=headers)
        response = await self._transport.send(url, request)
        await raise_for_status(response)
        return ModelListResponse.model_validate(await response.json()).data

    async def create_chat_completions(
        self,
        messages: list[ChatMessage | dict],
        *,
        timeout_ms: int | None = None,
        on_progress: ProgressCallback | None = None,
        abort_signal: CancelToken | None = None,
        completion_params: dict[str, Any] | None = None,
        max_response_tokens: int | None = None,
        min_response_tokens: int | None = None,
    ) -> CompletionResult:
        """Send ``messages`` to the chat completions endpoint and return the reply.

        Passing ``on_progress`` switches to a streamed request; the callback
        receives the cumulative result after every content delta.
        ``timeout_ms`` defaults to the client's configured timeout. On timeout
        the in-flight request is cancelled; a caller's ``abort_signal`` is
        left untouched, while a token created internally is fired.
        """
        if not messages:
            raise EmptyConversationError("[] is too short - 'messages'")

        timeout_ms = timeout_ms or self._timeout_ms
        stream = callable(on_progress)
        owned_token = None
        if timeout_ms and abort_signal is None:
            owned_token = abort_signal = CancelToken()

        window = await self.autoscale_messages(
            messages,
            self._budget.model_max_tokens,
            min_response_tokens or self._budget.response_min_tokens,
        )
        body = build_completion_request(
            window,
            max_response_tokens=max_response_tokens or self._budget.response_max_tokens,
            completion_params=self._completion_params,
            overrides=completion_params,
            stream=stream,
        )
        if self._debug:
            logger.info("sendMessage (%d tokens) %s", window.prompt_token_count, body)

        url = f"{self._api_base_url}{CHAT_COMPLETIONS_PATH}"
        request = TransportRequest(
            method="POST",
            headers=build_headers(self._api_key, self._organization),
            body=json.dumps(body),
            cancel=abort_signal,
        )
        fetcher = get_fetcher(self._transport, stream=stream, mock=self._debug_mock, debug=self._debug)
        pending = fetcher.fetch(url, request, on_progress if stream else None)

        if not timeout_ms:
            return await pending
        return await self._with_timeout(pending, timeout_ms, owned_token)

    async def _with_timeout(
        self,
        pending: Awaitable[CompletionResult],
        timeout_ms: int,
        owned_token: CancelToken | None,
    ) -> CompletionResult:
        task = asyncio.ensure_future(pending)
        try:
            done, _ = await asyncio.wait({task}, timeout=timeout_ms / 1000)
        except asyncio.CancelledError:
            task.cancel()
            raise

        if task in done:
            return task.result()

        logger.warning("Chat completion timed out after %d ms", timeout_ms)
        if owned_token is not None:
            owned_token.cancel()
        task.cancel()
        task.add_done_callback(_discard_outcome)
        raise CompletionTimeoutError(TIMEOUT_MESSAGE, details={"timeout_ms": timeout_ms})
