"""Build chat completion request payloads from a windowed conversation."""

from typing import Any

from chatwindow.llm.context import WindowResult
from chatwindow.llm.errors import EmptyConversationError
from chatwindow.llm.models import DEFAULT_COMPLETION_PARAMS

CHAT_COMPLETIONS_PATH = "/v1/chat/completions"
MODELS_PATH = "/v1/models"


def response_token_cap(remaining_response_tokens: int, max_response_tokens: int) -> int:
    return max(1, min(remaining_response_tokens, max_response_tokens))


def build_headers(api_key: str, organization: str = "") -> dict[str, str]:
    headers = {
        "Content-Type": "application/json",
        "Authorization": f"Bearer {api_key}",
    }
    if organization:
        headers["OpenAI-Organization"] = organization
    return headers


def build_completion_request(
    window: WindowResult,
    *,
    max_response_tokens: int,
    completion_params: dict[str, Any] | None = None,
    overrides: dict[str, Any] | None = None,
    stream: bool = False,
) -> dict[str, Any]:
    """Return the JSON body for ``POST /v1/chat/completions``.

    ``completion_params`` are the client defaults and ``overrides`` the
    per-call params; overrides win key by key. ``max_tokens``, ``messages``
    and ``stream`` always come from the window and the fetch mode.
    """
    if not window.kept_messages:
        raise EmptyConversationError("[] is too short - 'messages'")

    params = {**DEFAULT_COMPLETION_PARAMS, **(completion_params or {}), **(overrides or {})}
    return {
        **params,
        "max_tokens": response_token_cap(window.remaining_response_tokens, max_response_tokens),
        "messages": [m.to_payload() for m in window.kept_messages],
        "stream": stream,
    }
