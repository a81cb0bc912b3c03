"""Token estimation for chat messages using tiktoken."""

import asyncio
import inspect
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

import tiktoken

from chatwindow.messages.schemas import ChatMessage

Tokenizer = Callable[[str], Sequence[int] | Awaitable[Sequence[int]]]
NormalizeFn = Callable[[ChatMessage, int, list[ChatMessage]], str | Awaitable[str]]

# r50k_base is the GPT-3 BPE vocabulary
DEFAULT_ENCODING = "r50k_base"


@dataclass(frozen=True)
class Separator:
    """Delimiters wrapped around the normalized messages before tokenizing."""

    prefix: str = "$\n"
    infix: str = "\n$\n"
    suffix: str = "\n$\n"


DEFAULT_SEPARATOR = Separator()


@lru_cache()
def get_encoding(name: str = DEFAULT_ENCODING) -> tiktoken.Encoding:
    return tiktoken.get_encoding(name)


def make_tokenizer(encoding_name: str = DEFAULT_ENCODING) -> Tokenizer:
    def tokenize(text: str) -> list[int]:
        return get_encoding(encoding_name).encode(text, disallowed_special=())

    return tokenize


encode = make_tokenizer()


def default_normalize_message(message: ChatMessage, index: int, messages: list[ChatMessage]) -> str:
    return f"{message.role}\n{message.content}"


async def resolve(value: Any) -> Any:
    """Await ``value`` if it is awaitable, so sync and async plug-ins share one call path."""
    if inspect.isawaitable(value):
        return await value
    return value


async def normalize_messages(
    messages: list[ChatMessage],
    normalize_fn: NormalizeFn | None = None,
    separator: Separator | None = None,
) -> str:
    """Normalize each message and join them into one text blob.

    Each message is normalized independently (async normalizers run
    concurrently), then the results are joined with ``separator.infix`` and
    wrapped in ``separator.prefix``/``separator.suffix``.
    """
    normalize_fn = normalize_fn or default_normalize_message
    separator = separator or DEFAULT_SEPARATOR
    normalized = await asyncio.gather(
        *(resolve(normalize_fn(message, index, messages)) for index, message in enumerate(messages))
    )
    return separator.prefix + separator.infix.join(normalized) + separator.suffix


async def estimate_token_usage(
    messages: list[ChatMessage],
    tokenize: Tokenizer = encode,
    normalize_fn: NormalizeFn | None = None,
    separator: Separator | None = None,
) -> int:
    text = await normalize_messages(messages, normalize_fn, separator)
    tokens = await resolve(tokenize(text))
    return len(tokens)
