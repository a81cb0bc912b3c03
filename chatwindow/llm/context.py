"""Token-budget windowing: choose which messages survive truncation."""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from chatwindow.llm.errors import ConfigurationError
from chatwindow.messages.schemas import ChatMessage, Role

logger = logging.getLogger(__name__)

Estimator = Callable[[list[ChatMessage]], Awaitable[int]]

# Defaults for a 4096-token model; 6 tokens of slack for estimation error
DEFAULT_MAX_MODEL_TOKENS = 4090
DEFAULT_MAX_RESPONSE_TOKENS = 1024
DEFAULT_MIN_RESPONSE_TOKENS = 4

# Trim order once the prompt leaves too little room for the response
DISCARD_PRIORITY = (Role.USER.value, Role.ASSISTANT.value)


@dataclass(frozen=True)
class TokenBudget:
    model_max_tokens: int = DEFAULT_MAX_MODEL_TOKENS
    response_max_tokens: int = DEFAULT_MAX_RESPONSE_TOKENS
    response_min_tokens: int = DEFAULT_MIN_RESPONSE_TOKENS

    def __post_init__(self):
        if self.response_min_tokens > self.response_max_tokens:
            raise ConfigurationError(
                f"response_min_tokens ({self.response_min_tokens}) exceeds "
                f"response_max_tokens ({self.response_max_tokens})"
            )


@dataclass
class MessageStatus:
    message: ChatMessage
    discard: bool = False
    locked: bool = False
    token_count: int = 0


@dataclass(frozen=True)
class WindowResult:
    kept_messages: list[ChatMessage] = field(default_factory=list)
    excess_messages: list[ChatMessage] = field(default_factory=list)
    prompt_token_count: int = 0
    remaining_response_tokens: int = 0


def _lock_latest_per_role(statuses: list[MessageStatus]) -> None:
    seen: set[str] = set()
    for status in reversed(statuses):
        if status.message.role in seen:
            continue
        status.locked = True
        seen.add(status.message.role)


async def _fit_within(statuses: list[MessageStatus], ceiling: int, estimate: Estimator) -> None:
    """Greedy forward pass over singleton estimates against a fixed ceiling.

    Singleton estimates each carry their own separator overhead, so the
    running total over-counts relative to an estimate of the joined set.
    """
    running = 0
    for status in statuses:
        status.token_count = await estimate([status.message])
        if status.locked:
            running += status.token_count
            continue
        if running > ceiling:
            status.discard = True
            continue
        candidate = running + status.token_count
        if candidate > ceiling:
            status.discard = True
        else:
            running = candidate


def _first_droppable(statuses: list[MessageStatus], role: str) -> MessageStatus | None:
    for status in statuses:
        if status.message.role == role and not status.locked and not status.discard:
            return status
    return None


async def _kept_token_count(statuses: list[MessageStatus], estimate: Estimator) -> int:
    return await estimate([s.message for s in statuses if not s.discard])


async def autoscale_messages(
    messages: list[ChatMessage],
    model_max_tokens: int,
    response_min_tokens: int,
    estimate: Estimator,
) -> WindowResult:
    """Select the messages that fit ``model_max_tokens`` with room for a response.

    The most recent message of every role is always kept. Other messages are
    admitted front to back while they fit, then the earliest user messages
    (and after those the earliest assistant messages) are dropped until at
    least ``response_min_tokens`` remain. If nothing else can be dropped the
    result is returned as is, possibly with a negative remainder.
    """
    if not messages:
        return WindowResult(remaining_response_tokens=model_max_tokens)

    ceiling = model_max_tokens - await estimate(messages)
    statuses = [MessageStatus(message=m) for m in messages]

    _lock_latest_per_role(statuses)
    await _fit_within(statuses, ceiling, estimate)

    prompt_tokens = await _kept_token_count(statuses, estimate)
    while model_max_tokens - prompt_tokens < response_min_tokens:
        victim = None
        for role in DISCARD_PRIORITY:
            victim = _first_droppable(statuses, role)
            if victim is not None:
                break
        if victim is None:
            logger.debug(
                "Cannot free more tokens: prompt=%d model_max=%d response_min=%d",
                prompt_tokens, model_max_tokens, response_min_tokens,
            )
            break
        victim.discard = True
        prompt_tokens = await _kept_token_count(statuses, estimate)

    kept = [s.message for s in statuses if not s.discard]
    excess = [s.message for s in statuses if s.discard]
    if excess:
        logger.debug("Windowing dropped %d of %d messages", len(excess), len(messages))

    return WindowResult(
        kept_messages=kept,
        excess_messages=excess,
        prompt_token_count=prompt_tokens,
        remaining_response_tokens=model_max_tokens - prompt_tokens,
    )
