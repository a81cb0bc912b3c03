"""Pydantic schemas for chat messages, completion results and model records."""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class ChatMessage(BaseModel):
    role: Role
    content: str
    name: str | None = None

    model_config = ConfigDict(frozen=True, use_enum_values=True)

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class CompletionResult(BaseModel):
    role: str = Role.ASSISTANT.value
    content: str = ""
    # Parsed API response, only set by the single-shot fetcher
    raw_response: dict[str, Any] | None = Field(default=None, repr=False)


class ModelInfo(BaseModel):
    id: str
    created: int | None = None
    owned_by: str | None = None
    permission: list[dict[str, Any]] = Field(default_factory=list)

    model_config = ConfigDict(extra="allow")


class ModelListResponse(BaseModel):
    object: str = "list"
    data: list[ModelInfo]


def coerce_messages(messages: list[ChatMessage | dict]) -> list[ChatMessage]:
    """Validate caller-supplied dicts into ChatMessage, leaving instances untouched."""
    return [m if isinstance(m, ChatMessage) else ChatMessage.model_validate(m) for m in messages]
