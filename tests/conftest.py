"""Shared test fixtures."""

import pytest

from chatwindow.messages.schemas import ChatMessage
from chatwindow.messages.service import ChatClient
from helpers import whitespace_tokenize


@pytest.fixture
def conversation():
    return [
        ChatMessage(role="system", content="You are a helpful assistant."),
        ChatMessage(role="user", content="hi, what date in today?"),
    ]


@pytest.fixture
def make_client():
    """Build a ChatClient with the word tokenizer; mocked unless a transport is given."""

    def _make(transport=None, **kwargs):
        kwargs.setdefault("tokenize", whitespace_tokenize)
        if transport is None:
            kwargs.setdefault("debug_mock", True)
        return ChatClient("sk-test", transport=transport, **kwargs)

    return _make
