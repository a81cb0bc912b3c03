"""Error types raised by the chat client."""


class ChatClientError(Exception):
    """Base class for every error raised by chatwindow."""

    def __init__(
        self,
        message: str,
        original_error: Exception | None = None,
        details: dict | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.original_error = original_error
        self.details = details or {}


class ConfigurationError(ChatClientError):
    """Missing API key, unusable transport/tokenizer, or an invalid token budget."""


class EmptyConversationError(ChatClientError):
    pass


class APIError(ChatClientError):
    """Non-success status from the API, or a success body without a completion."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        status_text: str | None = None,
        detail: str | None = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.status_code = status_code
        self.status_text = status_text
        self.detail = detail


class StreamParseError(ChatClientError):
    """A streamed event could not be decoded into a completion delta."""


class RequestAbortedError(ChatClientError):
    """The cancel token fired before the transport call settled."""


class CompletionTimeoutError(ChatClientError, TimeoutError):
    pass
