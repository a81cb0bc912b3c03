"""Model identifiers understood by the chat completions endpoint."""

DEFAULT_MODEL_ID = "gpt-3.5-turbo-0301"

DEFAULT_COMPLETION_PARAMS: dict = {
    "model": DEFAULT_MODEL_ID,
    "temperature": 0.8,
    "top_p": 1.0,
    "presence_penalty": 1.0,
}
