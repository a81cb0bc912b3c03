"""Client settings loaded from environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings

from chatwindow.llm.models import DEFAULT_MODEL_ID


class Settings(BaseSettings):
    # OpenAI
    OPENAI_API_KEY: str = ""
    OPENAI_API_BASE_URL: str = "https://api.openai.com"
    OPENAI_ORGANIZATION: str = ""

    # Debugging
    DEBUG: bool = False
    DEBUG_MOCK: bool = False

    # Completion defaults
    DEFAULT_MODEL: str = DEFAULT_MODEL_ID
    TEMPERATURE: float = 0.8
    TOP_P: float = 1.0
    PRESENCE_PENALTY: float = 1.0

    # Token budget (4096 - 6, leaves slack for estimation error)
    MAX_MODEL_TOKENS: int = 4090
    MAX_RESPONSE_TOKENS: int = 1024
    MIN_RESPONSE_TOKENS: int = 4

    REQUEST_TIMEOUT_MS: int | None = None
    TOKENIZER_ENCODING: str = "r50k_base"

    @property
    def completion_params(self) -> dict:
        return {
            "model": self.DEFAULT_MODEL,
            "temperature": self.TEMPERATURE,
            "top_p": self.TOP_P,
            "presence_penalty": self.PRESENCE_PENALTY,
        }

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}


@lru_cache()
def get_settings() -> Settings:
    return Settings()
