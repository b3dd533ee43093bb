import logging
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Annotated

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

logger = logging.getLogger(__name__)

DEFAULT_GEMINI_TEMPERATURE = 0.7
DEFAULT_GEMINI_MAX_OUTPUT_TOKENS = 1000
KNOWN_GEMINI_MODELS = (
    "gemini-2.5-flash",
    "gemini-2.5-pro",
    "gemini-2.0-flash",
    "gemini-1.5-flash",
    "gemini-1.5-pro",
)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_name: str = "Campus Wiki Assistant API"
    app_env: str = "development"
    debug: bool = True
    api_v1_prefix: str = "/api/v1"

    database_url: str = "sqlite:///./app.db"
    allowed_origins: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["http://localhost:3000"]
    )

    # Knowledge-base collaborator
    knowledge_base_url: str = "http://localhost:3000/api/wiki"
    knowledge_base_timeout_seconds: int = 15

    # Scope rules
    home_institution_tokens: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["tum", "technical university of munich"]
    )

    # Retrieval
    retrieval_max_results: int = 5
    retrieval_min_recommendation_results: int = 2
    retrieval_rank_decay: float = 5.0
    retrieval_diversity_margin: float = 20.0
    ambiguity_score_margin: float = 20.0
    content_max_chars: int = 2000
    overview_max_chars: int = 1500
    content_fallback_chars: int = 1000

    # Admission control
    rate_limit_max_requests: int = 10
    rate_limit_window_ms: int = 60_000

    # Upstream retries
    backoff_base_delay_ms: int = 1000
    backoff_max_delay_ms: int = 32_000
    backoff_max_retries: int = 5

    gemini_api_key: str = ""
    gemini_model: str = "gemini-2.5-flash"
    gemini_max_output_tokens: int = DEFAULT_GEMINI_MAX_OUTPUT_TOKENS
    gemini_temperature: float = DEFAULT_GEMINI_TEMPERATURE
    gemini_timeout_seconds: int = 60

    secret_key: str = "change-this-in-production"
    algorithm: str = "HS256"

    # Conversation
    chat_history_limit: int = 10
    chat_api_base_url: str = "http://localhost:8000/api/v1"

    @field_validator("allowed_origins", "home_institution_tokens", mode="before")
    @classmethod
    def parse_comma_separated(cls, value: str | list[str]) -> list[str]:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("gemini_temperature", mode="before")
    @classmethod
    def fallback_temperature(cls, value):
        try:
            parsed = float(value)
        except (TypeError, ValueError):
            logger.warning(
                "Invalid GEMINI_TEMPERATURE %r (not a number), using default %s",
                value,
                DEFAULT_GEMINI_TEMPERATURE,
            )
            return DEFAULT_GEMINI_TEMPERATURE
        if not 0.0 <= parsed <= 2.0:
            logger.warning(
                "Invalid GEMINI_TEMPERATURE %s (must be between 0 and 2), using default %s",
                parsed,
                DEFAULT_GEMINI_TEMPERATURE,
            )
            return DEFAULT_GEMINI_TEMPERATURE
        return parsed

    @field_validator("gemini_max_output_tokens", mode="before")
    @classmethod
    def fallback_max_tokens(cls, value):
        try:
            parsed = int(value)
        except (TypeError, ValueError):
            logger.warning(
                "Invalid GEMINI_MAX_OUTPUT_TOKENS %r (not a number), using default %s",
                value,
                DEFAULT_GEMINI_MAX_OUTPUT_TOKENS,
            )
            return DEFAULT_GEMINI_MAX_OUTPUT_TOKENS
        if not 1 <= parsed <= 4096:
            logger.warning(
                "Invalid GEMINI_MAX_OUTPUT_TOKENS %s (must be between 1 and 4096), using default %s",
                parsed,
                DEFAULT_GEMINI_MAX_OUTPUT_TOKENS,
            )
            return DEFAULT_GEMINI_MAX_OUTPUT_TOKENS
        return parsed


@dataclass(slots=True)
class ConfigValidation:
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


def validate_chat_config(config: "Settings | None" = None) -> ConfigValidation:
    """Check the generation settings without raising, for health reporting."""
    current = config or settings
    result = ConfigValidation()

    if not current.gemini_api_key:
        result.errors.append("GEMINI_API_KEY is not set")
    if current.gemini_model not in KNOWN_GEMINI_MODELS:
        result.warnings.append(
            f"Unknown GEMINI_MODEL value: {current.gemini_model!r}. "
            f"Known models: {', '.join(KNOWN_GEMINI_MODELS)}"
        )
    if not current.home_institution_tokens:
        result.warnings.append("HOME_INSTITUTION_TOKENS is empty; every query will be scope-checked")
    return result


def get_config_summary(config: "Settings | None" = None) -> dict[str, str]:
    current = config or settings
    key = current.gemini_api_key
    masked = f"{key[:8]}...{key[-4:]}" if key else "NOT SET"
    return {
        "GEMINI_API_KEY": masked,
        "GEMINI_MODEL": current.gemini_model,
        "GEMINI_TEMPERATURE": str(current.gemini_temperature),
        "GEMINI_MAX_OUTPUT_TOKENS": str(current.gemini_max_output_tokens),
    }


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
