from functools import lru_cache
from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database Configuration - required from .env
    DATABASE_URL: str

    # Logging Configuration - required from .env
    LOG_LEVEL: str

    # Marketplace credentials - validated when first used
    ML_API_URL: str = "https://api.mercadolibre.com"
    ML_APP_ID: Optional[str] = None
    ML_CLIENT_SECRET: Optional[str] = None
    ML_REFRESH_TOKEN: Optional[str] = None
    ML_SELLER_ID: Optional[str] = None

    # Operator alerts
    TELEGRAM_TOKEN: Optional[str] = None
    TELEGRAM_CHAT_ID: Optional[str] = None

    # LLM fallback tier
    OPENAI_API_KEY: Optional[str] = None
    OPENAI_MODEL: str = "gpt-4o-mini"

    # Outbound HTTP behaviour
    HTTP_TIMEOUT_SECONDS: float = 15.0
    HTTP_MAX_RETRIES: int = 3
    HTTP_BACKOFF_CAP_SECONDS: float = 8.0

    # Marketplace limits
    MESSAGE_CHAR_LIMIT: int = 350
    ANSWER_CHAR_LIMIT: int = 2000
    SEND_DELAY_SECONDS: float = 0.5

    # Conversation behaviour
    RESEND_LIMIT: int = 2
    ORDER_LOOKUP_LIMIT: int = 20
    SWEEP_ORDER_LIMIT: int = 10
    BOT_ENABLED: bool = True
    STATE_BACKEND: Literal["sql", "memory"] = "sql"
    ACTIVITY_LOG_SIZE: int = 200


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
