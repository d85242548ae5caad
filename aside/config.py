from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # Pydantic v2 settings config
    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database Configuration
    DATABASE_URL: str = "sqlite:///./aside.db"

    # Logging Configuration
    LOG_LEVEL: str = "INFO"

    # Twilio (provider A inbound + outbound SMS)
    TWILIO_ACCOUNT_SID: Optional[str] = None
    TWILIO_AUTH_TOKEN: Optional[str] = None
    TWILIO_PHONE_NUMBER: Optional[str] = None
    VALIDATE_TWILIO_SIGNATURE: bool = False
    # Public URL Twilio posts to; signatures are computed over it
    PUBLIC_WEBHOOK_URL: Optional[str] = None
    SMS_TIMEOUT_SECONDS: float = 10.0

    # Links handed out in onboarding texts
    DASHBOARD_URL: str = "https://textaside.app"

    # Inbound texts starting with this are echoes of our own confirmations
    CONFIRMATION_ECHO_PREFIX: str = "Saved to #"

    # Ingestion windows
    MERGE_WINDOW_SECONDS: float = 5.0
    INHERIT_WINDOW_SECONDS: float = 300.0
    POST_PROCESS_DELAY_SECONDS: float = 0.1

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # WebSocket protocol-level pings; also the registry sweep interval
    WS_PING_INTERVAL_SECONDS: float = 30.0
    WS_PING_TIMEOUT_SECONDS: float = 20.0


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
