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

    # Database Configuration - required from .env
    DATABASE_URL: str

    # Logging Configuration
    LOG_LEVEL: str = "INFO"

    # Meta app secret used to sign webhook deliveries (X-Hub-Signature-256).
    # Signature checks are skipped when unset.
    APP_SECRET: Optional[str] = None

    # Provider (WhatsApp Cloud API)
    WHATSAPP_API_BASE: str = "https://graph.facebook.com/v20.0"
    PROVIDER_TIMEOUT_SECONDS: float = 10.0
    MEDIA_DOWNLOAD_TIMEOUT_SECONDS: float = 30.0

    # Downloaded media storage
    MEDIA_ROOT: str = "storage/media"
    MEDIA_BASE_URL: str = "/media"

    # Outgoing files accepted by POST /messages/send-file (provider limit is 16 MB)
    MAX_UPLOAD_BYTES: int = 16 * 1024 * 1024


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
