import os
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )

    # Application
    APP_NAME: str = "csf-checkout"
    APP_ENV: str = "development"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"  # DEBUG, INFO, WARNING, ERROR

    # Portal REST API
    API_BASE_URL: str = Field(
        "http://localhost:8000/api/v1",
        description="Base URL of the registration API, e.g. https://api.example.com/api/v1",
    )
    API_TIMEOUT_SECONDS: float = Field(15.0, gt=0)

    # Frontend URL (payment return routes are built from it)
    FRONTEND_URL: str = "http://localhost:3000"

    # CORS
    CORS_ALLOWED_ORIGINS: str = os.getenv("CORS_ALLOWED_ORIGINS", "*")  # Comma-separated or "*"

    # Checkout sessions
    CHECKOUT_SESSION_TTL_MINUTES: int = Field(60, gt=0)
    WAITLIST_PRIORITY: str = Field("regular", pattern="^(priority|regular)$")

    @property
    def cors_origins(self) -> list[str]:
        """Parse CORS_ALLOWED_ORIGINS into a list."""
        if self.CORS_ALLOWED_ORIGINS.strip() == "*":
            return ["*"]
        return [o.strip() for o in self.CORS_ALLOWED_ORIGINS.split(",") if o.strip()]


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


config = get_settings()
