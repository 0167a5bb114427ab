# assessment_engine/core/config.py
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine configuration settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,  # Environment vars are uppercase
        extra="ignore",      # Ignore unexpected vars instead of raising
    )

    # Core application settings
    DATABASE_URL: str = "sqlite+aiosqlite:///./assessment_engine.sqlite"
    HOST: str = "0.0.0.0"
    PORT: int = 8102
    DEBUG: bool = False
    ENVIRONMENT: str = "development"
    LOG_FILE: str | None = None

    # CORS settings
    ALLOWED_ORIGINS: list[str] = ["*"]  # In production, specify actual origins
    ALLOW_CREDENTIALS: bool = True
    ALLOWED_METHODS: list[str] = ["*"]
    ALLOWED_HEADERS: list[str] = ["*"]

    # Attempt policy defaults
    DEFAULT_ALLOWED_ATTEMPTS: int = 1
    REQUIRE_COMPLETE_SUBMISSION: bool = True

    # Countdown settings
    COUNTDOWN_TICK_SECONDS: float = 1.0

    # Session registry: idle managers are dropped after this many seconds
    SESSION_IDLE_SECONDS: int = 900


def _validate_settings(settings: Settings) -> None:
    """Validate critical engine settings."""
    if not settings.DATABASE_URL:
        raise ValueError("DATABASE_URL is required")
    if settings.DEFAULT_ALLOWED_ATTEMPTS < 1:
        raise ValueError("DEFAULT_ALLOWED_ATTEMPTS must be a positive integer")
    if settings.COUNTDOWN_TICK_SECONDS <= 0:
        raise ValueError("COUNTDOWN_TICK_SECONDS must be greater than zero")
    if settings.SESSION_IDLE_SECONDS <= 0:
        raise ValueError("SESSION_IDLE_SECONDS must be greater than zero")

    if settings.ENVIRONMENT == "production" and settings.DEBUG:
        print("WARNING: DEBUG is enabled in production. Consider setting DEBUG=False.")


# Initialize settings with error handling
try:
    settings = Settings()
    _validate_settings(settings)
except Exception as e:
    print(f"Error initializing settings: {e}")
    raise
