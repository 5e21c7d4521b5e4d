# sora_studio/config.py
from pathlib import Path
from pydantic_settings import BaseSettings, SettingsConfigDict

BASE_DIR = Path(__file__).resolve().parent.parent

class Settings(BaseSettings):
    # DB
    DATABASE_URL: str = "sqlite:///./sora_studio.db"

    # CORS
    ALLOWED_ORIGINS: str = "http://localhost:5173,http://127.0.0.1:5173"

    # OpenAI
    OPENAI_API_KEY: str | None = None
    OPENAI_BASE_URL: str = "https://api.openai.com/v1"
    OPENAI_TIMEOUT: int = 120
    ENHANCE_MODEL: str = "gpt-4o-mini"
    RETRY_ATTEMPTS: int = 3
    RETRY_DELAY: float = 1.0

    # Polling
    POLL_INTERVAL: float = 5.0
    POLL_MAX_ATTEMPTS: int = 60
    PROGRESS_STEP: int = 5
    POLL_AUTOSTART: bool = True

    # Storage backend: "local" (default) or "s3" (for AWS S3 / R2 / S3-compatible)
    STORAGE_BACKEND: str = "local"
    STORAGE_DIR: str = str(BASE_DIR / "storage")
    FETCH_THUMBNAILS: bool = True

    # Signed URLs (local backend signs with SIGNING_SECRET, s3 presigns)
    SIGNED_URL_TTL: int = 3600
    SIGNING_SECRET: str = "change-me"

    # S3 configuration (used when STORAGE_BACKEND == "s3")
    S3_BUCKET: str | None = None
    S3_REGION: str | None = None
    S3_ENDPOINT: str | None = None  # optional (useful for R2 or custom endpoints)
    S3_ACCESS_KEY_ID: str | None = None
    S3_SECRET_ACCESS_KEY: str | None = None

    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=str(BASE_DIR / ".env"),
        extra="ignore",
        case_sensitive=False,
    )

settings = Settings()
