from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import List
import os


class Settings(BaseSettings):
    """Global app settings loaded from environment.
    - Keep defaults light for dev (in-memory store, no Firebase credentials).
    - Override via .env or real env vars.
    """

    APP_NAME: str = "telehealth_api"
    APP_ENV: str = "dev"
    APP_DEBUG: bool = True
    LOG_DIR: str = "logs"
    LOG_MAX_BYTES: int = 10 * 1024 * 1024
    LOG_BACKUP_COUNT: int = 5

    # JWT settings (identity provider tokens)
    JWT_SECRET: str = "telehealth-dev-secret"
    JWT_ALGORITHM: str = "HS256"

    # Raw CORS string from env (comma-separated); parsed via cors_origins property
    CORS_ORIGINS: str | None = None

    # Document store provider (memory | firestore)
    DOCUMENT_STORE_PROVIDER: str = "memory"

    # Firebase Admin SDK service account
    FIREBASE_CREDENTIALS_FILE: str | None = None
    FIREBASE_PROJECT_ID: str | None = None
    # How often a live listener is checked for a stream the SDK closed on its own
    FIRESTORE_WATCH_POLL_SECONDS: float = 2.0

    APPOINTMENTS_COLLECTION: str = "appointments"
    APPOINTMENT_REQUESTS_COLLECTION: str = "appointment_requests"
    MESSAGES_SUBCOLLECTION: str = "messages"
    USERS_COLLECTION: str = "users"

    # مدة الجلسة بالثواني (كانت قيمة ثابتة للاختبار فقط)
    SESSION_DURATION_SECONDS: float = 900
    COUNTDOWN_TICK_SECONDS: float = 1.0
    # المهلة قبل إغلاق واجهة الجلسة بعد انتهائها
    SESSION_EXIT_DELAY_SECONDS: float = 3.0

    # Copy the ended session into an archive collection before deleting it
    SESSION_ARCHIVE_ENABLED: bool = False
    SESSION_ARCHIVE_COLLECTION: str = "session_archive"

    # Server-side sweep of sessions abandoned by both clients
    SESSION_SWEEP_INTERVAL_SECONDS: int = 60
    SESSION_SWEEP_GRACE_SECONDS: int = 120

    MAX_MESSAGE_LENGTH: int = 4000
    MESSAGE_RATE_LIMIT: str = "30/minute"

    class Config:
        env_file = ".env"
        case_sensitive = False

    @property
    def cors_origins(self) -> List[str]:
        """Return CORS origins as a list, parsing comma-separated env string."""
        raw = self.CORS_ORIGINS or os.getenv("CORS_ORIGINS", "") or ""
        return [o.strip() for o in raw.split(",") if o.strip()]


@lru_cache()
def get_settings() -> Settings:
    """Cached settings instance."""
    return Settings()
