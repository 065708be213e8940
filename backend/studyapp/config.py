"""Application settings and validation."""

import os
from pathlib import Path

BASE = Path(__file__).resolve().parent.parent


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


class Settings:
    ENV: str
    JWT_SECRET: str
    JWT_ALGORITHM: str
    JWT_EXPIRE_HOURS: int
    DATABASE_URL: str
    ALLOW_INSECURE_JWT: bool
    ALLOW_DEV_CORS: bool
    ALLOW_DB_INIT: bool
    APP_URL: str
    PRACTICE_SITE_URL: str
    RESET_TOKEN_TTL_MINUTES: int
    STREAK_MIN_SECONDS: int
    AUTH_RATE_LIMIT_PER_MIN: int
    AUTH_RATE_LIMIT_WINDOW_SECONDS: int
    LOG_LEVEL: str

    def __init__(self):
        self.ENV = os.getenv("ENV", "dev").lower()
        self.JWT_SECRET = os.getenv("JWT_SECRET", "change_me_for_prod")
        self.JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
        self.JWT_EXPIRE_HOURS = int(os.getenv("JWT_EXPIRE_HOURS", "24"))
        # SQLite file next to the package unless a server database is configured
        self.DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{BASE / 'app.db'}")
        self.ALLOW_INSECURE_JWT = _flag("ALLOW_INSECURE_JWT", "false")
        self.ALLOW_DEV_CORS = _flag("ALLOW_DEV_CORS", "true")
        self.ALLOW_DB_INIT = _flag("ALLOW_DB_INIT", "true" if self.ENV == "dev" else "false")
        self.APP_URL = os.getenv("APP_URL", "http://localhost:8000").rstrip("/")
        self.PRACTICE_SITE_URL = os.getenv("PRACTICE_SITE_URL", "https://www.fe-siken.com/fekakomon.php")
        self.RESET_TOKEN_TTL_MINUTES = int(os.getenv("RESET_TOKEN_TTL_MINUTES", "60"))
        self.STREAK_MIN_SECONDS = int(os.getenv("STREAK_MIN_SECONDS", "60"))
        self.AUTH_RATE_LIMIT_PER_MIN = int(os.getenv("AUTH_RATE_LIMIT_PER_MIN", "30"))
        self.AUTH_RATE_LIMIT_WINDOW_SECONDS = int(os.getenv("AUTH_RATE_LIMIT_WINDOW_SECONDS", "60"))
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
        self._validate()

    def _validate(self):
        if self.ENV != "dev" and not self.ALLOW_INSECURE_JWT and self.JWT_SECRET == "change_me_for_prod":
            raise RuntimeError("JWT_SECRET must be set to a non-default value in non-dev environments")
        if self.STREAK_MIN_SECONDS < 0:
            raise RuntimeError("STREAK_MIN_SECONDS must be >= 0")

    @property
    def database_kind(self) -> str:
        """Short name of the configured database backend."""
        url = self.DATABASE_URL.lower()
        if url.startswith("sqlite"):
            return "sqlite"
        if url.startswith("postgres"):
            return "postgresql"
        return "other"


settings = Settings()
