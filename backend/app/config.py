"""Application configuration management"""

import json
from functools import lru_cache
from pathlib import Path
from typing import Annotated, Any, List
from urllib.parse import quote_plus

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode

# Base directory: backend/
_BASE_DIR = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    """Application settings with environment variable support"""

    # Application
    APP_NAME: str = "Authcore Security Service"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    WORKERS: int = 4

    # Database
    DATABASE_URL: str = "sqlite:///./authcore.db"
    POSTGRES_HOST: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = "authcore_db"
    POSTGRES_USER: str = "authcore"
    POSTGRES_PASSWORD: str = "authcore"
    DATABASE_POOL_SIZE: int = 30
    DATABASE_MAX_OVERFLOW: int = 20
    DATABASE_POOL_TIMEOUT: int = 30

    # Security
    SECRET_KEY: str = "dev-secret-key-change-in-production-use-openssl-rand-hex-32"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 15
    REFRESH_TOKEN_EXPIRE_DAYS: int = 7
    REFRESH_TOKEN_REMEMBER_ME_DAYS: int = 90

    # Token/session security
    MAX_ROTATION_COUNT: int = 100
    REFRESH_TOKEN_REUSE_GRACE_SECONDS: float = 5.0
    REFRESH_TOKEN_MAX_DUPLICATES: int = 1
    SESSION_RETENTION_DAYS: int = 90

    # Cookies
    ACCESS_COOKIE_NAME: str = "access_token"
    REFRESH_COOKIE_NAME: str = "refresh_token"
    REFRESH_COOKIE_PATH: str = "/api/v1/auth"
    CSRF_COOKIE_NAME: str = "csrf-token"
    CSRF_HEADER_NAME: str = "x-csrf-token"
    CSRF_TOKEN_MAX_AGE_SECONDS: int = 60 * 60 * 24 * 14
    COOKIE_SAMESITE: str = "lax"

    # Rate Limiting (attempts per window)
    LOGIN_IP_MAX_ATTEMPTS: int = 5
    LOGIN_IP_WINDOW_SECONDS: int = 15 * 60
    LOGIN_EMAIL_MAX_ATTEMPTS: int = 5
    LOGIN_EMAIL_WINDOW_SECONDS: int = 60 * 60
    PASSWORD_RESET_IP_MAX_ATTEMPTS: int = 3
    PASSWORD_RESET_IP_WINDOW_SECONDS: int = 60 * 60
    REFRESH_RATE_LIMIT_PER_MINUTE: int = 100
    RATE_LIMIT_CONFLICT_RETRIES: int = 3

    # Account lockout
    LOCKOUT_MAX_FAILED_ATTEMPTS: int = 5
    LOCKOUT_DURATION_SECONDS: int = 5 * 60

    # Password reset
    PASSWORD_RESET_TOKEN_TTL_MINUTES: int = 60
    PASSWORD_MIN_LENGTH: int = 8

    # Audit log
    AUDIT_QUEUE_SIZE: int = 10000
    AUDIT_RETENTION_DAYS: int = 90
    AUDIT_WRITE_ATTEMPTS: int = 2

    # Background scheduler
    RUN_EMBEDDED_SCHEDULER: bool = True
    SCHEDULER_TICK_SECONDS: float = 1.0
    RATE_LIMIT_CLEANUP_INTERVAL_SECONDS: int = 5 * 60
    SESSION_SWEEP_INTERVAL_SECONDS: int = 60 * 60
    RESET_TOKEN_CLEANUP_INTERVAL_SECONDS: int = 60 * 60
    AUDIT_CLEANUP_INTERVAL_SECONDS: int = 24 * 60 * 60

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = ""

    # CORS
    CORS_ORIGINS: Annotated[List[str], NoDecode] = ["http://localhost:3000"]

    # Admin
    ADMIN_EMAIL: str = "admin@example.com"
    ADMIN_PASSWORD: str = "admin123"

    # Database initialization discipline
    DB_INIT_MODE: str = "create_all"  # create_all | off

    class Config:
        env_file = ".env"
        case_sensitive = True

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def _parse_cors_origins(cls, value: Any) -> Any:
        """
        Accept JSON array or comma-separated origins from env.

        Examples:
            CORS_ORIGINS=["http://localhost:3000","http://example.com"]
            CORS_ORIGINS=http://localhost:3000,http://example.com
        """
        if not isinstance(value, str):
            return value

        raw = value.strip()
        if not raw:
            return []

        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = None

        if isinstance(parsed, str):
            return [parsed]
        if isinstance(parsed, list):
            return [str(origin).strip() for origin in parsed if str(origin).strip()]

        return [origin.strip() for origin in raw.split(",") if origin.strip()]

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    def get_log_file(self) -> str:
        p = self.LOG_FILE
        if not p or p.startswith(".."):
            return str(_BASE_DIR.parent / "logs" / "app.log")
        return p

    def get_database_url(self) -> str:
        """
        Resolve database URL.

        Priority:
          1) Explicit DATABASE_URL
          2) Construct from POSTGRES_* parts with safe URL encoding
        """
        if self.DATABASE_URL:
            return self.DATABASE_URL

        user = quote_plus(self.POSTGRES_USER)
        password = quote_plus(self.POSTGRES_PASSWORD)
        return (
            f"postgresql://{user}:{password}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    def validate_security_settings(self) -> None:
        """
        Validate runtime security defaults in production.

        Raises:
            ValueError: If insecure defaults are detected.
        """
        if not self.is_production:
            return

        insecure_secret_markers = {
            "",
            "dev-secret-key-change-in-production-use-openssl-rand-hex-32",
            "your-super-secret-key-change-this-in-production",
            "change-me",
        }
        insecure_admin_passwords = {
            "",
            "admin123",
            "change_this_password_immediately",
        }

        if self.SECRET_KEY in insecure_secret_markers or len(self.SECRET_KEY) < 32:
            raise ValueError(
                "Insecure SECRET_KEY for production. Use a strong key (e.g. `openssl rand -hex 32`)."
            )

        if self.ADMIN_PASSWORD in insecure_admin_passwords or len(self.ADMIN_PASSWORD) < 10:
            raise ValueError(
                "Insecure ADMIN_PASSWORD for production. Set a strong admin password before startup."
            )

        if self.REFRESH_TOKEN_MAX_DUPLICATES < 0 or self.REFRESH_TOKEN_REUSE_GRACE_SECONDS > 60:
            raise ValueError(
                "Refresh token grace settings are too permissive for production."
            )


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


settings = get_settings()
