import os
from pathlib import Path

from dotenv import load_dotenv

env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

DEFAULT_ACCESS_SECRET = "change-me-access-secret"
DEFAULT_REFRESH_SECRET = "change-me-refresh-secret"


class Settings:
    @staticmethod
    def _get_int(name: str, default: int) -> int:
        return int(os.getenv(name, str(default)))

    @staticmethod
    def _get_bool(name: str, default: bool) -> bool:
        raw = os.getenv(name)
        if raw is None or not raw.strip():
            return default
        return raw.strip().lower() in {"1", "true", "yes", "on"}

    @property
    def ENVIRONMENT(self) -> str:
        return os.getenv("ENVIRONMENT", "development").strip().lower()

    @property
    def IS_PRODUCTION(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def LOG_LEVEL(self) -> str:
        return os.getenv("LOG_LEVEL", "INFO").upper()

    @property
    def BASE_URL(self) -> str:
        return os.getenv("BASE_URL", "http://localhost:8000")

    @property
    def API_PREFIX(self) -> str:
        return os.getenv("API_PREFIX", "/api/v1")

    @property
    def DATABASE_URL(self) -> str:
        database_url = os.getenv("DATABASE_URL", "").strip()
        if not database_url:
            raise ValueError("DATABASE_URL is required")
        return database_url

    @property
    def DB_CONNECT_RETRIES(self) -> int:
        return self._get_int("DB_CONNECT_RETRIES", 10)

    @property
    def DB_CONNECT_RETRY_DELAY_SECONDS(self) -> int:
        return self._get_int("DB_CONNECT_RETRY_DELAY_SECONDS", 2)

    @property
    def DB_CONNECT_TIMEOUT_SECONDS(self) -> int:
        return self._get_int("DB_CONNECT_TIMEOUT_SECONDS", 5)

    @property
    def DB_STATEMENT_TIMEOUT_MS(self) -> int:
        return self._get_int("DB_STATEMENT_TIMEOUT_MS", 5000)

    @property
    def JWT_ACCESS_SECRET(self) -> str:
        return os.getenv("JWT_ACCESS_SECRET", DEFAULT_ACCESS_SECRET)

    @property
    def JWT_REFRESH_SECRET(self) -> str:
        return os.getenv("JWT_REFRESH_SECRET", DEFAULT_REFRESH_SECRET)

    @property
    def JWT_ALGORITHM(self) -> str:
        return os.getenv("JWT_ALGORITHM", "HS256")

    @property
    def JWT_ACCESS_EXPIRE_MINUTES(self) -> int:
        return self._get_int("JWT_ACCESS_EXPIRE_MINUTES", 15)

    @property
    def JWT_REFRESH_EXPIRE_DAYS(self) -> int:
        return self._get_int("JWT_REFRESH_EXPIRE_DAYS", 7)

    @property
    def EMAIL_VERIFY_TOKEN_EXPIRE_MINUTES(self) -> int:
        return self._get_int("EMAIL_VERIFY_TOKEN_EXPIRE_MINUTES", 24 * 60)

    @property
    def PASSWORD_RESET_TOKEN_EXPIRE_MINUTES(self) -> int:
        return self._get_int("PASSWORD_RESET_TOKEN_EXPIRE_MINUTES", 10)

    @property
    def EMAIL_RESEND_COOLDOWN_SECONDS(self) -> int:
        return self._get_int("EMAIL_RESEND_COOLDOWN_SECONDS", 60)

    @property
    def TOKEN_PURGE_ON_STARTUP(self) -> bool:
        return self._get_bool("TOKEN_PURGE_ON_STARTUP", True)

    @property
    def TOKEN_RETENTION_DAYS(self) -> int:
        return self._get_int("TOKEN_RETENTION_DAYS", 7)

    @property
    def REFRESH_COOKIE_NAME(self) -> str:
        return os.getenv("REFRESH_COOKIE_NAME", "refreshToken")

    @property
    def COOKIE_SECURE(self) -> bool:
        return self._get_bool("COOKIE_SECURE", False)

    @property
    def COOKIE_SAMESITE(self) -> str:
        return os.getenv("COOKIE_SAMESITE", "lax").lower()

    @property
    def FRONTEND_URL(self) -> str:
        return os.getenv("FRONTEND_URL", "http://localhost:5173")

    @property
    def EMAIL_VERIFY_PATH(self) -> str:
        return os.getenv("EMAIL_VERIFY_PATH", "/verify-email")

    @property
    def PASSWORD_RESET_PATH(self) -> str:
        return os.getenv("PASSWORD_RESET_PATH", "/reset-password")

    @property
    def SMTP_HOST(self) -> str:
        return os.getenv("SMTP_HOST", "")

    @property
    def SMTP_PORT(self) -> int:
        return self._get_int("SMTP_PORT", 587)

    @property
    def SMTP_USER(self) -> str:
        return os.getenv("SMTP_USER", "")

    @property
    def SMTP_PASSWORD(self) -> str:
        return os.getenv("SMTP_PASSWORD", "")

    @property
    def SMTP_USE_TLS(self) -> bool:
        return self._get_bool("SMTP_USE_TLS", True)

    @property
    def SMTP_FROM_EMAIL(self) -> str:
        return os.getenv("SMTP_FROM_EMAIL", "")

    @property
    def SMTP_FROM_NAME(self) -> str:
        return os.getenv("SMTP_FROM_NAME", "Chirp")

    @property
    def SMTP_TIMEOUT_SECONDS(self) -> int:
        return self._get_int("SMTP_TIMEOUT_SECONDS", 10)

    @property
    def CORS_ORIGINS(self) -> str:
        return os.getenv("CORS_ORIGINS", "http://localhost:5173,http://localhost:3000")


settings = Settings()

# Validate critical settings
if settings.JWT_ACCESS_SECRET == DEFAULT_ACCESS_SECRET or settings.JWT_REFRESH_SECRET == DEFAULT_REFRESH_SECRET:
    import warnings
    warnings.warn("JWT secrets are using default values. Change them in production!", UserWarning)
