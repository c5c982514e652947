import os
from functools import lru_cache
from typing import List, Optional


def _env_bool(key: str, default: bool) -> bool:
    value = os.getenv(key)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(key: str, default: int) -> int:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    return int(value)


class Settings:
    """Runtime settings read from the environment once per process."""

    def __init__(self):
        self.environment: str = os.getenv("ENVIRONMENT", "development")
        self.log_level: str = os.getenv("LOG_LEVEL", "INFO")
        self.port: int = _env_int("PORT", 8000)

        self.database_url: Optional[str] = os.getenv("DATABASE_URL")
        self.database_name: Optional[str] = os.getenv("DATABASE_NAME")

        self.jwt_secret: str = os.getenv("JWT_SECRET", "change_this_secret")
        self.jwt_algorithm: str = "HS256"
        self.jwt_expire_days: int = _env_int("JWT_EXPIRE_DAYS", 7)
        self.refresh_token_secret: str = os.getenv("REFRESH_TOKEN_SECRET") or self.jwt_secret
        self.refresh_token_expire_days: int = _env_int("REFRESH_TOKEN_EXPIRE_DAYS", 30)
        self.jwt_cookie_expire_days: int = _env_int("JWT_COOKIE_EXPIRE_DAYS", 7)

        self.frontend_url: str = os.getenv("FRONTEND_URL", "http://localhost:5173")
        self.cors_origins: List[str] = [
            o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()
        ]

        self.smtp_host: Optional[str] = os.getenv("SMTP_HOST")
        self.smtp_port: int = _env_int("SMTP_PORT", 587)
        self.smtp_username: Optional[str] = os.getenv("SMTP_USERNAME")
        self.smtp_password: Optional[str] = os.getenv("SMTP_PASSWORD")
        self.email_from: str = os.getenv("EMAIL_FROM", "noreply@hospital.local")

        self.sms_gateway_url: Optional[str] = os.getenv("SMS_GATEWAY_URL")
        self.sms_api_key: Optional[str] = os.getenv("SMS_API_KEY")
        self.sms_sender_id: str = os.getenv("SMS_SENDER_ID", "HOSPITAL")

        self.rate_limit_enabled: bool = _env_bool("RATE_LIMIT_ENABLED", True)

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


@lru_cache
def get_settings() -> Settings:
    return Settings()
