from pydantic_settings import BaseSettings
from typing import List, Optional

class Settings(BaseSettings):
    # App settings
    APP_NAME: str = "Finance Tracker API"
    VERSION: str = "1.0.0"
    DEBUG: bool = False

    # Security settings
    SECRET_KEY: str
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24 * 7

    # One-time passcodes
    OTP_EXPIRE_MINUTES: int = 10
    OTP_MAX_ATTEMPTS: int = 3
    OTP_RESEND_COOLDOWN_SECONDS: int = 60
    OTP_SWEEP_INTERVAL_SECONDS: int = 300

    # CORS settings
    ALLOWED_ORIGINS: List[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_DIR: str = "logs"
    LOG_TTL_DAYS: int = 7

    # SMTP / Email settings
    SMTP_HOST: Optional[str] = None
    SMTP_PORT: int = 587
    SMTP_USERNAME: Optional[str] = None
    SMTP_PASSWORD: Optional[str] = None
    SMTP_FROM_EMAIL: Optional[str] = None
    SMTP_FROM_NAME: str = "Finance Tracker"
    SMTP_USE_TLS: bool = True
    SMTP_USE_SSL: bool = False
    SMTP_TIMEOUT: int = 15
    SMTP_DEBUG: bool = False
    # Log outgoing mail instead of failing when SMTP is not configured (local dev only)
    EMAIL_CONSOLE_FALLBACK: bool = False

    # MongoDB
    MONGO_URI: Optional[str] = None
    MONGO_DB: str = "finance_tracker"

    class Config:
        env_file = ".env"
        case_sensitive = True

# Create settings instance
settings = Settings()

# Validate required settings
if not settings.SECRET_KEY:
    raise ValueError("SECRET_KEY environment variable is required")

if settings.OTP_MAX_ATTEMPTS < 1:
    raise ValueError("OTP_MAX_ATTEMPTS must be at least 1")

if settings.OTP_RESEND_COOLDOWN_SECONDS >= settings.OTP_EXPIRE_MINUTES * 60:
    raise ValueError("OTP_RESEND_COOLDOWN_SECONDS must be shorter than the OTP lifetime")
