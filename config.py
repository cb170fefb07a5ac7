"""
Application configuration.

Settings are read from environment variables with development defaults. In production,
set DATABASE_URL, SECRET_KEY and the gateway credentials; the default secret key is refused
when FLASK_ENV=production.
"""

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent

_DEFAULT_SECRET = "dev-change-me-please"


def _bool_env(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _int_env(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


class Config:
    """Base configuration shared by all environments."""

    # IMPORTANT: change this in production
    SECRET_KEY = os.environ.get("SECRET_KEY", _DEFAULT_SECRET)

    # Database: SQLite for development (simple file in project folder)
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        f"sqlite:///{BASE_DIR / 'cotiz.db'}"
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # CSRF protection for session-authenticated mutations (X-CSRFToken header for JSON)
    WTF_CSRF_ENABLED = _bool_env("WTF_CSRF_ENABLED", True)
    WTF_CSRF_TIME_LIMIT = None

    APP_NAME = "Cotiz"
    PUBLIC_BASE_URL = os.environ.get("PUBLIC_BASE_URL", "http://localhost:5000")

    # Logging
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    LOG_JSON = _bool_env("LOG_JSON", False)

    # Payment gateway (Asaas-compatible). "mock" never leaves the process.
    PAYMENT_GATEWAY_MODE = os.environ.get("PAYMENT_GATEWAY_MODE", "mock")
    PAYMENT_GATEWAY_URL = os.environ.get("PAYMENT_GATEWAY_URL", "https://api.asaas.com/v3")
    PAYMENT_GATEWAY_API_KEY = os.environ.get("PAYMENT_GATEWAY_API_KEY")
    PAYMENT_GATEWAY_TIMEOUT_SECONDS = _int_env("PAYMENT_GATEWAY_TIMEOUT_SECONDS", 20)
    PAYMENT_WEBHOOK_TOKEN = os.environ.get("PAYMENT_WEBHOOK_TOKEN")

    # Transactional email: log | smtp | resend
    EMAIL_BACKEND = os.environ.get("EMAIL_BACKEND", "log")
    EMAIL_FROM = os.environ.get("EMAIL_FROM", "Cotiz <nao-responda@cotiz.app>")
    SMTP_HOST = os.environ.get("SMTP_HOST", "localhost")
    SMTP_PORT = _int_env("SMTP_PORT", 587)
    SMTP_USERNAME = os.environ.get("SMTP_USERNAME")
    SMTP_PASSWORD = os.environ.get("SMTP_PASSWORD")
    SMTP_USE_TLS = _bool_env("SMTP_USE_TLS", True)
    RESEND_API_KEY = os.environ.get("RESEND_API_KEY")

    # AI inference gateway (OpenAI-compatible chat completions)
    AI_GATEWAY_URL = os.environ.get("AI_GATEWAY_URL", "https://ai.gateway.lovable.dev/v1")
    AI_API_KEY = os.environ.get("AI_API_KEY")
    AI_MODEL = os.environ.get("AI_MODEL", "google/gemini-2.5-flash")
    AI_TIMEOUT_SECONDS = _int_env("AI_TIMEOUT_SECONDS", 60)

    # Company registry lookups (BrasilAPI / ReceitaWS)
    CNPJ_LOOKUP_ENABLED = _bool_env("CNPJ_LOOKUP_ENABLED", True)
    CNPJ_LOOKUP_TIMEOUT_SECONDS = _int_env("CNPJ_LOOKUP_TIMEOUT_SECONDS", 10)

    # Workflow windows
    QUOTE_TOKEN_TTL_DAYS = _int_env("QUOTE_TOKEN_TTL_DAYS", 7)
    DELIVERY_CODE_TTL_DAYS = _int_env("DELIVERY_CODE_TTL_DAYS", 7)
    VERIFICATION_CODE_TTL_MINUTES = _int_env("VERIFICATION_CODE_TTL_MINUTES", 10)
    VERIFICATION_CODE_MAX_ATTEMPTS = _int_env("VERIFICATION_CODE_MAX_ATTEMPTS", 5)
    ESCROW_RELEASE_DAYS = _int_env("ESCROW_RELEASE_DAYS", 10)
    SUSPENSION_GRACE_DAYS = _int_env("SUSPENSION_GRACE_DAYS", 7)
    INVOICE_DUE_DAYS = _int_env("INVOICE_DUE_DAYS", 30)

    # Reminder jobs (flask remind quotes | overdue)
    QUOTE_REMINDER_AFTER_HOURS = _int_env("QUOTE_REMINDER_AFTER_HOURS", 48)
    QUOTE_REMINDER_INTERVAL_HOURS = _int_env("QUOTE_REMINDER_INTERVAL_HOURS", 24)
    QUOTE_REMINDER_MAX = _int_env("QUOTE_REMINDER_MAX", 2)
    OVERDUE_REMINDER_SCHEDULE = tuple(
        int(day) for day in os.environ.get("OVERDUE_REMINDER_SCHEDULE", "1,3,7,15,30").split(",") if day.strip()
    )
    OVERDUE_REMINDER_STOP_AFTER_DAYS = _int_env("OVERDUE_REMINDER_STOP_AFTER_DAYS", 45)
    LATE_FEE_PERCENT = os.environ.get("LATE_FEE_PERCENT", "2.0")
    PAYMENT_REMINDER_AFTER_DAYS = _int_env("PAYMENT_REMINDER_AFTER_DAYS", 3)

    # Uploads (proposal PDFs)
    MAX_CONTENT_LENGTH = _int_env("MAX_UPLOAD_MB", 10) * 1024 * 1024

    def __init__(self):
        env = os.environ.get("FLASK_ENV", "development").lower()
        if env == "production" and self.SECRET_KEY == _DEFAULT_SECRET:
            raise RuntimeError("SECRET_KEY insegura para producao.")
