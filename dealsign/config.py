# FILE: dealsign/config.py
# DESCRIPTION: Environment-driven settings for the signature service.

import os
from dotenv import load_dotenv

load_dotenv(os.getenv("DEALSIGN_ENV_FILE", ".env"))


def _bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def parse_rate(value: str):
    """
    Parse a "<requests>/<window seconds>" rate string, e.g. "5/300".
    """
    try:
        limit, window = value.split("/", 1)
        limit, window = int(limit), int(window)
    except (AttributeError, ValueError):
        raise ValueError(f"Invalid rate limit '{value}', expected '<requests>/<seconds>'")
    if limit <= 0 or window <= 0:
        raise ValueError(f"Invalid rate limit '{value}', values must be positive")
    return limit, window


def load_settings() -> dict:
    """Read settings from the environment. Keys match Flask config names."""
    return {
        "DATABASE_URL": os.getenv("DEALSIGN_DATABASE_URL", "postgresql://localhost/dealsign"),
        "SIGNATURE_EXPIRY_DAYS": int(os.getenv("SIGNATURE_EXPIRY_DAYS", "7")),
        "RATE_LIMIT_CONSENT": os.getenv("RATE_LIMIT_CONSENT", "10/300"),
        "RATE_LIMIT_STATUS": os.getenv("RATE_LIMIT_STATUS", "30/60"),
        "RATE_LIMIT_SIGN": os.getenv("RATE_LIMIT_SIGN", "5/300"),
        "RATE_LIMIT_REDIS_URL": os.getenv("RATE_LIMIT_REDIS_URL", ""),
        "JWT_SECRET": os.getenv("JWT_SECRET", ""),
        "EMAIL_SERVICE_URL": os.getenv("EMAIL_SERVICE_URL", ""),
        "EMAIL_SERVICE_TOKEN": os.getenv("EMAIL_SERVICE_TOKEN", ""),
        "DOCUMENT_SERVICE_URL": os.getenv("DOCUMENT_SERVICE_URL", ""),
        "DOCUMENT_SERVICE_TOKEN": os.getenv("DOCUMENT_SERVICE_TOKEN", ""),
        "SIGNED_DOCUMENT_DIR": os.getenv("SIGNED_DOCUMENT_DIR", "signed"),
        "PUBLIC_BASE_URL": os.getenv("PUBLIC_BASE_URL", "http://localhost:8000"),
        "NOTIFICATIONS_ASYNC": _bool("NOTIFICATIONS_ASYNC", "true"),
        "DISABLE_WEBHOOKS": _bool("DISABLE_WEBHOOKS", "false"),
        "OPS_WEBHOOK_URL": os.getenv("OPS_WEBHOOK_URL", ""),
        "WATERMARK_LABEL": os.getenv("WATERMARK_LABEL", "SIGNED"),
    }
