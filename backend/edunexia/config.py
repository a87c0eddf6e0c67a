# backend/edunexia/config.py
from __future__ import annotations
import os


def _split_domains(raw: str | None) -> list[str]:
    if not raw:
        return []
    return [d.strip() for d in raw.split(",") if d.strip()]


# NODE_ENV is honored for deployments that share env files with the web client
APP_ENV = os.environ.get("APP_ENV") or os.environ.get("NODE_ENV") or "development"

REPLIT_DOMAINS = _split_domains(os.environ.get("REPLIT_DOMAINS"))


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/edunexia.sqlite3 unless DATABASE_URL is set
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///edunexia.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    APP_ENV = APP_ENV
    IS_PRODUCTION = APP_ENV == "production"

    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = "Lax"
    SESSION_COOKIE_SECURE = IS_PRODUCTION

    # Public host used when building upload URLs (first entry wins)
    REPLIT_DOMAINS = REPLIT_DOMAINS
    CORS_ALLOWED_ORIGINS = {
        "http://localhost:5173",
        "http://127.0.0.1:5173",
        "http://localhost:5000",
        "http://127.0.0.1:5000",
    } | {f"https://{domain}" for domain in REPLIT_DOMAINS}

    # Uploads (apostilas / videos)
    UPLOAD_ROOT = os.environ.get("UPLOAD_ROOT", "uploads")
    MAX_CONTENT_LENGTH = 100 * 1024 * 1024  # 100MB

    # Payment gateway (Asaas)
    ASAAS_API_KEY = os.environ.get("ASAAS_API_KEY")
    ASAAS_API_URL = os.environ.get(
        "ASAAS_API_URL",
        "https://api.asaas.com/v3" if IS_PRODUCTION else "https://sandbox.asaas.com/api/v3",
    )
    ASAAS_TIMEOUT_SECONDS = float(os.environ.get("ASAAS_TIMEOUT_SECONDS", "30"))
    # Shared secret the gateway sends in the asaas-access-token header; webhook is refused while unset
    ASAAS_WEBHOOK_TOKEN = os.environ.get("ASAAS_WEBHOOK_TOKEN")

    # Image generation (Replicate)
    REPLICATE_API_TOKEN = os.environ.get("REPLICATE_API_TOKEN")
    REPLICATE_API_URL = os.environ.get("REPLICATE_API_URL", "https://api.replicate.com/v1")
    REPLICATE_POLL_INTERVAL_SECONDS = float(os.environ.get("REPLICATE_POLL_INTERVAL_SECONDS", "1"))
    REPLICATE_MAX_POLL_ATTEMPTS = int(os.environ.get("REPLICATE_MAX_POLL_ATTEMPTS", "60"))
