from __future__ import annotations

import os


def _env_str(name: str, default: str = "") -> str:
    return str(os.getenv(name, "") or "").strip() or default


def _env_int(name: str, default: int) -> int:
    try:
        return int(str(os.getenv(name, "") or "").strip() or default)
    except Exception:
        return default


def _env_bool(name: str, default: bool = False) -> bool:
    raw = str(os.getenv(name, "") or "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "y", "on"}


def _env_csv(name: str, default: str = "") -> list[str]:
    raw = str(os.getenv(name, "") or "").strip() or default
    return [p.strip() for p in raw.split(",") if p.strip()]


RECORD_STORE_MODES = {"db", "json"}


class Config:
    def __init__(self):
        self.ENV = _env_str("ENV", "development").lower()
        self.IS_PRODUCTION = self.ENV in {"prod", "production"}
        self.APP_VERSION = _env_str("APP_VERSION", "0.1.0")
        self.LOG_LEVEL = _env_str("LOG_LEVEL", "INFO").upper()

        self.HOST = _env_str("HOST", "0.0.0.0")
        self.PORT = _env_int("PORT", 5000)
        self.ALLOWED_ORIGINS = _env_csv("ALLOWED_ORIGINS", "http://localhost:3000")

        self.DATABASE_URL = _env_str("DATABASE_URL", "sqlite:///./nodues.db")

        # Record store: "db" keeps each collection as one row, "json" keeps flat files.
        self.RECORD_STORE_MODE = _env_str("RECORD_STORE_MODE", "db").lower()
        self.DATA_DIR = _env_str("DATA_DIR", "./data")

        self.UPLOAD_DIR = _env_str("UPLOAD_DIR", "./uploads")
        self.MAX_UPLOAD_MB = _env_int("MAX_UPLOAD_MB", 10)

        self.CERTIFICATES_DIR = _env_str("CERTIFICATES_DIR", "./certificates")
        self.CERT_MAX_SIZE_MB = _env_int("CERT_MAX_SIZE_MB", 10)
        self.CERT_TIMEOUT_SECONDS = _env_int("CERT_TIMEOUT_SECONDS", 30)
        self.CERT_SIGNATURE_MAX_BYTES = _env_int("CERT_SIGNATURE_MAX_BYTES", 200 * 1024)
        self.CERT_MAX_WORKERS = _env_int("CERT_MAX_WORKERS", 4)
        self.CERT_RETENTION_DAYS = _env_int("CERT_RETENTION_DAYS", 30)

        self.SESSION_TTL_MINUTES = _env_int("SESSION_TTL_MINUTES", 480)
        # TEST:<userId>:<ROLE> login tokens; never honoured in production.
        self.ALLOW_TEST_TOKENS = _env_bool("ALLOW_TEST_TOKENS", not self.IS_PRODUCTION) and not self.IS_PRODUCTION

        self.NOTIFY_ASYNC = _env_bool("NOTIFY_ASYNC", False)
        self.NOTIFY_WEBHOOK_URL = _env_str("NOTIFY_WEBHOOK_URL", "")
        self.NOTIFY_QUEUE_MAX = _env_int("NOTIFY_QUEUE_MAX", 1000)
        self.NOTIFY_QUEUE_TTL_SECONDS = _env_int("NOTIFY_QUEUE_TTL_SECONDS", 24 * 60 * 60)
        self.NOTIFY_LOG_MAX = _env_int("NOTIFY_LOG_MAX", 1000)

        self.REDIS_URL = _env_str("REDIS_URL", "")

    def validate(self) -> None:
        if self.RECORD_STORE_MODE not in RECORD_STORE_MODES:
            raise RuntimeError(f"Invalid RECORD_STORE_MODE: {self.RECORD_STORE_MODE}")
        if not self.DATABASE_URL:
            raise RuntimeError("Missing DATABASE_URL")
        for key in (
            "MAX_UPLOAD_MB",
            "CERT_MAX_SIZE_MB",
            "CERT_TIMEOUT_SECONDS",
            "CERT_SIGNATURE_MAX_BYTES",
            "CERT_MAX_WORKERS",
            "SESSION_TTL_MINUTES",
            "NOTIFY_QUEUE_MAX",
            "NOTIFY_LOG_MAX",
        ):
            if int(getattr(self, key)) <= 0:
                raise RuntimeError(f"{key} must be positive")
