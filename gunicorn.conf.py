import os


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


wsgi_app = "wsgi:app"
bind = f"0.0.0.0:{_env_int('PORT', 5000)}"

# Certificate generation blocks a request thread; gthread keeps other requests moving.
worker_class = os.getenv("GUNICORN_WORKER_CLASS", "gthread").strip() or "gthread"
workers = max(1, _env_int("WEB_CONCURRENCY", 2))
threads = max(1, _env_int("PYTHON_THREADS", 4))

# Record-store locks are per process; keep preload off so each worker owns its engine.
preload_app = _env_bool("GUNICORN_PRELOAD_APP", False)

# Must outlive one IT completion: every certificate may take CERT_TIMEOUT_SECONDS.
_cert_timeout = max(1, _env_int("CERT_TIMEOUT_SECONDS", 30))
timeout = max(_cert_timeout * 4 + 30, _env_int("GUNICORN_TIMEOUT", 180))
graceful_timeout = max(5, _env_int("GUNICORN_GRACEFUL_TIMEOUT", 30))
keepalive = max(1, _env_int("GUNICORN_KEEPALIVE", 30))

accesslog = "-"
errorlog = "-"
loglevel = os.getenv("GUNICORN_LOG_LEVEL", "info").strip().lower()

max_requests = max(0, _env_int("GUNICORN_MAX_REQUESTS", 1000))
max_requests_jitter = max(0, _env_int("GUNICORN_MAX_REQUESTS_JITTER", 50))
