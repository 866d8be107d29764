from __future__ import annotations

import logging

import redis
from flask import Blueprint, current_app, jsonify

from db import get_pool_stats, ping_db
from utils import iso_utc_now

core_bp = Blueprint("core", __name__)

log = logging.getLogger("api")


def _ping_redis() -> bool:
    """Check the celery broker when one is configured."""
    redis_url = current_app.config["CFG"].REDIS_URL
    if not redis_url:
        return True
    try:
        return bool(redis.from_url(redis_url, socket_connect_timeout=2).ping())
    except redis.RedisError:
        log.warning("redis ping failed", exc_info=True)
        return False


@core_bp.get("/health")
def health():
    """Process alive; no dependency checks."""
    cfg = current_app.config["CFG"]
    return jsonify({
        "status": "ok",
        "time": iso_utc_now(),
        "version": cfg.APP_VERSION,
        "recordStore": cfg.RECORD_STORE_MODE,
        "notifications": "running" if current_app.extensions["notifications"].running else "stopped",
    })


@core_bp.get("/ready")
def ready():
    """
    Readiness check for load balancers.
    Checks database and broker connectivity.
    """
    db_ok = ping_db()
    redis_ok = _ping_redis()

    cfg = current_app.config["CFG"]
    all_ok = db_ok and redis_ok
    status = 200 if all_ok else 503

    return (
        jsonify({
            "status": "ok" if all_ok else "degraded",
            "time": iso_utc_now(),
            "version": cfg.APP_VERSION,
            "checks": {
                "db": "ok" if db_ok else "error",
                "redis": "ok" if redis_ok else "error",
            },
            "dbPool": get_pool_stats(),
        }),
        status,
    )


@core_bp.get("/version")
def version():
    cfg = current_app.config["CFG"]
    return jsonify({"version": cfg.APP_VERSION, "env": cfg.ENV, "time": iso_utc_now()})
