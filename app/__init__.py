from __future__ import annotations

import atexit
import logging
import os

from dotenv import load_dotenv
from flask import Flask, g, request
from flask_cors import CORS

from config import Config
from db import Base, init_engine
from services.certificate_pipeline import CertificatePipeline
from services.notifications import NotificationService
from utils import err, now_monotonic


def _configure_logging(level: str) -> None:
    lvl = getattr(logging, str(level or "INFO").upper(), logging.INFO)
    logging.basicConfig(level=lvl, format="%(asctime)s %(levelname)s %(name)s %(message)s")


def create_app() -> Flask:
    load_dotenv()
    cfg = Config()
    cfg.validate()
    _configure_logging(cfg.LOG_LEVEL)

    engine = init_engine(cfg.DATABASE_URL)

    import models  # noqa: F401  registers tables on Base

    Base.metadata.create_all(bind=engine)

    for path in (cfg.UPLOAD_DIR, cfg.CERTIFICATES_DIR):
        os.makedirs(path, exist_ok=True)
    if cfg.RECORD_STORE_MODE == "json":
        os.makedirs(cfg.DATA_DIR, exist_ok=True)

    app = Flask(__name__)
    app.config["CFG"] = cfg
    app.config["JSON_SORT_KEYS"] = False
    app.config["MAX_CONTENT_LENGTH"] = (cfg.MAX_UPLOAD_MB + 1) * 1024 * 1024

    CORS(app, origins=cfg.ALLOWED_ORIGINS, supports_credentials=False, expose_headers=["X-Request-ID"])

    notifier = NotificationService.from_config(cfg).start()
    atexit.register(notifier.stop)
    app.extensions["notifications"] = notifier
    app.extensions["certificates"] = CertificatePipeline.from_config(cfg)

    @app.before_request
    def _before():
        g.request_id = os.urandom(8).hex()
        g.start_ts = now_monotonic()

    @app.after_request
    def _after(resp):
        resp.headers["X-Request-ID"] = str(getattr(g, "request_id", "") or "")
        resp.headers.setdefault("X-Content-Type-Options", "nosniff")
        resp.headers.setdefault("X-Frame-Options", "DENY")
        resp.headers.setdefault("Referrer-Policy", "no-referrer")
        resp.headers.setdefault("Cache-Control", "no-store")
        return resp

    @app.errorhandler(404)
    def not_found(_e):
        return err("NOT_FOUND", f"Unknown endpoint: {request.path}", http_status=404)

    @app.errorhandler(405)
    def method_not_allowed(_e):
        return err("BAD_REQUEST", "Method not allowed", http_status=405)

    @app.errorhandler(413)
    def too_large(_e):
        return err("BAD_REQUEST", f"Max upload size is {cfg.MAX_UPLOAD_MB}MB", http_status=413)

    from app.routes.admin import admin_bp
    from app.routes.api import api_bp
    from app.routes.core import core_bp
    from app.routes.employee import employee_bp
    from app.routes.review import review_bp

    app.register_blueprint(core_bp)
    app.register_blueprint(api_bp)
    app.register_blueprint(employee_bp)
    app.register_blueprint(review_bp)
    app.register_blueprint(admin_bp)

    logging.getLogger("api").info(
        "app ready env=%s store=%s version=%s", cfg.ENV, cfg.RECORD_STORE_MODE, cfg.APP_VERSION
    )
    return app
