from __future__ import annotations

import os
import sys

import pytest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)


@pytest.fixture()
def app_client(tmp_path, monkeypatch):
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'test.db'}")
    monkeypatch.setenv("DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("UPLOAD_DIR", str(tmp_path / "uploads"))
    monkeypatch.setenv("CERTIFICATES_DIR", str(tmp_path / "certificates"))
    monkeypatch.setenv("ALLOW_TEST_TOKENS", "1")
    monkeypatch.setenv("RECORD_STORE_MODE", "db")
    monkeypatch.setenv("NOTIFY_ASYNC", "0")
    monkeypatch.delenv("REDIS_URL", raising=False)

    from app import create_app

    app = create_app()
    app.config["TESTING"] = True
    client = app.test_client()
    yield app, client
    app.extensions["notifications"].stop()
