from __future__ import annotations

from typing import Any

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker


Base = declarative_base()

# Bound in init_engine(); importing modules keep a reference to the same factory.
SessionLocal = sessionmaker(autoflush=False, expire_on_commit=False)

_engine: Engine | None = None


def _is_sqlite(url: str) -> bool:
    return str(url or "").lower().startswith("sqlite")


def init_engine(database_url: str) -> Engine:
    global _engine

    url = str(database_url or "").strip()
    if not url:
        raise RuntimeError("Missing DATABASE_URL")

    kwargs: dict[str, Any] = {"pool_pre_ping": True, "future": True}
    if _is_sqlite(url):
        kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
    else:
        kwargs["pool_size"] = 10
        kwargs["max_overflow"] = 20
        kwargs["pool_recycle"] = 1800

    engine = create_engine(url, **kwargs)

    if _is_sqlite(url):

        @event.listens_for(engine, "connect")
        def _sqlite_pragmas(dbapi_conn, _record):
            cur = dbapi_conn.cursor()
            cur.execute("PRAGMA journal_mode=WAL")
            cur.execute("PRAGMA busy_timeout=30000")
            cur.close()

    SessionLocal.configure(bind=engine)
    _engine = engine
    return engine



def ping_db() -> bool:
    if _engine is None:
        return False
    try:
        with _engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception:
        return False


def get_pool_stats() -> dict[str, Any]:
    if _engine is None:
        return {"status": "not_initialized"}
    pool = _engine.pool
    out: dict[str, Any] = {"class": type(pool).__name__}
    for name in ("size", "checkedin", "checkedout", "overflow"):
        fn = getattr(pool, name, None)
        if callable(fn):
            try:
                out[name] = int(fn())
            except Exception:
                pass
    return out
