from __future__ import annotations

import copy
import json
import logging
import os
import re
import threading
from contextlib import contextmanager
from typing import Any, Iterator

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from models import RecordCollection
from utils import ApiError, iso_utc_now


log = logging.getLogger("records")

PENDING_FORMS = "pending_forms"
FORM_HISTORY = "form_history"
CERTIFICATES = "certificates"
USERS = "users"
NOTIFICATIONS = "notifications"

_COLLECTION_ID_RE = re.compile(r"^[a-z][a-z0-9_]{0,63}$")

_locks_guard = threading.Lock()
_collection_locks: dict[str, threading.RLock] = {}


def _collection_lock(collection_id: str) -> threading.RLock:
    with _locks_guard:
        lock = _collection_locks.get(collection_id)
        if lock is None:
            lock = threading.RLock()
            _collection_locks[collection_id] = lock
        return lock


def _check_collection_id(collection_id: str) -> str:
    cid = str(collection_id or "").strip()
    if not _COLLECTION_ID_RE.match(cid):
        raise ValueError(f"Invalid collection id: {collection_id!r}")
    return cid


class RecordStore:
    """
    Whole-collection key/value store.

    `load` never raises for missing or unreadable data; it hands back a copy of
    `default`. `save` is the only write primitive. Inside `transaction()` the
    named collections are locked for this process and the writes become durable
    together when the block exits cleanly.
    """

    mode = ""
    _depth = 0

    def load(self, collection_id: str, default: Any = None) -> Any:
        raise NotImplementedError

    def save(self, collection_id: str, value: Any) -> None:
        raise NotImplementedError

    def commit(self) -> None:
        return None

    def rollback(self) -> None:
        return None

    def load_list(self, collection_id: str) -> list:
        data = self.load(collection_id, [])
        return data if isinstance(data, list) else []

    @contextmanager
    def transaction(self, *collection_ids: str) -> Iterator["RecordStore"]:
        ids = sorted({_check_collection_id(c) for c in collection_ids})
        locks = [_collection_lock(c) for c in ids]
        for lock in locks:
            lock.acquire()
        try:
            self._begin()
            try:
                yield self
            except BaseException:
                self._end()
                if self._depth == 0:
                    self.rollback()
                raise
            self._end()
            if self._depth == 0:
                self.commit()
        finally:
            for lock in reversed(locks):
                lock.release()

    def _begin(self) -> None:
        self._depth += 1

    def _end(self) -> None:
        self._depth = max(0, self._depth - 1)


class DbRecordStore(RecordStore):
    mode = "db"

    def __init__(self, db):
        self.db = db

    def _row(self, cid: str, *, for_update: bool):
        q = select(RecordCollection).where(RecordCollection.collectionId == cid)
        if for_update:
            q = q.with_for_update()
        return self.db.execute(q).scalar_one_or_none()

    def load(self, collection_id: str, default: Any = None) -> Any:
        cid = _check_collection_id(collection_id)
        try:
            row = self._row(cid, for_update=self._depth > 0)
        except SQLAlchemyError:
            log.exception("load failed collection=%s", cid)
            return copy.deepcopy(default)
        if row is None or not str(row.payloadJson or "").strip():
            return copy.deepcopy(default)
        try:
            return json.loads(row.payloadJson)
        except ValueError:
            log.warning("corrupt collection=%s version=%s, using default", cid, row.version)
            return copy.deepcopy(default)

    def save(self, collection_id: str, value: Any) -> None:
        cid = _check_collection_id(collection_id)
        try:
            payload = json.dumps(value, ensure_ascii=False)
            row = self._row(cid, for_update=True)
            now = iso_utc_now()
            if row is None:
                self.db.add(RecordCollection(collectionId=cid, payloadJson=payload, version=1, updatedAt=now))
            else:
                row.payloadJson = payload
                row.version = int(row.version or 0) + 1
                row.updatedAt = now
            self.db.flush()
        except (SQLAlchemyError, TypeError, ValueError):
            log.exception("save failed collection=%s", cid)
            raise ApiError("INTERNAL", f"Failed to save {cid}")

    def commit(self) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError:
            log.exception("commit failed")
            self.db.rollback()
            raise ApiError("INTERNAL", "Failed to persist changes")

    def rollback(self) -> None:
        self.db.rollback()


class JsonRecordStore(RecordStore):
    """
    Flat-file backend: `<DATA_DIR>/<collection>.json`, two-space indented.

    Writes made inside a transaction are staged and flushed on commit, each file
    replaced atomically.
    """

    mode = "json"

    def __init__(self, data_dir: str):
        self.data_dir = str(data_dir or "./data")
        self._staged: dict[str, Any] = {}

    def _path(self, cid: str) -> str:
        return os.path.join(self.data_dir, f"{cid}.json")

    def load(self, collection_id: str, default: Any = None) -> Any:
        cid = _check_collection_id(collection_id)
        if cid in self._staged:
            return copy.deepcopy(self._staged[cid])
        path = self._path(cid)
        if not os.path.exists(path):
            return copy.deepcopy(default)
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, ValueError):
            log.warning("unreadable collection=%s path=%s, using default", cid, path)
            return copy.deepcopy(default)

    def save(self, collection_id: str, value: Any) -> None:
        cid = _check_collection_id(collection_id)
        if self._depth > 0:
            try:
                self._staged[cid] = json.loads(json.dumps(value, ensure_ascii=False))
            except (TypeError, ValueError):
                log.exception("save failed collection=%s", cid)
                raise ApiError("INTERNAL", f"Failed to save {cid}")
            return
        self._write(cid, value)

    def _write(self, cid: str, value: Any) -> None:
        path = self._path(cid)
        tmp = f"{path}.{os.getpid()}.{threading.get_ident()}.tmp"
        try:
            os.makedirs(self.data_dir, exist_ok=True)
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(value, f, indent=2, ensure_ascii=False)
            os.replace(tmp, path)
        except (OSError, TypeError, ValueError):
            log.exception("save failed collection=%s", cid)
            try:
                os.remove(tmp)
            except OSError:
                pass
            raise ApiError("INTERNAL", f"Failed to save {cid}")

    def commit(self) -> None:
        staged, self._staged = self._staged, {}
        for cid, value in staged.items():
            self._write(cid, value)

    def rollback(self) -> None:
        self._staged = {}


def get_record_store(db, cfg) -> RecordStore:
    mode = str(getattr(cfg, "RECORD_STORE_MODE", "") or "db").strip().lower()
    if mode == "json":
        return JsonRecordStore(str(getattr(cfg, "DATA_DIR", "./data") or "./data"))
    if db is None:
        raise RuntimeError("DB session required for RECORD_STORE_MODE=db")
    return DbRecordStore(db)
