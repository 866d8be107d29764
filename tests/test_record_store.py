from __future__ import annotations

import json
import threading

import pytest

from db import SessionLocal
from services.record_store import PENDING_FORMS, DbRecordStore, JsonRecordStore
from utils import ApiError


def test_json_store_missing_and_corrupt_collections(tmp_path):
    store = JsonRecordStore(str(tmp_path / "data"))
    assert store.load_list(PENDING_FORMS) == []

    (tmp_path / "data").mkdir()
    (tmp_path / "data" / "pending_forms.json").write_text("{not json", encoding="utf-8")
    assert store.load_list(PENDING_FORMS) == []
    assert store.load("pending_forms", {"x": 1}) == {"x": 1}


def test_json_store_writes_indented_file(tmp_path):
    store = JsonRecordStore(str(tmp_path / "nested" / "data"))
    store.save(PENDING_FORMS, [{"formId": "F1"}])
    raw = (tmp_path / "nested" / "data" / "pending_forms.json").read_text(encoding="utf-8")
    assert raw.startswith("[\n  {")
    assert json.loads(raw) == [{"formId": "F1"}]


def test_json_store_transaction_is_all_or_nothing(tmp_path):
    store = JsonRecordStore(str(tmp_path))
    store.save(PENDING_FORMS, [{"formId": "F1"}])

    with pytest.raises(ApiError):
        with store.transaction(PENDING_FORMS):
            cases = store.load_list(PENDING_FORMS)
            cases.append({"formId": "F2"})
            store.save(PENDING_FORMS, cases)
            assert len(store.load_list(PENDING_FORMS)) == 2
            raise ApiError("CONFLICT", "boom")

    assert store.load_list(PENDING_FORMS) == [{"formId": "F1"}]


def test_json_store_serializes_concurrent_appends(tmp_path):
    def append(i: int):
        store = JsonRecordStore(str(tmp_path))
        with store.transaction(PENDING_FORMS):
            cases = store.load_list(PENDING_FORMS)
            cases.append({"formId": f"F{i}"})
            store.save(PENDING_FORMS, cases)

    threads = [threading.Thread(target=append, args=(i,)) for i in range(10)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    ids = sorted(c["formId"] for c in JsonRecordStore(str(tmp_path)).load_list(PENDING_FORMS))
    assert ids == sorted(f"F{i}" for i in range(10))


def test_unserializable_value_is_a_save_failure(tmp_path):
    store = JsonRecordStore(str(tmp_path))
    with pytest.raises(ApiError) as e:
        store.save(PENDING_FORMS, [object()])
    assert (e.value.code, e.value.message) == ("INTERNAL", "Failed to save pending_forms")


def test_invalid_collection_id_rejected(tmp_path):
    with pytest.raises(ValueError):
        JsonRecordStore(str(tmp_path)).load("../etc/passwd")


def test_db_store_round_trip_and_version(app_client):
    with SessionLocal() as db:
        store = DbRecordStore(db)
        assert store.load_list(PENDING_FORMS) == []
        with store.transaction(PENDING_FORMS):
            store.save(PENDING_FORMS, [{"formId": "F1"}])
        with store.transaction(PENDING_FORMS):
            store.save(PENDING_FORMS, [{"formId": "F1"}, {"formId": "F2"}])

    with SessionLocal() as db:
        store = DbRecordStore(db)
        assert [c["formId"] for c in store.load_list(PENDING_FORMS)] == ["F1", "F2"]
        assert store._row(PENDING_FORMS, for_update=False).version == 2


def test_db_store_rolls_back_on_error(app_client):
    with SessionLocal() as db:
        store = DbRecordStore(db)
        with store.transaction(PENDING_FORMS):
            store.save(PENDING_FORMS, [{"formId": "F1"}])
        with pytest.raises(ApiError):
            with store.transaction(PENDING_FORMS):
                store.save(PENDING_FORMS, [])
                raise ApiError("CONFLICT", "nope")

    with SessionLocal() as db:
        assert DbRecordStore(db).load_list(PENDING_FORMS) == [{"formId": "F1"}]
