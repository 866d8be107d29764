from __future__ import annotations

from services.notifications import NotificationService
from services.record_store import NOTIFICATIONS, JsonRecordStore


class _BrokenStore(JsonRecordStore):
    def save(self, collection_id, value):
        raise OSError("disk full")


def test_rejection_is_logged_and_queued(tmp_path):
    store = JsonRecordStore(str(tmp_path))
    svc = NotificationService().start()

    out = svc.form_rejection(store, employee_id="E1", form_id="F1", reason="Missing asset", rejected_by="I1", stage="IT")

    assert out["title"] == "Application Rejected"
    assert out["message"] == "Your application F1 has been rejected."
    assert out["details"]["rejectionStage"] == "IT"
    assert out["details"]["canResubmit"] is True
    assert out["id"].startswith("NOTIF_")

    assert [n["id"] for n in store.load_list(NOTIFICATIONS)] == [out["id"]]
    assert [n["id"] for n in svc.pending_for("E1")] == [out["id"]]
    assert svc.pending_for("E1") == []


def test_log_is_capped_and_history_newest_first(tmp_path):
    store = JsonRecordStore(str(tmp_path))
    svc = NotificationService(log_max=3).start()
    for i in range(5):
        svc.form_approval(store, employee_id="E1", form_id=f"F{i}", approved_by="H1")
    svc.form_approval(store, employee_id="E2", form_id="FX", approved_by="H1")

    assert len(store.load_list(NOTIFICATIONS)) == 3
    history = svc.history_for(store, "E1")
    assert [n["formId"] for n in history] == ["F4", "F3"]
    assert history[0]["message"] == "Your application F4 has been approved by H1."


def test_certificates_ready_details(tmp_path):
    store = JsonRecordStore(str(tmp_path))
    svc = NotificationService().start()
    out = svc.certificates_ready(
        store,
        employee_id="E1",
        form_id="F1",
        certificates=[{"filename": "a.pdf"}, {"filename": "b.pdf"}],
        processed_by="I1",
        completed_at="2024-01-01T00:00:00.000Z",
        valid_until="2024-01-31T00:00:00.000Z",
    )
    assert out["details"] == {
        "certificateCount": 2,
        "validUntil": "2024-01-31T00:00:00.000Z",
        "processedBy": "I1",
        "completedAt": "2024-01-01T00:00:00.000Z",
    }
    assert out["certificates"] == ["a.pdf", "b.pdf"]


def test_notify_never_raises(tmp_path):
    svc = NotificationService().start()
    assert svc.form_approval(_BrokenStore(str(tmp_path)), employee_id="E1", form_id="F1", approved_by="H1") is None
    assert svc.pending_for("E1") == []


def test_stopped_service_still_logs(tmp_path):
    store = JsonRecordStore(str(tmp_path))
    svc = NotificationService()
    assert svc.running is False
    assert svc.form_approval(store, employee_id="E1", form_id="F1", approved_by="H1") is not None
    assert svc.pending_for("E1") == []
    assert len(store.load_list(NOTIFICATIONS)) == 1


def test_async_delivery_hands_off_to_celery(tmp_path, monkeypatch):
    from app.tasks.notifications import deliver_notification

    sent = []
    monkeypatch.setattr(deliver_notification, "delay", lambda url, payload: sent.append((url, payload["id"])))

    svc = NotificationService(async_enabled=True, webhook_url="https://hooks.example.com/nodues").start()
    out = svc.form_approval(JsonRecordStore(str(tmp_path)), employee_id="E1", form_id="F1", approved_by="H1")

    assert sent == [("https://hooks.example.com/nodues", out["id"])]
