from __future__ import annotations

import logging
import os
import threading
from typing import Any, Optional

from cachetools import TTLCache

from services.record_store import NOTIFICATIONS, RecordStore
from utils import epoch_ms, iso_utc_now, sort_key_datetime


log = logging.getLogger("notifications")

EVENT_FORM_REJECTION = "form_rejection"
EVENT_FORM_APPROVAL = "form_approval"
EVENT_CERTIFICATES_READY = "certificates_ready"


def new_notification_id() -> str:
    return f"NOTIF_{epoch_ms()}_{os.urandom(5).hex()[:9]}"


class NotificationService:
    """
    Fire-and-forget notifications for case transitions.

    Each notification is appended to the `notifications` log collection, parked
    in an in-memory TTL queue for pull delivery, and optionally handed to a
    celery task that posts it to a webhook. `notify` never raises.
    """

    def __init__(
        self,
        *,
        queue_max: int = 1000,
        queue_ttl_seconds: int = 86400,
        log_max: int = 1000,
        async_enabled: bool = False,
        webhook_url: str = "",
    ):
        self.queue_max = max(1, int(queue_max))
        self.queue_ttl_seconds = max(1, int(queue_ttl_seconds))
        self.log_max = max(1, int(log_max))
        self.async_enabled = bool(async_enabled)
        self.webhook_url = str(webhook_url or "").strip()
        self._lock = threading.RLock()
        self._queue: Optional[TTLCache] = None

    @classmethod
    def from_config(cls, cfg) -> "NotificationService":
        return cls(
            queue_max=cfg.NOTIFY_QUEUE_MAX,
            queue_ttl_seconds=cfg.NOTIFY_QUEUE_TTL_SECONDS,
            log_max=cfg.NOTIFY_LOG_MAX,
            async_enabled=cfg.NOTIFY_ASYNC,
            webhook_url=cfg.NOTIFY_WEBHOOK_URL,
        )

    @property
    def running(self) -> bool:
        return self._queue is not None

    def start(self) -> "NotificationService":
        with self._lock:
            if self._queue is None:
                self._queue = TTLCache(maxsize=self.queue_max, ttl=self.queue_ttl_seconds)
                log.info("notification service started async=%s", self.async_enabled)
        return self

    def stop(self) -> None:
        with self._lock:
            if self._queue is not None:
                dropped = len(self._queue)
                self._queue = None
                log.info("notification service stopped queued_dropped=%s", dropped)

    # ------------------------------------------------------------------

    def notify(
        self,
        store: RecordStore,
        *,
        event_type: str,
        employee_id: str,
        form_id: str,
        title: str,
        message: str,
        details: Optional[dict] = None,
        priority: str = "medium",
        extra: Optional[dict] = None,
    ) -> Optional[dict]:
        payload: dict[str, Any] = {
            "id": new_notification_id(),
            "type": event_type,
            "employeeId": employee_id,
            "formId": form_id,
            "timestamp": iso_utc_now(),
            "priority": priority,
            "title": title,
            "message": message,
            "details": dict(details or {}),
        }
        if extra:
            payload.update(extra)

        try:
            self._log(store, payload)
            self._enqueue(payload)
            self._dispatch(payload)
        except Exception:
            log.exception("notify failed type=%s employee=%s form=%s", event_type, employee_id, form_id)
            return None

        log.info("notification type=%s employee=%s form=%s", event_type, employee_id, form_id)
        return payload

    def _log(self, store: RecordStore, payload: dict) -> None:
        with store.transaction(NOTIFICATIONS):
            entries = store.load_list(NOTIFICATIONS)
            entries.append({**payload, "loggedAt": iso_utc_now()})
            if len(entries) > self.log_max:
                entries = entries[-self.log_max :]
            store.save(NOTIFICATIONS, entries)

    def _enqueue(self, payload: dict) -> None:
        with self._lock:
            if self._queue is None:
                log.warning("notification service not running, not queued id=%s", payload["id"])
                return
            self._queue[payload["id"]] = payload

    def _dispatch(self, payload: dict) -> None:
        if not (self.async_enabled and self.webhook_url):
            return
        from app.tasks.notifications import deliver_notification

        deliver_notification.delay(self.webhook_url, payload)

    # ------------------------------------------------------------------

    def pending_for(self, employee_id: str) -> list[dict]:
        """Drain queued notifications for one employee, oldest first."""
        with self._lock:
            if self._queue is None:
                return []
            keys = [k for k, v in list(self._queue.items()) if v.get("employeeId") == employee_id]
            out = [self._queue.pop(k) for k in keys]
        return sorted(out, key=lambda n: sort_key_datetime(n.get("timestamp")))

    def history_for(self, store: RecordStore, employee_id: Optional[str], limit: int = 50) -> list[dict]:
        entries = [e for e in reversed(store.load_list(NOTIFICATIONS)) if isinstance(e, dict)]
        if employee_id:
            entries = [e for e in entries if e.get("employeeId") == employee_id]
        entries.sort(key=lambda n: sort_key_datetime(n.get("timestamp")), reverse=True)
        return entries[: max(0, int(limit))]

    # ------------------------------------------------------------------
    # Event builders
    # ------------------------------------------------------------------

    def form_rejection(
        self,
        store: RecordStore,
        *,
        employee_id: str,
        form_id: str,
        reason: str,
        rejected_by: str = "System",
        stage: str = "Review",
    ) -> Optional[dict]:
        return self.notify(
            store,
            event_type=EVENT_FORM_REJECTION,
            employee_id=employee_id,
            form_id=form_id,
            priority="high",
            title="Application Rejected",
            message=f"Your application {form_id} has been rejected.",
            details={
                "rejectionReason": reason,
                "actionRequired": "Submit new application",
                "rejectedBy": rejected_by or "System",
                "rejectionStage": stage or "Review",
                "canResubmit": True,
            },
            extra={"reason": reason},
        )

    def form_approval(self, store: RecordStore, *, employee_id: str, form_id: str, approved_by: str) -> Optional[dict]:
        return self.notify(
            store,
            event_type=EVENT_FORM_APPROVAL,
            employee_id=employee_id,
            form_id=form_id,
            title="Application Approved",
            message=f"Your application {form_id} has been approved by {approved_by}.",
            details={
                "nextStep": "Forwarded to IT department",
                "trackingUrl": f"/tracking?formId={form_id}",
            },
            extra={"approvedBy": approved_by},
        )

    def certificates_ready(
        self,
        store: RecordStore,
        *,
        employee_id: str,
        form_id: str,
        certificates: list[dict],
        processed_by: str = "IT Department",
        completed_at: str = "",
        valid_until: str = "",
    ) -> Optional[dict]:
        return self.notify(
            store,
            event_type=EVENT_CERTIFICATES_READY,
            employee_id=employee_id,
            form_id=form_id,
            priority="high",
            title="Certificates Ready",
            message="Your IT clearance certificates are ready for download!",
            details={
                "certificateCount": len(certificates),
                "validUntil": valid_until,
                "processedBy": processed_by or "IT Department",
                "completedAt": completed_at or iso_utc_now(),
            },
            extra={"certificates": [c.get("filename") for c in certificates]},
        )
