"""
Webhook delivery for case notifications.
"""
from __future__ import annotations

from datetime import datetime, timezone

import requests

from app.tasks import celery_app


@celery_app.task(bind=True, autoretry_for=(requests.RequestException,), retry_backoff=True, max_retries=5)
def deliver_notification(self, webhook_url: str, payload: dict):
    """
    POST one notification payload to the configured webhook.

    Non-2xx responses raise and are retried with exponential backoff.
    """
    resp = requests.post(webhook_url, json=payload, timeout=10)
    resp.raise_for_status()
    return {
        "task_id": self.request.id,
        "notification_id": payload.get("id"),
        "employee_id": payload.get("employeeId"),
        "http_status": resp.status_code,
        "delivered_at": datetime.now(timezone.utc).isoformat(),
    }
