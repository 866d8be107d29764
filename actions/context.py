from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from services.certificate_pipeline import CertificatePipeline
from services.notifications import NotificationService
from services.record_store import RecordStore


@dataclass
class ActionContext:
    """Per-request collaborators handed to every action handler."""

    db: Any
    store: RecordStore
    notifier: NotificationService
    certificates: CertificatePipeline
    token: str = ""
