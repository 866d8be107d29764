from __future__ import annotations

import json
import os
from typing import Any

from flask import g, has_request_context

from models import AuditLog
from utils import AuthContext, iso_utc_now, redact_for_audit


def _json_or_empty(value: Any) -> str:
    if value is None:
        return ""
    try:
        return json.dumps(redact_for_audit(value), ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return ""


def append_audit(
    db,
    *,
    entityType: str,
    entityId: str,
    action: str,
    stageTag: str = "",
    actor: AuthContext | None = None,
    at: str = "",
    fromState: str = "",
    toState: str = "",
    remark: str = "",
    before: Any = None,
    after: Any = None,
    meta: Any = None,
) -> None:
    correlation_id = ""
    if has_request_context():
        correlation_id = str(getattr(g, "request_id", "") or "")

    db.add(
        AuditLog(
            logId=f"LOG-{os.urandom(16).hex()}",
            entityType=str(entityType or ""),
            entityId=str(entityId or ""),
            action=str(action or "").upper(),
            fromState=str(fromState or ""),
            toState=str(toState or ""),
            stageTag=str(stageTag or action or "").upper(),
            remark=str(remark or ""),
            actorUserId=str(actor.userId) if actor else "SYSTEM",
            actorRole=str(actor.role) if actor else "SYSTEM",
            at=str(at or iso_utc_now()),
            correlationId=correlation_id,
            beforeJson=_json_or_empty(before),
            afterJson=_json_or_empty(after),
            metaJson=_json_or_empty(meta),
        )
    )


def actor_label(auth: AuthContext | None) -> str:
    if not auth:
        return "SYSTEM"
    return str(auth.userId or auth.email or "SYSTEM")
