from __future__ import annotations

from typing import Any

from actions.context import ActionContext
from actions.helpers import append_audit
from utils import ApiError, AuthContext, normalize_role


def certificates_cleanup(data: dict[str, Any], auth: AuthContext, ctx: ActionContext, cfg) -> dict[str, Any]:
    raw = (data or {}).get("maxAgeDays")
    try:
        max_age_days = int(raw) if raw not in (None, "") else int(cfg.CERT_RETENTION_DAYS)
    except (TypeError, ValueError):
        raise ApiError("BAD_REQUEST", "maxAgeDays must be an integer")
    if max_age_days < 1:
        raise ApiError("BAD_REQUEST", "maxAgeDays must be at least 1")

    out = ctx.certificates.cleanup_old_certificates(max_age_days)
    append_audit(
        ctx.db,
        entityType="CERTIFICATES",
        entityId="CLEANUP",
        action="CERTIFICATES_CLEANUP",
        actor=auth,
        meta={"maxAgeDays": max_age_days, "deletedCount": out["deletedCount"], "errors": len(out["errors"])},
    )
    return out


def certificates_stats(data: dict[str, Any], auth: AuthContext, ctx: ActionContext, cfg) -> dict[str, Any]:
    return ctx.certificates.certificate_stats()


def _notification_target(data: dict[str, Any], auth: AuthContext) -> str:
    # Reviewers may look at someone else's feed; employees only see their own.
    requested = str((data or {}).get("employeeId") or "").strip()
    if requested and normalize_role(auth.role) in {"HOD", "IT", "ADMIN"}:
        return requested
    return str(auth.userId or "").strip()


def notifications_pending(data: dict[str, Any], auth: AuthContext, ctx: ActionContext, cfg) -> dict[str, Any]:
    employee_id = _notification_target(data, auth)
    items = ctx.notifier.pending_for(employee_id)
    return {"notifications": items, "count": len(items)}


def notifications_history(data: dict[str, Any], auth: AuthContext, ctx: ActionContext, cfg) -> dict[str, Any]:
    try:
        limit = int((data or {}).get("limit") or 50)
    except (TypeError, ValueError):
        raise ApiError("BAD_REQUEST", "limit must be an integer")
    limit = max(1, min(limit, 500))
    items = ctx.notifier.history_for(ctx.store, _notification_target(data, auth), limit=limit)
    return {"notifications": items, "count": len(items)}
