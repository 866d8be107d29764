from __future__ import annotations

from flask import Blueprint, request

from app.routes.api import handle_action


admin_bp = Blueprint("admin", __name__, url_prefix="/api/admin")


@admin_bp.get("/certificates/stats")
def rest_certificates_stats():
    return handle_action("CERTIFICATES_STATS", {})


@admin_bp.post("/certificates/cleanup")
def rest_certificates_cleanup():
    body = request.get_json(silent=True) or {}
    return handle_action("CERTIFICATES_CLEANUP", {"maxAgeDays": body.get("maxAgeDays")})


@admin_bp.get("/notifications/<employee_id>")
def rest_employee_notifications(employee_id: str):
    return handle_action(
        "NOTIFICATIONS_HISTORY",
        {"employeeId": employee_id, "limit": request.args.get("limit") or 50},
    )
