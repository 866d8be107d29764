from __future__ import annotations

from flask import Blueprint, request

from app.routes.api import handle_action


review_bp = Blueprint("review", __name__, url_prefix="/api/review")


@review_bp.get("/cases")
def rest_case_review_queue():
    return handle_action("CASE_REVIEW_QUEUE", {"status": request.args.get("status") or ""})


@review_bp.post("/cases/<form_id>/assign-forms")
def rest_case_assign_forms(form_id: str):
    body = request.get_json(silent=True) or {}
    return handle_action(
        "CASE_ASSIGN_FORMS",
        {"formId": form_id, "assignedForms": body.get("assignedForms") or [], "remark": body.get("remark") or ""},
    )


@review_bp.post("/cases/<form_id>/hod-approve")
def rest_case_hod_approve(form_id: str):
    body = request.get_json(silent=True) or {}
    return handle_action("CASE_HOD_APPROVE", {"formId": form_id, "remarks": body.get("remarks") or ""})


@review_bp.post("/cases/<form_id>/reject")
def rest_case_reject(form_id: str):
    body = request.get_json(silent=True) or {}
    return handle_action(
        "CASE_REJECT",
        {"formId": form_id, "reason": body.get("reason") or body.get("rejectionReason") or ""},
    )


@review_bp.post("/cases/<form_id>/it-complete")
def rest_case_it_complete(form_id: str):
    body = request.get_json(silent=True) or {}
    return handle_action("CASE_IT_COMPLETE", {"formId": form_id, "remarks": body.get("remarks") or ""})
