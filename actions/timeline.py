from __future__ import annotations

from typing import Any, Optional

from actions.case_lifecycle import STATUS_IT_COMPLETED, STATUS_PENDING, STATUS_REJECTED
from schema import ASSIGNED_TITLE_KEYS
from utils import iso_utc_now, sort_key_datetime


def _event(step: str, title: str, date: Any, status: str, details: str) -> dict:
    return {"step": step, "title": title, "date": date, "status": status, "details": details}


def build_timeline(case: dict, *, now: Optional[str] = None) -> list[dict]:
    """
    Read-only timeline for one case, ordered by each event's own date
    (ascending). Events with the same date keep construction order.
    """

    events: list[dict] = []
    status = str(case.get("status") or STATUS_PENDING)

    if case.get("submissionDate"):
        events.append(
            _event(
                "submitted",
                "Application Submitted",
                case.get("submissionDate"),
                "completed",
                f"Application {case.get('formId')} submitted for {case.get('noDuesType')} clearance",
            )
        )

    if status != STATUS_PENDING:
        review = "rejected" if status == STATUS_REJECTED else "completed"
        default_details = (
            "Application rejected by IT" if review == "rejected" else "Application reviewed and approved by IT department"
        )
        events.append(
            _event("it_reviewed", "IT Initial Review", case.get("lastUpdated"), review, case.get("remark") or default_details)
        )

    assigned = case.get("assignedForms") or []
    if assigned:
        titles = ", ".join(str((f or {}).get("title") or "") for f in assigned if isinstance(f, dict))
        events.append(
            _event(
                "forms_assigned",
                "Forms Assigned",
                case.get("lastUpdated"),
                "completed",
                f"{len(assigned)} forms assigned: {titles}",
            )
        )

    responses = case.get("formResponses") or {}
    if isinstance(responses, dict) and responses:
        events.append(
            _event(
                "forms_completed",
                "Forms Completed",
                case.get("finalSubmittedAt") or case.get("lastUpdated"),
                "completed",
                f"Employee completed {len(responses)} forms and submitted to HOD",
            )
        )

    hod = case.get("hodApproval")
    if isinstance(hod, dict):
        events.append(
            _event("hod_approved", "HOD Approval", hod.get("approvedAt"), "completed", f"Approved by HOD: {hod.get('approvedBy')}")
        )

    it = case.get("itProcessing")
    if isinstance(it, dict):
        action = it.get("action")
        events.append(
            _event(
                "it_processing",
                "IT Final Processing",
                it.get("processedAt"),
                "completed" if action == "completed" else "rejected",
                it.get("remarks") or f"Forms {action} by {it.get('processedBy')}",
            )
        )

    certificates = case.get("certificates")
    if status == STATUS_IT_COMPLETED and isinstance(certificates, list):
        generated_at = it.get("processedAt") if isinstance(it, dict) else None
        events.append(
            _event(
                "certificates_generated",
                "Certificates Generated",
                generated_at or now or iso_utc_now(),
                "completed",
                f"{len(certificates)} digital certificates generated and ready for download",
            )
        )

    return sorted(events, key=lambda e: sort_key_datetime(e.get("date")))


def forms_completion_status(case: dict) -> list[dict]:
    assigned = case.get("assignedForms")
    if not isinstance(assigned, list):
        return []
    responses = case.get("formResponses") or {}
    out = []
    for form in assigned:
        if not isinstance(form, dict):
            continue
        key = ASSIGNED_TITLE_KEYS.get(str(form.get("title") or ""), "")
        done = bool(key and isinstance(responses, dict) and responses.get(key))
        out.append(
            {
                "title": form.get("title"),
                "path": form.get("path"),
                "status": "completed" if done else "pending",
                "lastUpdated": case.get("lastUpdated"),
                "dataKey": key,
                "hasData": done,
            }
        )
    return out
