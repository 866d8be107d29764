from __future__ import annotations

import logging
from typing import Any, Iterable, Optional

from actions.case_repo import latest_case, new_form_id
from schema import ASSIGNED_TITLE_KEYS, SUB_FORM_STORAGE_KEYS, is_valid_sub_form_value
from utils import ApiError


log = logging.getLogger("cases")

STATUS_PENDING = "pending"
STATUS_APPROVED = "approved"
STATUS_SUBMITTED_HOD = "Submitted to HOD"
STATUS_SUBMITTED_IT = "Submitted to IT"
STATUS_IT_COMPLETED = "IT Completed"
STATUS_REJECTED = "rejected"

# Exact spellings found in stored records.
ACTIVE_STATUSES = ["Pending", "pending", "Submitted to HOD", "Submitted to IT", "approved"]
ASSIGNED_FORMS_STATUSES = ["approved", "Submitted to HOD", "pending", "Pending"]

_ACTIVE_NON_PENDING = {s for s in ACTIVE_STATUSES if s.lower() != STATUS_PENDING}

# op -> (allowed source statuses, target status); "pending" is matched case-insensitively.
TRANSITIONS: dict[str, tuple[set[str], str]] = {
    "assign forms to": ({STATUS_PENDING}, STATUS_APPROVED),
    "final-submit": ({STATUS_PENDING, STATUS_APPROVED}, STATUS_SUBMITTED_HOD),
    "approve": ({STATUS_SUBMITTED_HOD}, STATUS_SUBMITTED_IT),
    "complete": ({STATUS_SUBMITTED_IT}, STATUS_IT_COMPLETED),
    "reject": ({STATUS_PENDING} | _ACTIVE_NON_PENDING, STATUS_REJECTED),
}

REQUIRED_SUBMISSION_FIELDS = ("name", "employeeId", "email", "department", "noDuesType")


def is_pending_status(status: Any) -> bool:
    return str(status or "").strip().lower() == STATUS_PENDING


def is_active_status(status: Any) -> bool:
    return is_pending_status(status) or str(status or "") in _ACTIVE_NON_PENDING


def is_rejected_status(status: Any) -> bool:
    return "rejected" in str(status or "").lower()


def _status_in(status: Any, allowed: Iterable[str]) -> bool:
    if STATUS_PENDING in allowed and is_pending_status(status):
        return True
    return str(status or "") in allowed


def _guard(case: dict, op: str) -> str:
    allowed, target = TRANSITIONS[op]
    status = str(case.get("status") or "")
    if not _status_in(status, allowed):
        raise ApiError("CONFLICT", f"Cannot {op} a case in status {status or 'unknown'}")
    return target


def find_active_case(cases: list, employee_id: str) -> Optional[dict]:
    return latest_case(cases, employee_id, predicate=lambda c: is_active_status(c.get("status")))


# --------------------------------------------------------------------------
# Submission
# --------------------------------------------------------------------------


def validate_submission(fields: dict, *, order_letter: str) -> dict[str, str]:
    cleaned = {k: str((fields or {}).get(k) or "").strip() for k in REQUIRED_SUBMISSION_FIELDS}
    cleaned["reason"] = str((fields or {}).get("reason") or "").strip()
    if not str(order_letter or "").strip():
        raise ApiError("BAD_REQUEST", "Order letter file is required")
    missing = [k for k in REQUIRED_SUBMISSION_FIELDS if not cleaned[k]]
    if missing:
        raise ApiError("BAD_REQUEST", f"Missing required fields: {', '.join(missing)}")
    return cleaned


def assert_no_active_case(cases: list, employee_id: str) -> None:
    existing = find_active_case(cases, employee_id)
    if existing:
        raise ApiError(
            "CONFLICT",
            f"You already have a {existing.get('status')} application ({existing.get('formId')})",
        )


def build_new_case(cases: list, fields: dict[str, str], *, order_letter: str, now: str) -> dict:
    return {
        "formId": new_form_id(cases),
        "name": fields["name"],
        "employeeName": fields["name"],
        "employeeId": fields["employeeId"],
        "email": fields["email"],
        "department": fields["department"],
        "noDuesType": fields["noDuesType"],
        "reason": fields.get("reason", ""),
        "orderLetter": order_letter,
        "status": STATUS_PENDING,
        "submissionDate": now,
        "submittedBy": fields["employeeId"],
        "lastUpdated": now,
        "assignedForms": [],
        "formResponses": {},
        "remark": "",
    }


# --------------------------------------------------------------------------
# Sub-forms and final submit
# --------------------------------------------------------------------------


def apply_sub_form(case: dict, storage_key: str, payload: dict, *, now: str) -> dict:
    if not is_active_status(case.get("status")):
        raise ApiError("CONFLICT", f"Cannot edit forms of a case in status {case.get('status')}")
    responses = case.get("formResponses")
    if not isinstance(responses, dict):
        responses = {}
    responses[storage_key] = payload
    case["formResponses"] = responses
    case["lastUpdated"] = now
    return case


def validate_final_submit(payload: dict) -> dict[str, dict]:
    """
    Returns the storage-key -> object mapping to merge. Disposal and e-file are
    required; at least one Form 365 variant must be present.
    """

    body = payload or {}
    if not is_valid_sub_form_value(body.get("disposalForm")):
        raise ApiError("BAD_REQUEST", "Valid disposal form data is required")
    if not is_valid_sub_form_value(body.get("efileForm")):
        raise ApiError("BAD_REQUEST", "Valid e-file form data is required")
    transfer_ok = is_valid_sub_form_value(body.get("form365Transfer"))
    disposal_ok = is_valid_sub_form_value(body.get("form365Disposal"))
    if not transfer_ok and not disposal_ok:
        raise ApiError("BAD_REQUEST", "Valid Form 365 (Transfer or Disposal) data is required")

    out = {
        SUB_FORM_STORAGE_KEYS["disposalForm"]: body["disposalForm"],
        SUB_FORM_STORAGE_KEYS["efileForm"]: body["efileForm"],
    }
    if transfer_ok:
        out[SUB_FORM_STORAGE_KEYS["form365Transfer"]] = body["form365Transfer"]
    if disposal_ok:
        out[SUB_FORM_STORAGE_KEYS["form365Disposal"]] = body["form365Disposal"]
    return out


def apply_final_submit(case: dict, responses: dict[str, dict], *, now: str) -> dict:
    target = _guard(case, "final-submit")
    merged = dict(case.get("formResponses") or {})
    merged.update(responses)
    case["formResponses"] = merged
    case["status"] = target
    case["finalSubmittedAt"] = now
    case["lastUpdated"] = now
    return case


# --------------------------------------------------------------------------
# Reviewer transitions (HOD / IT)
# --------------------------------------------------------------------------


def normalize_assigned_forms(forms: Any) -> list[dict]:
    if not isinstance(forms, list) or not forms:
        raise ApiError("BAD_REQUEST", "assignedForms must be a non-empty list")
    out: list[dict] = []
    seen: set[str] = set()
    for f in forms:
        title = str((f or {}).get("title") if isinstance(f, dict) else f or "").strip()
        if title not in ASSIGNED_TITLE_KEYS:
            raise ApiError("BAD_REQUEST", f"Unknown form title: {title}")
        if title in seen:
            continue
        seen.add(title)
        path = str((f or {}).get("path") or "").strip() if isinstance(f, dict) else ""
        out.append({"title": title, "path": path or ASSIGNED_TITLE_KEYS[title]})
    return out


def apply_assign_forms(case: dict, forms: list[dict], *, remark: str, now: str) -> dict:
    target = _guard(case, "assign forms to")
    case["assignedForms"] = forms
    case["status"] = target
    case["remark"] = remark
    case["lastUpdated"] = now
    return case


def apply_hod_approval(case: dict, *, approved_by: str, remarks: str, now: str) -> dict:
    target = _guard(case, "approve")
    case["hodApproval"] = {"approvedBy": approved_by, "approvedAt": now, "remarks": remarks}
    case["status"] = target
    case["lastUpdated"] = now
    return case


def apply_rejection(case: dict, *, reason: str, rejected_by: str, stage: str, now: str) -> dict:
    reason_clean = str(reason or "").strip()
    if not reason_clean:
        raise ApiError("BAD_REQUEST", "Missing rejection reason")
    target = _guard(case, "reject")
    case["status"] = target
    case["rejectionReason"] = reason_clean
    case["rejectedAt"] = now
    case["rejectedBy"] = rejected_by
    case["rejectionStage"] = stage
    case["remark"] = reason_clean
    case["lastUpdated"] = now
    if stage == "IT":
        case["itProcessing"] = {
            "action": "rejected",
            "processedBy": rejected_by,
            "processedAt": now,
            "remarks": reason_clean,
        }
    return case


def assert_can_complete(case: dict) -> None:
    _guard(case, "complete")


def apply_it_completion(
    case: dict,
    *,
    certificates: list[dict],
    failures: list[dict],
    processed_by: str,
    remarks: str,
    now: str,
) -> dict:
    target = _guard(case, "complete")
    case["itProcessing"] = {
        "action": "completed",
        "processedBy": processed_by,
        "processedAt": now,
        "remarks": remarks,
    }
    case["certificates"] = certificates
    case["certificateFailures"] = failures
    case["status"] = target
    case["lastUpdated"] = now
    log.info("case=%s completed certificates=%s failed=%s", case.get("formId"), len(certificates), len(failures))
    return case
