from __future__ import annotations

import logging
from typing import Any

from actions.case_lifecycle import (
    ASSIGNED_FORMS_STATUSES,
    STATUS_SUBMITTED_HOD,
    apply_final_submit,
    apply_sub_form,
    assert_no_active_case,
    build_new_case,
    is_active_status,
    is_rejected_status,
    validate_final_submit,
    validate_submission,
)
from actions.case_repo import cases_for_employee, find_case_index, latest_case, newest_first
from actions.certificates import (
    certificate_file_path,
    find_certificate,
    list_certificates,
    public_certificates,
)
from actions.context import ActionContext
from actions.helpers import append_audit
from actions.history import history_for_employee
from actions.timeline import build_timeline, forms_completion_status
from schema import SUB_FORM_STORAGE_KEYS, decode_sub_form_payload
from services.order_letters import assert_stored_order_letter
from services.record_store import FORM_HISTORY, PENDING_FORMS, USERS
from utils import ApiError, AuthContext, iso_utc_now


log = logging.getLogger("cases")

NO_CASE_FOR_SAVE = "No pending form found for this employee. Please submit initial application first."


def _employee_id(auth: AuthContext) -> str:
    employee_id = str(auth.userId or "").strip() if auth else ""
    if not employee_id:
        raise ApiError("BAD_REQUEST", "No employee ID found in session")
    return employee_id


def _latest(ctx: ActionContext, employee_id: str) -> dict | None:
    return latest_case(ctx.store.load_list(PENDING_FORMS), employee_id)


# --------------------------------------------------------------------------
# Mutations
# --------------------------------------------------------------------------


def no_dues_submit(data: dict[str, Any], auth: AuthContext, ctx: ActionContext, cfg) -> dict[str, Any]:
    employee_id = _employee_id(auth)
    fields = dict(data or {})
    fields["employeeId"] = employee_id
    order_letter = str((data or {}).get("orderLetter") or "").strip()
    cleaned = validate_submission(fields, order_letter=order_letter)
    order_letter = assert_stored_order_letter(cfg=cfg, name=order_letter)

    now = iso_utc_now()
    with ctx.store.transaction(PENDING_FORMS):
        cases = ctx.store.load_list(PENDING_FORMS)
        assert_no_active_case(cases, employee_id)
        case = build_new_case(cases, cleaned, order_letter=order_letter, now=now)
        cases.append(case)
        ctx.store.save(PENDING_FORMS, cases)
        append_audit(
            ctx.db,
            entityType="CASE",
            entityId=case["formId"],
            action="NO_DUES_SUBMIT",
            actor=auth,
            at=now,
            toState=case["status"],
            meta={"noDuesType": case["noDuesType"], "orderLetter": order_letter},
        )

    log.info("case=%s submitted employee=%s", case["formId"], employee_id)
    return {"formId": case["formId"], "status": case["status"]}


def _make_sub_form_saver(request_key: str):
    storage_key = SUB_FORM_STORAGE_KEYS[request_key]

    def handler(data: dict[str, Any], auth: AuthContext, ctx: ActionContext, cfg) -> dict[str, Any]:
        employee_id = _employee_id(auth)
        body = data or {}
        now = iso_utc_now()
        with ctx.store.transaction(PENDING_FORMS):
            cases = ctx.store.load_list(PENDING_FORMS)
            case = latest_case(cases, employee_id)
            idx = find_case_index(cases, case.get("formId")) if case else -1
            if idx < 0 or not is_active_status(cases[idx].get("status")):
                raise ApiError("NOT_FOUND", NO_CASE_FOR_SAVE)

            raw = body.get(request_key) if request_key in body else body
            payload = decode_sub_form_payload(storage_key, raw)
            apply_sub_form(cases[idx], storage_key, payload, now=now)
            ctx.store.save(PENDING_FORMS, cases)
            append_audit(
                ctx.db,
                entityType="CASE",
                entityId=case["formId"],
                action="SUB_FORM_SAVE",
                stageTag=storage_key,
                actor=auth,
                at=now,
                meta={"storageKey": storage_key, "dataKeys": list(payload.keys())},
            )

        return {
            "formId": case["formId"],
            "storageKey": storage_key,
            "message": f"{storage_key} saved successfully",
            "dataKeys": list(payload.keys()),
            "timestamp": now,
        }

    handler.__name__ = f"save_{request_key}"
    return handler


save_disposal_form = _make_sub_form_saver("disposalForm")
save_efile_form = _make_sub_form_saver("efileForm")
save_form365_transfer = _make_sub_form_saver("form365Transfer")
save_form365_disposal = _make_sub_form_saver("form365Disposal")


def final_submit(data: dict[str, Any], auth: AuthContext, ctx: ActionContext, cfg) -> dict[str, Any]:
    employee_id = _employee_id(auth)
    now = iso_utc_now()
    with ctx.store.transaction(PENDING_FORMS):
        cases = ctx.store.load_list(PENDING_FORMS)
        case = latest_case(cases, employee_id)
        idx = find_case_index(cases, case.get("formId")) if case else -1
        if idx < 0:
            raise ApiError("NOT_FOUND", "No pending form found for this employee")

        responses = validate_final_submit(data or {})
        before = cases[idx].get("status")
        apply_final_submit(cases[idx], responses, now=now)
        ctx.store.save(PENDING_FORMS, cases)
        append_audit(
            ctx.db,
            entityType="CASE",
            entityId=case["formId"],
            action="FINAL_SUBMIT",
            actor=auth,
            at=now,
            fromState=before,
            toState=STATUS_SUBMITTED_HOD,
            meta={"formResponses": sorted(responses.keys())},
        )

    log.info("case=%s final-submitted employee=%s", case["formId"], employee_id)
    return {"formId": case["formId"], "status": STATUS_SUBMITTED_HOD, "message": "Forms submitted to HOD for review"}


# --------------------------------------------------------------------------
# Reads
# --------------------------------------------------------------------------


def previous_application(data: dict[str, Any], auth: AuthContext, ctx: ActionContext, cfg) -> dict[str, Any]:
    case = _latest(ctx, _employee_id(auth))
    if not case:
        return {"hasApplication": False, "application": None, "message": "No applications found"}
    return {"hasApplication": True, "application": case}


def tracking_details(data: dict[str, Any], auth: AuthContext, ctx: ActionContext, cfg) -> dict[str, Any]:
    case = _latest(ctx, _employee_id(auth))
    if not case:
        return {"hasApplication": False, "status": "Not Submitted", "timeline": [], "forms": []}
    return {
        "hasApplication": True,
        "formId": case.get("formId"),
        "status": case.get("status"),
        "timeline": build_timeline(case),
        "forms": forms_completion_status(case),
        "hodApproval": case.get("hodApproval"),
        "itProcessing": case.get("itProcessing"),
        "lastUpdated": case.get("lastUpdated"),
        "submissionDate": case.get("submissionDate"),
        "noDuesType": case.get("noDuesType"),
    }


def dashboard_status(data: dict[str, Any], auth: AuthContext, ctx: ActionContext, cfg) -> dict[str, Any]:
    employee_id = _employee_id(auth)
    case = _latest(ctx, employee_id)
    cert_count = len(list_certificates(ctx.store, employee_id))
    employee = {
        "name": (case or {}).get("name") or "Unknown",
        "employeeId": employee_id,
        "department": (case or {}).get("department") or "-",
        "role": str(auth.role or "").lower() or "employee",
    }

    if case and is_rejected_status(case.get("status")):
        return {
            "employee": employee,
            "status": {"latestStatus": "rejected"},
            "formId": None,
            "applicationStatus": "rejected",
            "rejectionReason": case.get("rejectionReason") or "No reason given",
            "rejectedAt": case.get("rejectedAt"),
            "lastUpdated": case.get("lastUpdated"),
            "certificatesAvailable": cert_count,
            "canSubmitNew": True,
        }

    status = (case or {}).get("status") or "Not Submitted"
    return {
        "employee": employee,
        "status": {"latestStatus": status},
        "formId": (case or {}).get("formId"),
        "applicationStatus": status,
        "lastUpdated": (case or {}).get("lastUpdated"),
        "certificatesAvailable": cert_count,
    }


def assigned_forms(data: dict[str, Any], auth: AuthContext, ctx: ActionContext, cfg) -> dict[str, Any]:
    cases = ctx.store.load_list(PENDING_FORMS)
    case = latest_case(cases, _employee_id(auth), ASSIGNED_FORMS_STATUSES)
    if not case:
        return {"assignedForms": [], "assignedFormsCount": 0, "applicationStatus": "Not Submitted", "formId": None}
    forms = case.get("assignedForms") if isinstance(case.get("assignedForms"), list) else []
    return {
        "formId": case.get("formId"),
        "applicationStatus": case.get("status"),
        "assignedFormsCount": len(forms),
        "assignedForms": forms,
    }


def form_data_get(data: dict[str, Any], auth: AuthContext, ctx: ActionContext, cfg) -> dict[str, Any]:
    form_name = str((data or {}).get("formName") or "").strip()
    if not form_name:
        raise ApiError("BAD_REQUEST", "Missing formName")
    case = _latest(ctx, _employee_id(auth))
    if not case:
        raise ApiError("NOT_FOUND", "No pending form found")
    key = SUB_FORM_STORAGE_KEYS.get(form_name)
    if not key:
        raise ApiError("BAD_REQUEST", f"Invalid formName: {form_name}")
    responses = case.get("formResponses") if isinstance(case.get("formResponses"), dict) else {}
    form_data = responses.get(key) or None
    return {"formData": form_data, "hasData": bool(form_data)}


def form_status(data: dict[str, Any], auth: AuthContext, ctx: ActionContext, cfg) -> dict[str, Any]:
    case = _latest(ctx, _employee_id(auth))
    if not case:
        return {"status": "pending", "context": {"message": "No active form found"}}
    return {
        "status": case.get("status"),
        "context": {
            "formId": case.get("formId"),
            "lastUpdated": case.get("lastUpdated"),
            "rejectionReason": case.get("rejectionReason"),
        },
    }


def track_forms(data: dict[str, Any], auth: AuthContext, ctx: ActionContext, cfg) -> dict[str, Any]:
    forms = newest_first(cases_for_employee(ctx.store.load_list(PENDING_FORMS), _employee_id(auth)))
    return {"forms": forms, "count": len(forms)}


def confirmation(data: dict[str, Any], auth: AuthContext, ctx: ActionContext, cfg) -> dict[str, Any]:
    case = _latest(ctx, _employee_id(auth))
    if not case:
        raise ApiError("NOT_FOUND", "Form not found")
    return case


def employee_info(data: dict[str, Any], auth: AuthContext, ctx: ActionContext, cfg) -> dict[str, Any]:
    employee_id = _employee_id(auth)
    for u in ctx.store.load_list(USERS):
        if isinstance(u, dict) and (u.get("employeeId") == employee_id or u.get("id") == employee_id):
            return {
                "employee": {
                    "name": u.get("name") or "Unknown",
                    "employeeId": u.get("employeeId") or u.get("id") or "Unknown",
                    "department": u.get("department") or "Unknown",
                }
            }
    raise ApiError("NOT_FOUND", "Employee not found")


def certificates_list(data: dict[str, Any], auth: AuthContext, ctx: ActionContext, cfg) -> dict[str, Any]:
    certs = list_certificates(ctx.store, _employee_id(auth))
    return {
        "certificates": public_certificates(certs),
        "count": len(certs),
        "activeCount": sum(1 for c in certs if c.get("source") == "active"),
        "historyCount": sum(1 for c in certs if c.get("source") == "history"),
    }


def resolve_certificate_download(employee_id: str, cert_id: str, ctx: ActionContext, cfg) -> tuple[dict, str]:
    cert = find_certificate(ctx.store, employee_id, cert_id)
    path = certificate_file_path(cfg.CERTIFICATES_DIR, cert)
    return cert, path


def certificate_download(data: dict[str, Any], auth: AuthContext, ctx: ActionContext, cfg) -> dict[str, Any]:
    cert_id = str((data or {}).get("certificateId") or (data or {}).get("certId") or "").strip()
    cert, _path = resolve_certificate_download(_employee_id(auth), cert_id, ctx, cfg)
    return {
        "certificateId": cert_id,
        "filename": cert.get("filename"),
        "formType": cert.get("formType"),
        "source": cert.get("source"),
        "downloadUrl": f"/api/employee/certificates/{cert_id}/download",
    }


def history_list(data: dict[str, Any], auth: AuthContext, ctx: ActionContext, cfg) -> dict[str, Any]:
    return history_for_employee(ctx.store.load_list(FORM_HISTORY), _employee_id(auth))
