from __future__ import annotations

import logging
import os
from typing import Any

from actions.case_lifecycle import (
    STATUS_IT_COMPLETED,
    STATUS_PENDING,
    STATUS_SUBMITTED_HOD,
    STATUS_SUBMITTED_IT,
    apply_assign_forms,
    apply_hod_approval,
    apply_it_completion,
    apply_rejection,
    assert_can_complete,
    is_pending_status,
    normalize_assigned_forms,
)
from actions.case_repo import find_case_index, newest_first
from actions.certificates import active_certificate_record
from actions.context import ActionContext
from actions.helpers import actor_label, append_audit
from actions.history import append_history
from services.certificate_pipeline import valid_until
from services.record_store import CERTIFICATES, FORM_HISTORY, PENDING_FORMS
from utils import ApiError, AuthContext, iso_utc_now, normalize_role


log = logging.getLogger("cases")

_DEFAULT_QUEUE = {
    "HOD": [STATUS_SUBMITTED_HOD],
    "IT": [STATUS_PENDING, STATUS_SUBMITTED_IT],
    "ADMIN": [STATUS_PENDING, STATUS_SUBMITTED_HOD, STATUS_SUBMITTED_IT],
}


def _form_id(data: dict[str, Any]) -> str:
    form_id = str((data or {}).get("formId") or "").strip()
    if not form_id:
        raise ApiError("BAD_REQUEST", "Missing formId")
    return form_id


def _case_index(cases: list, form_id: str) -> int:
    idx = find_case_index(cases, form_id)
    if idx < 0:
        raise ApiError("NOT_FOUND", "Case not found")
    return idx


def _in_queue(status: Any, wanted: list[str]) -> bool:
    if STATUS_PENDING in wanted and is_pending_status(status):
        return True
    return str(status or "") in wanted


def case_review_queue(data: dict[str, Any], auth: AuthContext, ctx: ActionContext, cfg) -> dict[str, Any]:
    status = str((data or {}).get("status") or "").strip()
    wanted = [status] if status else _DEFAULT_QUEUE.get(normalize_role(auth.role), [])
    cases = [c for c in ctx.store.load_list(PENDING_FORMS) if isinstance(c, dict) and _in_queue(c.get("status"), wanted)]
    cases = newest_first(cases)
    return {"cases": cases, "count": len(cases), "statuses": wanted}


def case_assign_forms(data: dict[str, Any], auth: AuthContext, ctx: ActionContext, cfg) -> dict[str, Any]:
    form_id = _form_id(data)
    forms = normalize_assigned_forms((data or {}).get("assignedForms"))
    remark = str((data or {}).get("remark") or "").strip()
    now = iso_utc_now()

    with ctx.store.transaction(PENDING_FORMS):
        cases = ctx.store.load_list(PENDING_FORMS)
        idx = _case_index(cases, form_id)
        before = cases[idx].get("status")
        apply_assign_forms(cases[idx], forms, remark=remark, now=now)
        ctx.store.save(PENDING_FORMS, cases)
        append_audit(
            ctx.db,
            entityType="CASE",
            entityId=form_id,
            action="CASE_ASSIGN_FORMS",
            actor=auth,
            at=now,
            fromState=before,
            toState=cases[idx]["status"],
            remark=remark,
            meta={"assignedForms": [f["title"] for f in forms]},
        )

    return {"formId": form_id, "status": cases[idx]["status"], "assignedForms": forms}


def case_hod_approve(data: dict[str, Any], auth: AuthContext, ctx: ActionContext, cfg) -> dict[str, Any]:
    form_id = _form_id(data)
    remarks = str((data or {}).get("remarks") or "").strip()
    approved_by = actor_label(auth)
    now = iso_utc_now()

    with ctx.store.transaction(PENDING_FORMS):
        cases = ctx.store.load_list(PENDING_FORMS)
        idx = _case_index(cases, form_id)
        apply_hod_approval(cases[idx], approved_by=approved_by, remarks=remarks, now=now)
        case = cases[idx]
        ctx.store.save(PENDING_FORMS, cases)
        append_audit(
            ctx.db,
            entityType="CASE",
            entityId=form_id,
            action="CASE_HOD_APPROVE",
            actor=auth,
            at=now,
            fromState=STATUS_SUBMITTED_HOD,
            toState=case["status"],
            remark=remarks,
        )

    ctx.notifier.form_approval(ctx.store, employee_id=case.get("employeeId"), form_id=form_id, approved_by=approved_by)
    return {"formId": form_id, "status": case["status"], "hodApproval": case["hodApproval"]}


def case_reject(data: dict[str, Any], auth: AuthContext, ctx: ActionContext, cfg) -> dict[str, Any]:
    form_id = _form_id(data)
    reason = str((data or {}).get("reason") or (data or {}).get("rejectionReason") or "").strip()
    role = normalize_role(auth.role)
    stage = "IT" if role == "IT" else "HOD" if role == "HOD" else "Review"
    rejected_by = actor_label(auth)
    now = iso_utc_now()

    with ctx.store.transaction(PENDING_FORMS, FORM_HISTORY):
        cases = ctx.store.load_list(PENDING_FORMS)
        idx = _case_index(cases, form_id)
        before = cases[idx].get("status")
        apply_rejection(cases[idx], reason=reason, rejected_by=rejected_by, stage=stage, now=now)
        case = cases[idx]
        history = ctx.store.load_list(FORM_HISTORY)
        append_history(history, case, now=now)
        ctx.store.save(PENDING_FORMS, cases)
        ctx.store.save(FORM_HISTORY, history)
        append_audit(
            ctx.db,
            entityType="CASE",
            entityId=form_id,
            action="CASE_REJECT",
            stageTag=f"REJECTED_BY_{stage}",
            actor=auth,
            at=now,
            fromState=before,
            toState=case["status"],
            remark=case["rejectionReason"],
        )

    log.info("case=%s rejected stage=%s by=%s", form_id, stage, rejected_by)
    ctx.notifier.form_rejection(
        ctx.store,
        employee_id=case.get("employeeId"),
        form_id=form_id,
        reason=case["rejectionReason"],
        rejected_by=rejected_by,
        stage=stage,
    )
    return {"formId": form_id, "status": case["status"], "rejectionReason": case["rejectionReason"], "canSubmitNew": True}


def _discard_files(certificates: list[dict]) -> None:
    for cert in certificates:
        try:
            os.remove(cert["filepath"])
        except OSError:
            log.warning("could not remove orphaned certificate %s", cert.get("filename"))


def case_it_complete(data: dict[str, Any], auth: AuthContext, ctx: ActionContext, cfg) -> dict[str, Any]:
    """
    Generate certificates outside the collection lock, then re-check the case
    and commit the transition, the active certificate records and the history
    snapshot together. Nothing is written when no certificate was produced.
    """

    form_id = _form_id(data)
    remarks = str((data or {}).get("remarks") or "").strip()
    processed_by = actor_label(auth)

    cases = ctx.store.load_list(PENDING_FORMS)
    snapshot = cases[_case_index(cases, form_id)]
    assert_can_complete(snapshot)
    result = ctx.certificates.generate(form_id, snapshot.get("formResponses") or {})

    now = iso_utc_now()
    try:
        with ctx.store.transaction(PENDING_FORMS, CERTIFICATES, FORM_HISTORY):
            cases = ctx.store.load_list(PENDING_FORMS)
            idx = _case_index(cases, form_id)
            apply_it_completion(
                cases[idx],
                certificates=result.certificates,
                failures=result.failures,
                processed_by=processed_by,
                remarks=remarks,
                now=now,
            )
            case = cases[idx]

            records = ctx.store.load_list(CERTIFICATES)
            records.extend(active_certificate_record(case, c) for c in result.certificates)

            history = ctx.store.load_list(FORM_HISTORY)
            append_history(history, case, now=now)

            ctx.store.save(PENDING_FORMS, cases)
            ctx.store.save(CERTIFICATES, records)
            ctx.store.save(FORM_HISTORY, history)
            append_audit(
                ctx.db,
                entityType="CASE",
                entityId=form_id,
                action="CASE_IT_COMPLETE",
                actor=auth,
                at=now,
                fromState=STATUS_SUBMITTED_IT,
                toState=STATUS_IT_COMPLETED,
                remark=remarks,
                meta={
                    "certificates": [c["filename"] for c in result.certificates],
                    "failures": [{"formType": f["formType"], "error": f["error"]} for f in result.failures],
                },
            )
    except ApiError:
        _discard_files(result.certificates)
        raise

    ctx.notifier.certificates_ready(
        ctx.store,
        employee_id=case.get("employeeId"),
        form_id=form_id,
        certificates=result.certificates,
        processed_by=processed_by,
        completed_at=now,
        valid_until=valid_until(now),
    )
    return {
        "formId": form_id,
        "status": case["status"],
        "certificatesGenerated": len(result.certificates),
        "certificatesFailed": len(result.failures),
        "failures": result.failures,
    }
