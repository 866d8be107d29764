from __future__ import annotations

import copy
from typing import Any, Optional

from actions.case_lifecycle import STATUS_IT_COMPLETED, is_rejected_status
from actions.case_repo import cases_for_employee
from utils import iso_utc_now, sort_key_datetime


HISTORY_TYPE_COMPLETED = "completed_application"
PRESERVED_KEYS = ("certificates", "hodApproval", "itProcessing", "assignedForms", "formResponses")


def archive_case(case: dict, *, now: Optional[str] = None) -> dict:
    """
    Snapshot a terminal case for the history collection. The returned entry
    shares no mutable state with `case`.
    """

    entry = copy.deepcopy(case)
    entry["completedAt"] = now or iso_utc_now()
    entry["finalStatus"] = case.get("status")
    entry["historyType"] = HISTORY_TYPE_COMPLETED
    entry["preservedData"] = {k: copy.deepcopy(case.get(k)) for k in PRESERVED_KEYS}
    return entry


def append_history(history: list, case: dict, *, now: Optional[str] = None) -> dict:
    entry = archive_case(case, now=now)
    history.append(entry)
    return entry


def _history_recency(entry: dict):
    return sort_key_datetime(entry.get("completedAt") or entry.get("submissionDate") or entry.get("lastUpdated"))


def _entry_certificates(entry: dict) -> list:
    preserved = entry.get("preservedData")
    certs = preserved.get("certificates") if isinstance(preserved, dict) else None
    if not isinstance(certs, list):
        certs = entry.get("certificates")
    return certs if isinstance(certs, list) else []


def history_info(entry: dict) -> dict[str, Any]:
    certs = _entry_certificates(entry)
    assigned = entry.get("assignedForms")
    return {
        "type": entry.get("historyType") or HISTORY_TYPE_COMPLETED,
        "completedAt": entry.get("completedAt"),
        "finalStatus": entry.get("finalStatus") or entry.get("status"),
        "hadCertificates": bool(certs),
        "certificateCount": len(certs),
        "hadHODApproval": isinstance(entry.get("hodApproval"), dict),
        "hadITProcessing": isinstance(entry.get("itProcessing"), dict),
        "assignedFormsCount": len(assigned) if isinstance(assigned, list) else 0,
    }


def history_for_employee(history: list, employee_id: str) -> dict[str, Any]:
    entries = sorted(cases_for_employee(history, employee_id), key=_history_recency, reverse=True)
    out = []
    for e in entries:
        item = dict(e)
        item["historyInfo"] = history_info(e)
        out.append(item)

    completed = 0
    rejected = 0
    for e in entries:
        final = e.get("finalStatus") or e.get("status")
        if final == STATUS_IT_COMPLETED:
            completed += 1
        elif is_rejected_status(final):
            rejected += 1

    return {
        "history": out,
        "summary": {
            "totalApplications": len(out),
            "totalCertificates": sum(item["historyInfo"]["certificateCount"] for item in out),
            "completedApplications": completed,
            "rejectedApplications": rejected,
        },
    }


def historical_certificates(history: list, employee_id: str) -> list[dict]:
    """Certificates preserved in archived cases, tagged with their source."""
    out: list[dict] = []
    for entry in cases_for_employee(history, employee_id):
        for cert in _entry_certificates(entry):
            if not isinstance(cert, dict):
                continue
            item = dict(cert)
            item.update(
                {
                    "id": f"hist_{entry.get('formId')}_{cert.get('formType')}",
                    "formId": entry.get("formId"),
                    "employeeId": entry.get("employeeId"),
                    "source": "history",
                    "status": "Completed",
                    "completedAt": entry.get("completedAt"),
                    "employeeName": entry.get("employeeName") or entry.get("name"),
                    "noDuesType": entry.get("noDuesType"),
                }
            )
            out.append(item)
    return out
