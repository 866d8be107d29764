from __future__ import annotations

import os
from typing import Any

from actions.history import historical_certificates
from services.certificate_pipeline import fingerprint_of
from services.record_store import CERTIFICATES, FORM_HISTORY, RecordStore
from utils import ApiError, sort_key_datetime


HISTORY_ID_PREFIX = "hist_"


def active_certificate_id(form_id: str, form_type: str, filename: str) -> str:
    return f"CERT-{form_id}-{form_type}-{fingerprint_of(filename)}"


def active_certificate_record(case: dict, cert: dict) -> dict:
    return {
        "id": active_certificate_id(str(case.get("formId") or ""), str(cert.get("formType") or ""), cert.get("filename")),
        "employeeId": case.get("employeeId"),
        "formId": case.get("formId"),
        "formType": cert.get("formType"),
        "filename": cert.get("filename"),
        "filepath": cert.get("filepath"),
        "generatedAt": cert.get("generatedAt"),
        "fileSize": cert.get("fileSize"),
    }


def active_certificates(records: list, employee_id: str) -> list[dict]:
    out = []
    for rec in records or []:
        if not isinstance(rec, dict) or rec.get("employeeId") != employee_id:
            continue
        item = dict(rec)
        item["source"] = "active"
        item["status"] = "Active"
        out.append(item)
    return out


def certificate_key(cert: dict) -> tuple:
    """Same artifact in both locations shares formId, formType and filename."""
    return (cert.get("formId"), cert.get("formType"), cert.get("filename"))


def merged_certificates(active: list, history: list, employee_id: str) -> list[dict]:
    """
    Active and archived certificates for one employee, newest first. An archived
    copy of an artifact that is still listed as active is dropped.
    """
    merged = active_certificates(active, employee_id)
    seen = {certificate_key(c) for c in merged}
    for cert in historical_certificates(history, employee_id):
        if certificate_key(cert) not in seen:
            seen.add(certificate_key(cert))
            merged.append(cert)
    merged.sort(key=lambda c: sort_key_datetime(c.get("generatedAt") or c.get("completedAt")), reverse=True)
    return merged


def list_certificates(store: RecordStore, employee_id: str) -> list[dict]:
    return merged_certificates(store.load_list(CERTIFICATES), store.load_list(FORM_HISTORY), employee_id)


def _public_view(cert: dict) -> dict[str, Any]:
    # Server paths stay server-side.
    return {k: v for k, v in cert.items() if k != "filepath"}


def public_certificates(certs: list[dict]) -> list[dict]:
    return [_public_view(c) for c in certs]


def find_certificate(store: RecordStore, employee_id: str, cert_id: str) -> dict:
    """
    Resolve a certificate id from either location. Active ids are looked up in
    the certificates collection; `hist_<formId>_<formType>` ids in history.
    """

    cid = str(cert_id or "").strip()
    if not cid:
        raise ApiError("BAD_REQUEST", "Missing certificateId")

    if cid.startswith(HISTORY_ID_PREFIX):
        form_id, _, form_type = cid[len(HISTORY_ID_PREFIX) :].partition("_")
        for entry in store.load_list(FORM_HISTORY):
            if not isinstance(entry, dict) or entry.get("formId") != form_id:
                continue
            if entry.get("employeeId") != employee_id:
                raise ApiError("FORBIDDEN", "Access denied")
            for cert in historical_certificates([entry], employee_id):
                if cert.get("formType") == form_type:
                    return cert
        raise ApiError("NOT_FOUND", "Certificate not found")

    for rec in store.load_list(CERTIFICATES):
        if isinstance(rec, dict) and rec.get("id") == cid:
            if rec.get("employeeId") != employee_id:
                raise ApiError("FORBIDDEN", "Access denied")
            return dict(rec, source="active", status="Active")
    raise ApiError("NOT_FOUND", "Certificate not found")


def certificate_file_path(certificates_dir: str, cert: dict) -> str:
    name = os.path.basename(str(cert.get("filename") or cert.get("filepath") or ""))
    path = os.path.join(str(certificates_dir), name)
    if not name or not os.path.isfile(path):
        raise ApiError("NOT_FOUND", "Certificate file not found on server")
    return os.path.abspath(path)
