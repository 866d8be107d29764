from __future__ import annotations

import logging
import os

from flask import Blueprint, current_app, request, send_file

from actions.no_dues import resolve_certificate_download
from app.routes.api import _rest_token, action_context, authenticate, handle_action
from auth import assert_permission, role_or_public
from db import SessionLocal
from services.order_letters import store_order_letter
from utils import ApiError, err


employee_bp = Blueprint("employee", __name__, url_prefix="/api/employee")

log = logging.getLogger("api")

_SUBMIT_FIELDS = ("name", "email", "department", "noDuesType", "reason")


def _json_body() -> dict:
    body = request.get_json(silent=True)
    return body if isinstance(body, dict) else {}


@employee_bp.post("/no-dues")
def rest_no_dues_submit():
    stored: list[str] = []

    def _prepare(auth_ctx, cfg):
        fields = {k: str(request.form.get(k) or "").strip() for k in _SUBMIT_FIELDS}
        up = request.files.get("orderLetter")
        fields["orderLetter"] = ""
        if up and str(up.filename or "").strip():
            name = store_order_letter(cfg=cfg, file_bytes=up.read() or b"", file_name=str(up.filename))
            stored.append(name)
            fields["orderLetter"] = name
        return fields

    resp = handle_action("NO_DUES_SUBMIT", {}, prepare=_prepare)
    if isinstance(resp, tuple) and stored:
        # The case was not created; the upload has nothing pointing at it.
        upload_dir = current_app.config["CFG"].UPLOAD_DIR
        for name in stored:
            try:
                os.remove(os.path.join(upload_dir, name))
            except OSError:
                log.warning("could not remove orphaned upload %s", name)
    return resp


@employee_bp.post("/forms/disposal")
def rest_save_disposal_form():
    return handle_action("SAVE_DISPOSAL_FORM", _json_body())


@employee_bp.post("/forms/efile")
def rest_save_efile_form():
    return handle_action("SAVE_EFILE_FORM", _json_body())


@employee_bp.post("/forms/form365-transfer")
def rest_save_form365_transfer():
    return handle_action("SAVE_FORM365_TRANSFER", _json_body())


@employee_bp.post("/forms/form365-disposal")
def rest_save_form365_disposal():
    return handle_action("SAVE_FORM365_DISPOSAL", _json_body())


@employee_bp.post("/final-submit")
def rest_final_submit():
    body = _json_body()
    return handle_action(
        "FINAL_SUBMIT",
        {k: body.get(k) for k in ("disposalForm", "efileForm", "form365Transfer", "form365Disposal")},
    )


@employee_bp.get("/previous-application")
def rest_previous_application():
    return handle_action("PREVIOUS_APPLICATION", {})


@employee_bp.get("/tracking")
def rest_tracking_details():
    return handle_action("TRACKING_DETAILS", {})


@employee_bp.get("/dashboard")
def rest_dashboard_status():
    return handle_action("DASHBOARD_STATUS", {})


@employee_bp.get("/assigned-forms")
def rest_assigned_forms():
    return handle_action("ASSIGNED_FORMS", {})


@employee_bp.get("/forms/<form_name>/data")
def rest_form_data_get(form_name: str):
    return handle_action("FORM_DATA_GET", {"formName": form_name})


@employee_bp.get("/form-status")
def rest_form_status():
    return handle_action("FORM_STATUS", {})


@employee_bp.get("/track-forms")
def rest_track_forms():
    return handle_action("TRACK_FORMS", {})


@employee_bp.get("/confirmation")
def rest_confirmation():
    return handle_action("CONFIRMATION", {})


@employee_bp.get("/info")
def rest_employee_info():
    return handle_action("EMPLOYEE_INFO", {})


@employee_bp.get("/certificates")
def rest_certificates_list():
    return handle_action("CERTIFICATES_LIST", {})


@employee_bp.get("/certificates/<cert_id>")
def rest_certificate_get(cert_id: str):
    return handle_action("CERTIFICATE_DOWNLOAD", {"certificateId": cert_id})


@employee_bp.get("/certificates/<cert_id>/download")
def rest_certificate_file(cert_id: str):
    cfg = current_app.config["CFG"]
    token = _rest_token()

    db = SessionLocal()
    try:
        try:
            auth_ctx = authenticate(db, token, "CERTIFICATE_DOWNLOAD")
            assert_permission(role_or_public(auth_ctx), "CERTIFICATE_DOWNLOAD")
            cert, path = resolve_certificate_download(str(auth_ctx.userId or ""), cert_id, action_context(db, token), cfg)
        except ApiError as e:
            return err(e.code, e.message, http_status=e.http_status)[0], e.http_status
        db.commit()

        resp = send_file(
            path,
            mimetype="application/pdf",
            as_attachment=True,
            download_name=os.path.basename(str(cert.get("filename") or path)),
        )
        resp.headers["X-Content-Type-Options"] = "nosniff"
        return resp
    finally:
        db.close()


@employee_bp.get("/history")
def rest_history_list():
    return handle_action("HISTORY_LIST", {})


@employee_bp.get("/notifications")
def rest_notifications_pending():
    return handle_action("NOTIFICATIONS_PENDING", {})


@employee_bp.get("/notifications/history")
def rest_notifications_history():
    return handle_action("NOTIFICATIONS_HISTORY", {"limit": request.args.get("limit") or 50})
