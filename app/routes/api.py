from __future__ import annotations

import json
import logging
import os
from typing import Any, Callable, Optional

from flask import Blueprint, current_app, g, request

from actions import dispatch
from actions.context import ActionContext
from auth import assert_permission, is_public_action, role_or_public, validate_session_token
from db import SessionLocal
from models import AuditLog
from services.record_store import get_record_store
from utils import ApiError, AuthContext, err, iso_utc_now, now_monotonic, ok, parse_json_body, redact_for_audit


api_bp = Blueprint("api", __name__)

log = logging.getLogger("api")


def _rest_token() -> str:
    authz = str(request.headers.get("Authorization") or "").strip()
    if authz.lower().startswith("bearer "):
        return authz.split(" ", 1)[1].strip()
    return (
        str(request.headers.get("X-Session-Token") or "").strip()
        or str(request.args.get("token") or "").strip()
        or str((request.get_json(silent=True) or {}).get("token") or "").strip()
    )


def action_context(db, token: str = "") -> ActionContext:
    cfg = current_app.config["CFG"]
    return ActionContext(
        db=db,
        store=get_record_store(db, cfg),
        notifier=current_app.extensions["notifications"],
        certificates=current_app.extensions["certificates"],
        token=token,
    )


def authenticate(db, token: Any, action_u: str) -> Optional[AuthContext]:
    """Session for a protected action, or the optional session of a public one."""
    if is_public_action(action_u):
        if not token:
            return None
        maybe = validate_session_token(db, token, action=action_u)
        return maybe if maybe.valid else None
    auth_ctx = validate_session_token(db, token, action=action_u)
    if not auth_ctx.valid:
        raise ApiError("AUTH_INVALID", "Invalid or expired session")
    return auth_ctx


def _log_success(action_u: str, auth_ctx: Optional[AuthContext]) -> None:
    latency_ms = int((now_monotonic() - g.start_ts) * 1000)
    log.info(
        "request_id=%s action=%s user=%s role=%s latency_ms=%s",
        g.request_id,
        action_u,
        (auth_ctx.userId if auth_ctx else "PUBLIC"),
        (auth_ctx.role if auth_ctx else "PUBLIC"),
        latency_ms,
    )


def _unexpected_error() -> ApiError:
    request_id = str(getattr(g, "request_id", "") or "").strip()
    msg = f"Unexpected error (requestId: {request_id})" if request_id else "Unexpected error"
    return ApiError("INTERNAL", msg, http_status=500)


def handle_action(
    action: str,
    data: Any,
    *,
    token: Any = None,
    prepare: Optional[Callable[[AuthContext, Any], dict]] = None,
):
    """
    Run one action end to end: session, RBAC, dispatch, API audit row, commit.

    `prepare(auth, cfg)` runs after the permission check and may return the
    final `data` (used by multipart routes that must store a file first).
    """

    cfg = current_app.config["CFG"]
    action_u = str(action or "").upper().strip()
    token = _rest_token() if token is None else token

    db = None
    auth_ctx = None
    try:
        if not action_u:
            raise ApiError("BAD_REQUEST", "Missing action")

        db = SessionLocal()
        auth_ctx = authenticate(db, token, action_u)
        assert_permission(role_or_public(auth_ctx), action_u)

        if prepare is not None:
            data = prepare(auth_ctx, cfg)

        out = dispatch(action_u, data, auth_ctx, action_context(db, str(token or "")), cfg)

        db.add(
            AuditLog(
                logId=f"LOG-{os.urandom(16).hex()}",
                entityType="API",
                entityId=str(auth_ctx.userId or auth_ctx.email or "") if auth_ctx else "PUBLIC",
                action=action_u,
                fromState="",
                toState="",
                stageTag="API_CALL",
                remark="",
                actorUserId=str(auth_ctx.userId) if auth_ctx else "PUBLIC",
                actorRole=str(auth_ctx.role) if auth_ctx else "PUBLIC",
                at=iso_utc_now(),
                correlationId=str(getattr(g, "request_id", "") or ""),
                metaJson=json.dumps({"data": redact_for_audit(data or {})}, default=str),
            )
        )
        db.commit()

        _log_success(action_u, auth_ctx)
        return ok(out)[0]
    except ApiError as e:
        if db is not None:
            db.rollback()
        write_error_audit(action_u, auth_ctx, data, e)
        return err(e.code, e.message, http_status=e.http_status)[0], e.http_status
    except Exception:
        if db is not None:
            db.rollback()
        api_err = _unexpected_error()
        write_error_audit(action_u, auth_ctx, data, api_err)
        log.exception("request_id=%s action=%s", getattr(g, "request_id", ""), action_u)
        return err(api_err.code, api_err.message, http_status=api_err.http_status)[0], api_err.http_status
    finally:
        if db is not None:
            db.close()


def write_error_audit(action: str, auth_ctx: Optional[AuthContext], data: Any, err_obj: ApiError) -> None:
    db2 = SessionLocal()
    try:
        db2.add(
            AuditLog(
                logId=f"LOG-{os.urandom(16).hex()}",
                entityType="API",
                entityId=str(auth_ctx.userId or auth_ctx.email or "") if auth_ctx else "PUBLIC",
                action=str(action or "").upper() or "UNKNOWN",
                fromState="",
                toState="",
                stageTag="API_ERROR",
                remark=f"{err_obj.code}: {err_obj.message}",
                actorUserId=str(auth_ctx.userId) if auth_ctx else "PUBLIC",
                actorRole=str(auth_ctx.role) if auth_ctx else "PUBLIC",
                at=iso_utc_now(),
                correlationId=str(getattr(g, "request_id", "") or ""),
                metaJson=json.dumps(
                    {
                        "data": redact_for_audit(data or {}),
                        "error": {"code": err_obj.code, "message": err_obj.message},
                    },
                    default=str,
                ),
            )
        )
        db2.commit()
    except Exception:
        db2.rollback()
        log.warning("could not write error audit action=%s", action, exc_info=True)
    finally:
        db2.close()


@api_bp.post("/api")
def api_route():
    try:
        body = parse_json_body(request.get_data(as_text=True))
    except ApiError as e:
        return err(e.code, e.message, http_status=e.http_status)[0], e.http_status

    token = body.get("token")
    if not token:
        authz = str(request.headers.get("Authorization") or "").strip()
        if authz.lower().startswith("bearer "):
            token = authz.split(" ", 1)[1].strip()
        if not token:
            token = str(request.headers.get("X-Session-Token") or "").strip()

    return handle_action(str(body.get("action") or ""), body.get("data") or {}, token=token or "")


@api_bp.post("/api/auth/login")
def rest_login():
    body = request.get_json(silent=True) or {}
    if body.get("employeeId"):
        return handle_action(
            "EMPLOYEE_LOGIN",
            {"employeeId": body.get("employeeId") or "", "password": body.get("password") or ""},
            token="",
        )
    return handle_action("LOGIN_EXCHANGE", {"idToken": body.get("idToken") or ""}, token="")


@api_bp.post("/api/auth/logout")
def rest_logout():
    return handle_action("LOGOUT", {})
