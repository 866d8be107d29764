from __future__ import annotations

from typing import Any

from actions.context import ActionContext
from actions.helpers import append_audit
from auth import issue_session_token, parse_test_token, permissions_for_role, revoke_session, serialize_auth
from passwords import burn_password_check, check_password_input, verify_password
from services.record_store import USERS
from utils import ApiError, AuthContext, normalize_role


def _find_user(ctx: ActionContext, employee_id: str) -> dict | None:
    for u in ctx.store.load_list(USERS):
        if isinstance(u, dict) and (u.get("employeeId") == employee_id or u.get("id") == employee_id):
            return u
    return None


def _me(user: dict | None, *, user_id: str, role: str) -> dict[str, Any]:
    user = user or {}
    return {
        "userId": user_id,
        "email": str(user.get("email") or ""),
        "fullName": str(user.get("name") or user_id),
        "role": role,
        "employeeId": str(user.get("employeeId") or user.get("id") or user_id),
        "department": str(user.get("department") or ""),
    }


def login_exchange(data, auth: AuthContext | None, ctx: ActionContext, cfg):
    token = str((data or {}).get("idToken") or (data or {}).get("token") or "").strip()
    if not token:
        raise ApiError("BAD_REQUEST", "Missing idToken")

    ident = parse_test_token(token, allow_test_tokens=cfg.ALLOW_TEST_TOKENS)
    user_id, role = ident["userId"], ident["role"]
    user = _find_user(ctx, user_id)

    ses = issue_session_token(
        ctx.db,
        user_id=user_id,
        email=str((user or {}).get("email") or ""),
        role=role,
        session_ttl_minutes=cfg.SESSION_TTL_MINUTES,
    )
    append_audit(
        ctx.db,
        entityType="AUTH",
        entityId=user_id,
        action="LOGIN_EXCHANGE",
        stageTag="AUTH_LOGIN",
        actor=AuthContext(valid=True, userId=user_id, email="", role=role, expiresAt=ses["expiresAt"]),
    )
    return {"sessionToken": ses["sessionToken"], "expiresAt": ses["expiresAt"], "me": _me(user, user_id=user_id, role=role)}


def employee_login(data, auth: AuthContext | None, ctx: ActionContext, cfg):
    employee_id = str((data or {}).get("employeeId") or "").strip()
    password = str((data or {}).get("password") or "")
    if not employee_id:
        raise ApiError("BAD_REQUEST", "Missing employeeId")
    check_password_input(password)

    user = _find_user(ctx, employee_id)
    if not user:
        burn_password_check(password)
        raise ApiError("AUTH_INVALID", "Invalid credentials")
    if not verify_password(password, user.get("passwordHash")):
        raise ApiError("AUTH_INVALID", "Invalid credentials")
    if user.get("active") is False:
        raise ApiError("FORBIDDEN", "Employee account is not active")

    role = normalize_role(user.get("role")) or "EMPLOYEE"
    user_id = str(user.get("employeeId") or user.get("id") or employee_id)
    ses = issue_session_token(
        ctx.db,
        user_id=user_id,
        email=str(user.get("email") or ""),
        role=role,
        session_ttl_minutes=cfg.SESSION_TTL_MINUTES,
    )
    append_audit(
        ctx.db,
        entityType="AUTH",
        entityId=user_id,
        action="EMPLOYEE_LOGIN",
        stageTag="AUTH_LOGIN",
        actor=AuthContext(valid=True, userId=user_id, email="", role=role, expiresAt=ses["expiresAt"]),
    )
    return {"sessionToken": ses["sessionToken"], "expiresAt": ses["expiresAt"], "me": _me(user, user_id=user_id, role=role)}


def session_validate(data, auth: AuthContext | None, ctx: ActionContext, cfg):
    if not auth or not auth.valid:
        raise ApiError("AUTH_INVALID", "Invalid or expired session")
    return serialize_auth(auth)


def get_me(data, auth: AuthContext | None, ctx: ActionContext, cfg):
    if not auth or not auth.valid:
        raise ApiError("AUTH_INVALID", "Invalid or expired session")
    role = normalize_role(auth.role)
    return {"me": _me(_find_user(ctx, auth.userId), user_id=auth.userId, role=role)}


def logout(data, auth: AuthContext | None, ctx: ActionContext, cfg):
    revoked = revoke_session(ctx.db, ctx.token, revoked_by=auth.userId if auth else "")
    if revoked:
        append_audit(ctx.db, entityType="AUTH", entityId=auth.userId, action="LOGOUT", stageTag="AUTH_LOGOUT", actor=auth)
    return {"loggedOut": True}


def my_permissions_get(data, auth: AuthContext | None, ctx: ActionContext, cfg):
    if not auth or not auth.valid:
        raise ApiError("AUTH_INVALID", "Invalid or expired session")
    return permissions_for_role(auth.role)
