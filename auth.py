from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import select

from models import Session as DbSession
from utils import ApiError, AuthContext, iso_utc_now, new_uuid, normalize_role, parse_datetime_maybe, sha256_hex


ROLES = ("EMPLOYEE", "HOD", "IT", "ADMIN")

PUBLIC_ACTIONS = {
    "LOGIN_EXCHANGE",
    "EMPLOYEE_LOGIN",
}

_EMPLOYEE = ["EMPLOYEE"]
_REVIEWERS = ["HOD", "IT", "ADMIN"]
_ANY = ["EMPLOYEE", "HOD", "IT", "ADMIN"]

STATIC_RBAC_PERMISSIONS: dict[str, list[str]] = {
    "LOGIN_EXCHANGE": ["PUBLIC"],
    "EMPLOYEE_LOGIN": ["PUBLIC"],
    "SESSION_VALIDATE": _ANY,
    "GET_ME": _ANY,
    "LOGOUT": _ANY,
    "MY_PERMISSIONS_GET": _ANY,
    # Employee clearance flow
    "NO_DUES_SUBMIT": _EMPLOYEE,
    "SAVE_DISPOSAL_FORM": _EMPLOYEE,
    "SAVE_EFILE_FORM": _EMPLOYEE,
    "SAVE_FORM365_TRANSFER": _EMPLOYEE,
    "SAVE_FORM365_DISPOSAL": _EMPLOYEE,
    "FINAL_SUBMIT": _EMPLOYEE,
    "PREVIOUS_APPLICATION": _EMPLOYEE,
    "TRACKING_DETAILS": _EMPLOYEE,
    "DASHBOARD_STATUS": _EMPLOYEE,
    "ASSIGNED_FORMS": _EMPLOYEE,
    "FORM_DATA_GET": _EMPLOYEE,
    "FORM_STATUS": _EMPLOYEE,
    "TRACK_FORMS": _EMPLOYEE,
    "CONFIRMATION": _EMPLOYEE,
    "EMPLOYEE_INFO": _EMPLOYEE,
    "CERTIFICATES_LIST": _EMPLOYEE,
    "CERTIFICATE_DOWNLOAD": _EMPLOYEE,
    "HISTORY_LIST": _EMPLOYEE,
    "NOTIFICATIONS_PENDING": _ANY,
    "NOTIFICATIONS_HISTORY": _ANY,
    # HOD / IT review
    "CASE_REVIEW_QUEUE": _REVIEWERS,
    "CASE_ASSIGN_FORMS": ["IT", "ADMIN"],
    "CASE_HOD_APPROVE": ["HOD", "ADMIN"],
    "CASE_REJECT": _REVIEWERS,
    "CASE_IT_COMPLETE": ["IT", "ADMIN"],
    # Maintenance
    "CERTIFICATES_CLEANUP": ["ADMIN"],
    "CERTIFICATES_STATS": ["ADMIN", "IT"],
}

_INVALID = AuthContext(valid=False, userId="", email="", role="", expiresAt="")


def is_public_action(action: str) -> bool:
    return str(action or "").upper() in PUBLIC_ACTIONS


def parse_test_token(token: str, *, allow_test_tokens: bool) -> dict[str, str]:
    """
    `TEST:<userId>:<ROLE>` tokens stand in for the identity provider outside
    production.
    """

    if not allow_test_tokens:
        raise ApiError("AUTH_INVALID", "Identity provider exchange is not configured")
    parts = str(token or "").split(":")
    if len(parts) != 3 or parts[0] != "TEST":
        raise ApiError("AUTH_INVALID", "Invalid test token")
    user_id = parts[1].strip()
    role = normalize_role(parts[2])
    if not user_id or role not in ROLES:
        raise ApiError("AUTH_INVALID", "Invalid test token")
    return {"userId": user_id, "role": role}


def uuid_hex_32() -> str:
    return new_uuid().replace("-", "")


def issue_session_token(db, *, user_id: str, email: str, role: str, session_ttl_minutes: int) -> dict[str, str]:
    token = "ST-" + uuid_hex_32() + uuid_hex_32()
    now = datetime.now(timezone.utc)
    expires = now + timedelta(minutes=int(session_ttl_minutes))

    issued_at = iso_utc_now()
    expires_at = expires.isoformat(timespec="milliseconds").replace("+00:00", "Z")

    db.add(
        DbSession(
            sessionId="SES-" + new_uuid(),
            tokenHash=sha256_hex(token),
            tokenPrefix=token[:12],
            userId=str(user_id or ""),
            email=str(email or ""),
            role=normalize_role(role),
            issuedAt=issued_at,
            expiresAt=expires_at,
            lastSeenAt=issued_at,
            revokedAt="",
            revokedBy="",
        )
    )
    return {"sessionToken": token, "expiresAt": expires_at}


def revoke_session(db, token: Any, *, revoked_by: str) -> bool:
    if not token or not isinstance(token, str):
        return False
    ses = db.execute(select(DbSession).where(DbSession.tokenHash == sha256_hex(token))).scalar_one_or_none()
    if not ses or ses.revokedAt:
        return False
    ses.revokedAt = iso_utc_now()
    ses.revokedBy = str(revoked_by or "")
    return True


def validate_session_token(db, token: Any, *, action: str | None = None) -> AuthContext:
    if not token or not isinstance(token, str):
        return _INVALID

    ses = db.execute(select(DbSession).where(DbSession.tokenHash == sha256_hex(token))).scalar_one_or_none()
    if not ses:
        return _INVALID

    exp_dt = parse_datetime_maybe(ses.expiresAt)
    if exp_dt and exp_dt < datetime.now(timezone.utc):
        return _INVALID
    if ses.revokedAt:
        return _INVALID

    role_u = normalize_role(ses.role)
    if role_u not in ROLES:
        return _INVALID

    ses.lastSeenAt = iso_utc_now()
    return AuthContext(
        valid=True,
        userId=str(ses.userId or "").strip(),
        email=str(ses.email or ""),
        role=role_u,
        expiresAt=str(ses.expiresAt or ""),
    )


def assert_permission(role: str, action: str) -> None:
    role_u = normalize_role(role) or ""
    action_u = str(action or "").upper().strip()

    if is_public_action(action_u):
        return

    allowed = STATIC_RBAC_PERMISSIONS.get(action_u)
    if not allowed:
        raise ApiError("BAD_REQUEST", f"Unknown action: {action_u}")
    if not role_u or role_u == "PUBLIC":
        raise ApiError("AUTH_INVALID", "Login required")
    if role_u not in allowed:
        raise ApiError("FORBIDDEN", f"Not allowed for role: {role_u}")


def permissions_for_role(role: str) -> dict[str, Any]:
    role_u = normalize_role(role)
    if not role_u:
        raise ApiError("AUTH_INVALID", "Login required")
    keys = sorted(a for a, roles in STATIC_RBAC_PERMISSIONS.items() if role_u in roles or "PUBLIC" in roles)
    return {"role": role_u, "actionKeys": keys}


def serialize_auth(auth: AuthContext) -> dict[str, Any]:
    return {
        "valid": bool(auth.valid),
        "expiresAt": auth.expiresAt,
        "me": {"userId": auth.userId, "email": auth.email, "role": role_or_public(auth)},
    }


def role_or_public(auth: Optional[AuthContext]) -> str:
    if not auth or not auth.valid:
        return "PUBLIC"
    return normalize_role(auth.role) or "PUBLIC"
