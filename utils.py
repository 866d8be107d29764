from __future__ import annotations

import hashlib
import json
import re
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional


_DEFAULT_HTTP_STATUS = {
    "BAD_REQUEST": 400,
    "AUTH_INVALID": 401,
    "FORBIDDEN": 403,
    "NOT_FOUND": 404,
    "CONFLICT": 409,
    "INTERNAL": 500,
}


class ApiError(Exception):
    def __init__(self, code: str, message: str, http_status: int | None = None):
        super().__init__(message)
        self.code = str(code or "INTERNAL").upper()
        self.message = str(message or "")
        self.http_status = int(http_status or _DEFAULT_HTTP_STATUS.get(self.code, 400))


@dataclass
class AuthContext:
    valid: bool
    userId: str
    email: str
    role: str
    expiresAt: str


def ok(data: Any = None, http_status: int = 200):
    return {"ok": True, "data": data if data is not None else {}}, http_status


def err(code: str, message: str, http_status: int | None = None):
    status = int(http_status or _DEFAULT_HTTP_STATUS.get(str(code or "").upper(), 400))
    return {"ok": False, "error": {"code": code, "message": message}}, status


def iso_utc_now() -> str:
    return to_iso_utc(datetime.now(timezone.utc))


def to_iso_utc(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def epoch_ms() -> int:
    return int(time.time() * 1000)


def now_monotonic() -> float:
    return time.monotonic()


def parse_datetime_maybe(value: Any) -> Optional[datetime]:
    """
    Lenient ISO-8601 parser. Returns an aware UTC datetime or None.

    Accepts a trailing "Z", naive values (treated as UTC) and plain dates.
    """

    s = str(value or "").strip()
    if not s:
        return None
    try:
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        dt = datetime.fromisoformat(s)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def sort_key_datetime(value: Any) -> datetime:
    """Unparseable or missing timestamps sort as the epoch."""
    return parse_datetime_maybe(value) or _EPOCH


def new_uuid() -> str:
    return str(uuid.uuid4())


def sha256_hex(value: str) -> str:
    return hashlib.sha256(str(value or "").encode("utf-8")).hexdigest()


def md5_hex(value: str) -> str:
    return hashlib.md5(str(value or "").encode("utf-8")).hexdigest()


def normalize_role(role: Any) -> str:
    return str(role or "").upper().strip()


_FILENAME_BAD = re.compile(r"[^A-Za-z0-9._-]+")


def sanitize_filename(name: str, *, max_len: int = 120) -> str:
    base = str(name or "").replace("\\", "/").split("/")[-1].strip()
    base = _FILENAME_BAD.sub("_", base).strip("._")
    if not base:
        base = "file"
    return base[:max_len]


def parse_json_body(raw: str) -> dict[str, Any]:
    s = str(raw or "").strip()
    if not s:
        return {}
    try:
        body = json.loads(s)
    except json.JSONDecodeError:
        raise ApiError("BAD_REQUEST", "Invalid JSON body")
    if not isinstance(body, dict):
        raise ApiError("BAD_REQUEST", "JSON body must be an object")
    return body


_REDACT_KEYS = {"password", "token", "idtoken", "sessiontoken", "hodsignature", "itsignature"}


def redact_for_audit(data: Any, *, _depth: int = 0) -> Any:
    if _depth > 4:
        return "..."
    if isinstance(data, dict):
        out = {}
        for k, v in data.items():
            if str(k).lower() in _REDACT_KEYS:
                out[k] = "***"
            else:
                out[k] = redact_for_audit(v, _depth=_depth + 1)
        return out
    if isinstance(data, list):
        return [redact_for_audit(v, _depth=_depth + 1) for v in data[:50]]
    if isinstance(data, str) and len(data) > 500:
        return data[:500] + "..."
    return data
