from __future__ import annotations

from functools import lru_cache

from werkzeug.security import check_password_hash, generate_password_hash

from utils import ApiError


MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 256


def check_password_input(password: str) -> str:
    pwd = str(password or "")
    if not pwd:
        raise ApiError("BAD_REQUEST", "Missing password")
    if len(pwd) > MAX_PASSWORD_LENGTH:
        raise ApiError("BAD_REQUEST", "Password is too long")
    return pwd


def hash_password(password: str) -> str:
    pwd = check_password_input(password)
    if len(pwd) < MIN_PASSWORD_LENGTH:
        raise ApiError("BAD_REQUEST", f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    return generate_password_hash(pwd, method="scrypt", salt_length=16)


def verify_password(password: str, password_hash: str) -> bool:
    stored = str(password_hash or "").strip()
    if not stored:
        return False
    try:
        return check_password_hash(stored, str(password or ""))
    except (TypeError, ValueError):
        return False


@lru_cache(maxsize=1)
def _dummy_hash() -> str:
    return generate_password_hash("no-such-employee", method="scrypt", salt_length=16)


def burn_password_check(password: str) -> None:
    """Spend one hash verification so unknown ids cost the same as wrong passwords."""
    verify_password(password, _dummy_hash())
