from __future__ import annotations

import logging
import os
from typing import Any

from utils import ApiError, sanitize_filename


log = logging.getLogger("records")

ALLOWED_EXTENSIONS = {".pdf", ".png", ".jpg", ".jpeg", ".doc", ".docx"}


def store_order_letter(*, cfg: Any, file_bytes: bytes, file_name: str) -> str:
    """
    Persist an uploaded order letter under UPLOAD_DIR and return the stored
    name (`<32 hex>_<sanitized original name>`), which is what the case keeps.
    """

    safe_name = sanitize_filename(file_name or "order_letter")
    ext = os.path.splitext(safe_name)[1].lower()
    if ext not in ALLOWED_EXTENSIONS:
        raise ApiError("BAD_REQUEST", "Only PDF, image and Word documents are allowed for the order letter")

    size = int(len(file_bytes or b""))
    if size <= 0:
        raise ApiError("BAD_REQUEST", "Empty file")
    max_mb = int(getattr(cfg, "MAX_UPLOAD_MB", 10) or 10)
    if size > max_mb * 1024 * 1024:
        raise ApiError("BAD_REQUEST", f"Max upload size is {max_mb}MB", http_status=413)

    upload_dir = str(getattr(cfg, "UPLOAD_DIR", "./uploads") or "./uploads")
    os.makedirs(upload_dir, exist_ok=True)

    stored_name = f"{os.urandom(16).hex()}_{safe_name}"
    out_path = os.path.join(upload_dir, stored_name)
    try:
        with open(out_path, "wb") as f:
            f.write(file_bytes)
    except OSError:
        log.exception("order letter write failed name=%s", stored_name)
        raise ApiError("INTERNAL", "Failed to store order letter")
    return stored_name


def assert_stored_order_letter(*, cfg: Any, name: str) -> str:
    """
    The reference a case keeps must name a file this service stored: a bare
    file name that exists directly under UPLOAD_DIR.
    """

    ref = str(name or "").strip()
    if not ref or ref != os.path.basename(ref) or "\\" in ref or ref.startswith("."):
        raise ApiError("BAD_REQUEST", "Invalid order letter reference")
    upload_dir = str(getattr(cfg, "UPLOAD_DIR", "./uploads") or "./uploads")
    if not os.path.isfile(os.path.join(upload_dir, ref)):
        raise ApiError("BAD_REQUEST", "Order letter file not found")
    return ref
