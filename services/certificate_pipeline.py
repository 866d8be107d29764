from __future__ import annotations

import base64
import binascii
import io
import logging
import os
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from xml.sax.saxutils import escape

from reportlab.lib import colors
from reportlab.lib.enums import TA_CENTER
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import cm, inch
from reportlab.lib.utils import ImageReader
from reportlab.platypus import Image, Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from schema import AnySubForm, form_display_name, is_valid_sub_form_value, sanitize_text, typed_sub_form
from utils import ApiError, epoch_ms, iso_utc_now, md5_hex, parse_datetime_maybe, sanitize_filename, to_iso_utc


log = logging.getLogger("certificates")

ALLOWED_SIGNATURE_TYPES = ("image/png", "image/jpeg", "image/jpg")
SIGNATURE_PLACEHOLDER = "[Digital signature verified]"
INVALID_FORM_DATA = "Invalid form data provided"
_CREATE_ATTEMPTS = 5


def format_date(value: Any) -> str:
    if not value:
        return "N/A"
    dt = parse_datetime_maybe(value)
    if dt is None:
        return "Invalid Date"
    return f"{dt.strftime('%B')} {dt.day}, {dt.year}"


def validate_signature_data(image_data: Any, *, max_bytes: int) -> Optional[bytes]:
    """
    Decode a `data:image/...;base64,` signature. Returns the raw bytes, or None
    when the type, size or magic bytes are not acceptable.
    """

    if not isinstance(image_data, str) or not image_data.startswith("data:image/"):
        return None
    header, _, encoded = image_data.partition(",")
    if not encoded:
        return None
    mime = header.split(":", 1)[1].split(";", 1)[0].lower()
    if mime not in ALLOWED_SIGNATURE_TYPES:
        log.warning("invalid signature image type mime=%s", mime)
        return None
    try:
        raw = base64.b64decode(encoded, validate=False)
    except (binascii.Error, ValueError):
        log.warning("undecodable signature image")
        return None
    if len(raw) > int(max_bytes):
        log.warning("signature image too large size=%s", len(raw))
        return None
    if not _valid_image_header(raw, mime):
        log.warning("invalid signature image header mime=%s", mime)
        return None
    return raw


def _valid_image_header(raw: bytes, mime: str) -> bool:
    if len(raw) < 8:
        return False
    if mime == "image/png":
        return raw[:4] == b"\x89PNG"
    return raw[:2] == b"\xff\xd8"


def certificate_filename(form_id: str, form_type: str, stamp_ms: int) -> str:
    safe_id = sanitize_filename(sanitize_text(form_id))
    safe_type = sanitize_filename(sanitize_text(form_type))
    fingerprint = md5_hex(f"{safe_id}-{safe_type}-{stamp_ms}")[:8]
    return f"{safe_id}_{safe_type}_{stamp_ms}_{fingerprint}.pdf"


def fingerprint_of(filename: str) -> str:
    stem = os.path.splitext(str(filename or ""))[0]
    return stem.rsplit("_", 1)[-1]


@dataclass
class PipelineResult:
    certificates: list[dict] = field(default_factory=list)
    failures: list[dict] = field(default_factory=list)

    @property
    def total_size(self) -> int:
        return sum(int(c.get("fileSize") or 0) for c in self.certificates)


class CertificatePipeline:
    """
    Renders one PDF per completed sub-form. Units run concurrently and are
    isolated: a failing unit becomes an entry in `failures`, never an exception.
    """

    def __init__(
        self,
        certificates_dir: str,
        *,
        max_size_mb: int = 10,
        timeout_seconds: float = 30,
        signature_max_bytes: int = 200 * 1024,
        max_workers: int = 4,
    ):
        self.certificates_dir = str(certificates_dir)
        self.max_size_bytes = int(max_size_mb) * 1024 * 1024
        self.max_size_mb = int(max_size_mb)
        self.timeout_seconds = float(timeout_seconds)
        self.signature_max_bytes = int(signature_max_bytes)
        self.max_workers = max(1, int(max_workers))

    @classmethod
    def from_config(cls, cfg) -> "CertificatePipeline":
        return cls(
            cfg.CERTIFICATES_DIR,
            max_size_mb=cfg.CERT_MAX_SIZE_MB,
            timeout_seconds=cfg.CERT_TIMEOUT_SECONDS,
            signature_max_bytes=cfg.CERT_SIGNATURE_MAX_BYTES,
            max_workers=cfg.CERT_MAX_WORKERS,
        )

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    def generate(self, form_id: str, form_responses: Any) -> PipelineResult:
        if not form_id or not isinstance(form_id, str):
            raise ApiError("BAD_REQUEST", "Invalid form ID provided")
        if not isinstance(form_responses, dict):
            raise ApiError("BAD_REQUEST", "Invalid form responses provided")

        result = PipelineResult()
        valid: list[AnySubForm] = []
        for form_type, value in form_responses.items():
            if is_valid_sub_form_value(value):
                valid.append(typed_sub_form(form_type, value))
            else:
                result.failures.append(self._failure(form_type, INVALID_FORM_DATA))

        if not valid:
            log.error("certificate generation failed form=%s: no valid form responses", form_id)
            raise ApiError("INTERNAL", "No valid form responses found")

        os.makedirs(self.certificates_dir, exist_ok=True)
        started = time.monotonic()
        log.info("certificate generation started form=%s types=%s", form_id, [s.key for s in valid])

        self._run_units(form_id, valid, result)

        log.info(
            "certificate generation finished form=%s generated=%s failed=%s duration_ms=%s total_size=%s",
            form_id,
            len(result.certificates),
            len(result.failures),
            int((time.monotonic() - started) * 1000),
            result.total_size,
        )
        if not result.certificates:
            raise ApiError("INTERNAL", "No certificates were generated successfully")
        return result

    def _timed_render(self, form_id: str, sub: AnySubForm) -> tuple[bytes, float]:
        t0 = time.monotonic()
        pdf = self.render_certificate(form_id, sub)
        return pdf, time.monotonic() - t0

    def _run_units(self, form_id: str, valid: list[AnySubForm], result: PipelineResult) -> None:
        """
        Runs at most `max_workers` units at a time. Every unit gets a private
        worker and its own deadline counted from the moment it starts, so a hung
        unit only holds its own thread and never eats into a queued unit's time.
        """

        queue = list(valid)
        limit = min(self.max_workers, len(valid))
        running: dict[Future, tuple[AnySubForm, float, ThreadPoolExecutor]] = {}
        try:
            while queue or running:
                while queue and len(running) < limit:
                    sub = queue.pop(0)
                    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="cert")
                    future = executor.submit(self._timed_render, form_id, sub)
                    running[future] = (sub, time.monotonic(), executor)

                next_deadline = min(t0 + self.timeout_seconds for _, t0, _ in running.values())
                done, _ = wait(
                    list(running), timeout=max(0.0, next_deadline - time.monotonic()), return_when=FIRST_COMPLETED
                )
                now = time.monotonic()

                for future in done:
                    sub, _, executor = running.pop(future)
                    executor.shutdown(wait=False)
                    try:
                        pdf, elapsed = future.result()
                        if elapsed > self.timeout_seconds:
                            self._timed_out(form_id, sub, result)
                            continue
                        result.certificates.append(self._store(form_id, sub.key, pdf))
                    except Exception as e:
                        log.exception("certificate failed form=%s type=%s", form_id, sub.key)
                        result.failures.append(self._failure(sub.key, str(e) or e.__class__.__name__))

                for future, (sub, t0, executor) in list(running.items()):
                    if now - t0 >= self.timeout_seconds:
                        running.pop(future)
                        future.cancel()
                        executor.shutdown(wait=False, cancel_futures=True)
                        self._timed_out(form_id, sub, result)
        finally:
            for future, (_, _, executor) in running.items():
                future.cancel()
                executor.shutdown(wait=False, cancel_futures=True)

    def _timed_out(self, form_id: str, sub: AnySubForm, result: PipelineResult) -> None:
        log.error("certificate timeout form=%s type=%s", form_id, sub.key)
        result.failures.append(self._failure(sub.key, "PDF generation timeout"))

    def _failure(self, form_type: str, reason: str) -> dict:
        return {"formType": form_type, "error": reason, "status": "failed", "generatedAt": iso_utc_now()}

    def _store(self, form_id: str, form_type: str, pdf: bytes) -> dict:
        if not pdf:
            raise ValueError("Generated PDF file is empty")
        if len(pdf) > self.max_size_bytes:
            raise ValueError(f"PDF size exceeds maximum limit of {self.max_size_mb}MB")

        for _ in range(_CREATE_ATTEMPTS):
            filename = certificate_filename(form_id, form_type, epoch_ms())
            path = os.path.join(self.certificates_dir, filename)
            try:
                with open(path, "xb") as f:
                    f.write(pdf)
            except FileExistsError:
                time.sleep(0.002)
                continue
            log.info("certificate generated form=%s type=%s file=%s size=%s", form_id, form_type, filename, len(pdf))
            return {
                "formType": form_type,
                "filename": filename,
                "filepath": path,
                "generatedAt": iso_utc_now(),
                "fileSize": len(pdf),
                "status": "success",
            }
        raise RuntimeError("Could not allocate a unique certificate filename")

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    def render_certificate(self, form_id: str, sub: AnySubForm) -> bytes:
        buffer = io.BytesIO()
        title = form_display_name(sub.key)
        doc = SimpleDocTemplate(
            buffer,
            pagesize=A4,
            rightMargin=1.8 * cm,
            leftMargin=1.8 * cm,
            topMargin=1.8 * cm,
            bottomMargin=1.8 * cm,
            title=f"Certificate - {title}",
            author="IT Department - Certificate Generation System",
            subject="IT Clearance Certificate",
        )

        styles = getSampleStyleSheet()
        title_style = ParagraphStyle(
            "CertTitle",
            parent=styles["Heading1"],
            fontSize=20,
            textColor=colors.HexColor("#1a365d"),
            alignment=TA_CENTER,
            spaceAfter=6,
        )
        subtitle_style = ParagraphStyle(
            "CertSubtitle",
            parent=styles["Heading2"],
            fontSize=14,
            textColor=colors.HexColor("#4a5568"),
            alignment=TA_CENTER,
            spaceAfter=14,
        )
        section_style = ParagraphStyle(
            "CertSection", parent=styles["Heading3"], textColor=colors.HexColor("#2d3748"), spaceBefore=10
        )
        small_style = ParagraphStyle(
            "CertSmall", parent=styles["Normal"], fontSize=8, textColor=colors.HexColor("#718096"), alignment=TA_CENTER
        )
        placeholder_style = ParagraphStyle("CertPlaceholder", parent=styles["Italic"], fontSize=9)

        processed_at = iso_utc_now()
        content: list = [
            Paragraph("IT CLEARANCE CERTIFICATE", title_style),
            Paragraph(escape(title), subtitle_style),
            Paragraph(f"Form ID: <b>{escape(sanitize_text(form_id))}</b>", small_style),
            Spacer(1, 12),
        ]

        content.append(Paragraph("Employee Information", section_style))
        content.append(self._field_table(sub.employee_rows()))
        content.append(Paragraph("HOD Approval", section_style))
        content.append(self._field_table(sub.hod_rows()))
        content.append(Paragraph("IT Processing", section_style))
        content.append(self._field_table(sub.it_rows(processed_at=processed_at)))

        details = sub.detail_rows(processed_at=processed_at)
        if details:
            content.append(Paragraph(escape(sub.detail_title), section_style))
            content.append(self._field_table(details))

        content.append(Paragraph("Digital Signatures", section_style))
        sigs = sub.signatures()
        content.append(
            Table(
                [
                    ["HOD Signature", "IT Signature"],
                    [
                        self._signature_flowable(sigs.get("hod"), "HOD", placeholder_style),
                        self._signature_flowable(sigs.get("it"), "IT", placeholder_style),
                    ],
                ],
                colWidths=[3 * inch, 3 * inch],
            )
        )

        content.append(Spacer(1, 24))
        content.append(
            Paragraph(
                f"Generated on {escape(format_date(processed_at))}. This certificate is digitally generated and valid without a physical signature.",
                small_style,
            )
        )

        doc.build(content)
        pdf = buffer.getvalue()
        buffer.close()
        return pdf

    def _field_table(self, rows: list[tuple[str, Any]]) -> Table:
        data = [[label, sanitize_text(value)] for label, value in rows]
        table = Table(data, colWidths=[2.2 * inch, 4 * inch])
        table.setStyle(
            TableStyle(
                [
                    ("FONTNAME", (0, 0), (0, -1), "Helvetica-Bold"),
                    ("FONTSIZE", (0, 0), (-1, -1), 9),
                    ("TEXTCOLOR", (0, 0), (-1, -1), colors.HexColor("#2d3748")),
                    ("GRID", (0, 0), (-1, -1), 0.5, colors.HexColor("#cbd5e0")),
                    ("VALIGN", (0, 0), (-1, -1), "MIDDLE"),
                ]
            )
        )
        return table

    def _signature_flowable(self, image_data: Any, who: str, placeholder_style: ParagraphStyle):
        raw = validate_signature_data(image_data, max_bytes=self.signature_max_bytes)
        if raw is None:
            return Paragraph(SIGNATURE_PLACEHOLDER, placeholder_style)
        try:
            ImageReader(io.BytesIO(raw)).getSize()
            return Image(io.BytesIO(raw), width=120, height=40)
        except Exception as e:
            log.warning("failed to embed %s signature: %s", who, e)
            return Paragraph(SIGNATURE_PLACEHOLDER, placeholder_style)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def cleanup_old_certificates(self, max_age_days: int = 30) -> dict:
        os.makedirs(self.certificates_dir, exist_ok=True)
        cutoff = time.time() - int(max_age_days) * 24 * 60 * 60
        deleted_count = 0
        deleted_size = 0
        errors: list[dict] = []
        for name in sorted(os.listdir(self.certificates_dir)):
            path = os.path.join(self.certificates_dir, name)
            try:
                st = os.stat(path)
                if st.st_mtime < cutoff:
                    os.remove(path)
                    deleted_size += st.st_size
                    deleted_count += 1
            except OSError as e:
                errors.append({"file": name, "error": e.strerror or str(e)})

        log.info(
            "certificate cleanup deleted=%s size=%s max_age_days=%s errors=%s",
            deleted_count,
            deleted_size,
            max_age_days,
            len(errors),
        )
        return {"deletedCount": deleted_count, "deletedSize": deleted_size, "errors": errors}

    def certificate_stats(self) -> dict:
        os.makedirs(self.certificates_dir, exist_ok=True)
        files = sorted(os.listdir(self.certificates_dir))
        stats: dict[str, Any] = {
            "totalCertificates": len(files),
            "totalSizeBytes": 0,
            "totalSizeMB": 0,
            "oldestFile": None,
            "newestFile": None,
            "avgSizeBytes": 0,
            "fileTypes": {},
        }
        if not files:
            return stats

        oldest = newest = None
        total = 0
        for name in files:
            try:
                st = os.stat(os.path.join(self.certificates_dir, name))
            except OSError as e:
                log.warning("could not stat %s: %s", name, e)
                continue
            ext = os.path.splitext(name)[1].lower()
            stats["fileTypes"][ext] = stats["fileTypes"].get(ext, 0) + 1
            total += st.st_size
            info = {"name": name, "date": _mtime_iso(st.st_mtime), "size": st.st_size}
            if oldest is None or st.st_mtime < oldest:
                oldest = st.st_mtime
                stats["oldestFile"] = info
            if newest is None or st.st_mtime > newest:
                newest = st.st_mtime
                stats["newestFile"] = info

        stats["totalSizeBytes"] = total
        stats["totalSizeMB"] = round(total / (1024 * 1024), 2)
        stats["avgSizeBytes"] = round(total / len(files))
        return stats


def validate_pdf_file(path: str) -> dict:
    try:
        st = os.stat(path)
        if st.st_size == 0:
            return {"isValid": False, "error": "PDF file is empty"}
        with open(path, "rb") as f:
            header = f.read(8)
    except OSError as e:
        return {"isValid": False, "error": e.strerror or str(e)}
    if header[:5] != b"%PDF-":
        return {"isValid": False, "error": "File is not a valid PDF"}
    return {"isValid": True, "size": st.st_size, "modified": _mtime_iso(st.st_mtime)}


def _mtime_iso(ts: float) -> str:
    return to_iso_utc(datetime.fromtimestamp(ts, tz=timezone.utc))


def valid_until(processed_at: Optional[str] = None, *, days: int = 30) -> str:
    base = parse_datetime_maybe(processed_at) or datetime.now(timezone.utc)
    return to_iso_utc(base + timedelta(days=days))
