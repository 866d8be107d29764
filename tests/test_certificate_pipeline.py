from __future__ import annotations

import base64
import os
import threading
import time

import pytest

from schema import DisposalForm, EfileForm, RawSubForm, decode_sub_form_payload, form_display_name, parse_sub_form, sanitize_text
from services.certificate_pipeline import (
    SIGNATURE_PLACEHOLDER,
    CertificatePipeline,
    certificate_filename,
    fingerprint_of,
    validate_pdf_file,
    validate_signature_data,
    valid_until,
)
from utils import ApiError


PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 16
JPEG = b"\xff\xd8\xff\xe0" + b"\x00" * 16


def _data_url(mime: str, raw: bytes) -> str:
    return f"data:{mime};base64,{base64.b64encode(raw).decode()}"


def _responses() -> dict:
    return {
        "disposalFormData": {"empName": "Asha <b>Rao</b>", "empNo": "E1", "department": "IT", "hodSignature": "plain text"},
        "efileFormData": {"empName": "Asha", "fileNo": "EF-1"},
        "form365TransferData": {"nameFrom": "Asha", "transferTo": "Finance"},
        "form365Data": "not an object",
    }


def test_signature_validation():
    assert validate_signature_data(_data_url("image/png", PNG), max_bytes=1024) == PNG
    assert validate_signature_data(_data_url("image/jpeg", JPEG), max_bytes=1024) == JPEG
    assert validate_signature_data(_data_url("image/gif", PNG), max_bytes=1024) is None
    assert validate_signature_data(_data_url("image/png", JPEG), max_bytes=1024) is None
    assert validate_signature_data(_data_url("image/png", b"\x89PNG"), max_bytes=1024) is None
    assert validate_signature_data(_data_url("image/png", PNG), max_bytes=8) is None
    assert validate_signature_data("https://example.com/sig.png", max_bytes=1024) is None
    assert validate_signature_data(None, max_bytes=1024) is None


def test_sanitize_and_display_names():
    assert sanitize_text("") == "N/A"
    assert sanitize_text(None) == "N/A"
    assert sanitize_text("a\x00b<script>c</script>") == "abc"
    assert len(sanitize_text("x" * 900)) == 500
    assert form_display_name("efile") == "E-file Transfer Form"
    assert form_display_name("form365Data") == "Form 365 - Disposal"
    assert form_display_name("custom<i>Form</i>") == "customForm"


def test_sub_form_decoding():
    assert isinstance(parse_sub_form("disposalFormData", '{"a": 1}'), DisposalForm)
    assert isinstance(parse_sub_form("efileFormData", {"a": 1}), EfileForm)
    assert isinstance(parse_sub_form("somethingElse", {"a": 1}), RawSubForm)

    with pytest.raises(ApiError) as e:
        decode_sub_form_payload("disposalFormData", None)
    assert e.value.message == "No data provided for disposalFormData"
    with pytest.raises(ApiError) as e:
        decode_sub_form_payload("disposalFormData", "{oops")
    assert e.value.message.startswith("Invalid JSON format for disposalFormData:")
    with pytest.raises(ApiError) as e:
        decode_sub_form_payload("disposalFormData", "[1, 2]")
    assert e.value.message == "Invalid data format for disposalFormData"


def test_filename_shape():
    name = certificate_filename("F1", "disposalFormData", 1700000000000)
    assert name.startswith("F1_disposalFormData_1700000000000_")
    assert name.endswith(".pdf")
    assert len(fingerprint_of(name)) == 8


def test_three_valid_and_one_malformed(tmp_path):
    pipeline = CertificatePipeline(str(tmp_path), timeout_seconds=60)
    result = pipeline.generate("F1", _responses())

    assert len(result.certificates) == 3
    assert [f["formType"] for f in result.failures] == ["form365Data"]
    assert result.failures[0]["error"] == "Invalid form data provided"
    for cert in result.certificates:
        assert cert["status"] == "success"
        assert os.path.isfile(cert["filepath"])
        assert validate_pdf_file(cert["filepath"])["isValid"] is True
    assert result.total_size == sum(c["fileSize"] for c in result.certificates)


def test_no_valid_entries_fails_without_writing(tmp_path):
    pipeline = CertificatePipeline(str(tmp_path / "certs"))
    with pytest.raises(ApiError) as e:
        pipeline.generate("F1", {"a": None, "b": "text"})
    assert (e.value.code, e.value.message) == ("INTERNAL", "No valid form responses found")
    assert not (tmp_path / "certs").exists()

    with pytest.raises(ApiError) as e:
        pipeline.generate("", {"a": {"x": 1}})
    assert e.value.code == "BAD_REQUEST"


def test_timed_out_unit_is_isolated(tmp_path, monkeypatch):
    release = threading.Event()

    def slow_for_efile(self, form_id, sub):
        if sub.key == "efileFormData":
            release.wait(5)
        return b"%PDF-1.4 stub"

    monkeypatch.setattr(CertificatePipeline, "render_certificate", slow_for_efile)
    pipeline = CertificatePipeline(str(tmp_path), timeout_seconds=0.5)
    try:
        result = pipeline.generate("F1", {"disposalFormData": {"a": 1}, "efileFormData": {"b": 1}})
    finally:
        release.set()

    assert [c["formType"] for c in result.certificates] == ["disposalFormData"]
    assert result.failures == [
        {"formType": "efileFormData", "error": "PDF generation timeout", "status": "failed", "generatedAt": result.failures[0]["generatedAt"]}
    ]
    assert len(os.listdir(tmp_path)) == 1


def test_slow_unit_past_its_deadline_is_rejected(tmp_path, monkeypatch):
    release = threading.Event()

    def render(self, form_id, sub):
        if sub.key == "disposalFormData":
            release.wait(5)
        elif sub.key == "efileFormData":
            time.sleep(0.8)
        return b"%PDF-1.4 stub"

    monkeypatch.setattr(CertificatePipeline, "render_certificate", render)
    pipeline = CertificatePipeline(str(tmp_path), timeout_seconds=0.5)
    try:
        result = pipeline.generate(
            "F1", {"disposalFormData": {"a": 1}, "efileFormData": {"b": 1}, "form365TransferData": {"c": 1}}
        )
    finally:
        release.set()

    assert [c["formType"] for c in result.certificates] == ["form365TransferData"]
    assert sorted((f["formType"], f["error"]) for f in result.failures) == [
        ("disposalFormData", "PDF generation timeout"),
        ("efileFormData", "PDF generation timeout"),
    ]


def test_hung_unit_does_not_starve_queued_units(tmp_path, monkeypatch):
    release = threading.Event()

    def render(self, form_id, sub):
        if sub.key == "disposalFormData":
            release.wait(5)
        return b"%PDF-1.4 stub"

    monkeypatch.setattr(CertificatePipeline, "render_certificate", render)
    pipeline = CertificatePipeline(str(tmp_path), timeout_seconds=0.5, max_workers=1)
    try:
        result = pipeline.generate("F1", {"disposalFormData": {"a": 1}, "efileFormData": {"b": 1}})
    finally:
        release.set()

    assert [c["formType"] for c in result.certificates] == ["efileFormData"]
    assert [(f["formType"], f["error"]) for f in result.failures] == [("disposalFormData", "PDF generation timeout")]


def test_oversize_artifact_never_written(tmp_path, monkeypatch):
    monkeypatch.setattr(CertificatePipeline, "render_certificate", lambda self, form_id, sub: b"%PDF-" + b"0" * 2048)
    pipeline = CertificatePipeline(str(tmp_path))
    pipeline.max_size_bytes = 1024
    with pytest.raises(ApiError) as e:
        pipeline.generate("F1", {"disposalFormData": {"a": 1}})
    assert e.value.message == "No certificates were generated successfully"
    assert os.listdir(tmp_path) == []


def test_signature_placeholder_used_for_bad_image(tmp_path):
    pipeline = CertificatePipeline(str(tmp_path))
    flowable = pipeline._signature_flowable("data:image/png;base64,AAAA", "HOD", None)
    assert flowable.getPlainText() == SIGNATURE_PLACEHOLDER


def test_cleanup_and_stats(tmp_path):
    old = tmp_path / "old.pdf"
    new = tmp_path / "new.pdf"
    old.write_bytes(b"%PDF-old")
    new.write_bytes(b"%PDF-new-file")
    os.utime(old, (1_000_000, 1_000_000))

    pipeline = CertificatePipeline(str(tmp_path))
    stats = pipeline.certificate_stats()
    assert stats["totalCertificates"] == 2
    assert stats["oldestFile"]["name"] == "old.pdf"
    assert stats["fileTypes"] == {".pdf": 2}

    out = pipeline.cleanup_old_certificates(30)
    assert out["deletedCount"] == 1
    assert out["deletedSize"] == len(b"%PDF-old")
    assert sorted(os.listdir(tmp_path)) == ["new.pdf"]


def test_validate_pdf_file_rejects_non_pdf(tmp_path):
    p = tmp_path / "x.pdf"
    p.write_bytes(b"hello")
    assert validate_pdf_file(str(p)) == {"isValid": False, "error": "File is not a valid PDF"}
    assert validate_pdf_file(str(tmp_path / "missing.pdf"))["isValid"] is False


def test_valid_until_is_thirty_days_later():
    assert valid_until("2024-01-01T00:00:00.000Z") == "2024-01-31T00:00:00.000Z"
