from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Mapping, Union

from utils import ApiError


# Request key -> storage key inside case.formResponses.
SUB_FORM_STORAGE_KEYS: dict[str, str] = {
    "disposalForm": "disposalFormData",
    "efileForm": "efileFormData",
    "form365Transfer": "form365TransferData",
    "form365Disposal": "form365Data",
}

# Assigned-form title -> storage key.
ASSIGNED_TITLE_KEYS: dict[str, str] = {
    "Disposal Form": "disposalFormData",
    "E-File": "efileFormData",
    "Form 365 - Transfer": "form365TransferData",
    "Form 365 - Disposal": "form365Data",
}

_DISPLAY_NAMES: dict[str, str] = {
    "disposalForm": "Disposal Form",
    "disposalFormData": "Disposal Form",
    "efile": "E-file Transfer Form",
    "efileForm": "E-file Transfer Form",
    "efileFormData": "E-file Transfer Form",
    "form365Disp": "Form 365 - Disposal",
    "form365Disposal": "Form 365 - Disposal",
    "form365Data": "Form 365 - Disposal",
    "form365Trans": "Form 365 - Transfer",
    "form365Transfer": "Form 365 - Transfer",
    "form365TransferData": "Form 365 - Transfer",
}


MAX_FIELD_LENGTH = 500

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")
_HTML_TAGS = re.compile(r"<[^>]*>")


def sanitize_text(value: Any) -> str:
    if value is None or value == "":
        return "N/A"
    s = str(value)[:MAX_FIELD_LENGTH]
    s = _CONTROL_CHARS.sub("", s)
    s = _HTML_TAGS.sub("", s)
    return s.strip() or "N/A"


def form_display_name(form_type: str) -> str:
    return _DISPLAY_NAMES.get(str(form_type or ""), sanitize_text(form_type))


def _pick(data: Mapping[str, Any], *keys: str) -> Any:
    for k in keys:
        v = data.get(k)
        if v not in (None, ""):
            return v
    return None


@dataclass(frozen=True)
class SubForm:
    """A completed sub-form payload. `data` is the object exactly as submitted."""

    key: str
    data: dict[str, Any] = field(default_factory=dict)

    kind = "raw"
    detail_title = ""

    def employee_rows(self) -> list[tuple[str, Any]]:
        d = self.data
        return [
            ("Employee Name", _pick(d, "empName", "nameFrom", "employeeName")),
            ("Employee ID", _pick(d, "empNo", "employeeId", "empNoFrom")),
            ("Department", _pick(d, "department")),
            ("Designation", _pick(d, "designation", "designationFrom")),
            ("Email", _pick(d, "email", "empEmail")),
        ]

    def hod_rows(self) -> list[tuple[str, Any]]:
        d = self.data
        return [
            ("HOD Name", _pick(d, "hodName")),
            ("HOD Employee ID", _pick(d, "hodEmpNo")),
            ("HOD Email", _pick(d, "hodEmail")),
            ("Approval Date", _pick(d, "hodApprovalDate")),
        ]

    def it_rows(self, *, processed_at: str = "") -> list[tuple[str, Any]]:
        d = self.data
        return [
            ("IT Officer", _pick(d, "itOfficerName") or "IT Department"),
            ("Officer ID", _pick(d, "itOfficerId") or "IT-001"),
            ("IT Email", _pick(d, "itEmail") or "it@organization.com"),
            ("Processing Date", _pick(d, "itProcessedDate") or processed_at),
        ]

    def signatures(self) -> dict[str, Any]:
        return {"hod": self.data.get("hodSignature"), "it": self.data.get("itSignature")}

    def detail_rows(self, *, processed_at: str = "") -> list[tuple[str, Any]]:
        return []


@dataclass(frozen=True)
class DisposalForm(SubForm):
    kind = "disposal"
    detail_title = "Disposal Details"

    def detail_rows(self, *, processed_at: str = "") -> list[tuple[str, Any]]:
        d = self.data
        if not (d.get("disposableEmail") or d.get("deactivationDate")):
            return []
        return [
            ("Email Account", d.get("disposableEmail")),
            ("Deactivation Date", d.get("deactivationDate")),
            ("Disposal Method", d.get("disposalMethod") or "Standard Disposal"),
        ]


@dataclass(frozen=True)
class EfileForm(SubForm):
    kind = "efile"
    detail_title = "Transfer Details"

    def detail_rows(self, *, processed_at: str = "") -> list[tuple[str, Any]]:
        d = self.data
        if not (d.get("fromEoffice") and d.get("toEoffice")):
            return []
        return [
            ("From Office", d.get("fromEoffice")),
            ("To Office", d.get("toEoffice")),
            ("Transfer Date", d.get("transferDate") or processed_at),
        ]


@dataclass(frozen=True)
class Form365Transfer(SubForm):
    kind = "form365_transfer"
    detail_title = "Form 365 Details"

    def detail_rows(self, *, processed_at: str = "") -> list[tuple[str, Any]]:
        d = self.data
        return [
            ("Form Type", "Transfer"),
            ("Account ID", _pick(d, "accountId", "fromId")),
            ("Processing Date", d.get("processingDate") or processed_at),
        ]


@dataclass(frozen=True)
class Form365Disposal(SubForm):
    kind = "form365_disposal"
    detail_title = "Form 365 Details"

    def detail_rows(self, *, processed_at: str = "") -> list[tuple[str, Any]]:
        d = self.data
        return [
            ("Form Type", "Disposal"),
            ("Account ID", _pick(d, "accountId", "fromId")),
            ("Processing Date", d.get("processingDate") or processed_at),
        ]


@dataclass(frozen=True)
class RawSubForm(SubForm):
    """Unknown keys pass through untouched."""


AnySubForm = Union[DisposalForm, EfileForm, Form365Transfer, Form365Disposal, RawSubForm]

_VARIANTS: dict[str, type] = {
    "disposalFormData": DisposalForm,
    "disposalForm": DisposalForm,
    "efileFormData": EfileForm,
    "efileForm": EfileForm,
    "efile": EfileForm,
    "form365TransferData": Form365Transfer,
    "form365Transfer": Form365Transfer,
    "form365Trans": Form365Transfer,
    "form365Data": Form365Disposal,
    "form365Disposal": Form365Disposal,
    "form365Disp": Form365Disposal,
}


def typed_sub_form(key: str, data: Mapping[str, Any]) -> AnySubForm:
    cls = _VARIANTS.get(str(key or ""), RawSubForm)
    return cls(key=str(key or ""), data=dict(data))


def decode_sub_form_payload(label: str, value: Any) -> dict[str, Any]:
    """
    Accept an object or a JSON-encoded object. Anything else is a client error.
    """

    if value is None or value == "" or value == {}:
        raise ApiError("BAD_REQUEST", f"No data provided for {label}")
    parsed = value
    if isinstance(value, (str, bytes)):
        try:
            parsed = json.loads(value)
        except ValueError as e:
            raise ApiError("BAD_REQUEST", f"Invalid JSON format for {label}: {e}")
    if not isinstance(parsed, dict):
        raise ApiError("BAD_REQUEST", f"Invalid data format for {label}")
    return parsed


def parse_sub_form(storage_key: str, value: Any) -> AnySubForm:
    return typed_sub_form(storage_key, decode_sub_form_payload(storage_key, value))


def is_valid_sub_form_value(value: Any) -> bool:
    """Final-submit groups and certificate inputs must be objects; an empty one counts."""
    return isinstance(value, dict)
