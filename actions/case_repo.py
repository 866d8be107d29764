from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Iterable, Optional

from utils import epoch_ms, sort_key_datetime


def case_recency(case: dict) -> datetime:
    return sort_key_datetime(case.get("submissionDate") or case.get("lastUpdated"))


def cases_for_employee(cases: Iterable[Any], employee_id: str) -> list[dict]:
    # Exact match, no normalization of either side.
    return [c for c in cases or [] if isinstance(c, dict) and c.get("employeeId") == employee_id]


def latest_case(
    cases: Iterable[Any],
    employee_id: str,
    allowed_statuses: Optional[Iterable[str]] = None,
    *,
    predicate: Optional[Callable[[dict], bool]] = None,
) -> Optional[dict]:
    """
    The employee's current case: newest by submissionDate (falling back to
    lastUpdated), optionally restricted to an exact, case-sensitive status
    allow-list. Equal timestamps resolve to the last record in collection order.
    Returns None when nothing matches.
    """

    allowed = list(allowed_statuses) if allowed_statuses is not None else None
    best: Optional[dict] = None
    best_key: Optional[datetime] = None
    for case in cases_for_employee(cases, employee_id):
        if allowed is not None and case.get("status") not in allowed:
            continue
        if predicate is not None and not predicate(case):
            continue
        key = case_recency(case)
        if best is None or key >= best_key:
            best, best_key = case, key
    return best


def newest_first(cases: Iterable[dict]) -> list[dict]:
    return sorted(cases, key=case_recency, reverse=True)


def find_case_index(cases: list, form_id: str) -> int:
    for i, c in enumerate(cases):
        if isinstance(c, dict) and c.get("formId") == form_id:
            return i
    return -1


def new_form_id(cases: Iterable[Any]) -> str:
    taken = {str(c.get("formId") or "") for c in cases or [] if isinstance(c, dict)}
    stamp = epoch_ms()
    while f"F{stamp}" in taken:
        stamp += 1
    return f"F{stamp}"
