from __future__ import annotations

from typing import Any, Callable

from actions import admin, no_dues, review, session_actions
from utils import ApiError


ACTION_HANDLERS: dict[str, Callable[..., Any]] = {
    # Sessions
    "LOGIN_EXCHANGE": session_actions.login_exchange,
    "EMPLOYEE_LOGIN": session_actions.employee_login,
    "SESSION_VALIDATE": session_actions.session_validate,
    "GET_ME": session_actions.get_me,
    "LOGOUT": session_actions.logout,
    "MY_PERMISSIONS_GET": session_actions.my_permissions_get,
    # Employee clearance flow
    "NO_DUES_SUBMIT": no_dues.no_dues_submit,
    "SAVE_DISPOSAL_FORM": no_dues.save_disposal_form,
    "SAVE_EFILE_FORM": no_dues.save_efile_form,
    "SAVE_FORM365_TRANSFER": no_dues.save_form365_transfer,
    "SAVE_FORM365_DISPOSAL": no_dues.save_form365_disposal,
    "FINAL_SUBMIT": no_dues.final_submit,
    "PREVIOUS_APPLICATION": no_dues.previous_application,
    "TRACKING_DETAILS": no_dues.tracking_details,
    "DASHBOARD_STATUS": no_dues.dashboard_status,
    "ASSIGNED_FORMS": no_dues.assigned_forms,
    "FORM_DATA_GET": no_dues.form_data_get,
    "FORM_STATUS": no_dues.form_status,
    "TRACK_FORMS": no_dues.track_forms,
    "CONFIRMATION": no_dues.confirmation,
    "EMPLOYEE_INFO": no_dues.employee_info,
    "CERTIFICATES_LIST": no_dues.certificates_list,
    "CERTIFICATE_DOWNLOAD": no_dues.certificate_download,
    "HISTORY_LIST": no_dues.history_list,
    "NOTIFICATIONS_PENDING": admin.notifications_pending,
    "NOTIFICATIONS_HISTORY": admin.notifications_history,
    # HOD / IT review
    "CASE_REVIEW_QUEUE": review.case_review_queue,
    "CASE_ASSIGN_FORMS": review.case_assign_forms,
    "CASE_HOD_APPROVE": review.case_hod_approve,
    "CASE_REJECT": review.case_reject,
    "CASE_IT_COMPLETE": review.case_it_complete,
    # Maintenance
    "CERTIFICATES_CLEANUP": admin.certificates_cleanup,
    "CERTIFICATES_STATS": admin.certificates_stats,
}


def dispatch(action: str, data: Any, auth, ctx, cfg):
    action_u = str(action or "").upper().strip()
    handler = ACTION_HANDLERS.get(action_u)
    if handler is None:
        raise ApiError("BAD_REQUEST", f"Unknown action: {action_u}")
    if data is not None and not isinstance(data, dict):
        raise ApiError("BAD_REQUEST", "data must be an object")
    return handler(data or {}, auth, ctx, cfg)
