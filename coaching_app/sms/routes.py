from flask import request
from flask_login import login_required, current_user

from . import sms_bp
from .. import limiter
from ..api_utils import api_success, api_error, get_json_body, pagination_args, page_meta
from ..audit import log_action
from ..decorators import role_required, STAFF_ROLES
from ..workflow.services import get_test_or_404
from .services import (
    check_balance, count_recipients, get_sms_stats, query_logs, send_bulk_result_sms, send_custom_sms,
)

LOG_FILTER_KEYS = ("status", "type", "test_id", "student_id", "phone")


def _outcome_response(outcome, message):
    if not outcome.get("success"):
        return api_error("sms_unavailable", outcome.get("reason") or "SMS could not be sent", 400)
    return api_success(outcome, message=message)


@sms_bp.route("/send-custom", methods=["POST"])
@login_required
@role_required("admin")
@limiter.limit("5 per minute")
def send_custom():
    body = get_json_body()
    outcome = send_custom_sms(
        body.get("filters") or {},
        body.get("message"),
        phone_field=body.get("phone_field") or "guardian_phone",
        sent_by=current_user.user_id,
    )
    log_action("custom_sms_sent", "sms", None, {
        "filters": body.get("filters") or {},
        "sent": outcome.get("sent", 0),
        "failed": outcome.get("failed", 0),
    })
    return _outcome_response(outcome, f"{outcome.get('sent', 0)} SMS sent")


@sms_bp.route("/send-result/<int:test_id>", methods=["POST"])
@login_required
@role_required(*STAFF_ROLES)
@limiter.limit("5 per minute")
def send_result(test_id):
    test = get_test_or_404(test_id)
    if not test.is_published:
        return api_error("validation_error", "Publish the results before sending result SMS", 400)
    outcome = send_bulk_result_sms(test_id, sent_by=current_user.user_id)
    log_action("result_sms_sent", "test", test_id, {
        "sent": outcome.get("sent", 0),
        "failed": outcome.get("failed", 0),
        "skipped": outcome.get("skipped", 0),
    })
    return _outcome_response(outcome, f"{outcome.get('sent', 0)} result SMS sent")


@sms_bp.route("/recipient-count", methods=["POST"])
@login_required
@role_required(*STAFF_ROLES)
def recipient_count():
    body = get_json_body()
    return api_success(count_recipients(body.get("filters") or {}, body.get("phone_field") or "guardian_phone"))


@sms_bp.route("/logs", methods=["GET"])
@login_required
@role_required(*STAFF_ROLES)
def logs():
    page, limit = pagination_args()
    filters = {k: request.args.get(k) for k in LOG_FILTER_KEYS if request.args.get(k)}
    rows, total = query_logs(filters, page=page, limit=limit)
    return api_success([r.to_dict() for r in rows], page_meta(page, limit, total))


@sms_bp.route("/stats", methods=["GET"])
@login_required
@role_required(*STAFF_ROLES)
def stats():
    return api_success(get_sms_stats())


@sms_bp.route("/balance", methods=["GET"])
@login_required
@role_required("admin")
def balance():
    outcome = check_balance()
    if not outcome["success"]:
        return api_error("sms_unavailable", outcome["reason"], 502)
    return api_success(outcome)
