from flask import request
from flask_login import login_required, current_user

from . import exams_bp
from ..api_utils import api_success, get_json_body, pagination_args, page_meta
from ..audit import log_action
from ..decorators import role_required, STAFF_ROLES
from ..errors import NotFoundError
from ..notifications import realtime
from .services import (
    cancel_test, create_test, delete_test, get_test, list_tests, result_count,
    student_for_user, update_test, upcoming_tests,
)

FILTER_KEYS = ("class_name", "section", "status", "is_published", "from_date", "to_date", "sort_order")


@exams_bp.route("/", methods=["GET"])
@login_required
def list_all():
    page, limit = pagination_args(default_limit=20)
    filters = {k: request.args.get(k) for k in FILTER_KEYS if request.args.get(k)}
    rows, total = list_tests(filters, page=page, limit=limit, student=student_for_user(current_user))
    return api_success([t.to_dict() for t in rows], page_meta(page, limit, total))


@exams_bp.route("/upcoming", methods=["GET"])
@login_required
def upcoming():
    student = student_for_user(current_user)
    class_name = student.class_name if student else request.args.get("class_name")
    return api_success([t.to_dict() for t in upcoming_tests(class_name)])


@exams_bp.route("/<int:test_id>", methods=["GET"])
@login_required
def detail(test_id):
    test = get_test(test_id)
    student = student_for_user(current_user)
    if student is not None and student.class_name != test.class_name:
        raise NotFoundError("Test not found")
    return api_success({"test": test.to_dict(), "result_count": result_count(test_id)})


@exams_bp.route("/", methods=["POST"])
@login_required
@role_required(*STAFF_ROLES)
def create():
    body = get_json_body()
    test = create_test(body, user_id=current_user.user_id, send_notification=body.get("send_notification", True) is not False)
    log_action("test_created", "test", test.test_id, {"test_name": test.test_name, "class_name": test.class_name})
    return api_success(test.to_dict(), status=201, message="Test created successfully")


@exams_bp.route("/<int:test_id>", methods=["PUT"])
@login_required
@role_required(*STAFF_ROLES)
def update(test_id):
    body = get_json_body()
    test, rescheduled = update_test(test_id, body, user_id=current_user.user_id)
    log_action("test_updated", "test", test_id, {"changes": sorted(body.keys()), "rescheduled": rescheduled})
    if not rescheduled:
        realtime.emit_schedule_changed("updated", "test", test_id, test.class_name, test.section)
    return api_success(test.to_dict(), message="Test updated successfully")


@exams_bp.route("/<int:test_id>/cancel", methods=["POST"])
@login_required
@role_required(*STAFF_ROLES)
def cancel(test_id):
    body = get_json_body()
    test = cancel_test(
        test_id,
        reason=body.get("reason"),
        user_id=current_user.user_id,
        notify_students=body.get("notify_students", True) is not False,
    )
    log_action("test_cancelled", "test", test_id, {"reason": body.get("reason")})
    return api_success(test.to_dict(), message="Test cancelled successfully")


@exams_bp.route("/<int:test_id>", methods=["DELETE"])
@login_required
@role_required("admin")
def remove(test_id):
    test = get_test(test_id)
    class_name, section = test.class_name, test.section
    details = delete_test(test_id)
    log_action("test_deleted", "test", test_id, details)
    realtime.emit_schedule_changed("deleted", "test", test_id, class_name, section)
    return api_success({"deleted": test_id}, message="Test deleted successfully")
