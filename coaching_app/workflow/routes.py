from flask import request
from flask_login import login_required

from . import workflow_bp
from ..api_utils import api_success, api_error, get_json_body
from ..decorators import role_required, STAFF_ROLES
from .services import (
    attendance_status, can_enter_results, class_status, eligible_students,
    get_test_or_404, workflow_overview,
)


@workflow_bp.route("/attendance-status/<int:test_id>", methods=["GET"])
@login_required
@role_required(*STAFF_ROLES)
def test_attendance_status(test_id):
    return api_success(attendance_status(test_id))


@workflow_bp.route("/eligible-students/<int:test_id>", methods=["GET"])
@login_required
@role_required(*STAFF_ROLES)
def test_eligible_students(test_id):
    return api_success(eligible_students(test_id))


@workflow_bp.route("/class-status/<int:class_id>", methods=["GET"])
@login_required
@role_required(*STAFF_ROLES)
def class_attendance_status(class_id):
    return api_success(class_status(class_id))


@workflow_bp.route("/validate-result-entry", methods=["POST"])
@login_required
@role_required(*STAFF_ROLES)
def validate_result_entry():
    body = get_json_body()
    test_id = body.get("test_id")
    if not test_id:
        return api_error("validation_error", "test_id is required", 400)
    get_test_or_404(test_id)
    decision = can_enter_results(test_id, body.get("student_id"))
    return api_success(decision.to_dict(), message=decision.message)


@workflow_bp.route("/overview", methods=["GET"])
@login_required
@role_required(*STAFF_ROLES)
def overview():
    try:
        limit = min(100, max(1, int(request.args.get("limit", "20"))))
    except ValueError:
        limit = 20
    return api_success(workflow_overview(limit))
