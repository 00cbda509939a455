from flask import request
from flask_login import login_required, current_user

from . import attendance_bp
from ..api_utils import api_success, api_error, get_json_body, pagination_args, page_meta
from ..audit import log_action
from ..decorators import own_record_or_staff, role_required, STAFF_ROLES
from .services import (
    attendance_history, check_attendance, delete_attendance, mark_attendance,
    parse_date, query_attendance, student_attendance, test_attendees,
)

FILTER_KEYS = ("type", "class_name", "section", "status", "test_id", "class_id", "student_id", "date", "date_from", "date_to")


def _filters():
    return {k: request.args.get(k) for k in FILTER_KEYS if request.args.get(k)}


@attendance_bp.route("/mark", methods=["POST"])
@login_required
@role_required(*STAFF_ROLES)
def mark():
    body = get_json_body()
    summary = mark_attendance(body, marked_by=current_user.user_id)
    log_action("attendance_marked", "attendance", body.get("test_id") or body.get("class_id"), {
        "type": body.get("type"),
        "date": body.get("date"),
        "class_name": body.get("class_name"),
        "section": body.get("section"),
        "created": summary["created"],
        "updated": summary["updated"],
        "changed": len(summary["changed_students"]),
    })

    sync = None
    if body.get("type") == "test" and summary["changed_students"] and body.get("sync_results", True) is not False:
        from ..results.services import sync_results_with_attendance
        sync = sync_results_with_attendance(body["test_id"], summary["changed_students"], actor_id=current_user.user_id)
    summary["sync"] = sync

    message = f"Attendance saved: {summary['created']} created, {summary['updated']} updated"
    return api_success(summary, message=message)


@attendance_bp.route("/", methods=["GET"])
@login_required
@role_required(*STAFF_ROLES)
def list_attendance():
    page, limit = pagination_args()
    rows, total = query_attendance(_filters(), page=page, limit=limit)
    return api_success([r.to_dict() for r in rows], page_meta(page, limit, total))


@attendance_bp.route("/history", methods=["GET"])
@login_required
@role_required(*STAFF_ROLES)
def history():
    return api_success(attendance_history(_filters()))


@attendance_bp.route("/test/<int:test_id>", methods=["GET"])
@login_required
@role_required(*STAFF_ROLES)
def attendees(test_id):
    test, rows = test_attendees(test_id)
    return api_success({"test": test.to_dict(), "attendance": [r.to_dict() for r in rows]})


@attendance_bp.route("/student/<int:student_id>", methods=["GET"])
@own_record_or_staff("attendance")
def for_student(student_id):
    student, rows, summary = student_attendance(student_id, _filters())
    return api_success({
        "student": student.to_dict(),
        "attendance": [r.to_dict() for r in rows],
        "summary": summary,
    })


@attendance_bp.route("/check", methods=["GET"])
@login_required
@role_required(*STAFF_ROLES)
def check():
    kind = request.args.get("type") or "class"
    if kind == "test" and not request.args.get("test_id"):
        return api_error("validation_error", "test_id is required for test attendance", 400)
    day = parse_date(request.args.get("date")) if kind == "class" else None
    return api_success(check_attendance(
        kind, day,
        class_name=request.args.get("class_name"),
        section=request.args.get("section"),
        test_id=request.args.get("test_id"),
        class_id=request.args.get("class_id"),
    ))


@attendance_bp.route("/<int:attendance_id>", methods=["DELETE"])
@login_required
@role_required("admin")
def remove(attendance_id):
    details = delete_attendance(attendance_id)
    log_action("attendance_deleted", "attendance", attendance_id, details)
    return api_success({"deleted": attendance_id}, message="Attendance record deleted")
