from flask import request
from flask_login import login_required

from . import students_bp
from ..api_utils import api_success, get_json_body, pagination_args, page_meta
from ..audit import log_action
from ..decorators import own_record_or_staff, role_required, STAFF_ROLES
from .services import create_student, get_student, list_students, update_student

FILTER_KEYS = ("class_name", "section", "group", "status", "search", "sort_by", "sort_order")


@students_bp.route("/", methods=["GET"])
@login_required
@role_required(*STAFF_ROLES)
def list_all():
    page, limit = pagination_args(default_limit=20)
    filters = {k: request.args.get(k) for k in FILTER_KEYS if request.args.get(k)}
    rows, total = list_students(filters, page=page, limit=limit)
    return api_success([s.to_dict() for s in rows], page_meta(page, limit, total))


@students_bp.route("/", methods=["POST"])
@login_required
@role_required(*STAFF_ROLES)
def create():
    student = create_student(get_json_body())
    log_action("student_created", "student", student.student_id, {"roll": student.roll, "class_name": student.class_name})
    return api_success(student.to_dict(), status=201, message=f"Student enrolled with roll {student.roll}")


@students_bp.route("/<int:student_id>", methods=["GET"])
@own_record_or_staff("profile")
def detail(student_id):
    return api_success(get_student(student_id).to_dict())


@students_bp.route("/<int:student_id>", methods=["PUT"])
@login_required
@role_required(*STAFF_ROLES)
def update(student_id):
    body = get_json_body()
    student = update_student(student_id, body)
    log_action("student_updated", "student", student_id, {"changes": sorted(k for k in body if k != "password")})
    return api_success(student.to_dict(), message="Student updated")
