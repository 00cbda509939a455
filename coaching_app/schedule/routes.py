from flask import request
from flask_login import login_required, current_user

from . import schedule_bp
from ..api_utils import api_success, get_json_body, pagination_args, page_meta
from ..attendance.services import parse_date
from ..audit import log_action
from ..decorators import role_required, STAFF_ROLES
from ..exams.services import student_for_user
from ..notifications import realtime
from .services import (
    add_materials, cancel_session, create_session, delete_session, find_conflicts, get_session,
    list_sessions, reschedule_session, update_session,
)

FILTER_KEYS = ("class_name", "section", "subject", "status", "date_from", "date_to")


def _flag(body, key):
    return body.get(key, True) is not False


@schedule_bp.route("/", methods=["GET"])
@login_required
def list_all():
    page, limit = pagination_args()
    filters = {k: request.args.get(k) for k in FILTER_KEYS if request.args.get(k)}
    student = student_for_user(current_user)
    if student is not None:
        filters["class_name"] = student.class_name
    rows, total = list_sessions(filters, page=page, limit=limit)
    return api_success([s.to_dict() for s in rows], page_meta(page, limit, total))


@schedule_bp.route("/<int:class_id>", methods=["GET"])
@login_required
def detail(class_id):
    return api_success(get_session(class_id).to_dict())


@schedule_bp.route("/", methods=["POST"])
@login_required
@role_required(*STAFF_ROLES)
def create():
    body = get_json_body()
    session = create_session(
        body,
        user_id=current_user.user_id,
        check_conflicts=_flag(body, "check_conflicts"),
        send_notification=_flag(body, "send_notification"),
    )
    log_action("class_created", "class", session.class_id, {
        "subject": session.subject, "class_name": session.class_name, "date": session.session_date.isoformat(),
    })
    return api_success(session.to_dict(), status=201, message="Class created successfully")


@schedule_bp.route("/<int:class_id>", methods=["PUT"])
@login_required
@role_required(*STAFF_ROLES)
def update(class_id):
    body = get_json_body()
    session = update_session(class_id, body, check_conflicts=_flag(body, "check_conflicts"))
    log_action("class_updated", "class", class_id, {"changes": sorted(body.keys())})
    realtime.emit_schedule_changed("updated", "class", class_id, session.class_name, session.section)
    return api_success(session.to_dict(), message="Class updated successfully")


@schedule_bp.route("/<int:class_id>/reschedule", methods=["POST"])
@login_required
@role_required(*STAFF_ROLES)
def reschedule(class_id):
    body = get_json_body()
    session, old_date = reschedule_session(
        class_id, body,
        user_id=current_user.user_id,
        notify_students=_flag(body, "notify_students"),
        check_conflicts=_flag(body, "check_conflicts"),
    )
    log_action("class_rescheduled", "class", class_id, {
        "from": old_date.isoformat(), "to": session.session_date.isoformat(),
        "start_time": session.start_time, "end_time": session.end_time,
    })
    return api_success(session.to_dict(), message="Class rescheduled successfully")


@schedule_bp.route("/<int:class_id>/cancel", methods=["POST"])
@login_required
@role_required(*STAFF_ROLES)
def cancel(class_id):
    body = get_json_body()
    session = cancel_session(
        class_id,
        reason=body.get("reason"),
        user_id=current_user.user_id,
        notify_students=_flag(body, "notify_students"),
    )
    log_action("class_cancelled", "class", class_id, {"reason": body.get("reason")})
    return api_success(session.to_dict(), message="Class cancelled successfully")


@schedule_bp.route("/<int:class_id>/materials", methods=["POST"])
@login_required
@role_required(*STAFF_ROLES)
def materials(class_id):
    body = get_json_body()
    session = add_materials(class_id, body.get("materials"), user_id=current_user.user_id)
    log_action("class_materials_added", "class", class_id, {"count": len(body["materials"])})
    return api_success(session.to_dict(), message="Materials added successfully")


@schedule_bp.route("/<int:class_id>", methods=["DELETE"])
@login_required
@role_required("admin")
def remove(class_id):
    session = get_session(class_id)
    class_name, section = session.class_name, session.section
    details = delete_session(class_id)
    log_action("class_deleted", "class", class_id, details)
    realtime.emit_schedule_changed("deleted", "class", class_id, class_name, section)
    return api_success({"deleted": class_id}, message="Class deleted successfully")


@schedule_bp.route("/check-conflicts", methods=["POST"])
@login_required
@role_required(*STAFF_ROLES)
def check_conflicts():
    body = get_json_body()
    conflicts = find_conflicts(
        parse_date(body.get("date")),
        body.get("start_time"),
        body.get("end_time"),
        class_name=body.get("class_name"),
        section=body.get("section"),
        room=body.get("room"),
        exclude_class_id=body.get("exclude_id"),
    )
    return api_success({"has_conflicts": bool(conflicts), "conflicts": conflicts})
