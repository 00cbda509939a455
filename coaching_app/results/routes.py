from flask import Response, request
from flask_login import login_required, current_user

from . import results_bp
from .. import limiter
from ..api_utils import api_success, api_error, get_json_body
from ..audit import log_action
from ..decorators import own_record_or_staff, role_required, STAFF_ROLES
from ..errors import NotFoundError
from ..workflow.services import get_test_or_404
from .excel import XLSX_MIMETYPE, build_results_template, export_results_workbook, parse_results_upload
from .services import (
    bulk_save_results, delete_result, get_merit_list, get_student_results, get_test_results,
    publish_results, recalculate_ranks, sync_results_with_attendance, unpublish_results,
    update_result, validate_results,
)


def _xlsx_response(bio, filename):
    return Response(bio.read(), mimetype=XLSX_MIMETYPE, headers={
        "Content-Disposition": f"attachment; filename={filename}"
    })


@results_bp.route("/bulk", methods=["POST"])
@login_required
@role_required(*STAFF_ROLES)
def bulk_create():
    body = get_json_body()
    skip = bool(body.get("skip_attendance_check")) and current_user.role == "admin"
    summary = bulk_save_results(body.get("results"), actor_id=current_user.user_id, skip_attendance_check=skip)
    log_action("results_bulk_created", "result", None, {
        "created": summary["created"], "updated": summary["updated"], "skipped": summary["skipped"],
        "skip_attendance_check": skip,
    })
    message = f"Results saved: {summary['created']} created, {summary['updated']} updated"
    return api_success(summary, message=message)


@results_bp.route("/validate", methods=["POST"])
@login_required
@role_required(*STAFF_ROLES)
def validate():
    return api_success(validate_results(get_json_body().get("results")))


@results_bp.route("/upload/<int:test_id>", methods=["POST"])
@login_required
@role_required(*STAFF_ROLES)
@limiter.limit("10 per minute")
def upload(test_id):
    test = get_test_or_404(test_id)
    f = request.files.get("file")
    if not f or not f.filename:
        return api_error("validation_error", "Upload an .xlsx file in the 'file' field", 400)
    rows, errors = parse_results_upload(f, test)
    if not rows:
        return api_error("validation_error", "No result rows found in the workbook", 400)
    skip = (request.form.get("skip_attendance_check") or "").lower() == "true" and current_user.role == "admin"
    summary = bulk_save_results(rows, actor_id=current_user.user_id, skip_attendance_check=skip)
    summary["errors"] = errors + summary["errors"]
    log_action("results_uploaded", "test", test_id, {
        "filename": f.filename, "created": summary["created"], "updated": summary["updated"],
    })
    return api_success(summary, message=f"{summary['created'] + summary['updated']} result(s) imported")


@results_bp.route("/test/<int:test_id>", methods=["GET"])
@login_required
@role_required(*STAFF_ROLES)
def for_test(test_id):
    test, results, stats = get_test_results(test_id)
    return api_success({"test": test.to_dict(), "results": [r.to_dict() for r in results], "statistics": stats})


@results_bp.route("/merit-list/<int:test_id>", methods=["GET"])
@login_required
def merit_list(test_id):
    test, entries, stats = get_merit_list(test_id)
    if current_user.role == "student" and not test.is_published:
        raise NotFoundError("Results are not published yet")
    return api_success({"test": test.to_dict(), "merit_list": entries, "statistics": stats})


@results_bp.route("/student/<int:student_id>", methods=["GET"])
@own_record_or_staff("results")
def for_student(student_id):
    is_student = current_user.role == "student"
    student, history = get_student_results(student_id, published_only=is_student)
    return api_success({"student": student.to_dict(), "results": history})


@results_bp.route("/<int:result_id>", methods=["PUT"])
@login_required
@role_required(*STAFF_ROLES)
def update(result_id):
    body = get_json_body()
    result = update_result(
        result_id,
        subject_marks=body.get("subject_marks"),
        remarks=body.get("remarks"),
        is_absent=body.get("is_absent"),
        actor_id=current_user.user_id,
    )
    log_action("result_updated", "result", result_id, {k: body.get(k) for k in ("subject_marks", "remarks", "is_absent") if k in body})
    return api_success(result.to_dict(), message="Result updated")


@results_bp.route("/<int:result_id>", methods=["DELETE"])
@login_required
@role_required("admin")
def remove(result_id):
    details = delete_result(result_id)
    log_action("result_deleted", "result", result_id, details)
    return api_success({"deleted": result_id}, message="Result deleted")


@results_bp.route("/publish/<int:test_id>", methods=["POST"])
@login_required
@role_required(*STAFF_ROLES)
def publish(test_id):
    test, ranked = publish_results(test_id, actor_id=current_user.user_id)
    log_action("results_published", "test", test_id, {"ranked": ranked})
    return api_success({"test": test.to_dict(), "ranked": ranked}, message=f"Results for {test.test_name} published")


@results_bp.route("/unpublish/<int:test_id>", methods=["POST"])
@login_required
@role_required("admin")
def unpublish(test_id):
    test = unpublish_results(test_id)
    log_action("results_unpublished", "test", test_id)
    return api_success({"test": test.to_dict()}, message="Results unpublished")


@results_bp.route("/recalculate-ranks/<int:test_id>", methods=["POST"])
@login_required
@role_required(*STAFF_ROLES)
def recalculate(test_id):
    get_test_or_404(test_id)
    ranked = recalculate_ranks(test_id)
    log_action("ranks_recalculated", "test", test_id, {"ranked": ranked})
    return api_success({"ranked": ranked})


@results_bp.route("/sync-attendance", methods=["POST"])
@login_required
@role_required(*STAFF_ROLES)
def sync_attendance():
    body = get_json_body()
    test_id = body.get("test_id")
    changed = body.get("changed_students")
    if not test_id or not isinstance(changed, list):
        return api_error("validation_error", "test_id and changed_students are required", 400)
    summary = sync_results_with_attendance(test_id, changed, actor_id=current_user.user_id)
    log_action("results_synced_with_attendance", "test", test_id, {
        k: summary[k] for k in ("marked_absent", "restored", "no_result_found")
    })
    return api_success(summary, message="Results synced with attendance")


@results_bp.route("/export/<int:test_id>", methods=["GET"])
@login_required
@role_required(*STAFF_ROLES)
def export(test_id):
    test, results, _ = get_test_results(test_id)
    return _xlsx_response(export_results_workbook(test, results), f"results_{test.test_code}.xlsx")


@results_bp.route("/template/<int:test_id>", methods=["GET"])
@login_required
@role_required(*STAFF_ROLES)
def template(test_id):
    test = get_test_or_404(test_id)
    return _xlsx_response(build_results_template(test), f"marks_template_{test.test_code}.xlsx")
