import logging
from sqlalchemy import select, func

from .. import db
from ..errors import NotFoundError, ValidationError
from ..models import Attendance, Result, Student, Test, utc_now
from ..notifications import realtime
from ..tasks import task_queue
from ..workflow.services import (
    STUDENT_ABSENT, can_enter_results, ensure_attendance_for_tests,
    get_test_or_404, infer_attendance_from_result,
)
from .grading import assign_competition_ranks, compute_grade, compute_totals, percentile_for, summarize

logger = logging.getLogger(__name__)


def _clean_marks(test, subject_marks):
    """Validate raw marks against the test's subjects and return floats by subject."""
    if not isinstance(subject_marks, dict):
        raise ValidationError("subject_marks must be an object keyed by subject name")
    limits = {s["name"]: float(s.get("max_marks") or 0) for s in (test.subjects or [])}
    unknown = sorted(set(subject_marks) - set(limits))
    if unknown:
        raise ValidationError(f"Unknown subject(s) for {test.test_name}: {', '.join(unknown)}")
    clean = {}
    for name, limit in limits.items():
        raw = subject_marks.get(name)
        if raw is None or raw == "":
            clean[name] = 0.0
            continue
        try:
            mark = float(raw)
        except (TypeError, ValueError):
            raise ValidationError(f"Marks for {name} must be a number")
        if mark < 0 or mark > limit:
            raise ValidationError(f"Marks for {name} must be between 0 and {limit:g}")
        clean[name] = mark
    return clean


def find_result(test_id, student_id):
    return db.session.execute(
        select(Result).filter_by(test_id_fk=test_id, student_id_fk=student_id)
    ).scalars().first()


def save_result(test, student, subject_marks, remarks=None, actor_id=None):
    """Upsert the result for (student, test). Returns ``(result, created)``.

    Derived fields are recomputed from the marks on every save, and a missing
    test attendance row is inferred. The caller commits.
    """
    marks = _clean_marks(test, subject_marks)
    total, max_marks, percentage = compute_totals(marks, test.subjects)
    result = find_result(test.test_id, student.student_id)
    created = result is None
    if created:
        result = Result(test_id_fk=test.test_id, student_id_fk=student.student_id, created_by=actor_id)
        db.session.add(result)
    result.roll = student.roll
    result.subject_marks = marks
    result.total_marks = total
    result.max_marks = max_marks
    result.percentage = percentage
    result.grade = compute_grade(percentage)
    if remarks is not None:
        result.remarks = remarks
    db.session.flush()
    infer_attendance_from_result(result, marked_by=actor_id, commit=False)
    return result, created


def recalculate_ranks(test_id):
    """Recompute competition ranks over the non-absent results of a test."""
    results = db.session.execute(select(Result).filter_by(test_id_fk=test_id)).scalars().all()
    present = [r for r in results if not r.is_absent]
    for result in results:
        if result.is_absent:
            result.rank = None
    for result, rank in assign_competition_ranks(present):
        result.rank = rank
    db.session.commit()
    return len(present)


def trigger_result_sms(test_id, sent_by=None):
    from ..sms.services import send_bulk_result_sms
    task_queue.enqueue(f"sms:result:{test_id}", send_bulk_result_sms, test_id, sent_by)


def _require_objects(rows, what):
    if not isinstance(rows, list) or any(not isinstance(row, dict) for row in rows):
        raise ValidationError(f"Each {what} must be an object")


def bulk_save_results(rows, actor_id=None, skip_attendance_check=False):
    if not isinstance(rows, list) or not rows:
        raise ValidationError("No results provided")
    _require_objects(rows, "result")
    test_ids = [row.get("test_id") for row in rows if row.get("test_id")]
    if len(test_ids) != len(rows):
        raise ValidationError("Every result needs a test_id")
    for test_id in dict.fromkeys(test_ids):
        get_test_or_404(test_id)
    ensure_attendance_for_tests(test_ids, skip_check=skip_attendance_check)

    summary = {"created": 0, "updated": 0, "skipped": 0, "errors": []}
    touched = {}
    for index, row in enumerate(rows):
        test = db.session.get(Test, row["test_id"])
        student = db.session.get(Student, row.get("student_id")) if row.get("student_id") else None
        if student is None:
            summary["skipped"] += 1
            summary["errors"].append({"row": index, "student_id": row.get("student_id"), "error": "Student not found"})
            continue
        if not skip_attendance_check:
            decision = can_enter_results(test.test_id, student.student_id)
            if not decision.allowed and decision.reason == STUDENT_ABSENT:
                summary["skipped"] += 1
                summary["errors"].append({
                    "row": index, "student_id": student.student_id, "reason": decision.reason, "error": decision.message,
                })
                continue
        try:
            # Marks are validated before anything is added to the session
            _, created = save_result(test, student, row.get("subject_marks") or row.get("marks") or {},
                                     remarks=row.get("remarks"), actor_id=actor_id)
        except ValidationError as e:
            summary["skipped"] += 1
            summary["errors"].append({"row": index, "student_id": student.student_id, "error": e.message})
            continue
        summary["created" if created else "updated"] += 1
        touched.setdefault(test.test_id, {"test": test, "created": 0})
        if created:
            touched[test.test_id]["created"] += 1
    db.session.commit()

    for test_id, info in touched.items():
        test = info["test"]
        recalculate_ranks(test_id)
        realtime.emit_to_class(test.class_name, "results-updated", {
            "type": "new_results",
            "test_id": test.test_id,
            "test_name": test.test_name,
            "message": f"Results for {test.test_name} have been updated",
            "timestamp": utc_now().isoformat(),
        }, test.section)
        if test.is_published and info["created"] > 0:
            trigger_result_sms(test_id, actor_id)
    logger.info("Bulk results saved: %s created, %s updated, %s skipped",
                summary["created"], summary["updated"], summary["skipped"])
    return summary


def validate_results(rows):
    """Dry-run checks for a batch of result rows; nothing is written."""
    if not isinstance(rows, list) or not rows:
        raise ValidationError("No results provided")
    _require_objects(rows, "result")
    report = []
    for index, row in enumerate(rows):
        errors, warnings = [], []
        test = db.session.get(Test, row.get("test_id")) if row.get("test_id") else None
        student = db.session.get(Student, row.get("student_id")) if row.get("student_id") else None
        if test is None:
            errors.append("Test not found")
        if student is None:
            errors.append("Student not found")
        if test is not None and student is not None:
            marks = row.get("subject_marks") or row.get("marks") or {}
            try:
                _clean_marks(test, marks)
            except ValidationError as e:
                errors.append(e.message)
            missing = [s["name"] for s in (test.subjects or []) if marks.get(s["name"]) in (None, "")]
            if missing:
                warnings.append(f"Missing marks for {', '.join(missing)} will be saved as 0")
            decision = can_enter_results(test.test_id, student.student_id)
            if not decision.allowed:
                if decision.reason == STUDENT_ABSENT:
                    errors.append(decision.message)
                else:
                    warnings.append(decision.message)
            if find_result(test.test_id, student.student_id) is not None:
                warnings.append("An existing result will be updated")
        report.append({"row": index, "student_id": row.get("student_id"), "errors": errors, "warnings": warnings})
    error_count = sum(len(r["errors"]) for r in report)
    return {
        "valid": error_count == 0,
        "error_count": error_count,
        "warning_count": sum(len(r["warnings"]) for r in report),
        "rows": report,
    }


def sync_results_with_attendance(test_id, changed_students, actor_id=None):
    """Bring result absence flags in line with edited attendance, then re-rank."""
    test = get_test_or_404(test_id)
    changed_students = changed_students or []
    _require_objects(changed_students, "attendance change")
    counts = {"marked_absent": 0, "restored": 0, "no_result_found": 0}
    affected = []
    for change in changed_students:
        student_id = change.get("student_id")
        new_status = change.get("new_status") or change.get("status")
        result = find_result(test_id, student_id)
        if result is None:
            counts["no_result_found"] += 1
            continue
        if new_status == "absent" and not result.is_absent:
            result.is_absent = True
            counts["marked_absent"] += 1
            affected.append(student_id)
        elif new_status in ("present", "late") and result.is_absent:
            result.is_absent = False
            counts["restored"] += 1
            affected.append(student_id)
    db.session.commit()
    recalculate_ranks(test_id)

    stamp = utc_now().isoformat()
    for student_id in affected:
        realtime.emit_to_student(student_id, "results-updated", {
            "type": "result_sync",
            "test_id": test.test_id,
            "test_name": test.test_name,
            "message": f"Your result for {test.test_name} has been updated",
            "timestamp": stamp,
        })
    realtime.emit_to_class(test.class_name, "results-updated", {
        "type": "result_sync",
        "test_id": test.test_id,
        "test_name": test.test_name,
        "message": f"Results for {test.test_name} have been updated",
        "timestamp": stamp,
    }, test.section)

    sms_triggered = bool(test.is_published and counts["restored"] > 0)
    if sms_triggered:
        trigger_result_sms(test_id, actor_id)
    logger.info("Result sync for test %s: %s", test_id, counts)
    return {**counts, "sms_triggered": sms_triggered, "affected_students": affected}


def _results_for(test_id):
    return db.session.execute(
        select(Result).filter_by(test_id_fk=test_id).order_by(Result.total_marks.desc(), Result.roll)
    ).scalars().all()


def get_test_results(test_id):
    test = get_test_or_404(test_id)
    results = _results_for(test_id)
    present = [r for r in results if not r.is_absent]
    scores = [r.total_marks for r in present]
    stats = {
        "total": len(results),
        "present": len(present),
        "absent": len(results) - len(present),
        "highest": max(scores) if scores else 0,
        "lowest": min(scores) if scores else 0,
        "average": round(sum(scores) / len(scores), 2) if scores else 0,
    }
    ordered = sorted(results, key=lambda r: (r.is_absent, r.rank or 0, r.roll or ""))
    return test, ordered, stats


def get_merit_list(test_id):
    test = get_test_or_404(test_id)
    results = _results_for(test_id)
    present = [r for r in results if not r.is_absent]
    ranked = assign_competition_ranks(present)
    entries = []
    for result, rank in ranked:
        entry = result.to_dict()
        entry["rank"] = rank
        entry["percentile"] = percentile_for(rank, len(present))
        entries.append(entry)
    stats = summarize(
        [(r.total_marks, r.percentage, r.grade) for r in present],
        absent_count=len(results) - len(present),
    )
    return test, entries, stats


def get_student_results(student_id, published_only=False):
    student = db.session.get(Student, student_id)
    if student is None:
        raise NotFoundError("Student not found")
    query = (
        select(Result, Test).join(Test, Test.test_id == Result.test_id_fk)
        .filter(Result.student_id_fk == student_id).order_by(Test.test_date.desc())
    )
    if published_only:
        query = query.filter(Test.is_published.is_(True))
    rows = db.session.execute(query).all()
    attendance = {
        a.test_id_fk: a.status for a in db.session.execute(
            select(Attendance).filter_by(student_id_fk=student_id, attendance_type="test")
        ).scalars()
    }
    history = []
    for result, test in rows:
        item = result.to_dict()
        item["test"] = test.to_dict()
        item["attendance_status"] = attendance.get(test.test_id)
        history.append(item)
    return student, history


def update_result(result_id, subject_marks=None, remarks=None, is_absent=None, actor_id=None):
    result = db.session.get(Result, result_id)
    if result is None:
        raise NotFoundError("Result not found")
    test = db.session.get(Test, result.test_id_fk)
    student = db.session.get(Student, result.student_id_fk)
    if subject_marks is not None:
        save_result(test, student, subject_marks, remarks=remarks, actor_id=actor_id)
    elif remarks is not None:
        result.remarks = remarks
    if is_absent is not None:
        result.is_absent = bool(is_absent)
    db.session.commit()
    recalculate_ranks(test.test_id)
    return result


def delete_result(result_id):
    result = db.session.get(Result, result_id)
    if result is None:
        raise NotFoundError("Result not found")
    test_id = result.test_id_fk
    details = result.to_dict()
    db.session.delete(result)
    db.session.commit()
    recalculate_ranks(test_id)
    return details


def publish_results(test_id, actor_id=None):
    from ..notifications.services import notify_test

    test = get_test_or_404(test_id)
    count = db.session.execute(select(func.count(Result.result_id)).filter_by(test_id_fk=test_id)).scalar_one()
    if not count:
        raise ValidationError("Cannot publish a test without results")
    ranked = recalculate_ranks(test_id)
    test.is_published = True
    test.published_at = utc_now()
    db.session.commit()
    notify_test(test, "result_published", user_id=actor_id)
    trigger_result_sms(test_id, actor_id)
    logger.info("Results published for test %s (%d ranked)", test_id, ranked)
    return test, ranked


def unpublish_results(test_id):
    test = get_test_or_404(test_id)
    test.is_published = False
    test.published_at = None
    db.session.commit()
    return test
