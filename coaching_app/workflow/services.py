"""Attendance-before-results rules.

Results for a test may only be entered once attendance has been taken for
that test, and never for a student recorded as absent.
"""
import logging
from dataclasses import dataclass
from typing import Optional
from sqlalchemy import select, func

from .. import db
from ..errors import NotFoundError, WorkflowError
from ..models import Attendance, ClassSession, Result, Student, Test

logger = logging.getLogger(__name__)

ATTENDANCE_NOT_MARKED = "ATTENDANCE_NOT_MARKED"
STUDENT_NOT_IN_ATTENDANCE = "STUDENT_NOT_IN_ATTENDANCE"
STUDENT_ABSENT = "STUDENT_ABSENT"


@dataclass(frozen=True)
class GateDecision:
    allowed: bool
    reason: Optional[str] = None
    message: str = ""

    def to_dict(self):
        body = {"allowed": self.allowed, "message": self.message}
        if self.reason:
            body["reason"] = self.reason
        return body


def get_test_or_404(test_id) -> Test:
    test = db.session.get(Test, test_id)
    if test is None:
        raise NotFoundError("Test not found")
    return test


def test_attendance_exists(test_id) -> bool:
    row = db.session.execute(
        select(Attendance.attendance_id).filter_by(test_id_fk=test_id, attendance_type="test").limit(1)
    ).first()
    return row is not None


def test_attendance_for(test_id, student_id):
    return db.session.execute(
        select(Attendance).filter_by(test_id_fk=test_id, student_id_fk=student_id, attendance_type="test")
    ).scalars().first()


def can_enter_results(test_id, student_id=None) -> GateDecision:
    if not test_attendance_exists(test_id):
        return GateDecision(False, ATTENDANCE_NOT_MARKED, "Attendance must be marked for this test before entering results.")
    if student_id is None:
        return GateDecision(True, message="Attendance has been marked for this test.")
    record = test_attendance_for(test_id, student_id)
    if record is None:
        return GateDecision(False, STUDENT_NOT_IN_ATTENDANCE, "Student has no attendance record for this test.")
    if record.status == "absent":
        return GateDecision(False, STUDENT_ABSENT, "Student was marked absent for this test.")
    return GateDecision(True, message="Student attended this test.")


def ensure_attendance_for_tests(test_ids, skip_check=False):
    """Raise :class:`WorkflowError` for the first test in the batch without attendance."""
    if skip_check:
        logger.warning("Attendance check skipped by override for tests %s", sorted(set(test_ids)))
        return
    for test_id in dict.fromkeys(test_ids):
        if not test_attendance_exists(test_id):
            test = db.session.get(Test, test_id)
            name = test.test_name if test else test_id
            raise WorkflowError(
                f'Attendance must be marked for test "{name}" before entering results. Please mark attendance first.',
                ATTENDANCE_NOT_MARKED,
            )


def infer_attendance_from_result(result, marked_by=None, commit=True):
    """A stored result implies the student sat the test.

    Creates a ``present`` test attendance row when none exists and returns it;
    returns None when the student already has a row for the test.
    """
    if test_attendance_for(result.test_id_fk, result.student_id_fk) is not None:
        return None
    test = db.session.get(Test, result.test_id_fk)
    student = db.session.get(Student, result.student_id_fk)
    record = Attendance(
        student_id_fk=result.student_id_fk,
        attendance_type="test",
        test_id_fk=result.test_id_fk,
        attendance_date=test.test_date,
        class_name=student.class_name if student else test.class_name,
        section=student.section if student else test.section,
        status="present",
        remarks="Inferred from result entry",
        marked_by=marked_by,
    )
    db.session.add(record)
    if commit:
        db.session.commit()
    else:
        db.session.flush()
    logger.info("Inferred attendance for student %s on test %s", result.student_id_fk, result.test_id_fk)
    return record


def expected_students(class_name, section=None):
    query = select(Student).filter_by(class_name=class_name, status="active")
    if section:
        query = query.filter_by(section=section)
    return db.session.execute(query.order_by(Student.roll)).scalars().all()


def _status_counts(condition):
    rows = db.session.execute(
        select(Attendance.status, func.count(Attendance.attendance_id)).where(condition).group_by(Attendance.status)
    ).all()
    counts = {"present": 0, "absent": 0, "late": 0}
    counts.update({status: count for status, count in rows})
    counts["total"] = sum(counts[s] for s in ("present", "absent", "late"))
    return counts


def attendance_status(test_id):
    test = get_test_or_404(test_id)
    counts = _status_counts((Attendance.test_id_fk == test_id) & (Attendance.attendance_type == "test"))
    expected = len(expected_students(test.class_name, test.section))
    results = db.session.execute(select(func.count(Result.result_id)).filter_by(test_id_fk=test_id)).scalar_one()
    return {
        "test": test.to_dict(),
        "attendance": counts,
        "expected_students": expected,
        "not_marked": max(0, expected - counts["total"]),
        "attendance_marked": counts["total"] > 0,
        "results_entered": results,
        "can_enter_results": can_enter_results(test_id).to_dict(),
    }


def eligible_students(test_id):
    test = get_test_or_404(test_id)
    records = {
        a.student_id_fk: a for a in db.session.execute(
            select(Attendance).filter_by(test_id_fk=test_id, attendance_type="test")
        ).scalars()
    }
    with_results = set(db.session.execute(select(Result.student_id_fk).filter_by(test_id_fk=test_id)).scalars())
    eligible, ineligible = [], []
    for student in expected_students(test.class_name, test.section):
        record = records.get(student.student_id)
        entry = {
            "student_id": student.student_id,
            "roll": student.roll,
            "name": student.name,
            "attendance_status": record.status if record else None,
            "has_result": student.student_id in with_results,
        }
        if record is not None and record.status in ("present", "late"):
            eligible.append(entry)
        else:
            entry["reason"] = STUDENT_ABSENT if record is not None else STUDENT_NOT_IN_ATTENDANCE
            ineligible.append(entry)
    return {
        "test": test.to_dict(),
        "attendance_marked": bool(records),
        "eligible": eligible,
        "ineligible": ineligible,
    }


def class_status(class_id):
    session = db.session.get(ClassSession, class_id)
    if session is None:
        raise NotFoundError("Class session not found")
    counts = _status_counts((Attendance.class_session_id_fk == class_id) & (Attendance.attendance_type == "class"))
    expected = len(expected_students(session.class_name, session.section))
    return {
        "class_session": session.to_dict(),
        "attendance": counts,
        "expected_students": expected,
        "not_marked": max(0, expected - counts["total"]),
        "attendance_marked": counts["total"] > 0,
    }


def workflow_overview(limit=20):
    tests = db.session.execute(
        select(Test).where(Test.status != "cancelled").order_by(Test.test_date.desc()).limit(limit)
    ).scalars().all()
    items = []
    for test in tests:
        attendance = _status_counts((Attendance.test_id_fk == test.test_id) & (Attendance.attendance_type == "test"))
        results = db.session.execute(select(func.count(Result.result_id)).filter_by(test_id_fk=test.test_id)).scalar_one()
        if test.is_published:
            stage = "published"
        elif results:
            stage = "results_entered"
        elif attendance["total"]:
            stage = "attendance_marked"
        else:
            stage = "pending_attendance"
        items.append({
            "test_id": test.test_id,
            "test_name": test.test_name,
            "class_name": test.class_name,
            "section": test.section,
            "date": test.test_date.isoformat(),
            "attendance": attendance,
            "results_entered": results,
            "is_published": bool(test.is_published),
            "stage": stage,
        })
    summary = {}
    for item in items:
        summary[item["stage"]] = summary.get(item["stage"], 0) + 1
    return {"tests": items, "summary": summary}
