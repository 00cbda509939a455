import logging
import random
import re
import string
from sqlalchemy import select, func

from .. import db
from ..attendance.services import parse_date
from ..errors import NotFoundError, ValidationError
from ..models import Result, Student, Test, minutes_between, utc_now
from ..notifications.services import notify_test

logger = logging.getLogger(__name__)

HHMM_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")
TEST_STATUSES = ("scheduled", "ongoing", "completed", "cancelled")
EDITABLE_FIELDS = ("test_name", "class_name", "section", "room", "status", "subjects")
SCHEDULE_FIELDS = ("date", "start_time", "end_time")


def check_time_range(start_time, end_time, required=False):
    """Validate ``HH:MM`` start/end and return the length in minutes (or None)."""
    if not start_time and not end_time and not required:
        return None
    for label, value in (("start_time", start_time), ("end_time", end_time)):
        if not value or not HHMM_RE.match(str(value)):
            raise ValidationError(f"{label} must be HH:MM")
    minutes = minutes_between(start_time, end_time)
    if minutes <= 0:
        raise ValidationError("end_time must be after start_time")
    return minutes


def clean_subjects(subjects):
    if not isinstance(subjects, list) or not subjects:
        raise ValidationError("At least one subject is required")
    cleaned, seen = [], set()
    for subject in subjects:
        name = str((subject or {}).get("name") or "").strip()
        if not name:
            raise ValidationError("Every subject needs a name")
        if name in seen:
            raise ValidationError(f"Duplicate subject: {name}")
        seen.add(name)
        try:
            max_marks = float(subject.get("max_marks"))
            pass_marks = float(subject.get("pass_marks") or 0)
        except (TypeError, ValueError):
            raise ValidationError(f"{name}: max_marks and pass_marks must be numbers")
        if max_marks <= 0:
            raise ValidationError(f"{name}: max_marks must be greater than 0")
        if not 0 <= pass_marks <= max_marks:
            raise ValidationError(f"{name}: pass_marks must be between 0 and max_marks")
        cleaned.append({"name": name, "max_marks": max_marks, "pass_marks": pass_marks})
    return cleaned


def generate_test_code(day=None):
    """``T{yy}{mm}{XXXX}``; retries until the code is unused."""
    day = day or utc_now().date()
    prefix = f"T{day:%y%m}"
    while True:
        code = prefix + "".join(random.choices(string.ascii_uppercase, k=4))
        if db.session.execute(select(Test.test_id).filter_by(test_code=code)).first() is None:
            return code


def has_results(test_id):
    return db.session.execute(select(Result.result_id).filter_by(test_id_fk=test_id).limit(1)).first() is not None


def get_test(test_id):
    test = db.session.get(Test, test_id)
    if test is None:
        raise NotFoundError("Test not found")
    return test


def create_test(data, user_id=None, send_notification=True):
    name = (data.get("test_name") or "").strip()
    class_name = (data.get("class_name") or "").strip()
    if not name or not class_name:
        raise ValidationError("test_name and class_name are required")
    if not data.get("date"):
        raise ValidationError("date is required")
    day = parse_date(data["date"])
    duration = check_time_range(data.get("start_time"), data.get("end_time"))
    code = (data.get("test_code") or "").strip().upper() or generate_test_code(day)
    if db.session.execute(select(Test.test_id).filter_by(test_code=code)).first() is not None:
        raise ValidationError(f"Test code {code} is already in use")

    test = Test(
        test_name=name,
        test_code=code,
        class_name=class_name,
        section=data.get("section") or None,
        test_date=day,
        start_time=data.get("start_time") or None,
        end_time=data.get("end_time") or None,
        duration=duration or data.get("duration"),
        room=data.get("room") or None,
        subjects=clean_subjects(data.get("subjects")),
        created_by=user_id,
    )
    db.session.add(test)
    db.session.commit()
    logger.info("Test %s (%s) created for class %s", test.test_id, test.test_code, class_name)
    if send_notification:
        notify_test(test, "created", user_id=user_id)
        test.notified_created = True
        db.session.commit()
    return test


def update_test(test_id, data, user_id=None):
    """Apply edits; returns ``(test, rescheduled)``."""
    test = get_test(test_id)
    if "subjects" in data and has_results(test_id):
        raise ValidationError("Cannot modify subjects after results have been entered")
    if data.get("status") and data["status"] not in TEST_STATUSES:
        raise ValidationError(f"status must be one of {', '.join(TEST_STATUSES)}")

    old_schedule = (test.test_date, test.start_time, test.end_time)
    new_date = parse_date(data["date"]) if data.get("date") else test.test_date
    start = data.get("start_time", test.start_time)
    end = data.get("end_time", test.end_time)
    duration = check_time_range(start, end)

    for field in EDITABLE_FIELDS:
        if field not in data:
            continue
        value = clean_subjects(data[field]) if field == "subjects" else data[field]
        if field in ("test_name", "class_name") and not value:
            raise ValidationError(f"{field} cannot be empty")
        setattr(test, field, value)
    test.test_date, test.start_time, test.end_time = new_date, start or None, end or None
    if duration:
        test.duration = duration

    rescheduled = old_schedule != (test.test_date, test.start_time, test.end_time)
    if rescheduled:
        test.reminder_24h_sent = False
        test.reminder_1h_sent = False
    db.session.commit()
    if rescheduled and data.get("notify_students", True) is not False:
        notify_test(test, "rescheduled", user_id=user_id)
    return test, rescheduled


def cancel_test(test_id, reason=None, user_id=None, notify_students=True):
    test = get_test(test_id)
    if test.status in ("completed", "cancelled"):
        raise ValidationError("Test is already completed or cancelled")
    test.status = "cancelled"
    test.cancel_reason = reason
    db.session.commit()
    if notify_students:
        notify_test(test, "cancelled", user_id=user_id)
    return test


def delete_test(test_id):
    test = get_test(test_id)
    if has_results(test_id):
        raise ValidationError("Cannot delete a test that has results. Delete the results first.")
    details = {"test_name": test.test_name, "test_code": test.test_code}
    db.session.delete(test)
    db.session.commit()
    return details


def list_tests(filters, page=1, limit=20, student=None):
    query = select(Test)
    if student is not None:
        query = query.filter_by(class_name=student.class_name)
    else:
        if filters.get("class_name"):
            query = query.filter_by(class_name=filters["class_name"])
        if filters.get("is_published") in ("true", "false"):
            query = query.filter_by(is_published=filters["is_published"] == "true")
    if filters.get("section"):
        query = query.filter_by(section=filters["section"])
    if filters.get("status"):
        query = query.filter_by(status=filters["status"])
    if filters.get("from_date"):
        query = query.where(Test.test_date >= parse_date(filters["from_date"], "from_date"))
    if filters.get("to_date"):
        query = query.where(Test.test_date <= parse_date(filters["to_date"], "to_date"))
    total = db.session.execute(select(func.count()).select_from(query.subquery())).scalar_one()
    order = Test.test_date.asc() if filters.get("sort_order") == "asc" else Test.test_date.desc()
    rows = db.session.execute(query.order_by(order).offset((page - 1) * limit).limit(limit)).scalars().all()
    return rows, total


def upcoming_tests(class_name=None, limit=10):
    query = select(Test).where(Test.test_date >= utc_now().date(), Test.status != "cancelled")
    if class_name:
        query = query.filter_by(class_name=class_name)
    return db.session.execute(query.order_by(Test.test_date.asc()).limit(limit)).scalars().all()


def result_count(test_id):
    return db.session.execute(select(func.count(Result.result_id)).filter_by(test_id_fk=test_id)).scalar_one()


def student_for_user(user):
    if user.role != "student":
        return None
    student = db.session.get(Student, user.student_id_fk) if user.student_id_fk else None
    if student is None:
        raise NotFoundError("Student profile not found")
    return student
