import logging
from datetime import date, datetime
from sqlalchemy import select, func

from .. import db
from ..errors import NotFoundError, ValidationError, parse_id
from ..models import ATTENDANCE_STATUSES, ATTENDANCE_TYPES, Attendance, ClassSession, Student, Test, utc_now
from ..notifications import realtime

logger = logging.getLogger(__name__)


def parse_date(value, field="date"):
    if isinstance(value, date):
        return value
    try:
        return datetime.strptime(str(value or "")[:10], "%Y-%m-%d").date()
    except ValueError:
        raise ValidationError(f"{field} must be a YYYY-MM-DD date")


def _find_existing(student_id, kind, day, test_id=None, class_id=None):
    query = select(Attendance).filter_by(student_id_fk=student_id, attendance_type=kind)
    if kind == "test":
        query = query.filter_by(test_id_fk=test_id)
    else:
        query = query.filter_by(attendance_date=day, class_session_id_fk=class_id)
    return db.session.execute(query).scalars().first()


def mark_attendance(payload, marked_by=None):
    """Upsert attendance for a batch of students.

    Returns ``{created, updated, changed_students, errors}`` where
    ``changed_students`` only lists rows whose status actually changed.
    """
    kind = payload.get("type")
    if kind not in ATTENDANCE_TYPES:
        raise ValidationError("type must be 'class' or 'test'")
    if not payload.get("date"):
        raise ValidationError("date is required")
    day = parse_date(payload.get("date"))
    class_name = (payload.get("class_name") or "").strip()
    if not class_name:
        raise ValidationError("class_name is required")
    students = payload.get("students")
    if not isinstance(students, list) or not students:
        raise ValidationError("students must be a non-empty list")

    test_id = payload.get("test_id")
    class_id = payload.get("class_id")
    if kind == "test":
        if not test_id:
            raise ValidationError("test_id is required for test attendance")
        if db.session.get(Test, test_id) is None:
            raise NotFoundError("Test not found")
        class_id = None
    elif class_id and db.session.get(ClassSession, class_id) is None:
        raise NotFoundError("Class session not found")

    for entry in students:
        if not isinstance(entry, dict):
            raise ValidationError("Each student entry must be an object")
        if entry.get("status") not in ATTENDANCE_STATUSES:
            raise ValidationError(f"status must be one of {', '.join(ATTENDANCE_STATUSES)}")

    section = payload.get("section") or None
    summary = {"created": 0, "updated": 0, "changed_students": [], "errors": []}
    for entry in students:
        student_id = entry.get("student_id")
        status = entry["status"]
        if not student_id or db.session.get(Student, student_id) is None:
            summary["errors"].append({"student_id": student_id, "error": "Student not found"})
            continue
        existing = _find_existing(student_id, kind, day, test_id=test_id, class_id=class_id)
        if existing is None:
            db.session.add(Attendance(
                student_id_fk=student_id,
                attendance_type=kind,
                attendance_date=day,
                test_id_fk=test_id if kind == "test" else None,
                class_session_id_fk=class_id,
                class_name=class_name,
                section=section,
                status=status,
                remarks=entry.get("remarks"),
                marked_by=marked_by,
            ))
            summary["created"] += 1
            continue
        old_status = existing.status
        existing.status = status
        existing.attendance_date = day
        existing.class_name = class_name
        existing.section = section
        existing.marked_by = marked_by
        if "remarks" in entry:
            existing.remarks = entry.get("remarks")
        summary["updated"] += 1
        if old_status != status:
            summary["changed_students"].append({
                "student_id": student_id,
                "old_status": old_status,
                "new_status": status,
            })
    db.session.commit()
    logger.info(
        "Attendance marked (%s %s %s): %d created, %d updated, %d changed",
        kind, class_name, day, summary["created"], summary["updated"], len(summary["changed_students"]),
    )

    event = {
        "type": kind,
        "date": day.isoformat(),
        "test_id": test_id if kind == "test" else None,
        "class_id": class_id,
        "class_name": class_name,
        "section": section,
        "created": summary["created"],
        "updated": summary["updated"],
        "timestamp": utc_now().isoformat(),
    }
    realtime.emit_to_class(class_name, "attendance-updated", event, section)
    realtime.emit_to_role("admin", "attendance-updated", event)
    for change in summary["changed_students"]:
        realtime.emit_to_student(change["student_id"], "attendance-updated", {**event, **change})
    return summary


def _filtered(filters):
    query = select(Attendance)
    if filters.get("type"):
        query = query.filter_by(attendance_type=filters["type"])
    if filters.get("class_name"):
        query = query.filter_by(class_name=filters["class_name"])
    if filters.get("section"):
        query = query.filter_by(section=filters["section"])
    if filters.get("status"):
        query = query.filter_by(status=filters["status"])
    if filters.get("test_id"):
        query = query.filter_by(test_id_fk=parse_id(filters["test_id"], "test_id"))
    if filters.get("class_id"):
        query = query.filter_by(class_session_id_fk=parse_id(filters["class_id"], "class_id"))
    if filters.get("student_id"):
        query = query.filter_by(student_id_fk=parse_id(filters["student_id"], "student_id"))
    if filters.get("date"):
        query = query.filter_by(attendance_date=parse_date(filters["date"]))
    if filters.get("date_from"):
        query = query.where(Attendance.attendance_date >= parse_date(filters["date_from"], "date_from"))
    if filters.get("date_to"):
        query = query.where(Attendance.attendance_date <= parse_date(filters["date_to"], "date_to"))
    return query


def query_attendance(filters, page=1, limit=50):
    query = _filtered(filters)
    total = db.session.execute(select(func.count()).select_from(query.subquery())).scalar_one()
    rows = db.session.execute(
        query.order_by(Attendance.attendance_date.desc(), Attendance.attendance_id.desc())
        .offset((page - 1) * limit).limit(limit)
    ).scalars().all()
    return rows, total


def attendance_history(filters, limit=100):
    """Attendance sessions grouped by date, class, section, type and test."""
    base = _filtered(filters).subquery()
    rows = db.session.execute(
        select(
            base.c.attendance_date, base.c.class_name, base.c.section, base.c.attendance_type,
            base.c.test_id_fk, base.c.class_session_id_fk, base.c.status, func.count(),
        ).group_by(
            base.c.attendance_date, base.c.class_name, base.c.section, base.c.attendance_type,
            base.c.test_id_fk, base.c.class_session_id_fk, base.c.status,
        )
    ).all()
    sessions = {}
    for day, class_name, section, kind, test_id, class_id, status, count in rows:
        key = (day, class_name, section, kind, test_id, class_id)
        item = sessions.setdefault(key, {
            "date": day.isoformat(),
            "class_name": class_name,
            "section": section,
            "type": kind,
            "test_id": test_id,
            "class_id": class_id,
            "present": 0, "absent": 0, "late": 0, "total": 0,
        })
        item[status] = item.get(status, 0) + count
        item["total"] += count
    tests = {}
    test_ids = {k[4] for k in sessions if k[4]}
    if test_ids:
        tests = {t.test_id: t.test_name for t in db.session.execute(select(Test).where(Test.test_id.in_(test_ids))).scalars()}
    history = sorted(sessions.values(), key=lambda s: (s["date"], s["class_name"] or ""), reverse=True)[:limit]
    for item in history:
        item["test_name"] = tests.get(item["test_id"])
        item["attendance_rate"] = round((item["present"] + item["late"]) / item["total"] * 100, 2) if item["total"] else 0
    return history


def test_attendees(test_id):
    test = db.session.get(Test, test_id)
    if test is None:
        raise NotFoundError("Test not found")
    rows = db.session.execute(
        select(Attendance).filter_by(test_id_fk=test_id, attendance_type="test")
        .join(Student, Student.student_id == Attendance.student_id_fk).order_by(Student.roll)
    ).scalars().all()
    return test, rows


def summarize_records(records):
    summary = {"total": len(records), "present": 0, "absent": 0, "late": 0}
    for record in records:
        summary[record.status] = summary.get(record.status, 0) + 1
    attended = summary["present"] + summary["late"]
    summary["percentage"] = round(attended / summary["total"] * 100, 2) if summary["total"] else 0
    return summary


def student_attendance(student_id, filters=None):
    student = db.session.get(Student, student_id)
    if student is None:
        raise NotFoundError("Student not found")
    filters = dict(filters or {})
    filters["student_id"] = student_id
    rows = db.session.execute(
        _filtered(filters).order_by(Attendance.attendance_date.desc())
    ).scalars().all()
    return student, rows, summarize_records(rows)


def check_attendance(kind, day, class_name=None, section=None, test_id=None, class_id=None):
    filters = {"type": kind, "class_name": class_name, "section": section}
    if kind == "test":
        filters["test_id"] = test_id
    else:
        filters["date"] = day
        filters["class_id"] = class_id
    rows = db.session.execute(_filtered(filters)).scalars().all()
    return {"exists": bool(rows), "count": len(rows), "summary": summarize_records(rows)}


def delete_attendance(attendance_id):
    record = db.session.get(Attendance, attendance_id)
    if record is None:
        raise NotFoundError("Attendance record not found")
    details = record.to_dict()
    db.session.delete(record)
    db.session.commit()
    return details
