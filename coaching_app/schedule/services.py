"""Class session scheduling: CRUD, rescheduling and clash detection."""
import logging
from sqlalchemy import select, func, or_

from .. import db
from ..attendance.services import parse_date
from ..errors import ApiError, NotFoundError, ValidationError
from ..exams.services import check_time_range
from ..models import SESSION_STATUSES, ClassSession, Test, minutes_between
from ..notifications.services import notify_class_session

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = ("scheduled", "ongoing", "rescheduled")
EDITABLE_FIELDS = ("title", "subject", "class_name", "section", "room", "meeting_link", "is_online", "status")


class ScheduleConflict(ApiError):
    status_code = 409
    code = "schedule_conflict"

    def __init__(self, conflicts):
        super().__init__("Schedule conflicts detected")
        self.conflicts = conflicts
        self.extra = {"conflicts": conflicts}


def _overlaps(start1, end1, start2, end2):
    if not all((start1, end1, start2, end2)):
        return False
    # half-open ranges: start1 < end2 and start2 < end1
    return minutes_between(start1, end2) > 0 and minutes_between(start2, end1) > 0


def find_conflicts(day, start_time, end_time, class_name=None, section=None, room=None, exclude_class_id=None):
    """Active sessions (and tests sharing the room) that overlap the slot."""
    conflicts = []
    clash = [ClassSession.class_name == class_name] if class_name else []
    if room:
        clash.append(ClassSession.room == room)
    if clash:
        query = select(ClassSession).where(
            ClassSession.session_date == day,
            ClassSession.status.in_(ACTIVE_STATUSES),
            or_(*clash),
        )
        if exclude_class_id:
            query = query.where(ClassSession.class_id != exclude_class_id)
        for other in db.session.execute(query).scalars():
            if not _overlaps(start_time, end_time, other.start_time, other.end_time):
                continue
            same_class = other.class_name == class_name and (not section or not other.section or other.section == section)
            same_room = bool(room) and other.room == room
            if same_class or same_room:
                conflicts.append({
                    "type": "class",
                    "id": other.class_id,
                    "title": other.title or other.subject,
                    "reason": "room" if same_room else "class",
                    "start_time": other.start_time,
                    "end_time": other.end_time,
                })
    if room:
        tests = db.session.execute(
            select(Test).filter_by(test_date=day, room=room).where(Test.status.in_(("scheduled", "ongoing")))
        ).scalars()
        for test in tests:
            if _overlaps(start_time, end_time, test.start_time, test.end_time):
                conflicts.append({
                    "type": "test",
                    "id": test.test_id,
                    "title": test.test_name,
                    "reason": "room",
                    "start_time": test.start_time,
                    "end_time": test.end_time,
                })
    return conflicts


def _ensure_free(day, start_time, end_time, class_name, section, room, exclude_class_id=None):
    conflicts = find_conflicts(day, start_time, end_time, class_name, section, room, exclude_class_id)
    if conflicts:
        raise ScheduleConflict(conflicts)


def get_session(class_id):
    session = db.session.get(ClassSession, class_id)
    if session is None:
        raise NotFoundError("Class not found")
    return session


def create_session(data, user_id=None, check_conflicts=True, send_notification=True):
    subject = (data.get("subject") or "").strip()
    class_name = (data.get("class_name") or "").strip()
    if not subject or not class_name or not data.get("date"):
        raise ValidationError("subject, class_name and date are required")
    day = parse_date(data["date"])
    check_time_range(data.get("start_time"), data.get("end_time"), required=True)
    if check_conflicts:
        _ensure_free(day, data["start_time"], data["end_time"], class_name, data.get("section"), data.get("room"))

    session = ClassSession(
        title=data.get("title") or subject,
        subject=subject,
        class_name=class_name,
        section=data.get("section") or None,
        session_date=day,
        start_time=data["start_time"],
        end_time=data["end_time"],
        room=data.get("room") or None,
        meeting_link=data.get("meeting_link") or None,
        is_online=bool(data.get("is_online")),
        materials=data.get("materials") or [],
        created_by=user_id,
    )
    db.session.add(session)
    db.session.commit()
    logger.info("Class session %s created for %s on %s", session.class_id, class_name, day)
    if send_notification:
        notify_class_session(session, "created", user_id=user_id)
        session.notified_created = True
        db.session.commit()
    return session


def update_session(class_id, data, check_conflicts=True):
    session = get_session(class_id)
    if data.get("status") and data["status"] not in SESSION_STATUSES:
        raise ValidationError(f"status must be one of {', '.join(SESSION_STATUSES)}")
    day = parse_date(data["date"]) if data.get("date") else session.session_date
    start = data.get("start_time", session.start_time)
    end = data.get("end_time", session.end_time)
    check_time_range(start, end, required=True)
    schedule_changed = (day, start, end) != (session.session_date, session.start_time, session.end_time)
    if check_conflicts and (schedule_changed or "room" in data or "class_name" in data):
        _ensure_free(
            day, start, end,
            data.get("class_name", session.class_name),
            data.get("section", session.section),
            data.get("room", session.room),
            exclude_class_id=class_id,
        )
    for field in EDITABLE_FIELDS:
        if field in data:
            setattr(session, field, bool(data[field]) if field == "is_online" else data[field])
    session.session_date, session.start_time, session.end_time = day, start, end
    if schedule_changed:
        session.reminder_24h_sent = False
        session.reminder_1h_sent = False
    db.session.commit()
    return session


def reschedule_session(class_id, data, user_id=None, notify_students=True, check_conflicts=True):
    session = get_session(class_id)
    if session.status in ("completed", "cancelled"):
        raise ValidationError("Cannot reschedule a completed or cancelled class")
    if not data.get("date"):
        raise ValidationError("date is required")
    day = parse_date(data["date"])
    check_time_range(data.get("start_time"), data.get("end_time"), required=True)
    room = data.get("room") or session.room
    if check_conflicts:
        _ensure_free(day, data["start_time"], data["end_time"], session.class_name, session.section, room,
                     exclude_class_id=class_id)

    old_date = session.session_date
    session.rescheduled_from = old_date
    session.session_date = day
    session.start_time = data["start_time"]
    session.end_time = data["end_time"]
    session.room = room
    session.status = "rescheduled"
    session.reminder_24h_sent = False
    session.reminder_1h_sent = False
    db.session.commit()
    logger.info("Class session %s moved from %s to %s", class_id, old_date, day)
    if notify_students:
        notify_class_session(session, "rescheduled", user_id=user_id)
    return session, old_date


def cancel_session(class_id, reason=None, user_id=None, notify_students=True):
    session = get_session(class_id)
    if session.status in ("completed", "cancelled"):
        raise ValidationError("Class is already completed or cancelled")
    session.status = "cancelled"
    session.cancel_reason = reason
    db.session.commit()
    if notify_students:
        notify_class_session(session, "cancelled", user_id=user_id)
    return session


def add_materials(class_id, materials, user_id=None):
    if not isinstance(materials, list) or not materials:
        raise ValidationError("materials must be a non-empty list")
    for item in materials:
        if not isinstance(item, dict) or not (item.get("title") or "").strip():
            raise ValidationError("Every material needs a title")
    session = get_session(class_id)
    # reassign so the JSON column is flagged dirty
    session.materials = list(session.materials or []) + materials
    db.session.commit()
    notify_class_session(session, "materials_added", user_id=user_id)
    return session


def delete_session(class_id):
    session = get_session(class_id)
    details = {"title": session.title, "class_name": session.class_name, "section": session.section}
    db.session.delete(session)
    db.session.commit()
    return details


def list_sessions(filters, page=1, limit=50):
    query = select(ClassSession)
    for key in ("class_name", "section", "subject", "status"):
        if filters.get(key):
            query = query.where(getattr(ClassSession, key) == filters[key])
    if filters.get("date_from"):
        query = query.where(ClassSession.session_date >= parse_date(filters["date_from"], "date_from"))
    if filters.get("date_to"):
        query = query.where(ClassSession.session_date <= parse_date(filters["date_to"], "date_to"))
    total = db.session.execute(select(func.count()).select_from(query.subquery())).scalar_one()
    rows = db.session.execute(
        query.order_by(ClassSession.session_date.asc(), ClassSession.start_time.asc())
        .offset((page - 1) * limit).limit(limit)
    ).scalars().all()
    return rows, total
