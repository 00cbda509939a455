from datetime import datetime, timezone, timedelta
from flask_login import UserMixin
from . import db


def utc_now():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value is not None else None


def _parse_hhmm(value):
    try:
        hours, minutes = (value or "").split(":", 1)
        return int(hours), int(minutes)
    except (ValueError, AttributeError):
        return None


def combine_date_time(day, hhmm):
    """Naive local datetime for a session date and an ``HH:MM`` string."""
    parsed = _parse_hhmm(hhmm)
    if day is None or parsed is None:
        return None
    return datetime(day.year, day.month, day.day, parsed[0], parsed[1])


def minutes_between(start_hhmm, end_hhmm):
    start, end = _parse_hhmm(start_hhmm), _parse_hhmm(end_hhmm)
    if start is None or end is None:
        return None
    return (end[0] * 60 + end[1]) - (start[0] * 60 + start[1])


ATTENDANCE_STATUSES = ("present", "absent", "late")
ATTENDANCE_TYPES = ("class", "test")
SESSION_STATUSES = ("scheduled", "ongoing", "completed", "cancelled", "rescheduled")
STUDENT_STATUSES = ("pending_payment", "active", "suspended", "inactive")

NOTIFICATION_TYPES = (
    "class_scheduled", "class_cancelled", "class_rescheduled", "class_reminder", "class_materials_added",
    "test_scheduled", "test_cancelled", "test_rescheduled", "test_reminder",
    "result_published", "attendance_marked", "payment_received", "payment_reminder",
    "general", "system",
)
NOTIFICATION_PRIORITIES = ("low", "normal", "high", "urgent")
RECIPIENT_TYPES = ("student", "user", "class", "all")


# ==========================================
# PEOPLE
# ==========================================

class User(UserMixin, db.Model):
    __tablename__ = "users"
    user_id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(128), unique=True, nullable=False)
    name = db.Column(db.String(128))
    email = db.Column(db.String(128))
    password_hash = db.Column(db.String(256))
    role = db.Column(db.String(32), default="staff")  # admin, staff, student
    # Set for student portal logins
    student_id_fk = db.Column(db.Integer, db.ForeignKey("students.student_id"))
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=utc_now)

    student = db.relationship("Student", foreign_keys=[student_id_fk])

    def get_id(self):
        return str(self.user_id)

    def to_dict(self):
        return {
            "user_id": self.user_id,
            "username": self.username,
            "name": self.name,
            "email": self.email,
            "role": self.role,
            "student_id": self.student_id_fk,
        }


class Student(db.Model):
    __tablename__ = "students"
    student_id = db.Column(db.Integer, primary_key=True)
    roll = db.Column(db.String(32), unique=True, nullable=False)
    name = db.Column(db.String(128), nullable=False)
    class_name = db.Column(db.String(32), nullable=False)
    section = db.Column(db.String(16))
    group = db.Column(db.String(32))
    phone = db.Column(db.String(32))
    guardian_phone = db.Column(db.String(32))
    email = db.Column(db.String(128))
    status = db.Column(db.String(32), default="active")
    total_fee = db.Column(db.Float, default=0.0)
    paid_amount = db.Column(db.Float, default=0.0)
    password_hash = db.Column(db.String(256))
    created_at = db.Column(db.DateTime(timezone=True), default=utc_now)
    updated_at = db.Column(db.DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    @property
    def due_amount(self):
        return max(0.0, (self.total_fee or 0.0) - (self.paid_amount or 0.0))

    def to_dict(self):
        return {
            "student_id": self.student_id,
            "roll": self.roll,
            "name": self.name,
            "class_name": self.class_name,
            "section": self.section,
            "group": self.group,
            "phone": self.phone,
            "guardian_phone": self.guardian_phone,
            "email": self.email,
            "status": self.status,
            "total_fee": self.total_fee,
            "paid_amount": self.paid_amount,
            "due_amount": self.due_amount,
        }


# ==========================================
# SCHEDULE: TESTS & CLASS SESSIONS
# ==========================================

class Test(db.Model):
    __tablename__ = "tests"
    __test__ = False  # not a pytest class

    test_id = db.Column(db.Integer, primary_key=True)
    test_name = db.Column(db.String(128), nullable=False)
    test_code = db.Column(db.String(16), unique=True, nullable=False)
    class_name = db.Column(db.String(32), nullable=False)
    section = db.Column(db.String(16))
    test_date = db.Column(db.Date, nullable=False)
    start_time = db.Column(db.String(5))
    end_time = db.Column(db.String(5))
    duration = db.Column(db.Integer)  # minutes
    room = db.Column(db.String(64))
    status = db.Column(db.String(16), default="scheduled")
    cancel_reason = db.Column(db.String(255))
    # [{"name": "Physics", "max_marks": 100, "pass_marks": 33}, ...]
    subjects = db.Column(db.JSON, default=list)
    is_published = db.Column(db.Boolean, default=False)
    published_at = db.Column(db.DateTime(timezone=True))
    notified_created = db.Column(db.Boolean, default=False)
    reminder_24h_sent = db.Column(db.Boolean, default=False)
    reminder_1h_sent = db.Column(db.Boolean, default=False)
    created_by = db.Column(db.Integer, db.ForeignKey("users.user_id"))
    created_at = db.Column(db.DateTime(timezone=True), default=utc_now)
    updated_at = db.Column(db.DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    results = db.relationship("Result", backref="test", lazy=True)

    @property
    def total_max_marks(self):
        return sum(float(s.get("max_marks") or 0) for s in (self.subjects or []))

    @property
    def starts_at(self):
        return combine_date_time(self.test_date, self.start_time)

    @property
    def ends_at(self):
        end = combine_date_time(self.test_date, self.end_time)
        if end is None and self.starts_at is not None and self.duration:
            end = self.starts_at + timedelta(minutes=self.duration)
        return end

    def to_dict(self):
        return {
            "test_id": self.test_id,
            "test_name": self.test_name,
            "test_code": self.test_code,
            "class_name": self.class_name,
            "section": self.section,
            "date": _iso(self.test_date),
            "start_time": self.start_time,
            "end_time": self.end_time,
            "duration": self.duration,
            "room": self.room,
            "status": self.status,
            "cancel_reason": self.cancel_reason,
            "subjects": self.subjects or [],
            "total_max_marks": self.total_max_marks,
            "is_published": bool(self.is_published),
            "published_at": _iso(self.published_at),
        }


class ClassSession(db.Model):
    __tablename__ = "class_sessions"
    class_id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(128))
    subject = db.Column(db.String(64), nullable=False)
    class_name = db.Column(db.String(32), nullable=False)
    section = db.Column(db.String(16))
    session_date = db.Column(db.Date, nullable=False)
    start_time = db.Column(db.String(5), nullable=False)
    end_time = db.Column(db.String(5), nullable=False)
    room = db.Column(db.String(64))
    meeting_link = db.Column(db.String(255))
    is_online = db.Column(db.Boolean, default=False)
    status = db.Column(db.String(16), default="scheduled")
    cancel_reason = db.Column(db.String(255))
    rescheduled_from = db.Column(db.Date)
    # [{"title": "Chapter 3 notes", "url": "https://..."}, ...]
    materials = db.Column(db.JSON, default=list)
    notified_created = db.Column(db.Boolean, default=False)
    reminder_24h_sent = db.Column(db.Boolean, default=False)
    reminder_1h_sent = db.Column(db.Boolean, default=False)
    created_by = db.Column(db.Integer, db.ForeignKey("users.user_id"))
    created_at = db.Column(db.DateTime(timezone=True), default=utc_now)
    updated_at = db.Column(db.DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    @property
    def starts_at(self):
        return combine_date_time(self.session_date, self.start_time)

    @property
    def ends_at(self):
        return combine_date_time(self.session_date, self.end_time)

    def to_dict(self):
        return {
            "class_id": self.class_id,
            "title": self.title,
            "subject": self.subject,
            "class_name": self.class_name,
            "section": self.section,
            "date": _iso(self.session_date),
            "start_time": self.start_time,
            "end_time": self.end_time,
            "room": self.room,
            "meeting_link": self.meeting_link,
            "is_online": bool(self.is_online),
            "status": self.status,
            "cancel_reason": self.cancel_reason,
            "rescheduled_from": _iso(self.rescheduled_from),
            "materials": self.materials or [],
        }


# ==========================================
# ATTENDANCE & RESULTS
# ==========================================

class Attendance(db.Model):
    __tablename__ = "attendance"
    attendance_id = db.Column(db.Integer, primary_key=True)
    student_id_fk = db.Column(db.Integer, db.ForeignKey("students.student_id"), nullable=False)
    attendance_type = db.Column(db.String(8), nullable=False)  # class, test
    attendance_date = db.Column(db.Date, nullable=False)
    class_session_id_fk = db.Column(db.Integer, db.ForeignKey("class_sessions.class_id"))
    test_id_fk = db.Column(db.Integer, db.ForeignKey("tests.test_id"))
    class_name = db.Column(db.String(32))
    section = db.Column(db.String(16))
    status = db.Column(db.String(8), nullable=False, default="present")
    remarks = db.Column(db.String(255))
    marked_by = db.Column(db.Integer, db.ForeignKey("users.user_id"))
    created_at = db.Column(db.DateTime(timezone=True), default=utc_now)
    updated_at = db.Column(db.DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    student = db.relationship("Student")
    test = db.relationship("Test")

    # One test sitting per student; class rows are keyed by session when one is given.
    __table_args__ = (
        db.Index(
            "uq_attendance_test", "student_id_fk", "test_id_fk", unique=True,
            sqlite_where=db.text("attendance_type = 'test'"),
            postgresql_where=db.text("attendance_type = 'test'"),
        ),
        db.Index(
            "uq_attendance_class_session", "student_id_fk", "attendance_date", "class_session_id_fk", unique=True,
            sqlite_where=db.text("attendance_type = 'class' AND class_session_id_fk IS NOT NULL"),
            postgresql_where=db.text("attendance_type = 'class' AND class_session_id_fk IS NOT NULL"),
        ),
        db.Index(
            "uq_attendance_class_day", "student_id_fk", "attendance_date", unique=True,
            sqlite_where=db.text("attendance_type = 'class' AND class_session_id_fk IS NULL"),
            postgresql_where=db.text("attendance_type = 'class' AND class_session_id_fk IS NULL"),
        ),
    )

    def to_dict(self):
        return {
            "attendance_id": self.attendance_id,
            "student_id": self.student_id_fk,
            "student_name": self.student.name if self.student else None,
            "roll": self.student.roll if self.student else None,
            "type": self.attendance_type,
            "date": _iso(self.attendance_date),
            "class_id": self.class_session_id_fk,
            "test_id": self.test_id_fk,
            "class_name": self.class_name,
            "section": self.section,
            "status": self.status,
            "remarks": self.remarks,
        }


class Result(db.Model):
    __tablename__ = "results"
    result_id = db.Column(db.Integer, primary_key=True)
    test_id_fk = db.Column(db.Integer, db.ForeignKey("tests.test_id"), nullable=False)
    student_id_fk = db.Column(db.Integer, db.ForeignKey("students.student_id"), nullable=False)
    roll = db.Column(db.String(32))
    subject_marks = db.Column(db.JSON, default=dict)
    total_marks = db.Column(db.Float, default=0.0)
    max_marks = db.Column(db.Float, default=0.0)
    percentage = db.Column(db.Float, default=0.0)
    grade = db.Column(db.String(4))
    rank = db.Column(db.Integer)
    remarks = db.Column(db.String(255))
    is_absent = db.Column(db.Boolean, default=False)
    created_by = db.Column(db.Integer, db.ForeignKey("users.user_id"))
    created_at = db.Column(db.DateTime(timezone=True), default=utc_now)
    updated_at = db.Column(db.DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    student = db.relationship("Student")

    __table_args__ = (
        db.UniqueConstraint("student_id_fk", "test_id_fk", name="uq_result_student_test"),
    )

    def to_dict(self):
        return {
            "result_id": self.result_id,
            "test_id": self.test_id_fk,
            "student_id": self.student_id_fk,
            "student_name": self.student.name if self.student else None,
            "roll": self.roll,
            "subject_marks": self.subject_marks or {},
            "total_marks": self.total_marks,
            "max_marks": self.max_marks,
            "percentage": self.percentage,
            "grade": self.grade,
            "rank": self.rank,
            "remarks": self.remarks,
            "is_absent": bool(self.is_absent),
        }


# ==========================================
# NOTIFICATIONS & DELIVERY
# ==========================================

class Notification(db.Model):
    __tablename__ = "notifications"
    notification_id = db.Column(db.Integer, primary_key=True)
    recipient_type = db.Column(db.String(16), nullable=False)  # student, user, class, all
    recipient_id = db.Column(db.Integer)
    recipient_class = db.Column(db.String(32))
    recipient_section = db.Column(db.String(16))
    type = db.Column(db.String(32), nullable=False)
    priority = db.Column(db.String(8), default="normal")
    title = db.Column(db.String(200), nullable=False)
    message = db.Column(db.String(2000), nullable=False)
    related_entity_type = db.Column(db.String(32))
    related_entity_id = db.Column(db.Integer)
    action_url = db.Column(db.String(255))
    is_read = db.Column(db.Boolean, default=False)
    read_at = db.Column(db.DateTime(timezone=True))
    email_sent = db.Column(db.Boolean, default=False)
    email_sent_at = db.Column(db.DateTime(timezone=True))
    email_error = db.Column(db.Text)
    scheduled_for = db.Column(db.DateTime(timezone=True))
    is_scheduled = db.Column(db.Boolean, default=False)
    sent_at = db.Column(db.DateTime(timezone=True))
    expires_at = db.Column(db.DateTime(timezone=True))
    meta = db.Column(db.JSON)
    created_by = db.Column(db.Integer, db.ForeignKey("users.user_id"))
    created_at = db.Column(db.DateTime(timezone=True), default=utc_now)

    __table_args__ = (
        db.Index("ix_notifications_recipient", "recipient_type", "recipient_id", "is_read"),
    )

    def to_dict(self):
        return {
            "id": self.notification_id,
            "recipient_type": self.recipient_type,
            "recipient_id": self.recipient_id,
            "recipient_class": self.recipient_class,
            "recipient_section": self.recipient_section,
            "type": self.type,
            "priority": self.priority,
            "title": self.title,
            "message": self.message,
            "related_entity_type": self.related_entity_type,
            "related_entity_id": self.related_entity_id,
            "action_url": self.action_url,
            "is_read": bool(self.is_read),
            "read_at": _iso(self.read_at),
            "is_scheduled": bool(self.is_scheduled),
            "scheduled_for": _iso(self.scheduled_for),
            "created_at": _iso(self.created_at),
        }


class PushSubscription(db.Model):
    __tablename__ = "push_subscriptions"
    subscription_id = db.Column(db.Integer, primary_key=True)
    student_id_fk = db.Column(db.Integer, db.ForeignKey("students.student_id"))
    user_id_fk = db.Column(db.Integer, db.ForeignKey("users.user_id"))
    endpoint = db.Column(db.String(512), unique=True, nullable=False)
    p256dh = db.Column(db.String(255), nullable=False)
    auth = db.Column(db.String(255), nullable=False)
    user_agent = db.Column(db.String(255))
    is_active = db.Column(db.Boolean, default=True)
    last_used_at = db.Column(db.DateTime(timezone=True))
    created_at = db.Column(db.DateTime(timezone=True), default=utc_now)

    def subscription_info(self):
        return {"endpoint": self.endpoint, "keys": {"p256dh": self.p256dh, "auth": self.auth}}


class SmsLog(db.Model):
    __tablename__ = "sms_logs"
    sms_log_id = db.Column(db.Integer, primary_key=True)
    recipient_name = db.Column(db.String(128))
    phone = db.Column(db.String(32), nullable=False)
    message = db.Column(db.Text, nullable=False)
    sms_type = db.Column(db.String(16), nullable=False)  # result_sms, custom_sms
    status = db.Column(db.String(8), nullable=False, default="queued")  # queued, sent, failed
    retry_count = db.Column(db.Integer, default=0)
    api_response = db.Column(db.JSON)
    error_message = db.Column(db.Text)
    test_id_fk = db.Column(db.Integer, db.ForeignKey("tests.test_id"))
    student_id_fk = db.Column(db.Integer, db.ForeignKey("students.student_id"))
    sent_by = db.Column(db.Integer, db.ForeignKey("users.user_id"))
    created_at = db.Column(db.DateTime(timezone=True), default=utc_now)
    updated_at = db.Column(db.DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    __table_args__ = (
        db.Index("ix_sms_logs_dedup", "test_id_fk", "student_id_fk", "sms_type", "status"),
    )

    def to_dict(self):
        return {
            "id": self.sms_log_id,
            "recipient_name": self.recipient_name,
            "phone": self.phone,
            "message": self.message,
            "type": self.sms_type,
            "status": self.status,
            "retry_count": self.retry_count,
            "error_message": self.error_message,
            "test_id": self.test_id_fk,
            "student_id": self.student_id_fk,
            "created_at": _iso(self.created_at),
        }


# ==========================================
# SYSTEM
# ==========================================

class AuditLog(db.Model):
    __tablename__ = "audit_logs"
    audit_id = db.Column(db.Integer, primary_key=True)
    action = db.Column(db.String(64), nullable=False)
    user_id_fk = db.Column(db.Integer, db.ForeignKey("users.user_id"))
    user_role = db.Column(db.String(32))
    entity_type = db.Column(db.String(32))
    entity_id = db.Column(db.String(64))
    details = db.Column(db.JSON)
    ip_address = db.Column(db.String(64))
    user_agent = db.Column(db.String(255))
    created_at = db.Column(db.DateTime(timezone=True), default=utc_now)


class GlobalSetting(db.Model):
    __tablename__ = "global_settings"
    setting_key = db.Column(db.String(64), primary_key=True)
    setting_value = db.Column(db.JSON)
    updated_at = db.Column(db.DateTime(timezone=True), default=utc_now, onupdate=utc_now)
