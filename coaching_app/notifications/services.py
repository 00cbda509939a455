"""Notification fan-out.

A notification is persisted first; the database row is the durable record.
Socket delivery happens inline, push and email are handed to the task queue.
A failing side channel never affects the stored row or the other channels.
"""
import logging
from datetime import datetime, timedelta, timezone
from flask import current_app, render_template
from sqlalchemy import and_, or_, select, update, func

from .. import db
from ..email_utils import EmailDeliveryError, send_email
from ..errors import ValidationError
from ..settings import get_settings
from ..models import (
    NOTIFICATION_PRIORITIES, NOTIFICATION_TYPES, RECIPIENT_TYPES,
    Notification, Student, User, utc_now,
)
from ..tasks import task_queue
from . import push, realtime

logger = logging.getLogger(__name__)

EMAIL_NOTIFICATION_TYPES = frozenset({
    "class_cancelled",
    "class_rescheduled",
    "test_cancelled",
    "test_rescheduled",
    "result_published",
    "payment_reminder",
})


def _validate(data):
    if data.get("recipient_type") not in RECIPIENT_TYPES:
        raise ValidationError(f"recipient_type must be one of {', '.join(RECIPIENT_TYPES)}")
    if data.get("type") not in NOTIFICATION_TYPES:
        raise ValidationError(f"Unknown notification type: {data.get('type')}")
    priority = data.setdefault("priority", "normal") or "normal"
    if priority not in NOTIFICATION_PRIORITIES:
        raise ValidationError(f"priority must be one of {', '.join(NOTIFICATION_PRIORITIES)}")
    title = (data.get("title") or "").strip()
    message = (data.get("message") or "").strip()
    if not title or not message:
        raise ValidationError("title and message are required")
    if len(title) > 200 or len(message) > 2000:
        raise ValidationError("title is limited to 200 characters and message to 2000")
    if data["recipient_type"] in ("student", "user") and not data.get("recipient_id"):
        raise ValidationError("recipient_id is required for student and user notifications")
    if data["recipient_type"] == "class" and not data.get("recipient_class"):
        raise ValidationError("recipient_class is required for class notifications")


def should_send_email(notification) -> bool:
    return notification.type in EMAIL_NOTIFICATION_TYPES and bool(current_app.config.get("NOTIFICATION_EMAIL_ENABLED"))


def create_notification(data, send_email=True, send_socket=True, send_push=True, save_to_db=True):
    data = dict(data)
    _validate(data)
    notification = Notification(**data)
    if save_to_db:
        db.session.add(notification)
        db.session.commit()
    if notification.is_scheduled and notification.sent_at is None:
        # Delivered later by the scheduled-notification job
        return notification
    dispatch_notification(notification, send_email=send_email, send_socket=send_socket, send_push=send_push)
    return notification


def dispatch_notification(notification, send_email=True, send_socket=True, send_push=True):
    channels = (notification.meta or {}).get("channels")
    if channels is not None:
        # Notices carry their own channel choice and never email
        send_socket = send_socket and channels.get("portal", True)
        send_push = send_push and channels.get("push", False)
        send_email = False
    if send_socket:
        realtime.emit_notification(notification)
    if notification.notification_id is None:
        # Unsaved notifications are socket-only; background channels reload rows by id.
        return
    if send_push and push.is_enabled():
        task_queue.enqueue(f"push:{notification.notification_id}", push.send_push_for_notification, notification.notification_id)
    if send_email and should_send_email(notification):
        task_queue.enqueue(f"email:{notification.notification_id}", send_notification_email, notification.notification_id)
    if channels and channels.get("sms"):
        task_queue.enqueue(f"notice-sms:{notification.notification_id}", send_notice_sms, notification.notification_id)


def _recipient_email(notification):
    if notification.recipient_type == "student":
        student = db.session.get(Student, notification.recipient_id)
        return student.email if student else None
    if notification.recipient_type == "user":
        user = db.session.get(User, notification.recipient_id)
        return user.email if user else None
    return None


def send_notification_email(notification_id):
    """Task entry point. Records the outcome on the notification row."""
    notification = db.session.get(Notification, notification_id)
    if notification is None:
        return False
    address = _recipient_email(notification)
    if not address:
        return False
    html = render_template("email/notification.html", notification=notification, site=get_settings().site_info)
    try:
        sent = send_email(notification.title, address, notification.message, html)
    except EmailDeliveryError as e:
        notification.email_error = str(e)
        db.session.commit()
        logger.error("Notification %s email to %s failed: %s", notification_id, address, e)
        raise
    if sent:
        notification.email_sent = True
        notification.email_sent_at = utc_now()
        notification.email_error = None
        db.session.commit()
    return sent


# ==========================================
# LIFECYCLE HELPERS
# ==========================================

def _format_date(value):
    return value.strftime("%A, %d %B %Y") if value else ""


def _class_session_templates(session, time_until):
    when = _format_date(session.session_date)
    place = f"Join link: {session.meeting_link}" if session.is_online else f"Room: {session.room or 'TBA'}"
    reason = f" Reason: {session.cancel_reason}" if session.cancel_reason else ""
    return {
        "created": (
            "class_scheduled", "normal",
            f"New Class Scheduled: {session.subject}",
            f"A new {session.subject} class has been scheduled for {when} at {session.start_time}.",
        ),
        "cancelled": (
            "class_cancelled", "high",
            f"Class Cancelled: {session.subject}",
            f"The {session.subject} class scheduled for {when} has been cancelled.{reason}",
        ),
        "rescheduled": (
            "class_rescheduled", "high",
            f"Class Rescheduled: {session.subject}",
            f"The {session.subject} class has been rescheduled from {_format_date(session.rescheduled_from)} "
            f"to {when} at {session.start_time}.",
        ),
        "reminder": (
            "class_reminder", "normal",
            f"Reminder: {session.subject} Class",
            f"Your {session.subject} class is starting {time_until or 'soon'}. {place}",
        ),
        "materials_added": (
            "class_materials_added", "normal",
            f"New Materials: {session.subject}",
            f"New study materials have been added for your {session.subject} class.",
        ),
    }


def _test_templates(test, time_until):
    when = _format_date(test.test_date)
    at = f" at {test.start_time}" if test.start_time else ""
    reason = f" Reason: {test.cancel_reason}" if test.cancel_reason else ""
    return {
        "created": (
            "test_scheduled", "normal",
            f"New Test Scheduled: {test.test_name}",
            f'A new test "{test.test_name}" has been scheduled for {when}{at}.',
        ),
        "cancelled": (
            "test_cancelled", "high",
            f"Test Cancelled: {test.test_name}",
            f'The test "{test.test_name}" scheduled for {when} has been cancelled.{reason}',
        ),
        "rescheduled": (
            "test_rescheduled", "high",
            f"Test Rescheduled: {test.test_name}",
            f'The test "{test.test_name}" has been rescheduled to {when}{at}.',
        ),
        "reminder": (
            "test_reminder", "normal",
            f"Reminder: {test.test_name}",
            f'Your test "{test.test_name}" is coming up {time_until or "soon"}. Make sure to prepare!',
        ),
        "result_published": (
            "result_published", "normal",
            f"Results Published: {test.test_name}",
            f'Results for "{test.test_name}" have been published. Check your results now!',
        ),
    }


def notify_class_session(session, event, user_id=None, time_until=None):
    templates = _class_session_templates(session, time_until)
    if event not in templates:
        raise ValueError(f"Unknown notification type: {event}")
    kind, priority, title, message = templates[event]
    notification = create_notification({
        "recipient_type": "class",
        "recipient_class": session.class_name,
        "recipient_section": session.section,
        "type": kind,
        "priority": priority,
        "title": title,
        "message": message,
        "related_entity_type": "class",
        "related_entity_id": session.class_id,
        "action_url": "/student/schedule",
        "created_by": user_id,
    })
    realtime.emit_schedule_update(event, "class", session.to_dict(), session.class_name, session.section)
    return notification


def notify_test(test, event, user_id=None, time_until=None):
    templates = _test_templates(test, time_until)
    if event not in templates:
        raise ValueError(f"Unknown notification type: {event}")
    kind, priority, title, message = templates[event]
    notification = create_notification({
        "recipient_type": "class",
        "recipient_class": test.class_name,
        "recipient_section": test.section,
        "type": kind,
        "priority": priority,
        "title": title,
        "message": message,
        "related_entity_type": "test",
        "related_entity_id": test.test_id,
        "action_url": "/student/results" if event == "result_published" else "/student/schedule",
        "created_by": user_id,
    })
    realtime.emit_schedule_update(event, "test", test.to_dict(), test.class_name, test.section)
    return notification


def notify_student(student_id, kind, title, message, priority="normal", related_entity_type=None,
                   related_entity_id=None, action_url=None, user_id=None, **channels):
    return create_notification({
        "recipient_type": "student",
        "recipient_id": student_id,
        "type": kind,
        "priority": priority,
        "title": title,
        "message": message,
        "related_entity_type": related_entity_type,
        "related_entity_id": related_entity_id,
        "action_url": action_url,
        "created_by": user_id,
    }, **channels)


def notify_user(user_id, kind, title, message, priority="normal", related_entity_type=None,
                related_entity_id=None, action_url=None, created_by=None, **channels):
    return create_notification({
        "recipient_type": "user",
        "recipient_id": user_id,
        "type": kind,
        "priority": priority,
        "title": title,
        "message": message,
        "related_entity_type": related_entity_type,
        "related_entity_id": related_entity_id,
        "action_url": action_url,
        "created_by": created_by,
    }, **channels)


# ==========================================
# NOTICES
# ==========================================

NOTICE_TARGETS = ("all", "class", "students")
NOTICE_SMS_MESSAGE_LIMIT = 100


def clean_channels(channels):
    """Portal delivery is on unless switched off; push and SMS are opt-in."""
    if channels is None:
        channels = {}
    if not isinstance(channels, dict):
        raise ValidationError("channels must be an object with portal/push/sms flags")
    return {
        "portal": channels.get("portal", True) is not False,
        "push": channels.get("push") is True,
        "sms": channels.get("sms") is True,
    }


def parse_scheduled_at(value):
    if value in (None, ""):
        return None
    try:
        when = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError("scheduled_at must be an ISO 8601 date-time")
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return when


def _notice_recipients(data, target):
    if target == "class":
        if not data.get("class_name"):
            raise ValidationError("class_name is required for class notices")
        return [{"recipient_type": "class", "recipient_class": data["class_name"],
                 "recipient_section": data.get("section") or None}]
    if target == "all":
        return [{"recipient_type": "all"}]

    ids = data.get("student_ids")
    if not isinstance(ids, list) or not ids:
        raise ValidationError("student_ids must be a non-empty list")
    try:
        ids = list(dict.fromkeys(int(i) for i in ids))
    except (TypeError, ValueError):
        raise ValidationError("student_ids must contain numeric ids")
    known = set(db.session.execute(select(Student.student_id).where(Student.student_id.in_(ids))).scalars())
    missing = [i for i in ids if i not in known]
    if missing:
        raise ValidationError(f"Unknown student ids: {', '.join(str(i) for i in missing)}")
    return [{"recipient_type": "student", "recipient_id": i} for i in ids]


def send_notice(data, user_id=None):
    """Post an admin notice to everyone, a class or a list of students.

    ``channels`` picks portal (inbox plus socket), push and SMS delivery and is
    kept in the row's ``meta`` so a notice scheduled for later is delivered the
    same way by the scheduled-notification job. A ``scheduled_at`` in the past
    sends immediately.

    Returns ``(notifications, scheduled)``.
    """
    target = data.get("target_type") or "all"
    if target not in NOTICE_TARGETS:
        raise ValidationError(f"target_type must be one of {', '.join(NOTICE_TARGETS)}")
    channels = clean_channels(data.get("channels"))
    scheduled_for = parse_scheduled_at(data.get("scheduled_at"))
    scheduled = scheduled_for is not None and scheduled_for > utc_now()
    recipients = _notice_recipients(data, target)

    notifications = []
    for recipient in recipients:
        notice = dict(recipient)
        notice.update({
            "type": data.get("type") or "general",
            "priority": data.get("priority") or "normal",
            "title": data.get("title"),
            "message": data.get("message"),
            "action_url": "/student/notices",
            "created_by": user_id,
            "is_scheduled": scheduled,
            "scheduled_for": scheduled_for if scheduled else None,
            "meta": {"channels": channels, "target_type": target, "sms_template": data.get("sms_template") or None},
        })
        notifications.append(create_notification(notice))
    logger.info("Notice '%s' %s for %d recipient row(s) via %s", data.get("title"),
                "scheduled" if scheduled else "sent", len(notifications),
                ", ".join(k for k, on in channels.items() if on) or "no channel")
    return notifications, scheduled


def _notice_sms_filters(notification):
    if notification.recipient_type == "student":
        return {"student_ids": [notification.recipient_id]}
    if notification.recipient_type == "class":
        return {"class_name": notification.recipient_class, "section": notification.recipient_section}
    if notification.recipient_type == "all":
        return {}
    return None


def send_notice_sms(notification_id):
    """Task entry point: text a notice to the guardians of its recipients."""
    from ..sms import services as sms_services

    notification = db.session.get(Notification, notification_id)
    if notification is None:
        return None
    filters = _notice_sms_filters(notification)
    if filters is None:
        logger.info("Notice %s is addressed to a staff user; no SMS sent", notification_id)
        return None
    meta = dict(notification.meta or {})
    template = meta.get("sms_template") or get_settings().sms.notice_sms_template
    text = sms_services.render_template(template, {
        "title": notification.title,
        "message": notification.message[:NOTICE_SMS_MESSAGE_LIMIT],
    })
    outcome = sms_services.send_custom_sms(filters, text, sent_by=notification.created_by)
    if not outcome.get("success"):
        logger.warning("Notice %s SMS not sent: %s", notification_id, outcome.get("reason"))
    meta["sms_result"] = {k: outcome[k] for k in ("sent", "failed", "skipped", "reason") if k in outcome}
    notification.meta = meta
    db.session.commit()
    return outcome


# ==========================================
# INBOX
# ==========================================

def inbox_filter(user):
    """SQL condition selecting the notifications visible to a logged-in user."""
    visible = [Notification.recipient_type == "all"]
    student = user.student if user.role == "student" else None
    if student is not None:
        visible.append(and_(Notification.recipient_type == "student", Notification.recipient_id == student.student_id))
        visible.append(and_(
            Notification.recipient_type == "class",
            Notification.recipient_class == student.class_name,
            or_(Notification.recipient_section.is_(None), Notification.recipient_section == student.section),
        ))
    else:
        visible.append(and_(Notification.recipient_type == "user", Notification.recipient_id == user.user_id))
    now = utc_now()
    return and_(
        or_(*visible),
        or_(Notification.is_scheduled.is_(False), Notification.is_scheduled.is_(None), Notification.sent_at.isnot(None)),
        or_(Notification.expires_at.is_(None), Notification.expires_at > now),
    )


def list_notifications(user, page=1, limit=20, unread_only=False):
    condition = inbox_filter(user)
    if unread_only:
        condition = and_(condition, Notification.is_read.is_(False))
    total = db.session.execute(select(func.count(Notification.notification_id)).where(condition)).scalar_one()
    rows = db.session.execute(
        select(Notification).where(condition)
        .order_by(Notification.created_at.desc(), Notification.notification_id.desc())
        .offset((page - 1) * limit).limit(limit)
    ).scalars().all()
    return rows, total


def get_unread_count(user) -> int:
    condition = and_(inbox_filter(user), Notification.is_read.is_(False))
    return db.session.execute(select(func.count(Notification.notification_id)).where(condition)).scalar_one()


def mark_as_read(user, notification_ids) -> int:
    ids = [int(i) for i in notification_ids or [] if str(i).isdigit()]
    if not ids:
        return 0
    result = db.session.execute(
        update(Notification)
        .where(inbox_filter(user), Notification.notification_id.in_(ids), Notification.is_read.is_(False))
        .values(is_read=True, read_at=utc_now())
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    return result.rowcount or 0


def mark_all_as_read(user) -> int:
    result = db.session.execute(
        update(Notification)
        .where(inbox_filter(user), Notification.is_read.is_(False))
        .values(is_read=True, read_at=utc_now())
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    return result.rowcount or 0


def delete_notification(user, notification_id) -> bool:
    row = db.session.execute(
        select(Notification).where(inbox_filter(user), Notification.notification_id == notification_id)
    ).scalars().first()
    if row is None:
        return False
    db.session.delete(row)
    db.session.commit()
    return True


def expiry_from_days(days):
    if not days:
        return None
    return utc_now() + timedelta(days=int(days))
