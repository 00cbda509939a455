"""Socket.IO rooms and emit helpers.

Clients emit ``authenticate`` after connecting and are placed in rooms:
``student:{id}`` or ``user:{id}``, ``role:{role}``, ``class:{class}`` and
``class:{class}:{section}``.
"""
import logging
from flask import request
from flask_login import current_user
from flask_socketio import join_room, leave_room

from .. import socketio
from ..models import utc_now

logger = logging.getLogger(__name__)


def _identity_from(data):
    if current_user.is_authenticated:
        if current_user.role == "student" and current_user.student is not None:
            student = current_user.student
            return "student", student.student_id, "student", student.class_name, student.section
        return "user", current_user.user_id, current_user.role, None, None
    user_type = data.get("user_type") or ("student" if data.get("student_id") else "user")
    ident = data.get("student_id") if user_type == "student" else data.get("user_id")
    return user_type, ident, data.get("role"), data.get("class"), data.get("section")


@socketio.on("authenticate")
def handle_authenticate(data):
    user_type, ident, role, class_name, section = _identity_from(data or {})
    if not ident:
        return {"ok": False, "error": "missing id"}
    rooms = [f"{user_type}:{ident}"]
    if role:
        rooms.append(f"role:{role}")
    if class_name:
        rooms.append(f"class:{class_name}")
        if section:
            rooms.append(f"class:{class_name}:{section}")
    for room in rooms:
        join_room(room)
    logger.info("Socket %s authenticated as %s %s", request.sid, user_type, ident)
    return {"ok": True, "rooms": rooms}


@socketio.on("join-room")
def handle_join_room(room):
    if room:
        join_room(room)


@socketio.on("leave-room")
def handle_leave_room(room):
    if room:
        leave_room(room)


def _emit(event, data, room=None):
    try:
        if room:
            socketio.emit(event, data, to=room)
        else:
            socketio.emit(event, data)
    except Exception as e:
        logger.error("Socket emit %s to %s failed: %s", event, room or "*", e)


def emit_to_student(student_id, event, data):
    _emit(event, data, f"student:{student_id}")


def emit_to_user(user_id, event, data):
    _emit(event, data, f"user:{user_id}")


def emit_to_role(role, event, data):
    _emit(event, data, f"role:{role}")


def emit_to_class(class_name, event, data, section=None):
    room = f"class:{class_name}:{section}" if section else f"class:{class_name}"
    _emit(event, data, room)


def broadcast(event, data):
    _emit(event, data)


def notification_payload(notification):
    return {
        "id": notification.notification_id,
        "type": notification.type,
        "priority": notification.priority,
        "title": notification.title,
        "message": notification.message,
        "related_entity_type": notification.related_entity_type,
        "related_entity_id": notification.related_entity_id,
        "action_url": notification.action_url,
        "created_at": (notification.created_at or utc_now()).isoformat(),
    }


def emit_notification(notification):
    data = notification_payload(notification)
    kind = notification.recipient_type
    if kind == "student":
        emit_to_student(notification.recipient_id, "notification", data)
    elif kind == "user":
        emit_to_user(notification.recipient_id, "notification", data)
    elif kind == "class":
        emit_to_class(notification.recipient_class, "notification", data, notification.recipient_section)
    elif kind == "all":
        broadcast("notification", data)


def emit_schedule_update(event_type, entity_type, entity, class_name, section=None):
    """Tell staff dashboards and the affected class that a schedule item changed."""
    data = {
        "type": event_type,
        "entity_type": entity_type,
        "entity": entity,
        "timestamp": utc_now().isoformat(),
    }
    emit_to_role("admin", "schedule-update", data)
    emit_to_role("staff", "schedule-update", data)
    emit_to_class(class_name, "schedule-update", data, section)


def emit_schedule_changed(action, entity_type, entity_id, class_name, section=None):
    """Calendar refresh hint for edits that carry no student notification."""
    data = {
        "type": f"{entity_type}_{action}",
        "entity_type": entity_type,
        "entity_id": entity_id,
        "timestamp": utc_now().isoformat(),
    }
    emit_to_role("admin", "schedule-updated", data)
    emit_to_role("staff", "schedule-updated", data)
    emit_to_class(class_name, "schedule-updated", data, section)
