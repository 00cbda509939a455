"""Web Push delivery through pywebpush."""
import json
import logging
import requests
from flask import current_app
from pywebpush import webpush, WebPushException
from sqlalchemy import select

from .. import db
from ..models import Notification, PushSubscription, Student, utc_now
from ..settings import get_settings

logger = logging.getLogger(__name__)

PUSH_TTL_SECONDS = 86400
BROADCAST_BATCH_SIZE = 50
DEAD_SUBSCRIPTION_STATUSES = (404, 410)


def is_enabled() -> bool:
    cfg = current_app.config
    return bool(cfg.get("VAPID_PUBLIC_KEY") and cfg.get("VAPID_PRIVATE_KEY"))


def build_payload(notification) -> dict:
    site_name = get_settings().site_info.short_name
    urgent = notification.priority == "urgent"
    return {
        "title": f"{site_name}: {notification.title}",
        "body": notification.message,
        "icon": "/icons/icon-192x192.png",
        "badge": "/icons/badge-72x72.png",
        "tag": f"notification-{notification.notification_id}",
        "renotify": True,
        "requireInteraction": notification.priority in ("high", "urgent"),
        "vibrate": [200, 100, 200, 100, 200] if urgent else [100, 50, 100],
        "data": {
            "url": notification.action_url or "/student/notices",
            "notificationId": notification.notification_id,
            "type": notification.type,
            "priority": notification.priority,
        },
        "actions": [
            {"action": "view", "title": "View"},
            {"action": "dismiss", "title": "Dismiss"},
        ],
    }


def send_to_subscription(subscription, payload) -> str:
    """Deliver one payload. Returns ``sent``, ``removed`` or ``failed``."""
    cfg = current_app.config
    try:
        webpush(
            subscription_info=subscription.subscription_info(),
            data=json.dumps(payload),
            vapid_private_key=cfg["VAPID_PRIVATE_KEY"],
            vapid_claims={"sub": cfg.get("VAPID_EMAIL") or "mailto:admin@example.com"},
            ttl=PUSH_TTL_SECONDS,
        )
    except WebPushException as e:
        status = getattr(e.response, "status_code", None)
        if status in DEAD_SUBSCRIPTION_STATUSES:
            logger.info("Removing expired push subscription %s (HTTP %s)", subscription.subscription_id, status)
            db.session.delete(subscription)
            return "removed"
        logger.warning("Push to subscription %s failed: %s", subscription.subscription_id, e)
        return "failed"
    except (requests.RequestException, ValueError, TypeError) as e:
        logger.warning("Push to subscription %s errored: %s", subscription.subscription_id, e)
        return "failed"
    subscription.last_used_at = utc_now()
    return "sent"


def send_many(subscriptions, payload) -> dict:
    counts = {"sent": 0, "failed": 0, "removed": 0}
    for start in range(0, len(subscriptions), BROADCAST_BATCH_SIZE):
        for subscription in subscriptions[start:start + BROADCAST_BATCH_SIZE]:
            counts[send_to_subscription(subscription, payload)] += 1
        db.session.commit()
    return counts


def resolve_subscriptions(notification):
    query = select(PushSubscription).filter_by(is_active=True)
    kind = notification.recipient_type
    if kind == "student":
        query = query.filter_by(student_id_fk=notification.recipient_id)
    elif kind == "user":
        query = query.filter_by(user_id_fk=notification.recipient_id)
    elif kind == "class":
        students = select(Student.student_id).where(Student.class_name == notification.recipient_class, Student.status == "active")
        if notification.recipient_section:
            students = students.where(Student.section == notification.recipient_section)
        query = query.where(PushSubscription.student_id_fk.in_(students))
    elif kind != "all":
        return []
    return db.session.execute(query).scalars().all()


def send_push_for_notification(notification_id) -> dict:
    """Task entry point: push one stored notification to its recipients' devices."""
    if not is_enabled():
        return {"sent": 0, "failed": 0, "removed": 0}
    notification = db.session.get(Notification, notification_id)
    if notification is None:
        logger.warning("Push skipped; notification %s no longer exists", notification_id)
        return {"sent": 0, "failed": 0, "removed": 0}
    subscriptions = resolve_subscriptions(notification)
    counts = send_many(subscriptions, build_payload(notification))
    logger.info("Push for notification %s: %s", notification_id, counts)
    return counts


def save_subscription(subscription, student_id=None, user_id=None, user_agent=None):
    """Upsert a browser subscription keyed by its endpoint."""
    from ..errors import ValidationError

    endpoint = (subscription or {}).get("endpoint")
    keys = (subscription or {}).get("keys") or {}
    if not endpoint or not keys.get("p256dh") or not keys.get("auth"):
        raise ValidationError("Subscription must include endpoint and keys.p256dh/keys.auth")
    row = db.session.execute(select(PushSubscription).filter_by(endpoint=endpoint)).scalars().first()
    if row is None:
        row = PushSubscription(endpoint=endpoint)
        db.session.add(row)
    row.p256dh = keys["p256dh"]
    row.auth = keys["auth"]
    row.student_id_fk = student_id
    row.user_id_fk = user_id
    row.user_agent = (user_agent or "")[:255]
    row.is_active = True
    db.session.commit()
    return row


def remove_subscription(endpoint) -> bool:
    row = db.session.execute(select(PushSubscription).filter_by(endpoint=endpoint)).scalars().first()
    if row is None:
        return False
    db.session.delete(row)
    db.session.commit()
    return True
