from flask import current_app, request
from flask_login import login_required, current_user

from . import notifications_bp
from .. import db
from ..api_utils import api_success, api_error, get_json_body, pagination_args, page_meta
from ..audit import log_action
from ..decorators import role_required
from ..models import Notification
from . import push
from .services import (
    create_notification, delete_notification, expiry_from_days, get_unread_count,
    list_notifications, mark_all_as_read, mark_as_read, send_notice,
)


@notifications_bp.route("/", methods=["GET"])
@login_required
def inbox():
    page, limit = pagination_args(default_limit=20, max_limit=100)
    unread_only = (request.args.get("unread") or "").lower() == "true"
    rows, total = list_notifications(current_user, page=page, limit=limit, unread_only=unread_only)
    meta = page_meta(page, limit, total)
    meta["unread_count"] = get_unread_count(current_user)
    return api_success([n.to_dict() for n in rows], meta)


@notifications_bp.route("/unread-count", methods=["GET"])
@login_required
def unread_count():
    return api_success({"count": get_unread_count(current_user)})


@notifications_bp.route("/mark-read", methods=["POST"])
@login_required
def mark_read_many():
    ids = get_json_body().get("notification_ids") or []
    if not isinstance(ids, list):
        return api_error("validation_error", "notification_ids must be a list", 400)
    updated = mark_as_read(current_user, ids)
    return api_success({"updated": updated}, message=f"{updated} notification(s) marked as read")


@notifications_bp.route("/<int:notification_id>/read", methods=["POST"])
@login_required
def mark_read_one(notification_id):
    updated = mark_as_read(current_user, [notification_id])
    if not updated and db.session.get(Notification, notification_id) is None:
        return api_error("not_found", "Notification not found", 404)
    return api_success({"updated": updated})


@notifications_bp.route("/mark-all-read", methods=["POST"])
@login_required
def mark_all_read():
    updated = mark_all_as_read(current_user)
    return api_success({"updated": updated}, message="All notifications marked as read")


@notifications_bp.route("/<int:notification_id>", methods=["DELETE"])
@login_required
def remove(notification_id):
    if not delete_notification(current_user, notification_id):
        return api_error("not_found", "Notification not found", 404)
    return api_success({"deleted": notification_id}, message="Notification deleted")


@notifications_bp.route("/broadcast", methods=["POST"])
@login_required
@role_required("admin")
def broadcast():
    body = get_json_body()
    recipient_type = body.get("recipient_type") or "all"
    if recipient_type not in ("class", "all"):
        return api_error("validation_error", "Broadcasts go to a class or to everyone", 400)
    notification = create_notification({
        "recipient_type": recipient_type,
        "recipient_class": body.get("class_name") if recipient_type == "class" else None,
        "recipient_section": body.get("section") if recipient_type == "class" else None,
        "type": body.get("type") or "general",
        "priority": body.get("priority") or "normal",
        "title": body.get("title"),
        "message": body.get("message"),
        "action_url": body.get("action_url"),
        "expires_at": expiry_from_days(body.get("expires_in_days")),
        "created_by": current_user.user_id,
    })
    log_action("notification_broadcast", "notification", notification.notification_id,
               {"recipient_type": recipient_type, "class_name": body.get("class_name")})
    return api_success(notification.to_dict(), status=201, message="Notification sent")


@notifications_bp.route("/send-notice", methods=["POST"])
@login_required
@role_required("admin", "staff")
def post_notice():
    body = get_json_body()
    notifications, scheduled = send_notice(body, user_id=current_user.user_id)
    channels = notifications[0].meta["channels"]
    log_action("notice_sent", "notification", notifications[0].notification_id, {
        "target_type": body.get("target_type") or "all",
        "recipients": len(notifications),
        "channels": channels,
        "scheduled": scheduled,
    })
    if scheduled:
        message = f"Notice scheduled for {notifications[0].scheduled_for:%d %b %Y %H:%M} UTC"
    else:
        message = f"Notice sent to {len(notifications)} recipient(s)"
    return api_success({
        "notifications": [n.to_dict() for n in notifications],
        "channels": channels,
        "scheduled": scheduled,
    }, status=201, message=message)


# Web Push subscriptions

@notifications_bp.route("/vapid-public-key", methods=["GET"])
def vapid_public_key():
    key = current_app.config.get("VAPID_PUBLIC_KEY")
    if not key:
        return api_error("push_disabled", "Push notifications are not configured", 503)
    return api_success({"public_key": key})


@notifications_bp.route("/push-subscription", methods=["POST"])
@login_required
def subscribe():
    body = get_json_body()
    subscription = body.get("subscription") or body
    student_id = current_user.student_id_fk if current_user.role == "student" else None
    user_id = None if student_id else current_user.user_id
    row = push.save_subscription(subscription, student_id=student_id, user_id=user_id,
                                 user_agent=request.headers.get("User-Agent"))
    return api_success({"subscription_id": row.subscription_id}, status=201, message="Subscribed to push notifications")


@notifications_bp.route("/push-subscription", methods=["DELETE"])
@login_required
def unsubscribe():
    endpoint = get_json_body().get("endpoint")
    if not endpoint:
        return api_error("validation_error", "endpoint is required", 400)
    removed = push.remove_subscription(endpoint)
    return api_success({"removed": removed})
