import logging
from flask import has_request_context, request
from flask_login import current_user
from sqlalchemy.exc import SQLAlchemyError

from . import db
from .models import AuditLog

logger = logging.getLogger(__name__)


def log_action(action, entity_type=None, entity_id=None, details=None, user=None):
    """Record an audit entry for a mutating operation.

    Failures are logged and swallowed; auditing must never break the request
    that triggered it.
    """
    actor = user
    if actor is None and has_request_context() and current_user.is_authenticated:
        actor = current_user
    entry = AuditLog(
        action=action,
        user_id_fk=getattr(actor, "user_id", None),
        user_role=getattr(actor, "role", None),
        entity_type=entity_type,
        entity_id=str(entity_id) if entity_id is not None else None,
        details=details or {},
    )
    if has_request_context():
        entry.ip_address = (request.headers.get("X-Forwarded-For") or request.remote_addr or "")[:64]
        entry.user_agent = (request.headers.get("User-Agent") or "")[:255]
    try:
        db.session.add(entry)
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error("Failed to write audit log %s: %s", action, e)
        return None
    return entry
