from functools import wraps
from flask import current_app
from flask_login import current_user

from .errors import ForbiddenError

# Staff roles allowed to run admin workflows
STAFF_ROLES = ("admin", "staff")


def _role():
    return (getattr(current_user, "role", "") or "").strip().lower()


def role_required(*roles):
    """
    Allow the view only for the given roles.

    Anonymous callers go through the login manager (401 JSON); a signed-in
    user with another role gets a 403 error envelope.
    """
    allowed = {r.strip().lower() for r in roles}

    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            if not current_user.is_authenticated:
                return current_app.login_manager.unauthorized()
            if _role() not in allowed:
                current_app.logger.warning("Role %s denied for %s", _role() or "-", func.__name__)
                raise ForbiddenError("You do not have permission to access this resource.")
            return func(*args, **kwargs)
        return wrapper
    return decorator


def own_record_or_staff(what="records"):
    """Let students reach only views whose ``student_id`` is their own."""
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            if not current_user.is_authenticated:
                return current_app.login_manager.unauthorized()
            if _role() == "student" and current_user.student_id_fk != kwargs.get("student_id"):
                raise ForbiddenError(f"Students can only view their own {what}")
            return func(*args, **kwargs)
        return wrapper
    return decorator
