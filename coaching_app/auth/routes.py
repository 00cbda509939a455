from flask import current_app
from flask_login import login_user, logout_user, login_required, current_user
from sqlalchemy import select
from werkzeug.security import check_password_hash, generate_password_hash

from . import auth_bp
from .. import db, limiter
from ..api_utils import api_success, api_error, get_json_body
from ..audit import log_action
from ..models import Student, User

BLOCKED_STUDENT_STATUSES = ("suspended", "inactive")


def _student_user(student):
    """Portal login row for a student, created on first sign-in."""
    user = db.session.execute(select(User).filter_by(student_id_fk=student.student_id, role="student")).scalars().first()
    if user is None:
        user = User(
            username=f"student-{student.roll}",
            name=student.name,
            email=student.email,
            role="student",
            student_id_fk=student.student_id,
        )
        db.session.add(user)
        db.session.commit()
    return user


def _session_payload(user):
    body = {"user": user.to_dict()}
    if user.role == "student" and user.student is not None:
        body["student"] = user.student.to_dict()
    return body


@auth_bp.route("/login", methods=["POST"])
@limiter.limit("5 per minute")
def login():
    body = get_json_body()
    username = (body.get("username") or "").strip()
    password = body.get("password") or ""
    if not username or not password:
        return api_error("validation_error", "Username and password are required", 400)
    user = db.session.execute(select(User).filter_by(username=username)).scalars().first()
    if not user or user.role == "student" or not user.password_hash or not check_password_hash(user.password_hash, password):
        current_app.logger.warning("Failed staff login for %s", username)
        return api_error("invalid_credentials", "Invalid credentials", 401)
    if not user.is_active:
        return api_error("account_inactive", "Your account is not active", 403)
    login_user(user)
    log_action("login", "user", user.user_id, user=user)
    return api_success(_session_payload(user), message="Login successful")


@auth_bp.route("/student-login", methods=["POST"])
@limiter.limit("5 per minute")
def student_login():
    body = get_json_body()
    roll = str(body.get("roll") or "").strip().upper()
    password = body.get("password") or ""
    if not roll or not password:
        return api_error("validation_error", "Roll number and password are required", 400)
    student = db.session.execute(select(Student).filter_by(roll=roll)).scalars().first()
    if not student or not student.password_hash or not check_password_hash(student.password_hash, password):
        current_app.logger.warning("Failed student login for roll %s", roll)
        return api_error("invalid_credentials", "Invalid credentials", 401)
    if student.status in BLOCKED_STUDENT_STATUSES:
        return api_error("account_inactive", "Your account is not active", 403)
    user = _student_user(student)
    login_user(user)
    log_action("student_login", "student", student.student_id, user=user)
    return api_success(_session_payload(user), message="Login successful")


@auth_bp.route("/me", methods=["GET"])
@login_required
def me():
    return api_success(_session_payload(current_user))


@auth_bp.route("/change-password", methods=["POST"])
@login_required
@limiter.limit("5 per minute")
def change_password():
    body = get_json_body()
    current_pw = body.get("current_password") or ""
    new_pw = body.get("new_password") or ""
    if len(new_pw) < 6:
        return api_error("validation_error", "New password must be at least 6 characters", 400)
    holder = current_user.student if current_user.role == "student" else current_user
    if holder is None or not holder.password_hash or not check_password_hash(holder.password_hash, current_pw):
        return api_error("invalid_credentials", "Current password is incorrect", 400)
    holder.password_hash = generate_password_hash(new_pw)
    db.session.commit()
    log_action("password_changed", "user", current_user.user_id)
    return api_success(message="Password changed")


@auth_bp.route("/logout", methods=["POST"])
@login_required
def logout():
    log_action("logout", "user", current_user.user_id)
    logout_user()
    return api_success(message="Logged out")
