import os
import logging
from logging.handlers import RotatingFileHandler
from datetime import timedelta
from flask import Flask, request, session
from flask_login import LoginManager
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from flask_limiter import Limiter
from flask_limiter.errors import RateLimitExceeded
from flask_caching import Cache
from flask_socketio import SocketIO
from werkzeug.exceptions import HTTPException

# Global extensions
db = SQLAlchemy()
login_manager = LoginManager()
migrate = Migrate()
socketio = SocketIO()


def _rate_key():
    try:
        ip = (request.headers.get("X-Forwarded-For") or request.remote_addr or "local")
        token = (session.get("_user_id") or "")
        path = (getattr(request, "path", "/") or "/")
        return f"{ip}|{token}|{path}"
    except Exception:
        return "local"


limiter = Limiter(key_func=_rate_key)
cache = Cache()


def _env_flag(name, default="false"):
    return os.environ.get(name, default).lower() == "true"


def _configure_logging(app):
    level_name = (app.config.get("LOG_LEVEL") or "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    app.logger.setLevel(level)
    logging.getLogger("coaching_app").setLevel(level)

    if app.debug or app.testing or not app.config.get("LOG_TO_FILE"):
        return
    log_dir = app.config.get("LOG_DIR") or "logs"
    os.makedirs(log_dir, exist_ok=True)
    handler = RotatingFileHandler(os.path.join(log_dir, "coaching.log"), maxBytes=10 * 1024 * 1024, backupCount=10)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s: %(message)s [in %(pathname)s:%(lineno)d]"))
    handler.setLevel(level)
    app.logger.addHandler(handler)
    logging.getLogger("coaching_app").addHandler(handler)


def create_app(overrides=None):
    app = Flask(__name__)
    app.config["SECRET_KEY"] = os.environ.get("SECRET_KEY", "dev-secret-key")
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=12)
    app.config["LOG_LEVEL"] = os.environ.get("LOG_LEVEL", "INFO")
    app.config["LOG_TO_FILE"] = _env_flag("LOG_TO_FILE", "true")

    REDIS_URL = os.environ.get("REDIS_URL")
    if REDIS_URL:
        app.config["CACHE_TYPE"] = "RedisCache"
        app.config["CACHE_REDIS_URL"] = REDIS_URL
        app.config["RATELIMIT_STORAGE_URI"] = REDIS_URL
    else:
        app.config["CACHE_TYPE"] = "SimpleCache"
    app.config.setdefault("RATELIMIT_STORAGE_URI", "memory://")

    app.config["MAX_CONTENT_LENGTH"] = int(os.environ.get("MAX_CONTENT_LENGTH", str(16 * 1024 * 1024)))
    app.config["CLIENT_URL"] = os.environ.get("CLIENT_URL", "http://localhost:5173")

    # Mail configuration (SMTP_* accepted as aliases)
    app.config["MAIL_HOST"] = os.environ.get("MAIL_HOST") or os.environ.get("SMTP_HOST")
    app.config["MAIL_PORT"] = int(os.environ.get("MAIL_PORT") or os.environ.get("SMTP_PORT") or "587")
    app.config["MAIL_USER"] = os.environ.get("MAIL_USER") or os.environ.get("SMTP_USER")
    app.config["MAIL_PASSWORD"] = os.environ.get("MAIL_PASSWORD") or os.environ.get("SMTP_PASS")
    app.config["MAIL_FROM"] = os.environ.get("MAIL_FROM") or os.environ.get("EMAIL_FROM") or app.config["MAIL_USER"] or "noreply@example.com"
    app.config["MAIL_USE_TLS"] = _env_flag("MAIL_USE_TLS", "true")
    app.config["MAIL_USE_SSL"] = _env_flag("MAIL_USE_SSL") or _env_flag("SMTP_SECURE")
    app.config["NOTIFICATION_EMAIL_ENABLED"] = _env_flag("NOTIFICATION_EMAIL_ENABLED")

    # Web Push
    app.config["VAPID_PUBLIC_KEY"] = os.environ.get("VAPID_PUBLIC_KEY")
    app.config["VAPID_PRIVATE_KEY"] = os.environ.get("VAPID_PRIVATE_KEY")
    app.config["VAPID_EMAIL"] = os.environ.get("VAPID_EMAIL", "mailto:admin@example.com")

    # SMS provider tuning
    app.config["SMS_API_URL"] = os.environ.get("SMS_API_URL", "https://bulksmsbd.net/api/smsapi")
    app.config["SMS_BALANCE_URL"] = os.environ.get("SMS_BALANCE_URL", "https://bulksmsbd.net/api/getBalanceApi")
    app.config["SMS_MAX_CONCURRENT"] = 5
    app.config["SMS_CHUNK_DELAY_SECONDS"] = 1.0
    app.config["SMS_RETRY_DELAYS"] = (2, 5, 10)
    app.config["SMS_MAX_RETRIES"] = 3
    app.config["SMS_TIMEOUT_SECONDS"] = 15

    # Background work
    app.config["TASKS_EAGER"] = _env_flag("TASKS_EAGER")
    app.config["TASK_MAX_ATTEMPTS"] = int(os.environ.get("TASK_MAX_ATTEMPTS", "3"))
    app.config["TASK_RETRY_DELAYS"] = (1, 5)
    app.config["SCHEDULER_ENABLED"] = _env_flag("SCHEDULER_ENABLED", "true")
    app.config["REMINDER_24H_ENABLED"] = os.environ.get("REMINDER_24H_ENABLED", "true").lower() != "false"
    app.config["REMINDER_1H_ENABLED"] = os.environ.get("REMINDER_1H_ENABLED", "true").lower() != "false"
    app.config["RENDER_EXTERNAL_URL"] = os.environ.get("RENDER_EXTERNAL_URL")

    # Database configuration: use DATABASE_URL if provided, else sqlite file
    database_url = os.environ.get("DATABASE_URL")
    if not database_url:
        db_path = os.path.join(os.path.dirname(__file__), "..", "coaching.db")
        database_url = f"sqlite:///{os.path.abspath(db_path)}"
    app.config["SQLALCHEMY_DATABASE_URI"] = database_url
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False

    if overrides:
        app.config.update(overrides)

    _configure_logging(app)

    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    cache.init_app(app)
    socketio.init_app(app, cors_allowed_origins=app.config["CLIENT_URL"], async_mode="threading")

    # Auth: Flask-Login
    login_manager.init_app(app)

    # Import models so they are registered with SQLAlchemy
    from . import models  # noqa: F401

    @login_manager.user_loader
    def load_user(user_id: str):
        from .models import User
        try:
            return db.session.get(User, int(user_id))
        except (TypeError, ValueError):
            return None

    @login_manager.unauthorized_handler
    def unauthorized():
        from .api_utils import api_error
        return api_error("unauthorized", "Authentication required", 401)

    # Blueprints
    from .main.routes import main_bp
    app.register_blueprint(main_bp)

    from .auth import auth_bp
    app.register_blueprint(auth_bp, url_prefix="/api/auth")

    from .students import students_bp
    app.register_blueprint(students_bp, url_prefix="/api/students")

    from .exams import exams_bp
    app.register_blueprint(exams_bp, url_prefix="/api/tests")

    from .schedule import schedule_bp
    app.register_blueprint(schedule_bp, url_prefix="/api/classes")

    from .attendance import attendance_bp
    app.register_blueprint(attendance_bp, url_prefix="/api/attendance")

    from .results import results_bp
    app.register_blueprint(results_bp, url_prefix="/api/results")

    from .workflow import workflow_bp
    app.register_blueprint(workflow_bp, url_prefix="/api/workflow")

    from .sms import sms_bp
    app.register_blueprint(sms_bp, url_prefix="/api/sms")

    from .notifications import notifications_bp
    app.register_blueprint(notifications_bp, url_prefix="/api/notifications")

    # Socket.IO event handlers
    from .notifications import realtime  # noqa: F401

    from .errors import ApiError

    @app.errorhandler(ApiError)
    def handle_api_error(e):
        from .api_utils import api_error
        return api_error(e.code, e.message, e.status_code, reason=e.reason, extra=e.extra)

    @app.errorhandler(RateLimitExceeded)
    def handle_rate_limit(e):
        from .api_utils import api_error
        return api_error("rate_limited", "Too many requests", 429)

    @app.errorhandler(HTTPException)
    def handle_http_exception(e):
        from .api_utils import api_error
        return api_error(str(e.code), e.description or "", e.code)

    @app.errorhandler(Exception)
    def handle_unexpected(e):
        from .api_utils import api_error
        db.session.rollback()
        app.logger.exception("Unhandled error on %s %s", request.method, request.path)
        return api_error("server_error", "Internal server error", 500)

    with app.app_context():
        db.create_all()
        from .settings import init_settings
        init_settings()

    from .tasks import task_queue
    task_queue.init_app(app)

    if app.config["SCHEDULER_ENABLED"] and not app.testing:
        from .jobs import init_scheduler
        init_scheduler(app)

    return app
