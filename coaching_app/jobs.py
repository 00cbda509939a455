"""Scheduled background jobs.

Each job takes an optional ``now`` (naive local time, the same clock the
``HH:MM`` schedule fields use) and must run inside an app context. The
scheduler wires them up with :func:`init_scheduler`.
"""
import atexit
import logging
import random
import time
from datetime import datetime, timedelta

import requests
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy import delete, or_, select

from . import db
from .models import ClassSession, Notification, Test, utc_now
from .notifications.services import dispatch_notification, notify_class_session, notify_test

logger = logging.getLogger(__name__)

NOTIFICATION_RETENTION_DAYS = 30
KEEP_ALIVE_TIMEOUT_SECONDS = 30
KEEP_ALIVE_ATTEMPTS = 3
KEEP_ALIVE_START_JITTER_SECONDS = 10

UPCOMING_CLASS_STATUSES = ("scheduled", "rescheduled")

_scheduler = None
_keep_alive_failures = 0


def _local_now(now):
    return now or datetime.now()


def _upcoming(model, date_column, first_day, last_day, flag):
    statuses = UPCOMING_CLASS_STATUSES if model is ClassSession else ("scheduled",)
    return db.session.execute(
        select(model).where(
            date_column >= first_day,
            date_column <= last_day,
            model.status.in_(statuses),
            or_(getattr(model, flag).is_(False), getattr(model, flag).is_(None)),
        )
    ).scalars().all()


def _send_reminders(window_start, window_end, flag, time_until):
    sent = 0
    candidates = [
        (session, notify_class_session)
        for session in _upcoming(ClassSession, ClassSession.session_date, window_start.date(), window_end.date(), flag)
    ] + [
        (test, notify_test)
        for test in _upcoming(Test, Test.test_date, window_start.date(), window_end.date(), flag)
    ]
    for entity, notify in candidates:
        starts_at = entity.starts_at
        if starts_at is None or not window_start <= starts_at <= window_end:
            continue
        try:
            notify(entity, "reminder", time_until=time_until)
        except Exception:
            db.session.rollback()
            logger.exception("Failed to send %s reminder for %s", time_until, entity)
            continue
        setattr(entity, flag, True)
        db.session.commit()
        sent += 1
    return sent


def send_24h_reminders(now=None):
    now = _local_now(now)
    sent = _send_reminders(now + timedelta(hours=23), now + timedelta(hours=24), "reminder_24h_sent", "in 24 hours")
    if sent:
        logger.info("Sent %d 24-hour reminders", sent)
    return sent


def send_1h_reminders(now=None):
    now = _local_now(now)
    window_start, window_end = now + timedelta(minutes=50), now + timedelta(minutes=60)
    if window_end.date() != now.date():
        # only same-day sessions get the short reminder
        window_end = datetime(now.year, now.month, now.day, 23, 59, 59)
    if window_start > window_end:
        return 0
    sent = _send_reminders(window_start, window_end, "reminder_1h_sent", "in 1 hour")
    if sent:
        logger.info("Sent %d 1-hour reminders", sent)
    return sent


def _advance_status(entity, now):
    starts_at, ends_at = entity.starts_at, entity.ends_at
    day = entity.session_date if isinstance(entity, ClassSession) else entity.test_date
    if ends_at is not None and ends_at <= now:
        return "completed"
    if ends_at is None and day < now.date():
        return "completed"
    if starts_at is not None and ends_at is not None and starts_at <= now < ends_at and entity.status != "ongoing":
        return "ongoing"
    return None


def update_session_statuses(now=None):
    """Move scheduled sessions and tests to ongoing/completed as time passes."""
    now = _local_now(now)
    changes = {"completed": 0, "ongoing": 0}
    sessions = db.session.execute(
        select(ClassSession).where(
            ClassSession.status.in_(UPCOMING_CLASS_STATUSES + ("ongoing",)),
            ClassSession.session_date <= now.date(),
        )
    ).scalars().all()
    tests = db.session.execute(
        select(Test).where(Test.status.in_(("scheduled", "ongoing")), Test.test_date <= now.date())
    ).scalars().all()
    for entity in [*sessions, *tests]:
        status = _advance_status(entity, now)
        if status:
            entity.status = status
            changes[status] += 1
    db.session.commit()
    if any(changes.values()):
        logger.info("Status update: %d completed, %d ongoing", changes["completed"], changes["ongoing"])
    return changes


def process_scheduled_notifications(now=None):
    """Dispatch scheduled notifications whose time has come."""
    current = utc_now() if now is None else now
    due = db.session.execute(
        select(Notification).where(
            Notification.is_scheduled.is_(True),
            Notification.sent_at.is_(None),
            Notification.scheduled_for <= current,
        )
    ).scalars().all()
    for notification in due:
        notification.sent_at = utc_now()
        notification.is_scheduled = False
        db.session.commit()
        try:
            dispatch_notification(notification)
        except Exception:
            logger.exception("Failed to dispatch scheduled notification %s", notification.notification_id)
    if due:
        logger.info("Processed %d scheduled notifications", len(due))
    return len(due)


def cleanup_old_notifications(now=None):
    current = utc_now() if now is None else now
    cutoff = current - timedelta(days=NOTIFICATION_RETENTION_DAYS)
    result = db.session.execute(
        delete(Notification)
        .where(or_(Notification.created_at < cutoff, Notification.expires_at < current))
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    removed = result.rowcount or 0
    logger.info("Cleaned up %d old notifications", removed)
    return removed


def keep_alive(base_url, attempts=KEEP_ALIVE_ATTEMPTS, sleep=time.sleep, start_jitter=KEEP_ALIVE_START_JITTER_SECONDS):
    """Ping ``{base_url}/health`` so free-tier hosting does not idle the app."""
    global _keep_alive_failures
    url = base_url.rstrip("/") + "/health"
    # spread pings from several workers sharing the same cron tick
    if start_jitter:
        sleep(random.uniform(0, start_jitter))
    for attempt in range(1, attempts + 1):
        try:
            response = requests.get(url, timeout=KEEP_ALIVE_TIMEOUT_SECONDS)
            if response.status_code < 500:
                if _keep_alive_failures:
                    logger.info("Keep-alive recovered after %d failed rounds", _keep_alive_failures)
                _keep_alive_failures = 0
                return True
            logger.warning("Keep-alive attempt %d got HTTP %s", attempt, response.status_code)
        except requests.RequestException as e:
            logger.warning("Keep-alive attempt %d failed: %s", attempt, e)
        if attempt < attempts:
            sleep(2 ** attempt + random.uniform(0, 1))
    _keep_alive_failures += 1
    logger.error("Keep-alive to %s failed %d round(s) in a row", url, _keep_alive_failures)
    return False


def keep_alive_failures():
    return _keep_alive_failures


def _in_app_context(app, func):
    def run():
        with app.app_context():
            try:
                func()
            except Exception:
                db.session.rollback()
                logger.exception("Scheduled job %s failed", func.__name__)
            finally:
                db.session.remove()
    run.__name__ = func.__name__
    return run


def init_scheduler(app):
    """Start the background scheduler once per process."""
    global _scheduler
    if _scheduler is not None:
        return _scheduler
    scheduler = BackgroundScheduler(daemon=True)
    jobs = []
    if app.config.get("REMINDER_24H_ENABLED", True):
        jobs.append((send_24h_reminders, CronTrigger(minute="*/15")))
    if app.config.get("REMINDER_1H_ENABLED", True):
        jobs.append((send_1h_reminders, CronTrigger(minute="*/5")))
    jobs += [
        (update_session_statuses, CronTrigger(minute=0)),
        (process_scheduled_notifications, CronTrigger(minute="*/10")),
        (cleanup_old_notifications, CronTrigger(hour=0, minute=0)),
    ]
    for func, trigger in jobs:
        scheduler.add_job(_in_app_context(app, func), trigger, id=func.__name__, replace_existing=True,
                          max_instances=1, coalesce=True)

    base_url = app.config.get("RENDER_EXTERNAL_URL")
    if base_url:
        scheduler.add_job(keep_alive, CronTrigger(minute="*/14"), args=[base_url], id="keep_alive",
                          replace_existing=True, max_instances=1, coalesce=True)

    scheduler.start()
    atexit.register(shutdown_scheduler)
    _scheduler = scheduler
    app.extensions["scheduler"] = scheduler
    logger.info("Scheduler started with jobs: %s", ", ".join(job.id for job in scheduler.get_jobs()))
    return scheduler


def shutdown_scheduler():
    global _scheduler
    if _scheduler is not None:
        _scheduler.shutdown(wait=False)
        _scheduler = None
