"""SMS delivery through a BulkSMSBD-style HTTP API.

Every attempt is logged in ``sms_logs`` as ``queued`` before the request goes
out and updated to ``sent``/``failed`` afterwards. Result SMS are
deduplicated per (student, test) using those logs.
"""
import logging
import os
import re
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import timedelta

import requests
from flask import current_app
from sqlalchemy import select, func

from .. import db
from ..errors import NotFoundError, ValidationError, parse_id
from ..models import Result, SmsLog, Student, Test, utc_now
from ..settings import get_settings

logger = logging.getLogger(__name__)

PHONE_FIELDS = ("phone", "guardian_phone")
RETRY_WINDOW_SECONDS = 60


@dataclass(frozen=True)
class SmsConfig:
    enabled: bool
    api_key: str
    sender_id: str
    template: str
    website: str
    api_url: str

    @property
    def ready(self):
        return bool(self.enabled and self.api_key and self.sender_id)


@dataclass(frozen=True)
class SendOutcome:
    success: bool
    response: dict
    error: str = ""


def get_sms_config() -> SmsConfig:
    settings = get_settings()
    return SmsConfig(
        enabled=settings.sms.enabled,
        api_key=os.environ.get("BULKSMSBD_API_KEY") or settings.sms.api_key,
        sender_id=os.environ.get("BULKSMSBD_SENDER_ID") or settings.sms.sender_id,
        template=settings.sms.result_sms_template,
        website=settings.site_info.website_url,
        api_url=current_app.config["SMS_API_URL"],
    )


def not_ready_reason(cfg) -> str:
    if not cfg.enabled:
        return "SMS service is disabled"
    return "SMS API key or sender ID is not configured"


def normalize_phone(phone) -> str:
    digits = re.sub(r"\D", "", str(phone or ""))
    if not digits:
        return ""
    if digits.startswith("0"):
        digits = "88" + digits
    if not digits.startswith("880"):
        digits = "880" + digits
    return digits


def render_template(template, values) -> str:
    message = template or ""
    for key, value in values.items():
        message = message.replace("{" + key + "}", "" if value is None else str(value))
    return message


def _format_score(value):
    return f"{value:g}" if isinstance(value, float) else str(value)


def call_provider(cfg, number, message, timeout) -> SendOutcome:
    """One GET to the provider. Network errors become a failed outcome.

    Runs on worker threads, so it must not touch the app context.
    """
    params = {
        "api_key": cfg.api_key,
        "type": "text",
        "number": number,
        "senderid": cfg.sender_id,
        "message": message,
    }
    try:
        response = requests.get(cfg.api_url, params=params, timeout=timeout)
    except requests.RequestException as e:
        return SendOutcome(False, {}, str(e))
    try:
        data = response.json()
    except ValueError:
        data = {"raw": response.text[:500]}
    if not isinstance(data, dict):
        data = {"raw": data}
    data["http_status"] = response.status_code
    ok = data.get("response_code") == 202 or (response.status_code == 200 and data.get("success") is True)
    if ok:
        return SendOutcome(True, data)
    error = data.get("error_message") or data.get("message") or f"Provider rejected message (HTTP {response.status_code})"
    return SendOutcome(False, data, str(error))


def _chunks(items, size):
    for start in range(0, len(items), size):
        yield items[start:start + size]


def _dispatch(entries, sms_type, cfg, sent_by=None, test_id=None):
    """Send prepared entries in concurrent chunks and return their log ids.

    Entries are dicts with ``student_id``, ``name``, ``phone`` and ``message``.
    Worker threads only do HTTP; all database writes stay on this thread.
    """
    app_cfg = current_app.config
    size = max(1, int(app_cfg.get("SMS_MAX_CONCURRENT", 5)))
    delay = float(app_cfg.get("SMS_CHUNK_DELAY_SECONDS", 1.0))
    timeout = app_cfg.get("SMS_TIMEOUT_SECONDS", 15)
    log_ids = []
    for index, chunk in enumerate(_chunks(entries, size)):
        if index and delay:
            time.sleep(delay)
        logs = [
            SmsLog(
                recipient_name=entry["name"],
                phone=entry["phone"],
                message=entry["message"],
                sms_type=sms_type,
                status="queued",
                test_id_fk=test_id,
                student_id_fk=entry["student_id"],
                sent_by=sent_by,
            )
            for entry in chunk
        ]
        db.session.add_all(logs)
        db.session.commit()
        jobs = [(entry["phone"], entry["message"]) for entry in chunk]
        with ThreadPoolExecutor(max_workers=len(jobs)) as pool:
            outcomes = list(pool.map(lambda job: call_provider(cfg, job[0], job[1], timeout), jobs))
        for log, outcome in zip(logs, outcomes):
            log.status = "sent" if outcome.success else "failed"
            log.api_response = outcome.response
            log.error_message = outcome.error or None
            if not outcome.success:
                logger.warning("SMS to %s failed: %s", log.phone, outcome.error)
        db.session.commit()
        log_ids.extend(log.sms_log_id for log in logs)
    return log_ids


def retry_failed(log_ids, cfg):
    """Retry recent failures from a batch with backoff; returns how many recovered."""
    app_cfg = current_app.config
    max_retries = int(app_cfg.get("SMS_MAX_RETRIES", 3))
    delays = tuple(app_cfg.get("SMS_RETRY_DELAYS", (2, 5, 10)))
    timeout = app_cfg.get("SMS_TIMEOUT_SECONDS", 15)
    recovered = 0
    for attempt in range(max_retries):
        window_start = utc_now() - timedelta(seconds=RETRY_WINDOW_SECONDS)
        failed = db.session.execute(
            select(SmsLog).where(
                SmsLog.sms_log_id.in_(log_ids),
                SmsLog.status == "failed",
                SmsLog.retry_count < max_retries,
                SmsLog.created_at >= window_start,
            )
        ).scalars().all()
        if not failed:
            break
        wait = delays[min(attempt, len(delays) - 1)] if delays else 0
        if wait:
            time.sleep(wait)
        for log in failed:
            outcome = call_provider(cfg, log.phone, log.message, timeout)
            log.retry_count = (log.retry_count or 0) + 1
            log.api_response = outcome.response
            if outcome.success:
                log.status = "sent"
                log.error_message = None
                recovered += 1
            else:
                log.error_message = outcome.error
        db.session.commit()
        logger.info("SMS retry round %d: %d attempted", attempt + 1, len(failed))
    return recovered


def _batch_counts(log_ids):
    if not log_ids:
        return 0, 0
    rows = dict(db.session.execute(
        select(SmsLog.status, func.count(SmsLog.sms_log_id))
        .where(SmsLog.sms_log_id.in_(log_ids)).group_by(SmsLog.status)
    ).all())
    return rows.get("sent", 0), rows.get("failed", 0)


def send_bulk_result_sms(test_id, sent_by=None):
    """Text every guardian the student's score, skipping those already notified."""
    cfg = get_sms_config()
    if not cfg.ready:
        reason = not_ready_reason(cfg)
        logger.info("Result SMS for test %s not sent: %s", test_id, reason)
        return {"success": False, "reason": reason}
    test = db.session.get(Test, test_id)
    if test is None:
        raise NotFoundError("Test not found")

    results = db.session.execute(
        select(Result).filter_by(test_id_fk=test_id).where(Result.is_absent.is_(False))
    ).scalars().all()
    if not results:
        return {"success": True, "sent": 0, "failed": 0, "total": 0, "skipped": 0}
    highest = max(r.total_marks or 0 for r in results)
    already_sent = set(db.session.execute(
        select(SmsLog.student_id_fk).filter_by(test_id_fk=test_id, sms_type="result_sms", status="sent")
    ).scalars())

    entries, skipped = [], 0
    for result in results:
        student = result.student
        if result.student_id_fk in already_sent:
            skipped += 1
            continue
        phone = normalize_phone(student.guardian_phone if student else None)
        if not phone:
            skipped += 1
            continue
        entries.append({
            "student_id": result.student_id_fk,
            "name": student.name,
            "phone": phone,
            "message": render_template(cfg.template, {
                "studentName": student.name,
                "testName": test.test_name,
                "score": _format_score(result.total_marks),
                "total": _format_score(result.max_marks),
                "highest": _format_score(highest),
                "website": cfg.website,
                "percentage": result.percentage,
                "grade": result.grade,
                "rank": result.rank or "-",
            }),
        })
    if not entries:
        logger.info("Result SMS for test %s: nothing new to send (%d skipped)", test_id, skipped)
        return {"success": True, "sent": 0, "failed": 0, "total": 0, "skipped": skipped}

    log_ids = _dispatch(entries, "result_sms", cfg, sent_by=sent_by, test_id=test_id)
    retry_failed(log_ids, cfg)
    sent, failed = _batch_counts(log_ids)
    logger.info("Result SMS for test %s: %d sent, %d failed, %d skipped", test_id, sent, failed, skipped)
    return {"success": True, "sent": sent, "failed": failed, "total": len(entries), "skipped": skipped}


def filter_students(filters):
    query = select(Student).filter_by(status="active")
    filters = filters or {}
    if filters.get("student_ids"):
        query = query.where(Student.student_id.in_([parse_id(i, "student_ids") for i in filters["student_ids"]]))
    for key in ("class_name", "section", "group", "roll"):
        if filters.get(key):
            query = query.where(getattr(Student, key) == filters[key])
    if filters.get("name"):
        query = query.where(Student.name.ilike(f"%{filters['name']}%"))
    return db.session.execute(query.order_by(Student.roll)).scalars().all()


def _check_phone_field(phone_field):
    if phone_field not in PHONE_FIELDS:
        raise ValidationError("phone_field must be 'phone' or 'guardian_phone'")


def count_recipients(filters, phone_field="guardian_phone"):
    _check_phone_field(phone_field)
    students = filter_students(filters)
    with_phone = [s for s in students if normalize_phone(getattr(s, phone_field))]
    return {"total_students": len(students), "with_phone": len(with_phone), "without_phone": len(students) - len(with_phone)}


def send_custom_sms(filters, message, phone_field="guardian_phone", sent_by=None):
    message = (message or "").strip()
    if not message:
        raise ValidationError("message is required")
    _check_phone_field(phone_field)
    cfg = get_sms_config()
    if not cfg.ready:
        return {"success": False, "reason": not_ready_reason(cfg)}

    entries, skipped = [], 0
    for student in filter_students(filters):
        phone = normalize_phone(getattr(student, phone_field))
        if not phone:
            skipped += 1
            continue
        entries.append({
            "student_id": student.student_id,
            "name": student.name,
            "phone": phone,
            "message": render_template(message, {"studentName": student.name, "roll": student.roll}),
        })
    if not entries:
        return {"success": True, "sent": 0, "failed": 0, "total": 0, "skipped": skipped}
    log_ids = _dispatch(entries, "custom_sms", cfg, sent_by=sent_by)
    retry_failed(log_ids, cfg)
    sent, failed = _batch_counts(log_ids)
    logger.info("Custom SMS: %d sent, %d failed, %d skipped", sent, failed, skipped)
    return {"success": True, "sent": sent, "failed": failed, "total": len(entries), "skipped": skipped}


def check_balance():
    cfg = get_sms_config()
    if not cfg.api_key:
        return {"success": False, "reason": "SMS API key is not configured"}
    try:
        response = requests.get(current_app.config["SMS_BALANCE_URL"], params={"api_key": cfg.api_key}, timeout=10)
        data = response.json()
    except requests.RequestException as e:
        logger.error("SMS balance check failed: %s", e)
        return {"success": False, "reason": str(e)}
    except ValueError:
        return {"success": False, "reason": "Provider returned a non-JSON balance response"}
    return {"success": True, "balance": data.get("balance"), "response": data}


def get_sms_stats():
    counts = dict(db.session.execute(
        select(SmsLog.status, func.count(SmsLog.sms_log_id)).group_by(SmsLog.status)
    ).all())
    now = utc_now()
    day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    today = dict(db.session.execute(
        select(SmsLog.status, func.count(SmsLog.sms_log_id))
        .where(SmsLog.created_at >= day_start).group_by(SmsLog.status)
    ).all())
    return {
        "total": sum(counts.values()),
        "sent": counts.get("sent", 0),
        "failed": counts.get("failed", 0),
        "queued": counts.get("queued", 0),
        "today_sent": today.get("sent", 0),
        "today_failed": today.get("failed", 0),
    }


def query_logs(filters, page=1, limit=50):
    query = select(SmsLog)
    if filters.get("status"):
        query = query.filter_by(status=filters["status"])
    if filters.get("type"):
        query = query.filter_by(sms_type=filters["type"])
    if filters.get("test_id"):
        query = query.filter_by(test_id_fk=parse_id(filters["test_id"], "test_id"))
    if filters.get("student_id"):
        query = query.filter_by(student_id_fk=parse_id(filters["student_id"], "student_id"))
    if filters.get("phone"):
        query = query.where(SmsLog.phone.contains(filters["phone"]))
    total = db.session.execute(select(func.count()).select_from(query.subquery())).scalar_one()
    rows = db.session.execute(
        query.order_by(SmsLog.created_at.desc(), SmsLog.sms_log_id.desc()).offset((page - 1) * limit).limit(limit)
    ).scalars().all()
    return rows, total
