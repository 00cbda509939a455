"""Site-wide settings service.

Settings live in the ``global_settings`` table as one JSON document per group
(``site_info`` and ``sms_settings``). The rest of the application never reads
that table directly: it asks :func:`get_settings` for an immutable
:class:`SiteSettings` snapshot. The snapshot is built once at startup by
:func:`init_settings` (called from ``create_app``) and replaced wholesale by
:func:`reload_settings` / :func:`update_settings`.
"""
import logging
import threading
from dataclasses import dataclass, fields, replace

from . import db
from .models import GlobalSetting

logger = logging.getLogger(__name__)

DEFAULT_RESULT_SMS_TEMPLATE = (
    "Dear {studentName}, Your {testName} result: {score}/{total}. "
    "Highest Score: {highest}. Visit {website} for details. - PARAGON"
)
DEFAULT_NOTICE_SMS_TEMPLATE = "Notice: {title} - {message}. Login to portal for details."


@dataclass(frozen=True)
class SiteInfo:
    name: str = "PARAGON Coaching Center"
    short_name: str = "PARAGON"
    description: str = "Coaching center student portal"
    logo_url: str = "/icons/icon-192x192.png"
    theme_color: str = "#667eea"
    background_color: str = "#ffffff"
    website_url: str = "https://paragon.example.com"


@dataclass(frozen=True)
class SmsSettings:
    enabled: bool = False
    api_key: str = ""
    sender_id: str = ""
    result_sms_template: str = DEFAULT_RESULT_SMS_TEMPLATE
    notice_sms_template: str = DEFAULT_NOTICE_SMS_TEMPLATE


@dataclass(frozen=True)
class SiteSettings:
    site_info: SiteInfo
    sms: SmsSettings

    def to_dict(self, include_secrets=False):
        sms = {f.name: getattr(self.sms, f.name) for f in fields(SmsSettings)}
        if not include_secrets:
            sms["api_key"] = "****" if self.sms.api_key else ""
        return {
            "site_info": {f.name: getattr(self.site_info, f.name) for f in fields(SiteInfo)},
            "sms_settings": sms,
        }


_GROUPS = {"site_info": SiteInfo, "sms_settings": SmsSettings}

_lock = threading.Lock()
_snapshot = None


def _coerce(group_cls, values):
    known = {f.name: f for f in fields(group_cls)}
    clean = {}
    for key, value in (values or {}).items():
        if key not in known:
            continue
        if known[key].type in (bool, "bool"):
            if isinstance(value, str):
                value = value.strip().lower() in ("1", "true", "yes", "on")
            else:
                value = bool(value)
        elif value is None:
            value = ""
        else:
            value = str(value)
        clean[key] = value
    return replace(group_cls(), **clean)


def _load_from_db():
    rows = {row.setting_key: row.setting_value for row in db.session.execute(db.select(GlobalSetting)).scalars()}
    return SiteSettings(
        site_info=_coerce(SiteInfo, rows.get("site_info")),
        sms=_coerce(SmsSettings, rows.get("sms_settings")),
    )


def init_settings():
    """Create missing settings rows with defaults and load the snapshot."""
    global _snapshot
    created = []
    for key, group_cls in _GROUPS.items():
        if db.session.get(GlobalSetting, key) is None:
            defaults = {f.name: getattr(group_cls(), f.name) for f in fields(group_cls)}
            db.session.add(GlobalSetting(setting_key=key, setting_value=defaults))
            created.append(key)
    if created:
        db.session.commit()
        logger.info("Initialised default settings groups: %s", ", ".join(created))
    with _lock:
        _snapshot = _load_from_db()
    return _snapshot


def get_settings() -> SiteSettings:
    global _snapshot
    if _snapshot is None:
        with _lock:
            if _snapshot is None:
                _snapshot = _load_from_db()
    return _snapshot


def reload_settings() -> SiteSettings:
    global _snapshot
    with _lock:
        _snapshot = _load_from_db()
    return _snapshot


def update_settings(group: str, values: dict) -> SiteSettings:
    """Merge ``values`` into a settings group, persist it and swap the snapshot."""
    from .errors import ValidationError

    if group not in _GROUPS:
        raise ValidationError(f"Unknown settings group: {group}")
    row = db.session.get(GlobalSetting, group)
    current = dict(row.setting_value or {}) if row else {}
    merged = _coerce(_GROUPS[group], {**current, **(values or {})})
    payload = {f.name: getattr(merged, f.name) for f in fields(_GROUPS[group])}
    if row is None:
        db.session.add(GlobalSetting(setting_key=group, setting_value=payload))
    else:
        row.setting_value = payload
    db.session.commit()
    logger.info("Settings group %s updated (%s)", group, ", ".join(sorted((values or {}).keys())))
    return reload_settings()
