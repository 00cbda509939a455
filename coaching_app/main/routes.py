from flask import Blueprint, current_app
from flask_login import login_required, current_user
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from .. import db, cache
from ..api_utils import api_success, api_error, get_json_body
from ..audit import log_action
from ..decorators import role_required
from ..models import utc_now
from ..settings import get_settings, update_settings

main_bp = Blueprint("main", __name__)

MANIFEST_CACHE_KEY = "pwa_manifest"
MASKED_SECRET = "****"

STATIC_MANIFEST = {
    "name": "Coaching Center",
    "short_name": "Coaching",
    "description": "Coaching center student portal",
    "start_url": "/",
    "display": "standalone",
    "orientation": "portrait",
    "theme_color": "#667eea",
    "background_color": "#ffffff",
    "icons": [
        {"src": "/icons/icon-192x192.png", "sizes": "192x192", "type": "image/png"},
        {"src": "/icons/icon-512x512.png", "sizes": "512x512", "type": "image/png"},
    ],
}


def build_manifest(site):
    logo = site.logo_url or "/icons/icon-192x192.png"
    return {
        **STATIC_MANIFEST,
        "name": site.name,
        "short_name": site.short_name,
        "description": site.description,
        "theme_color": site.theme_color,
        "background_color": site.background_color,
        "icons": [
            {"src": logo, "sizes": "192x192", "type": "image/png", "purpose": "any maskable"},
            {"src": "/icons/icon-512x512.png", "sizes": "512x512", "type": "image/png"},
        ],
    }


@main_bp.route("/")
def index():
    site = get_settings().site_info
    return api_success({"name": site.name, "status": "running"})


@main_bp.route("/health")
def health():
    try:
        db.session.execute(text("SELECT 1"))
        database = "ok"
    except SQLAlchemyError as e:
        current_app.logger.error("Health check database error: %s", e)
        database = "error"
    if database != "ok":
        return api_error("unhealthy", "Database unavailable", 503)
    return api_success({"status": "ok", "database": database, "timestamp": utc_now().isoformat()})


@main_bp.route("/manifest.json")
def manifest():
    cached = cache.get(MANIFEST_CACHE_KEY)
    if cached is not None:
        return cached
    try:
        body = build_manifest(get_settings().site_info)
    except Exception as e:
        # settings table may be unreachable; keep the PWA installable anyway
        current_app.logger.warning("Serving static manifest: %s", e)
        return STATIC_MANIFEST
    cache.set(MANIFEST_CACHE_KEY, body, timeout=3600)
    return body


# ==========================================
# SETTINGS
# ==========================================

@main_bp.route("/api/settings", methods=["GET"])
@login_required
@role_required("admin")
def settings_get():
    return api_success(get_settings().to_dict())


@main_bp.route("/api/settings", methods=["PUT"])
@login_required
@role_required("admin")
def settings_update():
    body = get_json_body()
    groups = {k: v for k, v in body.items() if k in ("site_info", "sms_settings")}
    if not groups:
        return api_error("validation_error", "Provide site_info and/or sms_settings", 400)
    for group, values in groups.items():
        if not isinstance(values, dict):
            return api_error("validation_error", f"{group} must be an object", 400)
    for group, values in groups.items():
        values = dict(values)
        if values.get("api_key") == MASKED_SECRET:
            values.pop("api_key")
        update_settings(group, values)
    cache.delete(MANIFEST_CACHE_KEY)
    log_action("settings_updated", "settings", None, {
        group: sorted(k for k in values if k != "api_key") for group, values in groups.items()
    })
    current_app.logger.info("Settings updated by %s", current_user.username)
    return api_success(get_settings().to_dict(), message="Settings updated")
