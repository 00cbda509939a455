from flask import jsonify, request


def api_success(data=None, meta=None, status=200, message=""):
    body = {"success": True, "message": message, "data": data if data is not None else {}, "meta": meta or {}}
    return jsonify(body), status


def api_error(code="error", message="", status=400, reason=None, extra=None):
    body = {"success": False, "message": message, "error": {"code": code, "message": message}}
    if reason:
        body["reason"] = reason
    if extra:
        body.update(extra)
    return jsonify(body), status


def get_json_body():
    """Request JSON as a dict; an empty or non-object body becomes ``{}``."""
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


def pagination_args(default_limit=50, max_limit=200):
    try:
        page = max(1, int(request.args.get("page", "1")))
    except ValueError:
        page = 1
    try:
        limit = min(max_limit, max(1, int(request.args.get("limit", str(default_limit)))))
    except ValueError:
        limit = default_limit
    return page, limit


def page_meta(page, limit, total):
    return {"page": page, "limit": limit, "total": total, "pages": (total + limit - 1) // limit if limit else 0}
