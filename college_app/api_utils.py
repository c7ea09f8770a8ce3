from flask import jsonify


def api_success(data=None, meta=None, status=200):
    body = {"success": True, "data": data if data is not None else {}, "meta": meta or {}}
    return jsonify(body), status


def api_error(code="error", message="", status=400, details=None):
    """JSON error envelope. `details` carries per-item messages (e.g. upload problems)."""
    error = {"code": code, "message": message}
    if details:
        error["details"] = list(details)
    return jsonify({"success": False, "error": error}), status
