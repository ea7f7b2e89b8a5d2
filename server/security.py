import hmac
from functools import wraps
from typing import Optional

from flask import current_app, jsonify, request


def extract_api_key(headers) -> Optional[str]:
    key = (headers.get("X-API-Key") or "").strip()
    if key:
        return key
    auth = (headers.get("Authorization") or "").strip()
    if auth[:7].lower() == "bearer ":
        return auth[7:].strip() or None
    return None


def api_key_matches(presented: str, expected: str) -> bool:
    if not (presented and expected):
        return False
    return hmac.compare_digest(presented.encode(), expected.encode())


def require_api_key(view):
    @wraps(view)
    def wrapper(*args, **kwargs):
        presented = extract_api_key(request.headers)
        if not presented:
            return jsonify({
                "valid": False,
                "error": "Missing API key. Provide via X-API-Key header or Authorization Bearer token",
            }), 401
        if not api_key_matches(presented, current_app.config["LICENSE_SETTINGS"].API_KEY):
            return jsonify({"valid": False, "error": "Invalid API key"}), 403
        return view(*args, **kwargs)
    return wrapper
