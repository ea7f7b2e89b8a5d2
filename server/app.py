import atexit
import logging
import os

from flask import Blueprint, Flask, current_app, jsonify, request
from werkzeug.exceptions import HTTPException

from audit import AuditLog
from config import settings as default_settings
from engine import DeactivationCode, VerificationEngine
from errors import DuplicateKeyError, InfrastructureError, NotFoundError, ValidationError
from ratelimit import FixedWindowRateLimiter, rate_limited
from schemas import (
    isoformat,
    parse_create,
    parse_deactivate_request,
    parse_limit,
    parse_patch,
    parse_verify_request,
    utcnow,
)
from security import require_api_key
from store import LicenseStore

logger = logging.getLogger(__name__)

api = Blueprint("licenses", __name__)


def _store() -> LicenseStore:
    return current_app.extensions["license_store"]


def _engine() -> VerificationEngine:
    return current_app.extensions["license_engine"]


def _audit() -> AuditLog:
    return current_app.extensions["license_audit"]


def _settings():
    return current_app.config["LICENSE_SETTINGS"]


def _body():
    return request.get_json(force=True, silent=True)


# ----------------------------------------------------------------------------
# Unauthenticated
# ----------------------------------------------------------------------------

@api.get("/")
def root():
    return {"ok": True, "msg": "Guild license server running"}


@api.get("/healthz")
def healthz():
    return {"ok": True}


@api.get("/api/health")
def health():
    return {"status": "ok", "timestamp": isoformat(utcnow())}


# ----------------------------------------------------------------------------
# Verification
# ----------------------------------------------------------------------------

@api.post("/api/verify-license")
@rate_limited
@require_api_key
def verify_license():
    try:
        license_key, guild_id, device_id = parse_verify_request(_body())
    except ValidationError as e:
        return jsonify({"valid": False, "error": e.message, "details": e.details}), 400

    verdict = _engine().verify(license_key, guild_id, device_id=device_id, ip_address=request.remote_addr)
    return jsonify(verdict.to_dict())


@api.post("/api/licenses/<license_key>/deactivate")
@rate_limited
@require_api_key
def deactivate_guild(license_key):
    try:
        guild_id = parse_deactivate_request(_body())
    except ValidationError as e:
        return jsonify({"removed": False, "error": e.message, "details": e.details}), 400

    result = _engine().deactivate(license_key, guild_id)
    status = {
        DeactivationCode.REMOVED: 200,
        DeactivationCode.NOT_MEMBER: 400,
        DeactivationCode.NOT_FOUND: 404,
    }[result.code]
    return jsonify(result.to_dict()), status


# ----------------------------------------------------------------------------
# License CRUD
# ----------------------------------------------------------------------------

@api.post("/api/licenses")
@rate_limited
@require_api_key
def create_license():
    record = _store().create(parse_create(_body()))
    return jsonify({"message": "License created successfully", "license": record.to_dict()}), 201


@api.get("/api/licenses")
@rate_limited
@require_api_key
def list_licenses():
    licenses = [record.to_dict() for record in _store().list_all()]
    return jsonify({"licenses": licenses, "count": len(licenses)})


@api.get("/api/licenses/<license_key>")
@rate_limited
@require_api_key
def get_license(license_key):
    record = _store().get(license_key)
    if record is None:
        raise NotFoundError(license_key)
    return jsonify({"license": record.to_dict()})


@api.put("/api/licenses/<license_key>")
@rate_limited
@require_api_key
def update_license(license_key):
    record = _store().update(license_key, parse_patch(_body()))
    if record is None:
        raise NotFoundError(license_key)
    return jsonify({"message": "License updated successfully", "license": record.to_dict()})


@api.delete("/api/licenses/<license_key>")
@rate_limited
@require_api_key
def delete_license(license_key):
    if not _store().delete(license_key):
        raise NotFoundError(license_key)
    return jsonify({"message": "License deleted successfully"})


# ----------------------------------------------------------------------------
# Analytics
# ----------------------------------------------------------------------------

@api.get("/api/analytics/logs")
@rate_limited
@require_api_key
def verification_logs():
    cfg = _settings()
    limit = parse_limit(request.args.get("limit"), cfg.AUDIT_QUERY_DEFAULT, cfg.AUDIT_QUERY_MAX)
    license_key = (request.args.get("license_key") or "").strip() or None
    logs = [entry.to_dict() for entry in _audit().query(license_key, limit)]
    return jsonify({"logs": logs, "count": len(logs)})


# ----------------------------------------------------------------------------
# Error mapping
# ----------------------------------------------------------------------------

def _register_error_handlers(app: Flask) -> None:
    @app.errorhandler(ValidationError)
    def _validation(e):
        return jsonify({"error": e.message, "details": e.details}), 400

    @app.errorhandler(NotFoundError)
    def _not_found(e):
        return jsonify({"error": "License not found"}), 404

    @app.errorhandler(DuplicateKeyError)
    def _duplicate(e):
        return jsonify({"error": "License key already exists"}), 409

    @app.errorhandler(InfrastructureError)
    def _infrastructure(e):
        logger.error("Store failure on %s %s: %s", request.method, request.path, e)
        return jsonify({"valid": False, "error": "License store unavailable"}), 503

    @app.errorhandler(Exception)
    def _unexpected(e):
        if isinstance(e, HTTPException):
            return e
        logger.exception("Unhandled error on %s %s", request.method, request.path)
        return jsonify({"error": "Internal server error"}), 500


def create_app(app_settings=None, store=None, clock=utcnow) -> Flask:
    """
    Build the Flask app around an explicit store handle.

    When no store is passed one is opened from DATABASE_URL and closed at
    interpreter exit; a store passed in stays owned by the caller.
    """
    cfg = app_settings or default_settings
    logging.basicConfig(
        level=cfg.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if not cfg.API_KEY:
        logger.warning("API_KEY is not set; every authenticated request will be refused")

    if store is None:
        store = LicenseStore(cfg.DATABASE_URL, cas_attempts=cfg.STORE_CAS_ATTEMPTS).open()
        atexit.register(store.close)
    audit = AuditLog(store, max_limit=cfg.AUDIT_QUERY_MAX)

    app = Flask(__name__)
    app.config["LICENSE_SETTINGS"] = cfg
    app.extensions["license_store"] = store
    app.extensions["license_audit"] = audit
    app.extensions["license_engine"] = VerificationEngine(store, audit, clock=clock)
    app.extensions["license_rate_limiter"] = FixedWindowRateLimiter(
        cfg.RATE_LIMIT_PER_MINUTE, cfg.RATE_LIMIT_WINDOW_SECONDS
    )
    app.register_blueprint(api)
    _register_error_handlers(app)
    return app


if __name__ == "__main__":
    create_app().run(host="0.0.0.0", port=int(os.environ.get("PORT", "5000")))
