from dotenv import load_dotenv
load_dotenv()

import os
import time
from datetime import timedelta

from flask import Flask, jsonify, request, session as flask_session
from flask_cors import CORS
from werkzeug.exceptions import HTTPException, RequestEntityTooLarge
from werkzeug.middleware.proxy_fix import ProxyFix

from cache import cache_from_env
from extensions import db, limiter
from log import get_logger
from merkle_trees import MerkleTreeRepository

logger = get_logger(__name__)

DEFAULT_UPLOAD_MAX_BYTES = 50 * 1024 * 1024


def _is_production() -> bool:
    return bool(os.getenv("RENDER") or os.getenv("FLASK_ENV") == "production")


def _database_url() -> str:
    db_url = os.getenv("DATABASE_URL")
    if not db_url:
        if os.getenv("RENDER") == "true":
            raise RuntimeError("DATABASE_URL missing on Render; refusing to use SQLite.")
        db_url = "sqlite:///airdrop.db"
    if db_url.startswith("postgres://"):
        db_url = db_url.replace("postgres://", "postgresql://", 1)
    return db_url


def _session_has_auth() -> bool:
    # Admin sections use per-dashboard flags like admin_merkle.
    for k, v in list(flask_session.items()):
        if k.startswith("admin_") and v:
            return True
    return False


def create_app(config: dict | None = None) -> Flask:
    app = Flask(__name__)

    # --- SECRET_KEY for admin sessions ---
    secret_key = os.getenv("SECRET_KEY") or os.getenv("FLASK_SECRET_KEY")
    if not secret_key:
        # Safe dev fallback. Set SECRET_KEY in production.
        secret_key = "dev-secret-key-change-me"
    if _is_production() and secret_key.startswith("dev-secret-key-change"):
        raise RuntimeError("SECRET_KEY must be set to a strong random value in production (Render/FLASK_ENV=production).")
    app.config["SECRET_KEY"] = secret_key

    # --- Session & cookie hardening ---
    app.config["SESSION_COOKIE_HTTPONLY"] = True
    app.config["SESSION_COOKIE_SAMESITE"] = os.getenv("SESSION_COOKIE_SAMESITE", "Lax")
    if _is_production():
        app.config["SESSION_COOKIE_SECURE"] = True
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=int(os.getenv("SESSION_LIFETIME_HOURS", "1")))
    app.config["SESSION_IDLE_TIMEOUT_MINUTES"] = int(os.getenv("SESSION_IDLE_TIMEOUT_MINUTES", "15"))

    db_url = _database_url()
    app.config["SQLALCHEMY_DATABASE_URI"] = db_url
    if not db_url.startswith("sqlite"):
        app.config["SQLALCHEMY_ENGINE_OPTIONS"] = {
            "pool_recycle": 300,
            "pool_pre_ping": True,
        }

    # Rate limiting
    # - In production, set RATE_LIMIT_STORAGE_URL to a Redis URL for multi-instance correctness.
    # - Defaults to in-memory storage for simplicity.
    app.config["RATELIMIT_STORAGE_URI"] = os.getenv("RATE_LIMIT_STORAGE_URL", "memory://")
    app.config["RATELIMIT_DEFAULT"] = "200 per day;50 per hour"

    # Allocation uploads are read into memory; cap the request body.
    app.config["MAX_CONTENT_LENGTH"] = int(os.getenv("MERKLE_UPLOAD_MAX_BYTES", str(DEFAULT_UPLOAD_MAX_BYTES)))

    if config:
        app.config.update(config)

    # Render (and most PaaS) runs behind a reverse proxy; trust a single hop.
    if _is_production():
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)

    db.init_app(app)
    CORS(app)
    limiter.init_app(app)

    cache = app.config.get("MERKLE_CACHE")
    if cache is None:
        cache = cache_from_env()
    app.extensions["merkle_trees"] = MerkleTreeRepository(cache=cache)

    from admin_merkle import admin_merkle
    from claims import claims_api

    app.register_blueprint(admin_merkle)
    app.register_blueprint(claims_api)

    @app.before_request
    def _enforce_session_idle_timeout():
        if not _session_has_auth():
            return
        flask_session.permanent = True
        idle_minutes = int(app.config.get("SESSION_IDLE_TIMEOUT_MINUTES", 15))
        now_ts = int(time.time())
        last_seen = flask_session.get("_last_seen_ts")
        if isinstance(last_seen, int) and idle_minutes > 0 and now_ts - last_seen > idle_minutes * 60:
            # Idle timeout: clear all session state.
            flask_session.clear()
            return
        flask_session["_last_seen_ts"] = now_ts

    @app.after_request
    def add_api_headers(resp):
        # Avoid caching dynamic responses (eligibility is wallet-specific).
        resp.headers.setdefault("Cache-Control", "no-store")
        resp.headers.setdefault("X-Content-Type-Options", "nosniff")
        return resp

    @app.errorhandler(RequestEntityTooLarge)
    def handle_too_large(e):
        limit = app.config.get("MAX_CONTENT_LENGTH") or DEFAULT_UPLOAD_MAX_BYTES
        if limit >= 1024 * 1024:
            size = f"{limit // (1024 * 1024)}MB"
        else:
            size = f"{limit} bytes"
        return jsonify({"success": False, "error": f"File too large. Maximum size is {size}"}), 413

    @app.errorhandler(Exception)
    def handle_unexpected_error(e):
        if isinstance(e, HTTPException):
            return jsonify({"success": False, "error": e.description}), e.code
        # Never return an HTML 500 on API routes (breaks frontend JSON parsing).
        db.session.rollback()
        logger.exception("unhandled_request_error", path=request.path, method=request.method)
        return jsonify({"success": False, "error": "Internal server error"}), 500

    @app.get("/healthz")
    def healthz():
        active = app.extensions["merkle_trees"].get_active_summary()
        return jsonify({"ok": True, "activeTree": active["id"] if active else None})

    # Models are registered via merkle_trees -> models_merkle.
    with app.app_context():
        db.create_all()

    return app


app = create_app()


if __name__ == "__main__":
    port = int(os.getenv("PORT", 5000))
    debug = os.getenv("FLASK_ENV", "development") == "development"
    logger.info("server_starting", port=port, debug=debug)
    app.run(debug=debug, port=port)
