"""
Signflow: document versioning and signing workflow engine.
Flask Application Factory.

Usage:
    from signflow import create_app
    app = create_app()           # defaults to APP_ENV or "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

from flask import Flask, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event

from signflow.config import config
from signflow.integrations.blob_store import init_blob_store
from signflow.middleware.logging_config import configure_logging
from signflow.middleware.rate_limiter import init_rate_limits
from signflow.middleware.timing import init_request_timing
from signflow.models import db
from signflow.services.document_repository import init_repository
from signflow.services.email_service import init_notifications

logger = logging.getLogger(__name__)


# ── SQLite FK enforcement (global engine event) ─────────────────────────
@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config[config_name]())
    os.makedirs(app.instance_path, exist_ok=True)

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    limiter = Limiter(
        key_func=get_remote_address,
        app=app,
        default_limits=[],                     # no global limit: apply per-blueprint
        storage_uri=app.config.get("RATELIMIT_STORAGE_URI", "memory://"),
    )
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Request timing middleware ────────────────────────────────────────
    init_request_timing(app)

    # ── Collaborators ────────────────────────────────────────────────────
    init_blob_store(app)
    init_notifications(app)
    init_repository(app)

    # ── Import all models so Alembic can detect them ─────────────────────
    from signflow.models import audit as _audit_models                # noqa: F401
    from signflow.models import document as _document_models          # noqa: F401
    from signflow.models import notification as _notification_models  # noqa: F401
    from signflow.models import signed_field as _signed_field_models  # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    with app.app_context():
        db.create_all()

    # ── Blueprints ───────────────────────────────────────────────────────
    from signflow.blueprints.document_bp import documents_bp
    from signflow.blueprints.health_bp import health_bp
    from signflow.blueprints.signing_bp import signing_bp

    app.register_blueprint(documents_bp)
    app.register_blueprint(signing_bp)
    app.register_blueprint(health_bp)

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        return {"error": "Not found", "code": "ERR_NOT_FOUND", "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed", "code": "ERR_VALIDATION"}, 405

    @app.errorhandler(413)
    def too_large(e):
        return {"error": "Upload is too large", "code": "ERR_VALIDATION"}, 413

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return {"error": "Internal server error", "code": "ERR_INTERNAL"}, 500

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    return app
