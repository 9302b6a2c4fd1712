"""
ITP Tracker
Flask Application Factory.

Usage:
    from itp_tracker import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

from flask import Flask, jsonify, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import engine as _sa_engine, event as _sa_event
from werkzeug.exceptions import HTTPException

from itp_tracker.config import config
from itp_tracker.core.exceptions import (
    ConflictError,
    NcrCreationError,
    NotFoundError,
    StateTransitionError,
    ValidationError,
)
from itp_tracker.middleware.logging_config import configure_logging
from itp_tracker.middleware.permission_required import init_user_context
from itp_tracker.middleware.rate_limiter import init_rate_limits
from itp_tracker.middleware.timing import init_request_timing
from itp_tracker.models import db
from itp_tracker.utils.errors import E, api_error

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
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],                     # no global limit — apply per-blueprint
)


def _register_error_handlers(app):
    """One JSON error shape for every blueprint."""

    @app.errorhandler(NotFoundError)
    def _not_found(error):
        return api_error(E.NOT_FOUND, str(error))

    @app.errorhandler(ValidationError)
    def _validation(error):
        return api_error(E.VALIDATION_INVALID, str(error), details=error.details)

    @app.errorhandler(ConflictError)
    def _conflict(error):
        return api_error(E.CONFLICT_DUPLICATE, str(error),
                         details={"resource": error.resource, "field": error.field})

    @app.errorhandler(StateTransitionError)
    def _transition(error):
        return api_error(E.CONFLICT_STATE, str(error),
                         details={"from": error.from_state, "to": error.to_state})

    @app.errorhandler(NcrCreationError)
    def _ncr_failed(error):
        return api_error(E.NCR_CREATION_FAILED, str(error),
                         details={"checklist_item_id": error.checklist_item_id})

    @app.errorhandler(HTTPException)
    def _http(error):
        if error.code == 429:
            return jsonify({"error": "Too many requests", "retry_after": error.description}), 429
        return jsonify({"error": error.name, "detail": error.description}), error.code

    @app.errorhandler(Exception)
    def _unexpected(error):
        logger.exception("Unexpected error endpoint=%s", request.endpoint)
        return api_error(E.INTERNAL, "Internal server error")


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
    app.config.from_object(config[config_name])

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Request timing & field user context ─────────────────────────────
    init_request_timing(app)
    init_user_context(app)

    # ── Content-Type guard for mutating API calls ────────────────────────
    @app.before_request
    def _guard_request():
        if request.method in ("POST", "PUT", "PATCH") and request.path.startswith("/api/"):
            ct = request.content_type or ""
            if request.data and "json" not in ct:
                return api_error(E.VALIDATION_INVALID, "Content-Type must be application/json",
                                 status=415)
        return None

    # ── Import all models so Alembic can detect them ─────────────────────
    from itp_tracker.models import itp as _itp_models                  # noqa: F401
    from itp_tracker.models import ncr as _ncr_models                  # noqa: F401
    from itp_tracker.models import notification as _notification_models  # noqa: F401
    from itp_tracker.models import project as _project_models          # noqa: F401
    from itp_tracker.models import test_result as _test_result_models  # noqa: F401

    # ── Auto-create tables in development (migrations own production) ───
    if config_name == "development":
        with app.app_context():
            os.makedirs(app.instance_path, exist_ok=True)
            db.create_all()
            app.logger.info("db.create_all() completed successfully")

    # ── Blueprints ───────────────────────────────────────────────────────
    from itp_tracker.blueprints.health_bp import health_bp
    from itp_tracker.blueprints.itp_bp import itp_bp
    from itp_tracker.blueprints.ncr_bp import ncr_bp
    from itp_tracker.blueprints.project_bp import project_bp

    app.register_blueprint(health_bp)
    app.register_blueprint(project_bp)
    app.register_blueprint(itp_bp)
    app.register_blueprint(ncr_bp)

    _register_error_handlers(app)

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    return app
