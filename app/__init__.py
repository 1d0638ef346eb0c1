"""
Protocol Review Workflow Engine.

    from app import create_app
    app = create_app()            # APP_ENV or "development"
    app = create_app("testing")

The factory wires config, logging, extensions and request middleware, then
registers the protocol and health blueprints, the legacy-import CLI command
and JSON error handlers.
"""

import logging
import os

import click
from flask import Flask, abort, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import engine as _sa_engine, event as _sa_event
from sqlalchemy.exc import SQLAlchemyError

from app.config import config
from app.middleware.logging_config import configure_logging
from app.middleware.rate_limiter import init_rate_limits
from app.middleware.timing import init_request_timing
from app.models import db

logger = logging.getLogger(__name__)

migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],  # limits are attached per blueprint
    storage_uri=os.getenv("RATELIMIT_STORAGE_URI", "memory://"),
)


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """SQLite ignores FOREIGN KEY clauses unless asked per connection."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def create_app(config_name=None):
    """
    Build the Flask application.

    Args:
        config_name: "development", "testing" or "production".
                     Falls back to APP_ENV, then "development".
    """
    config_name = config_name or os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config[config_name]())
    app.config["ENV_NAME"] = config_name

    configure_logging(app)

    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    origins = app.config.get("CORS_ORIGINS", "*")
    if origins and origins != "*":
        CORS(app, origins=[o.strip() for o in origins.split(",") if o.strip()])
    else:
        CORS(app)

    init_request_timing(app)
    _register_request_guards(app)
    _create_tables(app)

    from app.blueprints.health_bp import health_bp
    from app.blueprints.protocol_bp import protocol_bp

    app.register_blueprint(health_bp)
    app.register_blueprint(protocol_bp)

    _register_cli(app)
    _register_error_handlers(app)

    # Needs the registered blueprints
    init_rate_limits(app, limiter)

    return app


def _register_request_guards(app):
    @app.before_request
    def _guard_request():
        max_len = app.config.get("MAX_CONTENT_LENGTH")
        if max_len and request.content_length and request.content_length > max_len:
            abort(413, description="Request body too large")
        if request.method in ("POST", "PUT", "PATCH") and request.path.startswith("/api/"):
            if request.data and "json" not in (request.content_type or ""):
                abort(415, description="Content-Type must be application/json")


def _create_tables(app):
    """CREATE IF NOT EXISTS for the workflow tables; migrations remain the source of truth."""
    from app.models import protocol as _protocol_models  # noqa: F401

    if not app.config.get("TESTING"):
        os.makedirs(app.instance_path, exist_ok=True)
    with app.app_context():
        try:
            db.create_all()
        except SQLAlchemyError as exc:
            app.logger.warning("db.create_all() failed: %s", exc)


def _register_cli(app):
    @app.cli.command("import-legacy-comments")
    @click.option("--application-id", type=int, default=None,
                  help="Only import the blobs of this protocol application.")
    def import_legacy_comments_cmd(application_id):
        """Copy legacy review-comment / PI-response blobs into review_events."""
        from app.services.legacy_comments import import_legacy_comments

        stats = import_legacy_comments(application_id)
        click.echo(
            f"Imported {stats['imported']} event(s) from {stats['applications']} protocol(s); "
            f"skipped {stats['skipped_existing']} existing, "
            f"{stats['skipped_unmappable']} unmappable, {stats['skipped_invalid']} invalid."
        )


def _register_error_handlers(app):
    """JSON bodies for errors raised outside the protocol blueprint's own handlers."""

    @app.errorhandler(404)
    def not_found(e):
        return {"error": "Not found", "code": "ERR_NOT_FOUND", "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed", "code": "ERR_METHOD_NOT_ALLOWED"}, 405

    @app.errorhandler(413)
    def payload_too_large(e):
        return {"error": e.description, "code": "ERR_PAYLOAD_TOO_LARGE"}, 413

    @app.errorhandler(415)
    def unsupported_media_type(e):
        return {"error": e.description, "code": "ERR_UNSUPPORTED_MEDIA_TYPE"}, 415

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "code": "ERR_RATE_LIMITED", "retry_after": e.description}, 429

    @app.errorhandler(500)
    def server_error(e):
        logger.error("Unhandled server error: %s", e, exc_info=True)
        return {"error": "Internal server error", "code": "ERR_INTERNAL"}, 500
