"""
Smokey Planning Engine
App factory: extensions, middleware, blueprints, error envelope and CLI.

Usage:
    from smokey import create_app
    app = create_app()           # defaults to APP_ENV or "development"
    app = create_app("testing")
"""

import logging
import os

import click
from flask import Flask, abort, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from werkzeug.exceptions import HTTPException

from smokey.auth import init_auth
from smokey.config import config
from smokey.core.exceptions import SmokeyError
from smokey.middleware.jwt_auth import init_jwt_middleware
from smokey.middleware.logging_config import configure_logging
from smokey.middleware.timing import init_request_timing
from smokey.models import db
from smokey.utils.errors import E, api_error

logger = logging.getLogger(__name__)

# ── SQLite FK enforcement (global engine event) ─────────────────────────
from sqlalchemy import event as _sa_event, engine as _sa_engine
from sqlalchemy.exc import SQLAlchemyError


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
    default_limits=[],
    storage_uri=os.getenv("REDIS_URL", "memory://"),
)


def _register_error_handlers(app):
    @app.errorhandler(SmokeyError)
    def handle_smokey_error(exc):
        db.session.rollback()
        if exc.status_code >= 500:
            logger.error("Engine error on %s %s: %s", request.method, request.path, exc.message)
            return api_error(E.INTERNAL, "Internal server error")
        return api_error(
            exc.code, exc.message,
            status=exc.status_code,
            details=exc.details or None,
            retryable=True if exc.retryable else None,
        )

    @app.errorhandler(HTTPException)
    def handle_http_error(exc):
        # routing, body size, media type and rate limit failures share the envelope
        messages = {
            404: "Not found",
            413: "Request body too large",
            415: "Content-Type must be application/json",
            429: "Too many requests",
        }
        details = {"path": request.path} if exc.code == 404 else None
        if exc.code == 429:
            details = {"limit": exc.description}
        return api_error(
            E.NOT_FOUND if exc.code == 404 else f"ERR_HTTP_{exc.code}",
            messages.get(exc.code, exc.description or exc.name),
            status=exc.code,
            details=details,
            retryable=True if exc.code == 429 else None,
        )

    @app.errorhandler(Exception)
    def unexpected_error(exc):
        logger.exception("Unhandled error on %s %s", request.method, request.path)
        db.session.rollback()
        return api_error(E.INTERNAL, "Internal server error")


def _register_cli(app):
    from smokey.services.container import get_services

    @app.cli.command("smokey-reassess")
    @click.option("--client-id", type=int, default=None, help="Limit to one client.")
    def reassess_cmd(client_id):
        """Reassess every completed plan whose cooldown has passed."""
        results = get_services().reassessment.reassess_due(client_id)
        failed = sum(1 for r in results if r.get("result") == "fail")
        logger.info("Reassessed %d plan(s); %d failed and were followed up", len(results), failed)

    @app.cli.command("smokey-materialize")
    @click.option("--client-id", type=int, default=None, help="Limit to one client.")
    def materialize_cmd(client_id):
        """Create plans for timeline phases whose date has arrived."""
        svc = get_services()
        ids = [client_id] if client_id else [c.id for c in svc.repo.list_clients()]
        total = sum(len(svc.timeline.materialize_due_phases(cid)) for cid in ids)
        logger.info("Materialized %d phase plan(s) across %d client(s)", total, len(ids))

    @app.cli.command("smokey-activate-queued")
    @click.option("--client-id", type=int, default=None, help="Limit to one client.")
    def activate_queued_cmd(client_id):
        """Complete finished plans, then activate queued plans that are now unblocked."""
        svc = get_services()
        ids = [client_id] if client_id else [c.id for c in svc.repo.list_clients()]
        done = sum(len(svc.engine.complete_finished_plans(cid)) for cid in ids)
        total = sum(len(svc.engine.activate_queued_plans(cid)) for cid in ids)
        logger.info("Completed %d and activated %d plan(s) across %d client(s)",
                    done, total, len(ids))

    @app.cli.command("smokey-issue-token")
    @click.argument("operator_id")
    @click.option("--role", "roles", multiple=True, default=("editor",),
                  type=click.Choice(["admin", "editor", "viewer"]), help="Repeatable.")
    def issue_token_cmd(operator_id, roles):
        """Print a signed operator token (for local testing and scripts)."""
        from smokey.services.jwt_service import issue_token
        click.echo(issue_token(operator_id, list(roles)))


def create_app(config_name=None):
    """Build the engine app for ``config_name`` (development / testing / production).

    Without an argument APP_ENV decides, falling back to development.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    settings = config[config_name]
    settings.check()
    app.config.from_object(settings)

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    origins = [o.strip() for o in app.config.get("CORS_ORIGINS", "*").split(",") if o.strip()]
    CORS(app, origins=origins if origins and origins != ["*"] else "*")

    # ── Engine services & capability resolver ────────────────────────────
    from smokey.services import container
    container.init_app(app)

    # ── Request middleware (timing → JWT → API key) ──────────────────────
    init_request_timing(app)
    init_jwt_middleware(app)
    init_auth(app)

    # tool results are the largest bodies we accept
    app.config.setdefault("MAX_CONTENT_LENGTH", 2 * 1024 * 1024)

    @app.before_request
    def _require_json_body():
        if request.method not in ("POST", "PUT", "PATCH") or not request.path.startswith("/api/"):
            return
        if request.data and "json" not in (request.content_type or ""):
            abort(415)

    # ── Import all models so Alembic can detect them ─────────────────────
    from smokey.models import audit as _audit_models        # noqa: F401
    from smokey.models import client as _client_models      # noqa: F401
    from smokey.models import decision as _decision_models  # noqa: F401
    from smokey.models import plan as _plan_models          # noqa: F401
    from smokey.models import timeline as _timeline_models  # noqa: F401

    # ── Schema bootstrap for SQLite/dev; Alembic owns later changes ──────
    with app.app_context():
        try:
            db.create_all()
            app.logger.info("Schema ready on %s", db.engine.url.render_as_string(hide_password=True))
        except SQLAlchemyError as exc:
            app.logger.warning("Schema bootstrap skipped: %s", exc)

    # ── Blueprints ───────────────────────────────────────────────────────
    from smokey.blueprints.clients_bp import clients_bp
    from smokey.blueprints.decisions_bp import decisions_bp
    from smokey.blueprints.plans_bp import plans_bp
    from smokey.blueprints.reassess_bp import reassess_bp
    from smokey.blueprints.timeline_bp import timeline_bp
    from smokey.blueprints.tool_sessions_bp import tool_sessions_bp

    for bp in (clients_bp, decisions_bp, plans_bp, timeline_bp, reassess_bp, tool_sessions_bp):
        if app.config.get("RATELIMIT_ENABLED", True):
            limiter.limit(app.config.get("API_RATE_LIMIT", "300/minute"))(bp)
        app.register_blueprint(bp)

    # ── Health check ─────────────────────────────────────────────────────
    @app.route("/api/v1/health")
    def health():
        return {"status": "ok", "app": "Smokey Planning Engine"}

    _register_error_handlers(app)
    _register_cli(app)

    return app
