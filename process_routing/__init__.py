"""
MES Process Routing
Flask Application Factory.

Usage:
    from process_routing import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

import click
from flask import Flask, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import event as _sa_event, engine as _sa_engine

from process_routing.config import config
from process_routing.models import db
from process_routing.middleware.logging_config import configure_logging
from process_routing.middleware.rate_limiter import init_rate_limits
from process_routing.middleware.timing import init_request_timing

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
    default_limits=[],                     # no global limit, applied per-blueprint
)

# Demo routing loaded by `flask seed-process-templates`
DEMO_TEMPLATE = {
    "code": "MELT-CAST",
    "name": "Melt-Cast",
    "description": "Aluminium billet: melt, treat, cast, inspect and pack",
    "product_sku": "AL-BILLET-6063",
    "version": "1.0",
}
DEMO_STEPS = (
    {"operation_name": "Melt", "operation_type": "PRODUCTION", "operation_code": "MELT",
     "estimated_duration_minutes": 240, "target_qty": 20000},
    {"operation_name": "Degas & Filter", "operation_type": "PRODUCTION", "operation_code": "DEGAS",
     "estimated_duration_minutes": 30, "produces_output_batch": False},
    {"operation_name": "Chemistry Check", "operation_type": "QUALITY_CHECK", "operation_code": "SPECTRO",
     "estimated_duration_minutes": 15, "produces_output_batch": False},
    {"operation_name": "Cast", "operation_type": "PRODUCTION", "operation_code": "DC-CAST",
     "estimated_duration_minutes": 180, "allows_split": True},
    {"operation_name": "Ultrasonic Inspection", "operation_type": "INSPECTION", "operation_code": "UT",
     "estimated_duration_minutes": 60, "produces_output_batch": False},
    {"operation_name": "Saw & Pack", "operation_type": "PACKAGING", "operation_code": "PACK",
     "estimated_duration_minutes": 90, "allows_merge": True},
)


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
    # Instantiated so ProductionConfig can refuse to start without DATABASE_URL / SECRET_KEY
    app.config.from_object(config[config_name]())

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

    # ── Request timing middleware ────────────────────────────────────────
    init_request_timing(app)

    # ── Import all models so Alembic can detect them ─────────────────────
    from process_routing.models import process_template as _process_template_models  # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    db_uri = app.config["SQLALCHEMY_DATABASE_URI"]
    if db_uri.startswith("sqlite:///") and ":memory:" not in db_uri:
        os.makedirs(os.path.dirname(db_uri[len("sqlite:///"):]), exist_ok=True)
    with app.app_context():
        db.create_all()
        app.logger.debug("db.create_all() completed successfully")

    # ── Blueprints ───────────────────────────────────────────────────────
    from process_routing.blueprints.health_bp import health_bp
    from process_routing.blueprints.process_template_bp import process_templates_bp

    app.register_blueprint(health_bp)
    app.register_blueprint(process_templates_bp)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("seed-process-templates")
    @click.option("--activate/--no-activate", default=True, help="Activate the demo routing after creating it.")
    def seed_process_templates_cmd(activate):
        """Load the demo "Melt-Cast" routing (skipped if its code already exists)."""
        seed_demo_template(activate=activate)

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        return {"error": "Not found", "code": "ERR_NOT_FOUND", "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

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


def seed_demo_template(activate=True):
    """Create (and optionally activate) the demo Melt-Cast routing.

    Returns the serialized template, or None when it already exists.
    """
    from process_routing.core.exceptions import NotFoundError
    from process_routing.services import process_template_service as pts
    from process_routing.services.routing_sequence import RoutingEditSession
    from process_routing.services.template_activation_service import activate_template

    try:
        pts.get_template_by_code(DEMO_TEMPLATE["code"])
    except NotFoundError:
        pass
    else:
        logger.info("Demo template %s already present; nothing seeded.", DEMO_TEMPLATE["code"])
        return None

    session = RoutingEditSession()
    for step in DEMO_STEPS:
        session.append(step)
    template = pts.create_template(
        {**DEMO_TEMPLATE, "steps": list(session.snapshot())}, created_by="seed",
    )
    if activate:
        template = activate_template(template["id"], deactivate_others=True, activated_by="seed")
    logger.info(
        "Seeded demo template id=%s code=%s steps=%d status=%s",
        template["id"], template["code"], len(template["steps"]), template["status"],
    )
    return template
