"""
EquipTrack: Equipment Accountability & Clearance
Flask Application Factory.

Usage:
    from equiptrack import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

import click
from flask import Flask
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event
from sqlalchemy.exc import SQLAlchemyError

from equiptrack.config import config
from equiptrack.middleware.diagnostics import run_startup_diagnostics
from equiptrack.middleware.logging_config import configure_logging
from equiptrack.middleware.rate_limiter import init_rate_limits
from equiptrack.middleware.timing import init_request_timing
from equiptrack.models import db
from equiptrack.utils.errors import register_error_handlers

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
    default_limits=[],                     # no global limit, apply per-blueprint
    storage_uri=os.getenv("REDIS_URL", "memory://"),  # Redis in production, memory for dev
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
    app.config.from_object(config[config_name])
    if config_name == "production":
        config[config_name]()  # validates required env vars

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
    from equiptrack.models import personnel as _personnel_models        # noqa: F401
    from equiptrack.models import inventory as _inventory_models        # noqa: F401
    from equiptrack.models import inspection as _inspection_models      # noqa: F401
    from equiptrack.models import clearance as _clearance_models        # noqa: F401
    from equiptrack.models import accountability as _accountability_models  # noqa: F401
    from equiptrack.models import audit as _audit_models                # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    with app.app_context():
        if config_name == "development" and "sqlite" in app.config["SQLALCHEMY_DATABASE_URI"]:
            os.makedirs(app.instance_path, exist_ok=True)
        try:
            db.create_all()
            app.logger.info("db.create_all() completed successfully")
        except SQLAlchemyError as e:
            app.logger.warning("db.create_all() failed: %s", e)

    # ── Blueprints ───────────────────────────────────────────────────────
    from equiptrack.blueprints.accountability_bp import accountability_bp
    from equiptrack.blueprints.clearance_bp import clearance_bp
    from equiptrack.blueprints.health_bp import health_bp
    from equiptrack.blueprints.inspection_bp import equipment_status_bp, inspection_bp

    app.register_blueprint(health_bp)
    app.register_blueprint(clearance_bp)
    app.register_blueprint(accountability_bp)
    app.register_blueprint(inspection_bp)
    app.register_blueprint(equipment_status_bp)

    # ── Error handlers ───────────────────────────────────────────────────
    register_error_handlers(app)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("seed-demo")
    def seed_demo_cmd():
        """Seed demo personnel, equipment and one clearance request."""
        from equiptrack.services.demo_seed import seed_demo
        counts = seed_demo()
        logger.info("Seeded demo data: %s", counts)

    @app.cli.command("reconcile-summaries")
    @click.option("--strict", is_flag=True, help="Exit non-zero when drift or duplicates are found.")
    def reconcile_summaries_cmd(strict):
        """Recompute every accountability summary and report drift."""
        from equiptrack.services.accountability_ledger import find_duplicate_unsettled
        from equiptrack.services.accountability_summary import reconcile_all_summaries
        result = reconcile_all_summaries()
        duplicates = find_duplicate_unsettled()
        click.echo(f"checked={result['checked']} drifted={len(result['drifted'])} "
                   f"duplicate_keys={len(duplicates)}")
        if strict and (result["drifted"] or duplicates):
            raise SystemExit(1)

    # ── Startup diagnostics ──────────────────────────────────────────────
    run_startup_diagnostics(app)

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    # ── Change feed (push on commit / interval poll) ─────────────────────
    from equiptrack.services.change_feed import init_change_feed
    init_change_feed(app)

    return app
