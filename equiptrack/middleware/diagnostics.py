"""
Startup diagnostics. Runs once when the Flask app starts.

Checks critical dependencies and logs a summary banner.
"""

import logging
import sys

import redis
from flask import Flask
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.exc import SQLAlchemyError

from equiptrack.models import db

logger = logging.getLogger(__name__)

REQUIRED_TABLES = (
    "personnel",
    "inventory",
    "inspections",
    "clearance_requests",
    "clearance_inventory",
    "accountability_records",
    "personnel_accountability_summaries",
    "audit_logs",
)


def run_startup_diagnostics(app: Flask):
    """Run diagnostic checks during app startup (inside app context)."""
    if app.config.get("TESTING"):
        return  # skip during tests for speed

    issues: list[str] = []

    with app.app_context():
        # ── Python version ───────────────────────────────────────────
        py = f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}"

        # ── Database connectivity ────────────────────────────────────
        db_status = "ok"
        db_uri = str(app.config.get("SQLALCHEMY_DATABASE_URI", ""))
        db_type = "PostgreSQL" if "postgresql" in db_uri else "SQLite" if "sqlite" in db_uri else "unknown"
        try:
            db.session.execute(db.text("SELECT 1"))
        except SQLAlchemyError as exc:
            db_status = "FAILED"
            issues.append(f"Database unreachable: {exc}")

        # ── Tables ───────────────────────────────────────────────────
        try:
            tables = set(sa_inspect(db.engine).get_table_names())
            table_count = len(tables)
            missing = [t for t in REQUIRED_TABLES if t not in tables]
            if missing:
                issues.append(f"Missing tables {missing} — run 'flask db upgrade'")
        except SQLAlchemyError:
            table_count = "?"

        # ── Redis ────────────────────────────────────────────────────
        redis_url = app.config.get("REDIS_URL") or ""
        redis_status = "not configured (memory cache)"
        if redis_url.startswith(("redis://", "rediss://")):
            try:
                redis.from_url(redis_url, socket_timeout=2).ping()
                redis_status = "ok"
            except redis.RedisError:
                redis_status = "unreachable"
                issues.append("Redis unreachable — rate limiter and clearance status cache use memory")

        feed_mode = app.config.get("CHANGE_FEED_MODE", "push")
        if feed_mode == "poll":
            feed_mode = f"poll ({app.config.get('CHANGE_FEED_POLL_INTERVAL', 30)}s)"
        dup_policy = app.config.get("ACCOUNTABILITY_DUPLICATE_POLICY", "reuse")

        # ── Banner ───────────────────────────────────────────────────
        banner = f"""
╔══════════════════════════════════════════════════════════════╗
║  EquipTrack — Startup Diagnostics                            ║
╠══════════════════════════════════════════════════════════════╣
║  Python      : {py:<46s}║
║  Environment : {app.config.get('ENV', 'development'):<46s}║
║  Debug       : {str(app.debug):<46s}║
║  Database    : {db_type + ' (' + db_status + ')':<46s}║
║  Tables      : {str(table_count):<46s}║
║  Redis       : {redis_status:<46s}║
║  Change feed : {feed_mode:<46s}║
║  Duplicates  : {dup_policy:<46s}║
╚══════════════════════════════════════════════════════════════╝"""
        logger.info(banner)

        if issues:
            logger.warning("Startup issues detected:")
            for issue in issues:
                logger.warning("  ⚠ %s", issue)
        else:
            logger.info("✅ All startup checks passed")
