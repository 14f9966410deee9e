import logging
import os

from flask import Flask, jsonify
from sqlalchemy import text

from escrowcourt.config import Config, _normalize_database_url, engine_options
from escrowcourt.extensions import db, migrate
from escrowcourt.utils.clock import utc_now


def create_app(config_overrides: dict | None = None, *, clock=utc_now):
    app = Flask(__name__)

    env = (os.getenv("ESCROWCOURT_ENV", "dev") or "dev").strip().lower()

    # Production safety checks
    if env in ("prod", "production"):
        secret = (os.getenv("SECRET_KEY") or "").strip()
        if not secret or len(secret) < 16:
            raise RuntimeError("SECRET_KEY must be set and at least 16 chars in production")
        if not (os.getenv("DATABASE_URL") or "").strip() and not (os.getenv("SQLALCHEMY_DATABASE_URI") or "").strip():
            raise RuntimeError("DATABASE_URL (or SQLALCHEMY_DATABASE_URI) must be set in production")

    app.config.from_object(Config)
    if os.getenv("SQLALCHEMY_DATABASE_URI"):
        app.config["SQLALCHEMY_DATABASE_URI"] = _normalize_database_url(os.environ["SQLALCHEMY_DATABASE_URI"])
    app.config.update(config_overrides or {})

    # Ensure instance dir exists for SQLite paths
    os.makedirs(app.config["INSTANCE_DIR"], exist_ok=True)

    database_url = app.config["SQLALCHEMY_DATABASE_URI"]
    app.config.setdefault(
        "SQLALCHEMY_ENGINE_OPTIONS",
        engine_options(
            database_url,
            statement_timeout_ms=app.config["DB_STATEMENT_TIMEOUT_MS"],
            lock_timeout_ms=app.config["DB_LOCK_TIMEOUT_MS"],
            sqlite_busy_timeout=app.config["SQLITE_BUSY_TIMEOUT_SECONDS"],
        ),
    )

    level = getattr(logging, str(app.config.get("LOG_LEVEL") or "INFO").upper(), logging.INFO)
    app.logger.setLevel(level)

    # Init extensions
    db.init_app(app)
    migrate.init_app(app, db, directory=os.path.join(app.config["BACKEND_DIR"], "migrations"))

    from escrowcourt import models  # noqa: F401
    from escrowcourt.cli import escrow_cli
    from escrowcourt.services import init_services

    app.cli.add_command(escrow_cli)
    init_services(app, clock=clock)

    # Health check
    @app.get("/api/health")
    def health():
        db_state = "ok"
        try:
            db.session.execute(text("SELECT 1"))
        except Exception:
            app.logger.exception("health check database query failed")
            db_state = "fail"
        return jsonify({
            "ok": True,
            "service": "escrowcourt",
            "env": env,
            "db": db_state,
        })

    app.logger.debug("escrowcourt app created env=%s db=%s", env, database_url.split("@")[-1])
    return app
