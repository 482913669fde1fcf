import os

from flask import Flask, jsonify
from sqlalchemy import text

from tumulte.config import Config
from tumulte.extensions import db, migrate, cors, socketio


def create_app(config_object=None):
    app = Flask(__name__)
    app.config.from_object(config_object or Config)

    env = (os.getenv("TUMULTE_ENV", "dev") or "dev").strip().lower()

    # Production safety checks
    if env in ("prod", "production"):
        secret = (app.config.get("SECRET_KEY") or "").strip()
        if not secret or secret == "change-me" or len(secret) < 16:
            raise RuntimeError("SECRET_KEY must be set and at least 16 chars in production")
        if not (os.getenv("DATABASE_URL") or "").strip():
            raise RuntimeError("DATABASE_URL must be set in production")

    # Ensure instance dir exists for SQLite paths
    database_url = app.config["SQLALCHEMY_DATABASE_URI"]
    if database_url.startswith("sqlite:///") and database_url != "sqlite:///:memory:":
        os.makedirs(app.config.get("INSTANCE_DIR") or app.instance_path, exist_ok=True)

    raw_origins = (app.config.get("CORS_ORIGINS") or "*").strip()
    origins = [o.strip() for o in raw_origins.split(",") if o.strip()] or ["*"]
    cors.init_app(app, resources={r"/api/*": {"origins": origins}})

    # Init extensions
    db.init_app(app)
    migrate.init_app(app, db)
    socketio.init_app(app, cors_allowed_origins=origins)

    from tumulte import models  # noqa: F401
    from tumulte.realtime.socket import init_vtt_namespace

    init_vtt_namespace(socketio)

    with app.app_context():
        db.create_all()

    @app.get("/api/health")
    def health():
        db_state = "ok"
        try:
            db.session.execute(text("SELECT 1"))
        except Exception:
            db_state = "fail"
        return jsonify({
            "ok": True,
            "service": "tumulte-gamification",
            "env": env,
            "db": db_state,
        })

    if app.config.get("SCHEDULER_ENABLED"):
        from tumulte.jobs.scheduler import start_scheduler

        start_scheduler(app)

    return app
