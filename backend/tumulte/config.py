import os


def _normalize_database_url(url: str) -> str:
    # Render/Heroku sometimes provide postgres:// which SQLAlchemy expects as postgresql://
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql://", 1)
    return url


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    try:
        return int(raw) if raw else default
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    try:
        return float(raw) if raw else default
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


class Config:
    # Base directory of the backend (one level above this `tumulte` package)
    BACKEND_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
    INSTANCE_DIR = os.path.join(BACKEND_DIR, "instance")
    SECRET_KEY = os.getenv("SECRET_KEY", "change-me")
    _default_sqlite_path = os.path.join(INSTANCE_DIR, "tumulte.db").replace("\\", "/")
    _db_url = os.getenv("DATABASE_URL", f"sqlite:///{_default_sqlite_path}")
    SQLALCHEMY_DATABASE_URI = _normalize_database_url(_db_url)
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # CORS: comma-separated origins for the overlay / dashboard builds
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # Gamification sweeps
    SCHEDULER_ENABLED = _env_bool("SCHEDULER_ENABLED", True)
    GAMIFICATION_EXPIRY_INTERVAL_SECONDS = _env_int("GAMIFICATION_EXPIRY_INTERVAL_SECONDS", 60)
    GAMIFICATION_RECONCILE_INTERVAL_SECONDS = _env_int("GAMIFICATION_RECONCILE_INTERVAL_SECONDS", 300)
    GAMIFICATION_SWEEP_LIMIT = _env_int("GAMIFICATION_SWEEP_LIMIT", 500)

    # Used when neither the campaign nor a time-based event cooldown says otherwise
    GAMIFICATION_DEFAULT_COOLDOWN_SECONDS = _env_int("GAMIFICATION_DEFAULT_COOLDOWN_SECONDS", 300)
    GAMIFICATION_RECALC_THRESHOLD = _env_float("GAMIFICATION_RECALC_THRESHOLD", 0.2)
    # Provider redemption refunds are retried by the expiry sweep up to this many times
    GAMIFICATION_REFUND_MAX_ATTEMPTS = _env_int("GAMIFICATION_REFUND_MAX_ATTEMPTS", 5)

    # Channel points provider
    TWITCH_CLIENT_ID = os.getenv("TWITCH_CLIENT_ID", "")
    TWITCH_API_BASE = os.getenv("TWITCH_API_BASE", "https://api.twitch.tv/helix")
    TWITCH_HTTP_TIMEOUT = _env_int("TWITCH_HTTP_TIMEOUT", 20)

    # VTT command channel acknowledgement timeout
    VTT_COMMAND_TIMEOUT = _env_int("VTT_COMMAND_TIMEOUT", 15)


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SCHEDULER_ENABLED = False
    TWITCH_CLIENT_ID = "test-client-id"
