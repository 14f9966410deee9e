import os


def _normalize_database_url(url: str) -> str:
    # Render/Heroku sometimes provide postgres:// which SQLAlchemy expects as postgresql://
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql://", 1)
    return url


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    try:
        return int(raw) if raw else int(default)
    except ValueError:
        return int(default)


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    try:
        return float(raw) if raw else float(default)
    except ValueError:
        return float(default)


def _env_bool(name: str, default: bool = False) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


def engine_options(database_url: str, *, statement_timeout_ms: int, lock_timeout_ms: int, sqlite_busy_timeout: float) -> dict:
    """Per-backend connection options so a stuck unit of work fails instead of hanging."""
    if database_url.startswith("sqlite"):
        return {"connect_args": {"timeout": float(sqlite_busy_timeout), "check_same_thread": False}}
    if database_url.startswith("postgresql"):
        opts = f"-c statement_timeout={int(statement_timeout_ms)} -c lock_timeout={int(lock_timeout_ms)}"
        return {"pool_pre_ping": True, "connect_args": {"options": opts}}
    return {"pool_pre_ping": True}


class Config:
    # Base directory of the backend (one level above this package)
    BACKEND_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
    INSTANCE_DIR = os.path.join(BACKEND_DIR, 'instance')
    SECRET_KEY = os.getenv("SECRET_KEY", "change-me")
    _default_sqlite_path = os.path.join(INSTANCE_DIR, 'escrowcourt.db').replace('\\', '/')
    _db_url = os.getenv("DATABASE_URL", f"sqlite:///{_default_sqlite_path}")
    SQLALCHEMY_DATABASE_URI = _normalize_database_url(_db_url)
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = (os.getenv("LOG_LEVEL") or "INFO").strip().upper()

    # Storage timeouts
    DB_STATEMENT_TIMEOUT_MS = _env_int("DB_STATEMENT_TIMEOUT_MS", 15000)
    DB_LOCK_TIMEOUT_MS = _env_int("DB_LOCK_TIMEOUT_MS", 5000)
    SQLITE_BUSY_TIMEOUT_SECONDS = _env_float("SQLITE_BUSY_TIMEOUT_SECONDS", 15.0)

    # Escrow
    CURRENCY = os.getenv("ESCROW_CURRENCY", "VND")
    ESCROW_WINDOW_HOURS = _env_int("ESCROW_WINDOW_HOURS", 72)
    PLATFORM_FEE_RATE = _env_float("PLATFORM_FEE_RATE", 0.05)
    DISBURSEMENT_BATCH_LIMIT = _env_int("DISBURSEMENT_BATCH_LIMIT", 100)
    # hold | release_to_seller
    PARTIAL_REFUND_REMAINDER = (os.getenv("PARTIAL_REFUND_REMAINDER") or "hold").strip().lower()

    # Complaints
    COMPLAINT_WINDOW_HOURS = _env_int("COMPLAINT_WINDOW_HOURS", 72)
    APPEAL_WINDOW_HOURS = _env_int("APPEAL_WINDOW_HOURS", 72)
    SELLER_RESPONSE_HOURS = _env_int("SELLER_RESPONSE_HOURS", 48)
    HIGH_VALUE_THRESHOLD = _env_int("HIGH_VALUE_THRESHOLD", 1_000_000)
    DEFAULT_TRUST_LEVEL = 50
    COMPLAINT_AUTO_ASSIGN = _env_bool("COMPLAINT_AUTO_ASSIGN", False)
    SLA_RESOLUTION_MINUTES = _env_int("SLA_RESOLUTION_MINUTES", 2880)

    # Queue
    PRIORITY_WEIGHTS = {
        "order_value": 0.30,
        "buyer_trust": 0.15,
        "seller_trust": 0.15,
        "ticket_age": 0.25,
        "is_high_value": 0.15,
    }
    PRIORITY_AGE_CAP_HOURS = 72
    ESCALATION_MULTIPLIER = 1.2
    DEFAULT_PICK_COUNT = 5
    MAX_PICK_COUNT = _env_int("MAX_PICK_COUNT", 10)
    CLAIM_RETRIES = 5
    # Shown to staff on each queue entry
    QUEUE_ESTIMATED_RESOLUTION_MINUTES = _env_int("QUEUE_ESTIMATED_RESOLUTION_MINUTES", 120)

    # Background jobs
    SCHEDULER_ENABLED = _env_bool("SCHEDULER_ENABLED", False)
    DISBURSEMENT_SWEEP_MINUTES = _env_int("DISBURSEMENT_SWEEP_MINUTES", 15)
    PRIORITY_REFRESH_MINUTES = _env_int("PRIORITY_REFRESH_MINUTES", 10)
    SLA_SWEEP_MINUTES = _env_int("SLA_SWEEP_MINUTES", 30)
    APPEAL_CLOSE_MINUTES = _env_int("APPEAL_CLOSE_MINUTES", 60)
    SELLER_TIMEOUT_SWEEP_MINUTES = _env_int("SELLER_TIMEOUT_SWEEP_MINUTES", 15)
    WALLET_RECONCILE_MINUTES = _env_int("WALLET_RECONCILE_MINUTES", 360)
