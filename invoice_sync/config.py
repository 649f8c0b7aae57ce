import os


def _bool_env(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _int_env(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _float_env(name: str, default: float) -> float:
    value = os.environ.get(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


class Config:
    BASE_DIR = os.path.dirname(os.path.dirname(__file__))
    DATABASE_URL = os.environ.get("DATABASE_URL")
    DATABASE_DIR = None if DATABASE_URL else os.path.join(BASE_DIR, "database")
    DB_PATH = DATABASE_URL or os.path.join(DATABASE_DIR, "invoice_sync.db")
    DB_AUTO_INIT = _bool_env("DB_AUTO_INIT", False)

    LOG_JSON = _bool_env("LOG_JSON", True)
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    ERP_MODE = os.environ.get("ERP_MODE", "simulator")
    ERP_SIMULATOR_SEED = _int_env("ERP_SIMULATOR_SEED", 42)
    ERP_TIMEOUT_SECONDS = _int_env("ERP_TIMEOUT_SECONDS", 20)

    QUEUE_WORKER_ENABLED = _bool_env("QUEUE_WORKER_ENABLED", False)
    QUEUE_BATCH_SIZE = _int_env("QUEUE_BATCH_SIZE", 5)
    QUEUE_INTERVAL_SECONDS = _int_env("QUEUE_INTERVAL_SECONDS", 10)
    QUEUE_INITIAL_DELAY_SECONDS = _int_env("QUEUE_INITIAL_DELAY_SECONDS", 5)
    QUEUE_MAX_RETRIES = _int_env("QUEUE_MAX_RETRIES", 3)
    QUEUE_BACKOFF_SECONDS = _int_env("QUEUE_BACKOFF_SECONDS", 30)
    QUEUE_BACKOFF_JITTER_RATIO = _float_env("QUEUE_BACKOFF_JITTER_RATIO", 0.0)
    QUEUE_MAX_CONSECUTIVE_ERRORS = _int_env("QUEUE_MAX_CONSECUTIVE_ERRORS", 10)
    QUEUE_COOLDOWN_SECONDS = _int_env("QUEUE_COOLDOWN_SECONDS", 60)
    QUEUE_PROCESSING_TIMEOUT_SECONDS = _int_env("QUEUE_PROCESSING_TIMEOUT_SECONDS", 900)

    STOCK_FRESHNESS_SECONDS = _int_env("STOCK_FRESHNESS_SECONDS", 300)
    RESERVATION_TTL_SECONDS = _int_env("RESERVATION_TTL_SECONDS", 1800)

    def __init__(self):
        env = os.environ.get("FLASK_ENV", "development").lower()
        if env == "production" and not self.DATABASE_URL:
            raise RuntimeError("DATABASE_URL is required in production.")
