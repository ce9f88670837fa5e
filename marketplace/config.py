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


class Config:
    BASE_DIR = os.path.dirname(os.path.dirname(__file__))
    DATABASE_URL = os.environ.get("DATABASE_URL")
    DATABASE_DIR = None if DATABASE_URL else os.path.join(BASE_DIR, "database")
    DB_PATH = DATABASE_URL or os.path.join(DATABASE_DIR, "jewel_marketplace.db")
    DB_AUTO_INIT = _bool_env("DB_AUTO_INIT", False)

    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-jewel-marketplace")
    LOG_JSON = _bool_env("LOG_JSON", True)
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    RATE_LIMIT_ENABLED = _bool_env("RATE_LIMIT_ENABLED", True)
    RATE_LIMIT_WINDOW_SECONDS = _int_env("RATE_LIMIT_WINDOW_SECONDS", 60)
    RATE_LIMIT_MAX_REQUESTS = _int_env("RATE_LIMIT_MAX_REQUESTS", 300)
    SECURITY_HEADERS_ENABLED = _bool_env("SECURITY_HEADERS_ENABLED", True)

    QUOTATION_VALIDITY_DAYS = _int_env("QUOTATION_VALIDITY_DAYS", 30)
    QUOTATION_EXPIRING_SOON_HOURS = _int_env("QUOTATION_EXPIRING_SOON_HOURS", 24)
    NEGOTIATION_MAX_ROUNDS = _int_env("NEGOTIATION_MAX_ROUNDS", 0)
    NEGOTIATION_POLL_SECONDS = _int_env("NEGOTIATION_POLL_SECONDS", 5)
    LEAD_TIME_RISK_DAYS = _int_env("LEAD_TIME_RISK_DAYS", 30)

    PAYMENT_GATEWAY_MODE = os.environ.get("PAYMENT_GATEWAY_MODE", "mock")
    PAYMENT_GATEWAY_BASE_URL = os.environ.get("PAYMENT_GATEWAY_BASE_URL", "https://api.stripe.com/v1")
    PAYMENT_GATEWAY_API_KEY = os.environ.get("PAYMENT_GATEWAY_API_KEY")
    PAYMENT_GATEWAY_CURRENCY = os.environ.get("PAYMENT_GATEWAY_CURRENCY", "inr")
    PAYMENT_GATEWAY_TIMEOUT_SECONDS = _int_env("PAYMENT_GATEWAY_TIMEOUT_SECONDS", 20)
    PAYMENT_GATEWAY_RETRY_ATTEMPTS = _int_env("PAYMENT_GATEWAY_RETRY_ATTEMPTS", 2)
    PAYMENT_GATEWAY_RETRY_BACKOFF_MS = _int_env("PAYMENT_GATEWAY_RETRY_BACKOFF_MS", 300)
    PAYMENT_CIRCUIT_ENABLED = _bool_env("PAYMENT_CIRCUIT_ENABLED", True)
    PAYMENT_CIRCUIT_ERROR_RATE_THRESHOLD = float(os.environ.get("PAYMENT_CIRCUIT_ERROR_RATE_THRESHOLD", "0.6"))
    PAYMENT_CIRCUIT_MIN_SAMPLES = _int_env("PAYMENT_CIRCUIT_MIN_SAMPLES", 5)
    PAYMENT_CIRCUIT_WINDOW_SECONDS = _int_env("PAYMENT_CIRCUIT_WINDOW_SECONDS", 120)
    PAYMENT_CIRCUIT_OPEN_SECONDS = _int_env("PAYMENT_CIRCUIT_OPEN_SECONDS", 30)
    PAYMENT_RETURN_URL = os.environ.get("PAYMENT_RETURN_URL", "/payments/return")
    PAYMENT_CLEAN_RETURN_PATH = os.environ.get("PAYMENT_CLEAN_RETURN_PATH", "/buyer/orders")

    EXPIRY_SCHEDULER_ENABLED = _bool_env("EXPIRY_SCHEDULER_ENABLED", True)
    EXPIRY_SCHEDULER_INTERVAL_SECONDS = _int_env("EXPIRY_SCHEDULER_INTERVAL_SECONDS", 300)
    EXPIRY_SCHEDULER_MIN_BACKOFF_SECONDS = _int_env("EXPIRY_SCHEDULER_MIN_BACKOFF_SECONDS", 30)
    EXPIRY_SCHEDULER_MAX_BACKOFF_SECONDS = _int_env("EXPIRY_SCHEDULER_MAX_BACKOFF_SECONDS", 1800)

    def __init__(self):
        env = os.environ.get("FLASK_ENV", "development").lower()
        if env == "production" and not self.DATABASE_URL:
            raise RuntimeError("DATABASE_URL is not set for the production environment.")
        if env == "production" and self.SECRET_KEY == "dev-secret-jewel-marketplace":
            raise RuntimeError("SECRET_KEY is insecure for production.")
