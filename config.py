import os


def _get_bool_env(var_name: str, default: bool = False) -> bool:
    """Return a boolean from environment variables.

    Accepts common truthy strings (1/true/yes/on) case-insensitively.
    """
    value = os.environ.get(var_name)
    if value is None:
        return default

    return value.strip().lower() in {"1", "true", "yes", "y", "on"}


def _get_int_env(var_name: str, default: int, *, min_value: int = 0) -> int:
    """Return a non-negative integer from environment variables."""
    value = os.environ.get(var_name)
    if value is None or not value.strip():
        return default

    try:
        parsed = int(value)
    except ValueError:
        return default

    return max(parsed, min_value)


BASE_DIR = os.path.abspath(os.path.dirname(__file__))


class Config:
    _env_secret = os.environ.get("SECRET_KEY")
    _is_production = (
        os.environ.get("APP_ENV") == "production"
        or os.environ.get("FLASK_ENV") == "production"
    )

    if _is_production and (not _env_secret or _env_secret == "secret-key-change-me"):
        raise RuntimeError(
            "SECRET_KEY must be set to a secure, non-default value when running in production."
        )

    SECRET_KEY = _env_secret or "secret-key-change-me"

    _database_url = os.environ.get("DATABASE_URL")
    # psycopg 3 driver for bare postgres URLs
    if _database_url and _database_url.startswith("postgres://"):
        _database_url = _database_url.replace("postgres://", "postgresql+psycopg://", 1)
    elif _database_url and _database_url.startswith("postgresql://"):
        _database_url = _database_url.replace("postgresql://", "postgresql+psycopg://", 1)

    SQLALCHEMY_DATABASE_URI = _database_url or "sqlite:///" + os.path.join(BASE_DIR, "stock_ledger.db")
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    DEBUG = _get_bool_env("FLASK_DEBUG", default=False)
    AUTO_SCHEMA_BOOTSTRAP = _get_bool_env("AUTO_SCHEMA_BOOTSTRAP", default=False)
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = "Lax"
    SESSION_COOKIE_SECURE = bool(_is_production)

    # Days committed per propagation transaction.
    LEDGER_BATCH_SIZE = _get_int_env("LEDGER_BATCH_SIZE", 30, min_value=1)
    # "today" for HTTP and CLI callers is computed in this timezone.
    LEDGER_TIMEZONE = os.environ.get("LEDGER_TIMEZONE", "Asia/Kolkata")
    # Seconds to wait for another cascade on the same (location, item).
    LEDGER_LOCK_TIMEOUT = _get_int_env("LEDGER_LOCK_TIMEOUT", 30)
    # 0 = run every batch inline; otherwise stop after N batches and leave the run resumable.
    LEDGER_MAX_BATCHES_PER_REQUEST = _get_int_env("LEDGER_MAX_BATCHES_PER_REQUEST", 0)
