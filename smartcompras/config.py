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
    DB_PATH = DATABASE_URL or os.path.join(DATABASE_DIR, "smartcompras.db")
    DB_AUTO_INIT = _bool_env("DB_AUTO_INIT", False)

    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-smartcompras")
    LOG_JSON = _bool_env("LOG_JSON", True)
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    STORE_TIMEOUT_SECONDS = _float_env("STORE_TIMEOUT_SECONDS", 5.0)
    STORE_RETRY_ATTEMPTS = _int_env("STORE_RETRY_ATTEMPTS", 3)
    STORE_RETRY_BACKOFF_MS = _int_env("STORE_RETRY_BACKOFF_MS", 200)

    ALLOCATION_EPSILON = _float_env("ALLOCATION_EPSILON", 0.01)
    DEFAULT_PAGE_SIZE = _int_env("DEFAULT_PAGE_SIZE", 20)
    MAX_PAGE_SIZE = _int_env("MAX_PAGE_SIZE", 100)

    def __init__(self):
        env = os.environ.get("FLASK_ENV", "development").lower()
        if env == "production" and not self.DATABASE_URL:
            raise RuntimeError("DATABASE_URL nao definida para ambiente de producao.")
        if env == "production" and self.SECRET_KEY == "dev-secret-smartcompras":
            raise RuntimeError("SECRET_KEY insegura para producao.")
