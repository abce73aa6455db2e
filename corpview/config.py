import os
from dataclasses import dataclass
from dotenv import load_dotenv


DEFAULT_DART_BASE_URL = "https://opendart.fss.or.kr/api"
LOG_LEVELS = {"debug", "info", "warn", "error"}


@dataclass
class AppConfig:
    dart_api_key: str
    dart_base_url: str
    http_timeout_seconds: int
    http_max_retries: int
    http_retry_base_delay: float
    cache_enabled: bool
    cache_db_path: str
    cache_fetch_timeout_seconds: float
    log_level: str
    log_file: str


def load_config() -> AppConfig:
    load_dotenv()

    max_retries = _int_env("HTTP_MAX_RETRIES", 3)
    max_retries = max(0, min(max_retries, 5))

    timeout = _int_env("HTTP_TIMEOUT_SECONDS", 10)
    timeout = max(1, min(timeout, 120))

    log_level = os.getenv("LOG_LEVEL", "info").strip().lower()
    if log_level == "warning":
        log_level = "warn"
    if log_level not in LOG_LEVELS:
        log_level = "info"

    return AppConfig(
        dart_api_key=os.getenv("DART_API_KEY", ""),
        dart_base_url=os.getenv("DART_BASE_URL", DEFAULT_DART_BASE_URL).rstrip("/"),
        http_timeout_seconds=timeout,
        http_max_retries=max_retries,
        http_retry_base_delay=max(0.0, _float_env("HTTP_RETRY_BASE_DELAY", 1.0)),
        cache_enabled=os.getenv("CACHE_ENABLED", "true").lower() == "true",
        cache_db_path=os.getenv("CACHE_DB_PATH", "data/cache/corpview.db").strip(),
        cache_fetch_timeout_seconds=max(1.0, _float_env("CACHE_FETCH_TIMEOUT_SECONDS", 30.0)),
        log_level=log_level,
        log_file=os.getenv("LOG_FILE", "").strip(),
    )


def _int_env(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


def _float_env(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        return default
