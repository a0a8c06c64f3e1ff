from __future__ import annotations

import os


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _reporting_currency() -> str:
    raw = os.getenv("REPORTING_CURRENCY", "TWD").strip().upper()
    if len(raw) != 3 or not raw.isalpha():
        return "TWD"
    return raw


DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./moneytrack.db")
FRONTEND_ORIGIN = os.getenv("FRONTEND_ORIGIN", "http://localhost:5173")
REPORTING_CURRENCY = _reporting_currency()
RATE_CACHE_TTL_SECONDS = _int_env("RATE_CACHE_TTL_SECONDS", 60 * 60)
PRICE_TIMEOUT_SECONDS = _int_env("PRICE_TIMEOUT_SECONDS", 8)
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").strip().upper()
LOG_JSON = _bool_env("LOG_JSON", False)
