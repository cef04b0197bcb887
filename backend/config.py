from __future__ import annotations

import os
from dataclasses import dataclass

from backend.logging_config import get_logger

logger = get_logger("config")

RATE_PROVIDERS = {"exchangerate_api", "nbrb", "static"}


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./finance.db"
    frontend_origin: str = "http://localhost:3000"
    default_currency: str = "USD"
    rate_provider: str = "exchangerate_api"
    rate_api_url: str | None = None
    rate_api_key: str | None = None
    rate_cache_ttl_seconds: float = 60 * 60
    rate_fetch_timeout_seconds: float = 10
    rate_fetch_attempts: int = 3
    rate_retry_delay_seconds: float = 2
    rate_failure_backoff_seconds: float = 60
    scheduler_enabled: bool = True
    scheduler_tick_seconds: float = 60
    log_level: str = "INFO"


def load_settings(environ: dict[str, str] | None = None) -> Settings:
    env = os.environ if environ is None else environ
    defaults = Settings()

    rate_provider = env.get("RATE_PROVIDER", defaults.rate_provider).strip().lower()
    if rate_provider not in RATE_PROVIDERS:
        logger.warning("invalid_rate_provider", extra={"value": rate_provider})
        rate_provider = defaults.rate_provider

    default_currency = env.get("DEFAULT_CURRENCY", defaults.default_currency).strip().upper()
    if len(default_currency) != 3 or not default_currency.isalpha():
        logger.warning("invalid_default_currency", extra={"value": default_currency})
        default_currency = defaults.default_currency

    return Settings(
        database_url=env.get("DATABASE_URL", defaults.database_url),
        frontend_origin=env.get("FRONTEND_ORIGIN", defaults.frontend_origin),
        default_currency=default_currency,
        rate_provider=rate_provider,
        rate_api_url=env.get("RATE_API_URL") or None,
        rate_api_key=env.get("RATE_API_KEY") or None,
        rate_cache_ttl_seconds=_positive_float(
            env, "RATE_CACHE_TTL_SECONDS", defaults.rate_cache_ttl_seconds
        ),
        rate_fetch_timeout_seconds=_positive_float(
            env, "RATE_FETCH_TIMEOUT_SECONDS", defaults.rate_fetch_timeout_seconds
        ),
        rate_fetch_attempts=int(
            _positive_float(env, "RATE_FETCH_ATTEMPTS", defaults.rate_fetch_attempts)
        ),
        rate_retry_delay_seconds=_positive_float(
            env, "RATE_RETRY_DELAY_SECONDS", defaults.rate_retry_delay_seconds
        ),
        rate_failure_backoff_seconds=_positive_float(
            env, "RATE_FAILURE_BACKOFF_SECONDS", defaults.rate_failure_backoff_seconds
        ),
        scheduler_enabled=_flag(env, "SCHEDULER_ENABLED", defaults.scheduler_enabled),
        scheduler_tick_seconds=_positive_float(
            env, "SCHEDULER_TICK_SECONDS", defaults.scheduler_tick_seconds
        ),
        log_level=env.get("LOG_LEVEL", defaults.log_level).strip().upper(),
    )


def _positive_float(env, name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("invalid_setting", extra={"setting": name, "value": raw})
        return default
    if value <= 0:
        logger.warning("invalid_setting", extra={"setting": name, "value": raw})
        return default
    return value


def _flag(env, name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}
