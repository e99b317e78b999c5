"""Environment-driven configuration and logging setup."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

DATA_DIR = Path(__file__).parent / "data"

# Env var holding the key for each supported provider
PROVIDER_KEY_VARS: dict[str, str] = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "gemini": "GEMINI_API_KEY",
    "grok": "GROK_API_KEY",
}


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() not in ("0", "false", "no", "off")


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name, "") or default)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.environ.get(name, "") or default)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    database_url: str
    enable_tech_detection: bool
    llm_provider: str
    llm_model: str
    provider_keys: dict[str, str]
    rate_limit_window_ms: int
    rate_limit_max: int
    request_timeout: float
    llm_timeout: float
    insights_cache_ttl: float
    warm_insights_cache: bool
    log_level: str

    def configured_providers(self) -> dict[str, bool]:
        return {name: bool(self.provider_keys.get(name)) for name in PROVIDER_KEY_VARS}

    def has_any_provider_key(self) -> bool:
        return any(self.provider_keys.values())


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return settings read from the current environment."""
    return Settings(
        database_url=os.environ.get("DATABASE_URL") or f"sqlite:///{DATA_DIR / 'ventureclone.db'}",
        enable_tech_detection=_env_bool("ENABLE_TECH_DETECTION", True),
        llm_provider=os.environ.get("LLM_PROVIDER", "openai").strip().lower(),
        llm_model=os.environ.get("LLM_MODEL", ""),
        provider_keys={
            name: os.environ.get(var, "") for name, var in PROVIDER_KEY_VARS.items()
        },
        rate_limit_window_ms=_env_int("RATE_LIMIT_WINDOW_MS", 300_000),
        rate_limit_max=_env_int("RATE_LIMIT_MAX", 10),
        request_timeout=_env_float("REQUEST_TIMEOUT_S", 15.0),
        llm_timeout=_env_float("LLM_TIMEOUT_S", 120.0),
        insights_cache_ttl=_env_float("INSIGHTS_CACHE_TTL_S", 24 * 60 * 60),
        warm_insights_cache=_env_bool("WARM_INSIGHTS_CACHE", False),
        log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    )


def reset_settings() -> None:
    get_settings.cache_clear()


def configure_logging(level: str | int | None = None) -> None:
    """Configure root logging if it has not been configured yet."""
    if logging.getLogger().handlers:
        return
    logging.basicConfig(level=level or get_settings().log_level, format=LOG_FORMAT)
