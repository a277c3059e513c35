"""
Shared configuration for the Fund Facts service.

Central location for the LLM feature flag, confidence floor, cache TTL,
daily call budget and backend selection. Values are read from the process
environment once; invalid values fall back to defaults with a warning.
"""

import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from urllib.parse import urlparse

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger("fund_facts.config")

# Callers may only ask for these floors; "low" is never acceptable
MIN_CONFIDENCE_CHOICES = ("high", "medium")

STORE_BACKENDS = ("postgres", "redis", "memory")

DEFAULT_API_URL = "https://api.perplexity.ai"


@dataclass(frozen=True)
class FundFactsConfig:
    use_llm: bool = False
    min_confidence: str = "medium"
    ttl_days: int = 30
    max_daily_calls: int = 100
    max_batch_size: int = 10
    perplexity_api_key: str | None = None
    perplexity_api_url: str = DEFAULT_API_URL
    api_key: str | None = None
    store_backend: str = "postgres"
    redis_url: str = "redis://localhost:6379/0"


def _get_env(env, name: str) -> str | None:
    value = env.get(name)
    return value if value not in (None, "") else None


def _parse_bool(env, name: str, fallback: bool) -> bool:
    raw = _get_env(env, name)
    if raw is None:
        return fallback
    if raw.lower() in ("true", "1", "yes"):
        return True
    if raw.lower() in ("false", "0", "no"):
        return False
    logger.warning("Invalid boolean for %s: %s. Using %s.", name, raw, fallback)
    return fallback


def _parse_choice(env, name: str, choices: tuple, fallback: str) -> str:
    raw = _get_env(env, name)
    if raw is None:
        return fallback
    if raw.lower() in choices:
        return raw.lower()
    logger.warning("Invalid value for %s: %s. Using %s.", name, raw, fallback)
    return fallback


def _parse_positive_int(env, name: str, fallback: int) -> int:
    raw = _get_env(env, name)
    if raw is None:
        return fallback
    try:
        parsed = int(raw)
    except ValueError:
        parsed = 0
    if parsed > 0:
        return parsed
    logger.warning("Invalid integer for %s: %s. Using %s.", name, raw, fallback)
    return fallback


def load_config(env=None) -> FundFactsConfig:
    """Build a config from an environment mapping (defaults to os.environ)."""
    env = os.environ if env is None else env
    return FundFactsConfig(
        use_llm=_parse_bool(env, "FUND_FACTS_USE_LLM", False),
        min_confidence=_parse_choice(env, "FUND_FACTS_MIN_CONFIDENCE", MIN_CONFIDENCE_CHOICES, "medium"),
        ttl_days=_parse_positive_int(env, "FUND_FACTS_TTL_DAYS", 30),
        max_daily_calls=_parse_positive_int(env, "FUND_FACTS_MAX_DAILY_CALLS", 100),
        max_batch_size=_parse_positive_int(env, "FUND_FACTS_MAX_BATCH_SIZE", 10),
        perplexity_api_key=_get_env(env, "PERPLEXITY_API_KEY"),
        perplexity_api_url=_get_env(env, "PERPLEXITY_API_URL") or DEFAULT_API_URL,
        api_key=_get_env(env, "AI_COACH_API_KEY"),
        store_backend=_parse_choice(env, "FUND_FACTS_STORE", STORE_BACKENDS, "postgres"),
        redis_url=_get_env(env, "REDIS_URL") or "redis://localhost:6379/0",
    )


@lru_cache(maxsize=1)
def get_config() -> FundFactsConfig:
    """Process-wide config, read once on first use."""
    return load_config()


def postgres_settings(env=None) -> dict:
    """Connection keyword arguments for psycopg2.

    Hosted platforms hand out DATABASE_URL as a single connection string;
    the individual PG_* variables take precedence when both are present.
    """
    env = os.environ if env is None else env
    settings = {
        "host": "localhost",
        "port": "5432",
        "user": None,
        "password": None,
        "database": "fund_facts",
    }
    database_url = _get_env(env, "DATABASE_URL")
    if database_url:
        parsed = urlparse(database_url)
        settings.update({
            "host": parsed.hostname or "localhost",
            "port": str(parsed.port or 5432),
            "user": parsed.username,
            "password": parsed.password,
            "database": parsed.path.lstrip("/") or "fund_facts",
        })
    for key, var in (("host", "PG_HOST"), ("port", "PG_PORT"), ("user", "PG_USER"),
                     ("password", "PG_PASSWORD"), ("database", "PG_DATABASE")):
        value = _get_env(env, var)
        if value is not None:
            settings[key] = value
    return settings
