"""
Runtime settings for Apricot

Everything is read from environment variables (optionally via a .env file).
"""
import logging
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

SUPPORTED_PROVIDERS = ("anthropic", "openai")

DEFAULT_PROVIDER = "anthropic"
DEFAULT_MODEL = "claude-haiku-4-5"
DEFAULT_MAX_ARTICLES_PER_FEED = 20
DEFAULT_LOOKBACK_DAYS = 7

# Provider specific API key variables (AI_API_KEY wins over all of them)
PROVIDER_KEY_VARS = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
}


@dataclass
class Settings:
    """
    Settings for the discovery pipeline and its oracle.

    DATABASE_URL is read by apricot.database when the engine is created.
    """
    ai_provider: str = DEFAULT_PROVIDER
    ai_model: str = DEFAULT_MODEL
    ai_api_key: Optional[str] = None
    max_articles_per_feed: int = DEFAULT_MAX_ARTICLES_PER_FEED
    lookback_days: int = DEFAULT_LOOKBACK_DAYS

    @property
    def oracle_configured(self) -> bool:
        return bool(self.ai_api_key)


def _int_env(environ, name: str, default: int) -> int:
    raw = environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def load_settings(environ=None) -> Settings:
    """
    Build Settings from the environment.

    Args:
        environ: Mapping to read from (defaults to os.environ after load_dotenv)

    Returns:
        Validated Settings

    Raises:
        ValueError: On an unsupported provider or an invalid number
    """
    if environ is None:
        load_dotenv()
        environ = os.environ

    provider = (environ.get("AI_PROVIDER") or DEFAULT_PROVIDER).strip().lower()
    if provider not in SUPPORTED_PROVIDERS:
        raise ValueError(f"invalid AI_PROVIDER {provider!r}: must be one of {', '.join(SUPPORTED_PROVIDERS)}")

    api_key = environ.get("AI_API_KEY") or environ.get(PROVIDER_KEY_VARS[provider]) or None

    lookback_days = _int_env(environ, "LOOKBACK_DAYS", DEFAULT_LOOKBACK_DAYS)
    if lookback_days < 1:
        raise ValueError(f"invalid LOOKBACK_DAYS {lookback_days}: must be >= 1")

    max_articles = _int_env(environ, "MAX_ARTICLES_PER_FEED", DEFAULT_MAX_ARTICLES_PER_FEED)
    if max_articles < 1:
        raise ValueError(f"invalid MAX_ARTICLES_PER_FEED {max_articles}: must be >= 1")

    settings = Settings(
        ai_provider=provider,
        ai_model=environ.get("AI_MODEL") or DEFAULT_MODEL,
        ai_api_key=api_key,
        max_articles_per_feed=max_articles,
        lookback_days=lookback_days,
    )

    if not settings.oracle_configured:
        logger.warning(f"AI API key is empty: set AI_API_KEY or {PROVIDER_KEY_VARS[provider]}")

    return settings
