"""Application configuration helpers."""

import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


class ConfigError(RuntimeError):
    """Raised when configuration is present but malformed."""


@dataclass(frozen=True)
class Settings:
    database_url: str
    google_api_key: str = ""
    serpapi_api_key: str = ""
    ai_api_key: str = ""
    ai_api_url: str = "https://api.openai.com/v1/chat/completions"
    ai_model: str = "gpt-4o-mini"
    image_store_url: str = ""
    image_store_token: str = ""
    worker_port: int = 9000
    runner_max_workers: int = 4
    step_timeout_seconds: float = 30.0
    step_delay_seconds: float = 1.0
    job_delay_seconds: float = 5.0
    batch_size: int = 2
    batch_delay_seconds: float = 180.0
    rate_limit_per_minute: int = 60
    retry_base_delay_seconds: float = 2.0
    orphan_timeout_minutes: int = 60
    orphan_sweep_interval_seconds: float = 300.0
    max_reviews: int = 50
    max_images: int = 10
    default_phone_region: Optional[str] = None
    enrich_use_js_renderer: bool = False


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from exc


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be numeric, got {raw!r}") from exc


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load settings from environment variables with sensible defaults."""
    load_dotenv()

    database_url = os.getenv("DATABASE_URL", "")
    google_api_key = os.getenv("GOOGLE_API_KEY", "")
    serpapi_api_key = os.getenv("SERPAPI_API_KEY", "")
    ai_api_key = os.getenv("AI_API_KEY", "")
    default_phone_region_raw = os.getenv("DEFAULT_PHONE_REGION")
    default_phone_region = default_phone_region_raw.strip().upper() if default_phone_region_raw else None
    enrich_use_js_renderer = os.getenv("ENRICH_USE_JS_RENDERER", "false").lower() in {"1", "true", "yes"}

    if not database_url:
        logger.warning("DATABASE_URL is not set; database operations will fail.")
    if not google_api_key:
        logger.warning("GOOGLE_API_KEY is not configured; provider_fetch and image_extraction will fail.")
    if not serpapi_api_key:
        logger.warning("SERPAPI_API_KEY is not configured; review_fetch will fail.")
    if not ai_api_key:
        logger.warning("AI_API_KEY is not configured; AI steps will fail.")

    return Settings(
        database_url=database_url,
        google_api_key=google_api_key,
        serpapi_api_key=serpapi_api_key,
        ai_api_key=ai_api_key,
        ai_api_url=os.getenv("AI_API_URL") or Settings.ai_api_url,
        ai_model=os.getenv("AI_MODEL") or Settings.ai_model,
        image_store_url=os.getenv("IMAGE_STORE_URL", ""),
        image_store_token=os.getenv("IMAGE_STORE_TOKEN", ""),
        worker_port=_get_int("WORKER_PORT", 9000),
        runner_max_workers=_get_int("RUNNER_MAX_WORKERS", 4),
        step_timeout_seconds=_get_float("STEP_TIMEOUT_SECONDS", 30.0),
        step_delay_seconds=_get_float("STEP_DELAY_SECONDS", 1.0),
        job_delay_seconds=_get_float("JOB_DELAY_SECONDS", 5.0),
        batch_size=_get_int("BATCH_SIZE", 2),
        batch_delay_seconds=_get_float("BATCH_DELAY_SECONDS", 180.0),
        rate_limit_per_minute=_get_int("RATE_LIMIT_PER_MINUTE", 60),
        retry_base_delay_seconds=_get_float("RETRY_BASE_DELAY_SECONDS", 2.0),
        orphan_timeout_minutes=_get_int("ORPHAN_TIMEOUT_MINUTES", 60),
        orphan_sweep_interval_seconds=_get_float("ORPHAN_SWEEP_INTERVAL_SECONDS", 300.0),
        max_reviews=_get_int("MAX_REVIEWS", 50),
        max_images=_get_int("MAX_IMAGES", 10),
        default_phone_region=default_phone_region,
        enrich_use_js_renderer=enrich_use_js_renderer,
    )
