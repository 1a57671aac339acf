"""Application configuration helpers.

Credentials are only ever read from the environment (or a local ``.env``);
the Places and SerpAPI keys are billable and must never be hardcoded.
"""

import logging
import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from functools import lru_cache

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

DIRECTORY_BACKENDS = ("google_places", "serpapi")


class ConfigError(RuntimeError):
    """Raised when mandatory configuration is missing."""


@dataclass(frozen=True)
class Settings:
    google_api_key: str = ""
    serpapi_api_key: str = ""
    directory_backend: str = "google_places"
    database_url: str = ""
    listing_api_url: str = ""
    listing_api_token: str = ""
    worker_port: int = 9000
    sync_workers: int = 4
    max_places_per_sync: int = 5000
    max_requests_per_sync: int = 10000
    max_cost_per_sync: Decimal = Decimal("80")
    alert_cost: Decimal = Decimal("50")
    text_search_cost: Decimal = Decimal("0.017")
    duplicate_threshold: float = 0.85
    proximity_radius_m: float = 500.0
    max_retries: int = 3
    backoff_seconds: float = 1.0
    page_timeout_seconds: float = 10.0
    page_size: int = 20
    language_code: str = "en"
    max_photos_per_place: int = 3

    def require_directory_key(self) -> str:
        """Return the API key for the configured directory backend or raise."""
        if self.directory_backend == "serpapi":
            if not self.serpapi_api_key:
                raise ConfigError("SERPAPI_API_KEY must be set to page through SerpAPI Google Maps.")
            return self.serpapi_api_key
        if not self.google_api_key:
            raise ConfigError("GOOGLE_PLACES_API_KEY must be set to page through Google Places.")
        return self.google_api_key


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("%s=%r is not an integer; using %d", name, raw, default)
        return default


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("%s=%r is not a number; using %s", name, raw, default)
        return default


def _decimal_env(name: str, default: str) -> Decimal:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return Decimal(default)
    try:
        return Decimal(raw.strip())
    except InvalidOperation:
        logger.warning("%s=%r is not a decimal; using %s", name, raw, default)
        return Decimal(default)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load settings from environment variables with sensible defaults."""
    load_dotenv()

    google_api_key = os.getenv("GOOGLE_PLACES_API_KEY", "")
    serpapi_api_key = os.getenv("SERPAPI_API_KEY", "")
    directory_backend = os.getenv("PLACES_DIRECTORY", "google_places").strip().lower() or "google_places"
    database_url = os.getenv("DATABASE_URL", "")
    listing_api_url = os.getenv("LISTING_API_URL", "")

    if directory_backend not in DIRECTORY_BACKENDS:
        logger.warning("Unknown PLACES_DIRECTORY=%s; falling back to google_places", directory_backend)
        directory_backend = "google_places"

    if not database_url:
        logger.warning("DATABASE_URL is not set; candidates and sync jobs are kept in memory only.")
    if directory_backend == "google_places" and not google_api_key:
        logger.warning("GOOGLE_PLACES_API_KEY is not configured; Google Places requests will fail.")
    if directory_backend == "serpapi" and not serpapi_api_key:
        logger.warning("SERPAPI_API_KEY is not configured; SerpAPI requests will fail.")
    if not listing_api_url:
        logger.warning("LISTING_API_URL is not configured; imported listings are kept in memory only.")

    return Settings(
        google_api_key=google_api_key,
        serpapi_api_key=serpapi_api_key,
        directory_backend=directory_backend,
        database_url=database_url,
        listing_api_url=listing_api_url.rstrip("/"),
        listing_api_token=os.getenv("LISTING_API_TOKEN", ""),
        worker_port=_int_env("WORKER_PORT", 9000),
        sync_workers=max(1, _int_env("SYNC_WORKERS", 4)),
        max_places_per_sync=_int_env("SYNC_MAX_PLACES", 5000),
        max_requests_per_sync=_int_env("SYNC_MAX_REQUESTS", 10000),
        max_cost_per_sync=_decimal_env("SYNC_MAX_COST_USD", "80"),
        alert_cost=_decimal_env("SYNC_ALERT_COST_USD", "50"),
        text_search_cost=_decimal_env("TEXT_SEARCH_COST_USD", "0.017"),
        duplicate_threshold=_float_env("DEDUP_THRESHOLD", 0.85),
        proximity_radius_m=_float_env("DEDUP_RADIUS_M", 500.0),
        max_retries=max(0, _int_env("INGEST_MAX_RETRIES", 3)),
        backoff_seconds=_float_env("INGEST_BACKOFF_SECONDS", 1.0),
        page_timeout_seconds=_float_env("INGEST_PAGE_TIMEOUT_SECONDS", 10.0),
        page_size=min(20, max(1, _int_env("INGEST_PAGE_SIZE", 20))),
        language_code=os.getenv("INGEST_LANGUAGE", "en").strip() or "en",
        max_photos_per_place=max(0, _int_env("MAX_PHOTOS_PER_PLACE", 3)),
    )
