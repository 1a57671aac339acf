"""Paged ingestion from the external places directory with bounded retries."""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from places_pipeline.errors import (
    DirectoryError,
    IngestionFailed,
    RateLimited,
    TransientDirectoryError,
    Unauthorized,
)
from places_pipeline.etl.transform import from_google_place, from_serpapi_place
from places_pipeline.models import RawPlace, Scope

logger = logging.getLogger(__name__)

MAX_BACKOFF_SECONDS = 30.0

PARSERS: Dict[str, Callable[[Dict[str, Any]], Optional[RawPlace]]] = {
    "google_places": from_google_place,
    "serpapi_google_maps": from_serpapi_place,
}


class PlaceDirectory(Protocol):
    source: str

    def search_page(self, scope: Scope, page_token: Optional[str]) -> Tuple[List[Dict[str, Any]], Optional[str], Decimal]:
        ...


@dataclass
class IngestionPage:
    venues: List[RawPlace]
    next_page_token: Optional[str]
    request_cost: Decimal
    requests_made: int = 1
    skipped: int = 0
    retry_delays: List[float] = field(default_factory=list)


class PlaceIngestionClient:
    """Fetches whole pages from a directory backend.

    Rate limits back off with jitter, transient failures back off
    exponentially; both give up after ``max_retries`` retries. Unauthorized and
    other rejected requests fail immediately. Every failure leaves as
    ``IngestionFailed``.
    """

    def __init__(
        self,
        directory: PlaceDirectory,
        max_retries: int = 3,
        backoff_seconds: float = 1.0,
        max_backoff_seconds: float = MAX_BACKOFF_SECONDS,
    ) -> None:
        source = getattr(directory, "source", "google_places")
        if source not in PARSERS:
            raise ValueError(f"no parser registered for directory source {source!r}")
        self.directory = directory
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self._parse = PARSERS[source]

    def _delay(self, exc: DirectoryError, attempt: int) -> float:
        delay = self.backoff_seconds * (2 ** (attempt - 1))
        if isinstance(exc, RateLimited):
            delay += random.uniform(0, self.backoff_seconds)
        return min(delay, self.max_backoff_seconds)

    def fetch_page(self, scope: Scope, page_token: Optional[str] = None) -> IngestionPage:
        attempt = 0
        delays: List[float] = []
        while True:
            attempt += 1
            try:
                items, next_token, cost = self.directory.search_page(scope, page_token)
            except Unauthorized as exc:
                logger.error("Directory rejected credentials for scope=%s: %s", scope.key, exc)
                raise IngestionFailed(
                    f"directory rejected credentials: {exc}",
                    attempts=attempt,
                    details=_details(exc, scope, page_token, attempt),
                ) from exc
            except (RateLimited, TransientDirectoryError) as exc:
                if attempt > self.max_retries:
                    logger.error("Directory request exhausted retries for scope=%s: %s", scope.key, exc)
                    raise IngestionFailed(
                        f"directory unavailable after {attempt} attempts: {exc}",
                        attempts=attempt,
                        details=_details(exc, scope, page_token, attempt),
                    ) from exc
                delay = self._delay(exc, attempt)
                delays.append(delay)
                logger.warning(
                    "Directory request failed (attempt %s/%s, %s): %s; retrying in %.2fs",
                    attempt,
                    self.max_retries + 1,
                    type(exc).__name__,
                    exc,
                    delay,
                )
                time.sleep(delay)
                continue
            except DirectoryError as exc:
                logger.error("Directory request rejected for scope=%s: %s", scope.key, exc)
                raise IngestionFailed(
                    f"directory rejected request: {exc}",
                    attempts=attempt,
                    details=_details(exc, scope, page_token, attempt),
                ) from exc

            venues: List[RawPlace] = []
            skipped = 0
            for item in items:
                place = self._parse(item)
                if place is None:
                    skipped += 1
                    continue
                venues.append(place)

            logger.info(
                "Fetched %d venues (%d skipped) for scope=%s after %d attempt(s)",
                len(venues),
                skipped,
                scope.key,
                attempt,
            )
            return IngestionPage(
                venues=venues,
                next_page_token=next_token,
                request_cost=Decimal(cost),
                requests_made=attempt,
                skipped=skipped,
                retry_delays=delays,
            )


def _details(exc: DirectoryError, scope: Scope, page_token: Optional[str], attempts: int) -> Dict[str, Any]:
    return {
        "error": type(exc).__name__,
        "message": str(exc),
        "statusCode": exc.status_code,
        "scope": scope.key,
        "pageToken": page_token,
        "attempts": attempts,
    }
