import sys
import threading
from decimal import Decimal
from pathlib import Path

import pytest

# Ensure `places_pipeline` is importable when running pytest from the repository root.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from places_pipeline.core.config import Settings  # noqa: E402
from places_pipeline.core.wiring import build_pipeline  # noqa: E402
from places_pipeline.gateways.listings import InMemoryListingGateway  # noqa: E402
from places_pipeline.storage.memory import (  # noqa: E402
    InMemoryCandidateStore,
    InMemoryRawPlaceStore,
    InMemorySyncJobStore,
)


def google_place(index, name=None, lat=18.79, lng=98.99, phone=None, types=None, photos=0, address=None):
    """A Places API (New) result as returned by searchText."""
    return {
        "id": f"place-{index}",
        "displayName": {"text": name or f"Camp {index}", "languageCode": "en"},
        "formattedAddress": address or f"{index} River Road, Chiang Mai",
        "location": {"latitude": lat, "longitude": lng},
        "internationalPhoneNumber": phone,
        "rating": 4.5,
        "userRatingCount": 12,
        "types": types or ["campground", "point_of_interest"],
        "photos": [{"name": f"places/place-{index}/photos/p{n}"} for n in range(photos)],
    }


class FakeDirectory:
    """Serves fixed pages; page tokens are the next page's index."""

    source = "google_places"

    def __init__(self, pages, cost=Decimal("0.017"), failures=None, hold_at=None):
        self.pages = pages
        self.cost = cost
        self.failures = list(failures or [])
        self.calls = []
        self.hold_at = hold_at
        self.entered = threading.Event()
        self.release = threading.Event()

    def search_page(self, scope, page_token):
        index = int(page_token or 0)
        self.calls.append(page_token)
        if self.failures:
            raise self.failures.pop(0)
        if self.hold_at is not None and index == self.hold_at:
            self.entered.set()
            self.release.wait(5)
        next_token = str(index + 1) if index + 1 < len(self.pages) else None
        return self.pages[index], next_token, self.cost


def make_pages(page_count, per_page=20, **kwargs):
    return [
        [google_place(page * per_page + n, lat=10.0 + page, lng=100.0 + n * 0.01, **kwargs) for n in range(per_page)]
        for page in range(page_count)
    ]


@pytest.fixture
def settings():
    return Settings(backoff_seconds=0.0, max_retries=2, sync_workers=2)


@pytest.fixture
def listings():
    return InMemoryListingGateway()


@pytest.fixture
def make_pipeline(settings, listings):
    built = []

    def _make(directory=None, pipeline_settings=None, normalizer=None):
        pipeline = build_pipeline(
            pipeline_settings or settings,
            directory=directory or FakeDirectory(make_pages(1)),
            stores=(InMemoryRawPlaceStore(), InMemoryCandidateStore(), InMemorySyncJobStore()),
            listings=listings,
            normalizer=normalizer,
        )
        built.append(pipeline)
        return pipeline

    yield _make
    for pipeline in built:
        pipeline.orchestrator.shutdown(wait=True)
