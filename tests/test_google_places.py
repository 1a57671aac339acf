from decimal import Decimal

import pytest
import requests

from places_pipeline.errors import RateLimited, TransientDirectoryError, Unauthorized
from places_pipeline.models import Scope
from places_pipeline.vendors import google_places


class DummyResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload if payload is not None else {}
        self.text = text

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


class DummySession:
    def __init__(self):
        self.calls = []
        self.response = DummyResponse()
        self.error = None

    def post(self, url, json=None, headers=None, timeout=None):
        self.calls.append((url, json, headers, timeout))
        if self.error is not None:
            raise self.error
        return self.response


@pytest.fixture(autouse=True)
def patch_session(monkeypatch):
    session = DummySession()
    monkeypatch.setattr(google_places, "_SESSION", session)
    return session


def test_search_text_success(patch_session):
    patch_session.response = DummyResponse(payload={"places": [{"id": "a"}], "nextPageToken": "tok"})
    scope = Scope(query="camping", category="campground", latitude=18.79, longitude=98.99, radius_m=80000)

    payload = google_places.search_text(scope, "key", page_token="prev")

    assert payload["nextPageToken"] == "tok"
    url, body, headers, timeout = patch_session.calls[0]
    assert url.endswith("/places:searchText")
    assert body["textQuery"] == "camping"
    assert body["includedType"] == "campground"
    assert body["pageToken"] == "prev"
    assert body["locationBias"]["circle"]["radius"] == 50000.0
    assert headers["X-Goog-Api-Key"] == "key"
    assert "places.id" in headers["X-Goog-FieldMask"]
    assert timeout == 10


def test_search_body_without_location():
    body = google_places.build_search_body(Scope(query="camping"), 20, "th", None)
    assert "locationBias" not in body
    assert "pageToken" not in body
    assert body["languageCode"] == "th"


@pytest.mark.parametrize(
    "status, error",
    [
        (429, RateLimited),
        (401, Unauthorized),
        (403, Unauthorized),
        (503, TransientDirectoryError),
        (400, google_places.GooglePlacesError),
    ],
)
def test_search_text_classifies_errors(patch_session, status, error):
    patch_session.response = DummyResponse(status, payload={"error": {"message": "nope"}})
    with pytest.raises(error) as exc_info:
        google_places.search_text(Scope(query="camping"), "key")
    assert exc_info.value.status_code == status


def test_search_text_timeout_is_transient(patch_session):
    patch_session.error = requests.Timeout("slow")
    with pytest.raises(TransientDirectoryError):
        google_places.search_text(Scope(query="camping"), "key", timeout=3)


def test_directory_returns_page_and_cost(patch_session):
    patch_session.response = DummyResponse(payload={"places": [{"id": "a"}, "junk"]})
    directory = google_places.GooglePlacesDirectory("key", Decimal("0.017"))

    places, next_token, cost = directory.search_page(Scope(query="camping"), None)

    assert places == [{"id": "a"}]
    assert next_token is None
    assert cost == Decimal("0.017")


def test_photo_media_url():
    url = google_places.photo_media_url("places/abc/photos/xyz", max_width_px=800)
    assert url == "https://places.googleapis.com/v1/places/abc/photos/xyz/media?maxWidthPx=800"
