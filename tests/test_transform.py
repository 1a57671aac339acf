from places_pipeline.etl import transform
from places_pipeline.models import Approved, ConfidenceBreakdown, ImportCandidate, RawPlace, utcnow


def test_from_google_place_maps_fields():
    result = {
        "id": "ChIJ123",
        "displayName": {"text": " Riverside Camp "},
        "formattedAddress": "1 River Rd, Chiang Mai",
        "location": {"latitude": 18.79, "longitude": 98.99},
        "nationalPhoneNumber": "053 123 456",
        "websiteUri": "https://riverside.example",
        "rating": 4.6,
        "userRatingCount": "1,204",
        "types": ["point_of_interest", "campground", "establishment"],
        "photos": [{"name": "places/ChIJ123/photos/a"}, {"other": "x"}],
    }

    place = transform.from_google_place(result)

    assert place.external_id == "ChIJ123"
    assert place.name == "Riverside Camp"
    assert place.phone == "053 123 456"
    assert place.rating_count == 1204
    assert place.primary_category == "campground"
    assert place.photo_refs == ["places/ChIJ123/photos/a"]
    assert place.place_hash == transform.place_hash("Riverside Camp", "1 River Rd, Chiang Mai")
    assert place.raw_payload is result


def test_from_google_place_requires_id_and_name():
    assert transform.from_google_place({"displayName": {"text": "No id"}}) is None
    assert transform.from_google_place({"id": "x", "displayName": {"text": "  "}}) is None


def test_from_serpapi_place_maps_fields():
    raw = {
        "title": "Doi Camp",
        "place_id": "sp-1",
        "gps_coordinates": {"latitude": "18.1", "longitude": "98.2"},
        "type": "Camp ground",
        "reviews": 33,
        "thumbnail": "https://img.example/1.jpg",
    }

    place = transform.from_serpapi_place(raw)

    assert place.source == "serpapi_google_maps"
    assert place.latitude == 18.1
    assert place.primary_category == "camp_ground"
    assert place.rating_count == 33
    assert place.photo_refs == ["https://img.example/1.jpg"]


def test_place_hash_ignores_case_and_padding():
    assert transform.place_hash(" Camp ", "ROAD") == transform.place_hash("camp", "road")


def test_to_listing_payload_orders_and_caps_photos():
    raw = RawPlace(
        external_id="ChIJ123",
        name="Riverside Camp",
        address="1 River Rd",
        latitude=18.79,
        longitude=98.99,
        primary_category="campground",
        photo_refs=[f"places/ChIJ123/photos/{n}" for n in range(5)],
        id="raw-1",
    )
    candidate = ImportCandidate(
        id="cand-1",
        raw_place_id="raw-1",
        external_id="ChIJ123",
        name="Riverside Camp",
        rating=4.5,
        rating_count=10,
        breakdown=ConfidenceBreakdown(0.1, 0.0, 0.0, 0.0, 0.04),
        state=Approved(decided_by="admin", decided_at=utcnow()),
    )

    payload, photos = transform.to_listing_payload(candidate, raw, max_photos=3)

    assert payload["listing_type"] == "campground"
    assert payload["rating_average"] == 4.5
    assert payload["review_count"] == 10
    assert payload["import_candidate_id"] == "cand-1"
    assert payload["status"] == "approved"
    assert len(photos) == 3
    assert photos[0].endswith("places/ChIJ123/photos/0/media?maxWidthPx=1600")
