from datetime import datetime, timedelta, timezone

import pytest

from places_pipeline.models import (
    Approved,
    ConfidenceBreakdown,
    ImportCandidate,
    Imported,
    Pagination,
    Rejected,
    Scope,
    SyncJob,
)

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def test_scope_key_is_stable_across_formatting():
    first = Scope(query="  Camping   Chiang Mai ", category="Campground", latitude=18.79, longitude=98.99, radius_m=5000)
    second = Scope(query="camping chiang mai", category="campground", latitude=18.790001, longitude=98.99, radius_m=5000.4)
    assert first.key == second.key == "camping chiang mai|campground|18.7900,98.9900,5000"
    assert Scope(query="camping").key == "camping|*"


def test_scope_validation():
    with pytest.raises(ValueError):
        Scope(query=" ")
    with pytest.raises(ValueError):
        Scope(query="camping", latitude=18.79)
    with pytest.raises(ValueError):
        Scope.from_dict({"query": "camping", "lat": "north", "lng": 1})


def test_scope_from_dict_accepts_short_names():
    scope = Scope.from_dict({"query": "camping", "lat": "18.79", "lng": 98.99, "radius": 2000, "category": ""})
    assert (scope.latitude, scope.longitude, scope.radius_m, scope.category) == (18.79, 98.99, 2000.0, None)


def test_candidate_fields_follow_state():
    candidate = ImportCandidate(
        id="c1",
        raw_place_id="r1",
        external_id="e1",
        name="Camp",
        breakdown=ConfidenceBreakdown(1.0, 1.0, 1.0, 1.0, 1.0),
    )
    assert candidate.rejection_reason is None
    assert candidate.decided_by is None

    candidate.state = Rejected(decided_by="bob", decided_at=NOW, reason="closed")
    assert candidate.rejection_reason == "closed"
    assert candidate.listing_id is None

    candidate.state = Imported(decided_by="alice", decided_at=NOW, listing_id="L1", imported_at=NOW)
    data = candidate.to_dict()
    assert data["status"] == "imported"
    assert data["listingId"] == "L1"
    assert data["rejectionReason"] is None
    assert data["decidedBy"] == "alice"
    assert data["importedAt"] == NOW.isoformat()

    candidate.state = Approved(decided_by="alice", decided_at=NOW)
    assert candidate.to_dict()["importedAt"] is None


def test_sync_job_duration_and_dict():
    job = SyncJob(id="j1", scope=Scope(query="camping"), started_at=NOW, finished_at=NOW + timedelta(seconds=90))
    data = job.to_dict()
    assert data["durationSeconds"] == 90
    assert data["status"] == "idle"
    assert data["estimatedCostUsd"] == 0.0


def test_pagination_coerce():
    assert Pagination.coerce() == Pagination(limit=25, offset=0)
    assert Pagination.coerce("500", "10") == Pagination(limit=100, offset=10)
    with pytest.raises(ValueError):
        Pagination.coerce("0")
    with pytest.raises(ValueError):
        Pagination.coerce("5", "-1")
    with pytest.raises(ValueError):
        Pagination.coerce("many")
