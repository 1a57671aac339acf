import pytest

from places_pipeline.core import config
from places_pipeline.jobs import server
from places_pipeline.models import CandidateStatus, ExistingListing

from conftest import FakeDirectory, google_place, make_pages

SCOPE = {"query": "camping", "category": "campground", "latitude": 18.79, "longitude": 98.99, "radiusM": 20000}


@pytest.fixture(autouse=True)
def env(monkeypatch):
    monkeypatch.setenv("GOOGLE_PLACES_API_KEY", "key")
    monkeypatch.delenv("PLACES_DIRECTORY", raising=False)
    config.get_settings.cache_clear()
    yield
    config.get_settings.cache_clear()


@pytest.fixture
def use_pipeline(monkeypatch, make_pipeline):
    def _use(directory=None):
        pipeline = make_pipeline(directory)
        monkeypatch.setattr(server, "get_pipeline", lambda: pipeline)
        return pipeline

    return _use


@pytest.fixture
def client():
    return server.app.test_client()


def run_sync(client, pipeline, **body):
    response = client.post("/sync/trigger", json={"scope": SCOPE, **body})
    assert response.status_code == 202
    job_id = response.get_json()["data"]["syncJobId"]
    pipeline.orchestrator.wait(job_id, timeout=5)
    return job_id


def first_candidate_id(client):
    return client.get("/candidates").get_json()["data"][0]["id"]


def test_health_endpoint(client):
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.get_json()["status"] == "ok"


def test_trigger_validates_payload(client, use_pipeline):
    use_pipeline()
    assert client.post("/sync/trigger", json={}).status_code == 400
    assert client.post("/sync/trigger", json={"scope": {"query": ""}}).status_code == 400
    assert client.post("/sync/trigger", json={"scope": SCOPE, "syncType": "weekly"}).status_code == 400
    assert client.post("/sync/trigger", json={"scope": SCOPE, "maxPlaces": "lots"}).status_code == 400
    assert client.post("/sync/trigger", json={"scope": {"query": "x", "latitude": 1}}).status_code == 400


def test_trigger_without_api_key(client, use_pipeline, monkeypatch):
    use_pipeline()
    monkeypatch.setenv("GOOGLE_PLACES_API_KEY", "")
    config.get_settings.cache_clear()

    response = client.post("/sync/trigger", json={"scope": SCOPE})

    assert response.status_code == 503
    assert "GOOGLE_PLACES_API_KEY" in response.get_json()["error"]


def test_trigger_status_and_logs(client, use_pipeline):
    pipeline = use_pipeline(FakeDirectory(make_pages(2)))

    job_id = run_sync(client, pipeline, syncType="incremental", maxPlaces=50)

    assert client.get("/sync/status").get_json()["data"] is None
    logs = client.get("/sync/logs?limit=5").get_json()["data"]
    assert logs[0]["id"] == job_id
    assert logs[0]["status"] == "completed"
    assert logs[0]["syncType"] == "incremental"
    assert logs[0]["placesFound"] == 40
    assert logs[0]["triggeredBy"] == "admin"
    assert client.get(f"/sync/jobs/{job_id}").get_json()["data"]["stopReason"] == "exhausted"
    assert client.get("/sync/logs?limit=abc").status_code == 400


def test_trigger_conflict_returns_running_job(client, use_pipeline):
    directory = FakeDirectory(make_pages(1), hold_at=0)
    pipeline = use_pipeline(directory)

    first = client.post("/sync/trigger", json={"scope": SCOPE}, headers={"X-Admin-Id": "alice"})
    job_id = first.get_json()["data"]["syncJobId"]
    second = client.post("/sync/trigger", json={"scope": SCOPE})

    assert second.status_code == 409
    assert second.get_json()["syncJobId"] == job_id
    scope_key = pipeline.orchestrator.get_job(job_id).scope.key
    status = client.get("/sync/status", query_string={"scope": scope_key}).get_json()["data"]
    assert status["id"] == job_id
    assert status["triggeredBy"] == "alice"

    cancelled = client.post("/sync/cancel", json={"syncJobId": job_id})
    assert cancelled.status_code == 200
    assert cancelled.get_json()["data"]["status"] == "cancelled"
    directory.release.set()
    pipeline.orchestrator.wait(job_id, timeout=5)


def test_cancel_validation(client, use_pipeline):
    use_pipeline()
    assert client.post("/sync/cancel", json={}).status_code == 400
    assert client.post("/sync/cancel", json={"syncJobId": "missing"}).status_code == 404


def test_list_candidates_with_filters(client, use_pipeline):
    pipeline = use_pipeline(FakeDirectory(make_pages(1, per_page=5)))
    run_sync(client, pipeline)

    body = client.get("/candidates?status=pending&isDuplicate=false&limit=2&offset=1").get_json()

    assert [c["externalId"] for c in body["data"]] == ["place-1", "place-2"]
    assert body["pagination"] == {"total": 5, "limit": 2, "offset": 1, "hasMore": True}
    assert client.get("/candidates?isDuplicate=maybe").status_code == 400
    assert client.get("/candidates?status=archived").status_code == 400
    assert client.get("/candidates?minConfidence=2").status_code == 400
    assert client.get("/candidates?limit=-1").status_code == 400


def test_candidate_detail(client, use_pipeline, listings):
    listings.add(ExistingListing(id="lst-1", name="Camp 1", latitude=18.79, longitude=98.99))
    page = [google_place(1, lat=18.79, lng=98.99)]
    pipeline = use_pipeline(FakeDirectory([page]))
    run_sync(client, pipeline)
    candidate_id = first_candidate_id(client)

    data = client.get(f"/candidates/{candidate_id}").get_json()["data"]

    assert data["rawPlace"]["externalId"] == "place-1"
    assert data["rawPlace"]["rawPayload"]["id"] == "place-1"
    assert data["nearbyListings"][0]["comparison"]["listingId"] == "lst-1"
    assert data["confidenceBreakdown"]["weights"]["nameSimilarity"] == 0.4
    assert client.get("/candidates/missing").status_code == 404


def test_approve_imports_and_conflicts(client, use_pipeline, listings):
    pipeline = use_pipeline(FakeDirectory([[google_place(1, photos=2)]]))
    run_sync(client, pipeline)
    candidate_id = first_candidate_id(client)

    response = client.post(f"/candidates/{candidate_id}/approve", json={"decidedBy": "alice"})

    assert response.status_code == 200
    listing_id = response.get_json()["data"]["listingId"]
    assert len(listings.photos[listing_id]) == 2
    candidate = pipeline.candidates.get(candidate_id)
    assert candidate.status is CandidateStatus.IMPORTED
    assert candidate.decided_by == "alice"

    again = client.post(f"/candidates/{candidate_id}/approve", json={})
    assert again.status_code == 409
    assert again.get_json()["currentStatus"] == "imported"
    rejected = client.post(f"/candidates/{candidate_id}/reject", json={"reason": "late"})
    assert rejected.status_code == 409


def test_approve_with_listing_failure_can_be_retried(client, use_pipeline, listings):
    pipeline = use_pipeline(FakeDirectory([[google_place(1)]]))
    run_sync(client, pipeline)
    candidate_id = first_candidate_id(client)
    listings.fail_creates = 1

    response = client.post(f"/candidates/{candidate_id}/approve", json={})

    assert response.status_code == 502
    assert pipeline.candidates.get(candidate_id).status is CandidateStatus.APPROVED

    retried = client.post(f"/candidates/{candidate_id}/import")
    assert retried.status_code == 200
    assert pipeline.candidates.get(candidate_id).listing_id == retried.get_json()["data"]["listingId"]


def test_reject_requires_reason(client, use_pipeline):
    pipeline = use_pipeline(FakeDirectory([[google_place(1)]]))
    run_sync(client, pipeline)
    candidate_id = first_candidate_id(client)

    assert client.post(f"/candidates/{candidate_id}/reject", json={}).status_code == 400
    response = client.post(
        f"/candidates/{candidate_id}/reject",
        json={"reason": "permanently closed"},
        headers={"X-Admin-Id": "bob"},
    )

    assert response.status_code == 200
    candidate = pipeline.candidates.get(candidate_id)
    assert candidate.rejection_reason == "permanently closed"
    assert candidate.decided_by == "bob"
    assert client.post("/candidates/missing/reject", json={"reason": "x"}).status_code == 404


def test_bulk_approve_reports_each_candidate(client, use_pipeline):
    pipeline = use_pipeline(FakeDirectory(make_pages(1, per_page=3)))
    run_sync(client, pipeline)
    ids = [c["id"] for c in client.get("/candidates").get_json()["data"]]
    client.post(f"/candidates/{ids[0]}/reject", json={"reason": "spam"})

    response = client.post("/candidates/bulk-approve", json={"candidateIds": ids + ["missing"]})

    data = response.get_json()["data"]
    assert response.status_code == 200
    assert [item["candidateId"] for item in data["imported"]] == ids[1:]
    assert [item["candidateId"] for item in data["failed"]] == [ids[0], "missing"]
    assert client.post("/candidates/bulk-approve", json={"candidateIds": []}).status_code == 400
