import json

from places_pipeline.core import wiring
from places_pipeline.core.config import Settings
from places_pipeline.gateways.listings import HttpListingGateway, InMemoryListingGateway
from places_pipeline.models import RawPlace, Scope, SyncJob, SyncStatus
from places_pipeline.storage.memory import InMemoryCandidateStore, InMemoryRawPlaceStore, InMemorySyncJobStore
from places_pipeline.vendors.google_places import GooglePlacesDirectory
from places_pipeline.vendors.serpapi_maps import SerpApiMapsDirectory

from scripts import retry_imports


def test_build_directory_selects_backend():
    google = wiring.build_directory(Settings(google_api_key="g", page_size=10))
    assert isinstance(google, GooglePlacesDirectory)
    assert google.page_size == 10

    serp = wiring.build_directory(Settings(directory_backend="serpapi", serpapi_api_key="s"))
    assert isinstance(serp, SerpApiMapsDirectory)
    assert serp.api_key == "s"


def test_build_stores_defaults_to_memory():
    raw_places, candidates, jobs = wiring.build_stores(Settings())
    assert isinstance(raw_places, InMemoryRawPlaceStore)
    assert isinstance(candidates, InMemoryCandidateStore)
    assert isinstance(jobs, InMemorySyncJobStore)


def test_build_stores_uses_postgres_when_configured(monkeypatch):
    from places_pipeline.storage import postgres

    calls = []
    monkeypatch.setattr(postgres, "create_schema", lambda: calls.append("schema"))

    raw_places, candidates, jobs = wiring.build_stores(Settings(database_url="postgresql://db/places"))

    assert calls == ["schema"]
    assert isinstance(raw_places, postgres.PostgresRawPlaceStore)
    assert isinstance(candidates, postgres.PostgresCandidateStore)
    assert isinstance(jobs, postgres.PostgresSyncJobStore)


def test_build_listing_gateway():
    assert isinstance(wiring.build_listing_gateway(Settings()), InMemoryListingGateway)
    gateway = wiring.build_listing_gateway(Settings(listing_api_url="http://listings.local", listing_api_token="t"))
    assert isinstance(gateway, HttpListingGateway)
    assert gateway.session.headers["Authorization"] == "Bearer t"


def _pipeline_over(settings, jobs, **kwargs):
    return wiring.build_pipeline(
        settings,
        directory=GooglePlacesDirectory(api_key="g", request_cost=settings.text_search_cost),
        stores=(InMemoryRawPlaceStore(), InMemoryCandidateStore(), jobs),
        listings=InMemoryListingGateway(),
        **kwargs,
    )


def test_build_pipeline_leaves_processing_jobs_alone_by_default(settings):
    jobs = InMemorySyncJobStore()
    jobs.insert(SyncJob(id="live", scope=Scope(query="camping"), max_places=10, status=SyncStatus.PROCESSING))

    pipeline = _pipeline_over(settings, jobs)
    try:
        assert pipeline.orchestrator.get_job("live").status is SyncStatus.PROCESSING
        assert pipeline.orchestrator.status().id == "live"
    finally:
        pipeline.orchestrator.shutdown()


def test_build_pipeline_recovers_orphaned_jobs(settings):
    jobs = InMemorySyncJobStore()
    jobs.insert(SyncJob(id="old", scope=Scope(query="camping"), max_places=10, status=SyncStatus.PROCESSING))

    pipeline = _pipeline_over(settings, jobs, recover_orphans=True)
    try:
        job = pipeline.orchestrator.get_job("old")
        assert job.status is SyncStatus.FAILED
        assert job.error_message == "orphaned by restart"
        assert pipeline.orchestrator.status() is None
    finally:
        pipeline.orchestrator.shutdown()


def test_retry_imports_script_reports_failures(monkeypatch, make_pipeline, listings, capsys):
    pipeline = make_pipeline()
    stored, _ = pipeline.raw_places.upsert(RawPlace(external_id="e1", name="Camp"), None)
    candidate = pipeline.candidates.create(stored, pipeline.engine.empty_breakdown(), None)
    pipeline.candidates.approve(candidate.id, "alice")
    listings.fail_creates = 1
    monkeypatch.setattr(retry_imports, "build_pipeline", lambda: pipeline)

    assert retry_imports.main([]) == 1
    assert json.loads(capsys.readouterr().out)["failed"][0]["candidateId"] == candidate.id

    assert retry_imports.main(["--limit", "5"]) == 0
    assert json.loads(capsys.readouterr().out)["imported"][0]["candidateId"] == candidate.id
