from datetime import datetime, timezone

import pytest

from places_pipeline.errors import AlreadyRunning
from places_pipeline.models import RawPlace, Scope, SyncJob, SyncStatus
from places_pipeline.storage.memory import InMemoryRawPlaceStore, InMemorySyncJobStore

FIRST_SEEN = datetime(2024, 5, 1, tzinfo=timezone.utc)
SEEN_AGAIN = datetime(2024, 6, 1, tzinfo=timezone.utc)


def test_refetch_keeps_original_place_and_moves_backlink():
    store = InMemoryRawPlaceStore()
    first, created = store.upsert(
        RawPlace(external_id="e1", name="Original Name", address="A", fetched_at=FIRST_SEEN), "job-1"
    )
    assert created is True

    again, created = store.upsert(
        RawPlace(external_id="e1", name="Renamed", address="B", fetched_at=SEEN_AGAIN), "job-2"
    )

    assert created is False
    assert again.id == first.id
    stored = store.get(first.id)
    assert (stored.name, stored.address) == ("Original Name", "A")
    assert stored.last_seen_sync_job_id == "job-2"
    assert stored.fetched_at == SEEN_AGAIN


def test_sync_job_insert_rejects_second_processing_job_for_scope():
    store = InMemorySyncJobStore()
    scope = Scope(query="camping")
    store.insert(SyncJob(id="j1", scope=scope, status=SyncStatus.PROCESSING))

    with pytest.raises(AlreadyRunning) as exc_info:
        store.insert(SyncJob(id="j2", scope=scope, status=SyncStatus.PROCESSING))
    assert exc_info.value.sync_job_id == "j1"

    store.insert(SyncJob(id="j3", scope=Scope(query="glamping"), status=SyncStatus.PROCESSING))
    assert store.get("j2") is None


def test_terminal_sync_job_is_not_overwritten():
    store = InMemorySyncJobStore()
    job = SyncJob(id="j1", scope=Scope(query="camping"), status=SyncStatus.PROCESSING)
    store.insert(job)

    job.places_found = 20
    assert store.save(job) is True

    job.status = SyncStatus.FAILED
    assert store.save(job) is True

    job.status = SyncStatus.COMPLETED
    job.places_found = 40
    assert store.save(job) is False
    stored = store.get("j1")
    assert stored.status is SyncStatus.FAILED
    assert stored.places_found == 20

    with pytest.raises(KeyError):
        store.save(SyncJob(id="missing", scope=Scope(query="camping")))
