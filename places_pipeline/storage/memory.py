"""Thread-safe in-memory stores for development and tests."""

from __future__ import annotations

import copy
import threading
import uuid
from itertools import count
from typing import Dict, List, Optional, Tuple

from places_pipeline.errors import AlreadyRunning, DuplicatePendingCandidate
from places_pipeline.models import (
    CandidateFilter,
    CandidateStatus,
    ImportCandidate,
    Pagination,
    RawPlace,
    SyncJob,
    SyncStatus,
    utcnow,
)


class InMemoryRawPlaceStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._by_id: Dict[str, RawPlace] = {}
        self._id_by_external: Dict[str, str] = {}

    def upsert(self, place: RawPlace, sync_job_id: Optional[str]) -> Tuple[RawPlace, bool]:
        with self._lock:
            existing_id = self._id_by_external.get(place.external_id)
            if existing_id is not None:
                # Only the backlink moves on a re-fetch.
                stored = self._by_id[existing_id]
            else:
                stored = copy.deepcopy(place)
                stored.id = str(uuid.uuid4())
                self._by_id[stored.id] = stored
                self._id_by_external[place.external_id] = stored.id
            stored.last_seen_sync_job_id = sync_job_id
            stored.fetched_at = place.fetched_at or utcnow()
            return copy.deepcopy(stored), existing_id is None

    def get(self, raw_place_id: str) -> Optional[RawPlace]:
        with self._lock:
            place = self._by_id.get(raw_place_id)
            return copy.deepcopy(place) if place else None


class InMemoryCandidateStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._rows: Dict[str, ImportCandidate] = {}
        self._sequence: Dict[str, int] = {}
        self._counter = count()

    def insert(self, candidate: ImportCandidate) -> ImportCandidate:
        with self._lock:
            if candidate.status is CandidateStatus.PENDING and any(
                row.raw_place_id == candidate.raw_place_id and row.status is CandidateStatus.PENDING
                for row in self._rows.values()
            ):
                raise DuplicatePendingCandidate(candidate.raw_place_id)
            self._rows[candidate.id] = copy.deepcopy(candidate)
            self._sequence[candidate.id] = next(self._counter)
            return copy.deepcopy(candidate)

    def get(self, candidate_id: str) -> Optional[ImportCandidate]:
        with self._lock:
            row = self._rows.get(candidate_id)
            return copy.deepcopy(row) if row else None

    def compare_and_set(self, candidate: ImportCandidate, expected: CandidateStatus) -> bool:
        with self._lock:
            current = self._rows.get(candidate.id)
            if current is None or current.status is not expected:
                return False
            self._rows[candidate.id] = copy.deepcopy(candidate)
            return True

    def query(self, filters: CandidateFilter, pagination: Pagination) -> Tuple[List[ImportCandidate], int]:
        with self._lock:
            rows = [
                row
                for row in self._rows.values()
                if (filters.status is None or row.status is filters.status)
                and (filters.is_duplicate is None or row.is_duplicate == filters.is_duplicate)
                and (filters.min_confidence is None or row.confidence_score >= filters.min_confidence)
            ]
            rows.sort(key=lambda row: self._sequence[row.id])
            page = rows[pagination.offset : pagination.offset + pagination.limit]
            return [copy.deepcopy(row) for row in page], len(rows)

    def exists_for_raw_place(self, raw_place_id: str) -> bool:
        with self._lock:
            return any(row.raw_place_id == raw_place_id for row in self._rows.values())


class InMemorySyncJobStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._jobs: Dict[str, SyncJob] = {}
        self._sequence: Dict[str, int] = {}
        self._counter = count()

    def insert(self, job: SyncJob) -> SyncJob:
        with self._lock:
            if job.status is SyncStatus.PROCESSING:
                for other in self._jobs.values():
                    if other.status is SyncStatus.PROCESSING and other.scope.key == job.scope.key:
                        raise AlreadyRunning(job.scope.key, other.id)
            self._jobs[job.id] = copy.deepcopy(job)
            self._sequence[job.id] = next(self._counter)
            return copy.deepcopy(job)

    def save(self, job: SyncJob) -> bool:
        with self._lock:
            if job.id not in self._jobs:
                raise KeyError(job.id)
            if self._jobs[job.id].status.is_terminal:
                return False
            self._jobs[job.id] = copy.deepcopy(job)
            return True

    def get(self, job_id: str) -> Optional[SyncJob]:
        with self._lock:
            job = self._jobs.get(job_id)
            return copy.deepcopy(job) if job else None

    def list_recent(self, limit: int) -> List[SyncJob]:
        with self._lock:
            jobs = sorted(self._jobs.values(), key=lambda job: self._sequence[job.id], reverse=True)
            return [copy.deepcopy(job) for job in jobs[:limit]]

    def find_processing(self, scope_key: str) -> Optional[SyncJob]:
        with self._lock:
            matches = [
                job
                for job in self._jobs.values()
                if job.status is SyncStatus.PROCESSING and job.scope.key == scope_key
            ]
            if not matches:
                return None
            return copy.deepcopy(max(matches, key=lambda job: self._sequence[job.id]))

    def list_processing(self) -> List[SyncJob]:
        with self._lock:
            return [copy.deepcopy(job) for job in self._jobs.values() if job.status is SyncStatus.PROCESSING]
