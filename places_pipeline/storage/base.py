"""Persistence interfaces implemented by the in-memory and PostgreSQL backends."""

from typing import List, Optional, Protocol, Tuple

from places_pipeline.models import (
    CandidateFilter,
    CandidateStatus,
    ImportCandidate,
    Pagination,
    RawPlace,
    SyncJob,
)


class RawPlaceStore(Protocol):
    def upsert(self, place: RawPlace, sync_job_id: Optional[str]) -> Tuple[RawPlace, bool]:
        """Insert or refresh by external id; returns the stored place and whether it was new."""

    def get(self, raw_place_id: str) -> Optional[RawPlace]:
        ...


class CandidateStore(Protocol):
    def insert(self, candidate: ImportCandidate) -> ImportCandidate:
        """Raises DuplicatePendingCandidate when the raw place already has a pending candidate."""

    def get(self, candidate_id: str) -> Optional[ImportCandidate]:
        ...

    def compare_and_set(self, candidate: ImportCandidate, expected: CandidateStatus) -> bool:
        """Persist ``candidate`` only if the stored status still equals ``expected``."""

    def query(self, filters: CandidateFilter, pagination: Pagination) -> Tuple[List[ImportCandidate], int]:
        ...

    def exists_for_raw_place(self, raw_place_id: str) -> bool:
        ...


class SyncJobStore(Protocol):
    def insert(self, job: SyncJob) -> SyncJob:
        """Raises AlreadyRunning if the scope already has a processing job."""
        ...

    def save(self, job: SyncJob) -> bool:
        """Write the job unless the stored copy is already terminal."""
        ...

    def get(self, job_id: str) -> Optional[SyncJob]:
        ...

    def list_recent(self, limit: int) -> List[SyncJob]:
        ...

    def find_processing(self, scope_key: str) -> Optional[SyncJob]:
        ...

    def list_processing(self) -> List[SyncJob]:
        ...
