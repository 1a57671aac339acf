"""Review workflow for import candidates.

Every transition goes through ``CandidateStore.compare_and_set`` keyed on the
status the caller observed, so of two concurrent decisions only the first
writer is persisted.
"""

import logging
import uuid
from typing import List, Optional, Tuple

from places_pipeline.errors import (
    CandidateNotFound,
    ConflictAlreadyDecided,
    InvalidStateTransition,
)
from places_pipeline.models import (
    Approved,
    CandidateFilter,
    CandidateState,
    CandidateStatus,
    ConfidenceBreakdown,
    DuplicateComparison,
    ImportCandidate,
    Imported,
    Pagination,
    RawPlace,
    Rejected,
    utcnow,
)
from places_pipeline.storage.base import CandidateStore

logger = logging.getLogger(__name__)


class CandidateRepository:
    def __init__(self, store: CandidateStore) -> None:
        self.store = store

    def create(
        self,
        raw_place: RawPlace,
        breakdown: ConfidenceBreakdown,
        comparison: Optional[DuplicateComparison],
        sync_job_id: Optional[str] = None,
    ) -> ImportCandidate:
        """Insert a pending candidate; raises DuplicatePendingCandidate if one already exists."""
        if raw_place.id is None:
            raise ValueError("raw place must be persisted before a candidate is created")
        candidate = ImportCandidate(
            id=str(uuid.uuid4()),
            raw_place_id=raw_place.id,
            external_id=raw_place.external_id,
            name=raw_place.name,
            address=raw_place.address,
            rating=raw_place.rating,
            rating_count=raw_place.rating_count,
            breakdown=breakdown,
            comparison=comparison,
            sync_job_id=sync_job_id,
        )
        stored = self.store.insert(candidate)
        logger.debug(
            "Created candidate %s for %s (score=%.4f duplicate=%s)",
            stored.id,
            stored.external_id,
            stored.confidence_score,
            stored.is_duplicate,
        )
        return stored

    def get(self, candidate_id: str) -> ImportCandidate:
        candidate = self.store.get(candidate_id)
        if candidate is None:
            raise CandidateNotFound(f"candidate {candidate_id} not found")
        return candidate

    def has_candidate(self, raw_place_id: str) -> bool:
        return self.store.exists_for_raw_place(raw_place_id)

    def approve(self, candidate_id: str, decided_by: str) -> ImportCandidate:
        candidate = self._decide(candidate_id, Approved(decided_by=decided_by, decided_at=utcnow()))
        logger.info("Candidate %s approved by %s", candidate_id, decided_by)
        return candidate

    def reject(self, candidate_id: str, decided_by: str, reason: str) -> ImportCandidate:
        if not reason or not reason.strip():
            raise ValueError("rejection reason must not be empty")
        state = Rejected(decided_by=decided_by, decided_at=utcnow(), reason=reason.strip())
        candidate = self._decide(candidate_id, state)
        logger.info("Candidate %s rejected by %s: %s", candidate_id, decided_by, state.reason)
        return candidate

    def mark_imported(self, candidate_id: str, listing_id: str) -> ImportCandidate:
        if not listing_id:
            raise ValueError("listing id must not be empty")
        candidate = self.get(candidate_id)
        if not isinstance(candidate.state, Approved):
            raise InvalidStateTransition(candidate_id, candidate.status.value, CandidateStatus.IMPORTED.value)
        approval = candidate.state
        candidate.state = Imported(
            decided_by=approval.decided_by,
            decided_at=approval.decided_at,
            listing_id=listing_id,
            imported_at=utcnow(),
        )
        if not self.store.compare_and_set(candidate, CandidateStatus.APPROVED):
            current = self.get(candidate_id)
            raise InvalidStateTransition(candidate_id, current.status.value, CandidateStatus.IMPORTED.value)
        logger.info("Candidate %s imported as listing %s", candidate_id, listing_id)
        return candidate

    def list(
        self,
        filters: Optional[CandidateFilter] = None,
        pagination: Optional[Pagination] = None,
    ) -> Tuple[List[ImportCandidate], int]:
        return self.store.query(filters or CandidateFilter(), pagination or Pagination())

    def _decide(self, candidate_id: str, state: CandidateState) -> ImportCandidate:
        candidate = self.get(candidate_id)
        if candidate.status is not CandidateStatus.PENDING:
            raise ConflictAlreadyDecided(candidate_id, candidate.status.value, state.status.value)
        candidate.state = state
        if not self.store.compare_and_set(candidate, CandidateStatus.PENDING):
            current = self.get(candidate_id)
            logger.warning(
                "Candidate %s decision lost to a concurrent reviewer (now %s)",
                candidate_id,
                current.status.value,
            )
            raise ConflictAlreadyDecided(candidate_id, current.status.value, state.status.value)
        return candidate
