"""Materialises approved candidates as listings."""

import logging
import threading
from typing import Any, Dict, List, Optional

from places_pipeline.core.candidates import CandidateRepository
from places_pipeline.errors import (
    ImportPersistenceFailed,
    InvalidStateTransition,
    ListingGatewayError,
)
from places_pipeline.etl.transform import to_listing_payload
from places_pipeline.gateways.listings import ListingGateway
from places_pipeline.models import CandidateFilter, CandidateStatus, Pagination
from places_pipeline.storage.base import RawPlaceStore

logger = logging.getLogger(__name__)


class ImportExecutor:
    def __init__(
        self,
        candidates: CandidateRepository,
        raw_places: RawPlaceStore,
        listings: ListingGateway,
        max_photos: int = 3,
    ) -> None:
        self.candidates = candidates
        self.raw_places = raw_places
        self.listings = listings
        self.max_photos = max_photos
        self._locks_guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def import_candidate(self, candidate_id: str) -> str:
        """Create the listing for an approved candidate and return its id.

        A failed listing creation leaves the candidate approved so the call can
        be repeated. Photo uploads are best effort. Imports of the same
        candidate are serialised; the loser sees it already imported.
        """
        with self._lock_for(candidate_id):
            return self._import(candidate_id)

    def _lock_for(self, candidate_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(candidate_id, threading.Lock())

    def _import(self, candidate_id: str) -> str:
        candidate = self.candidates.get(candidate_id)
        if candidate.status is not CandidateStatus.APPROVED:
            raise InvalidStateTransition(candidate_id, candidate.status.value, CandidateStatus.IMPORTED.value)

        raw_place = self.raw_places.get(candidate.raw_place_id)
        if raw_place is None:
            raise ImportPersistenceFailed(candidate_id, f"raw place {candidate.raw_place_id} is missing")

        payload, photo_urls = to_listing_payload(candidate, raw_place, max_photos=self.max_photos)
        try:
            listing_id = self.listings.create_listing(payload)
        except ListingGatewayError as exc:
            logger.error("Listing creation failed for candidate %s: %s", candidate_id, exc)
            raise ImportPersistenceFailed(candidate_id, str(exc)) from exc

        attached = self._attach_photos(listing_id, photo_urls)
        self.candidates.mark_imported(candidate_id, listing_id)
        logger.info(
            "Imported candidate %s as listing %s (%d/%d photos)",
            candidate_id,
            listing_id,
            attached,
            len(photo_urls),
        )
        return listing_id

    def _attach_photos(self, listing_id: str, photo_urls) -> int:
        attached = 0
        for position, url in enumerate(photo_urls):
            try:
                self.listings.attach_photo(listing_id, url, position)
            except ListingGatewayError as exc:
                logger.warning("Photo %d for listing %s not attached: %s", position, listing_id, exc)
                continue
            attached += 1
        return attached

    def retry_approved(self, limit: Optional[int] = None) -> Dict[str, List[Dict[str, Any]]]:
        """Re-run materialisation for candidates stuck in ``approved``."""
        results: Dict[str, List[Dict[str, Any]]] = {"imported": [], "failed": []}
        offset = 0
        while True:
            page, _total = self.candidates.list(
                CandidateFilter(status=CandidateStatus.APPROVED),
                Pagination(limit=Pagination.MAX_LIMIT, offset=offset),
            )
            if not page:
                break
            for candidate in page:
                if limit is not None and len(results["imported"]) + len(results["failed"]) >= limit:
                    return results
                try:
                    listing_id = self.import_candidate(candidate.id)
                except ImportPersistenceFailed as exc:
                    results["failed"].append({"candidateId": candidate.id, "reason": exc.reason})
                    offset += 1
                    continue
                except InvalidStateTransition:
                    # Decided elsewhere since the page was read.
                    continue
                results["imported"].append({"candidateId": candidate.id, "listingId": listing_id})
        return results
