"""Background sync runs: page the directory, score venues, write candidates."""

import logging
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional, Set, Union

from places_pipeline.core.candidates import CandidateRepository
from places_pipeline.core.dedup import DeduplicationEngine
from places_pipeline.core.ingestion import IngestionPage, PlaceIngestionClient
from places_pipeline.core.normalization import PassThroughNormalizer, VenueNormalizer
from places_pipeline.errors import (
    AlreadyRunning,
    DuplicatePendingCandidate,
    IngestionFailed,
    SyncJobNotFound,
)
from places_pipeline.gateways.listings import ListingGateway
from places_pipeline.models import RawPlace, Scope, SyncJob, SyncStatus, SyncType, utcnow
from places_pipeline.storage.base import RawPlaceStore, SyncJobStore

logger = logging.getLogger(__name__)

STOP_MAX_PLACES = "max_places"
STOP_EXHAUSTED = "exhausted"
STOP_BUDGET = "budget"
STOP_REQUEST_LIMIT = "request_limit"
STOP_CANCELLED = "cancelled"
STOP_ERROR = "error"

MAX_LOG_LIMIT = 100


@dataclass(frozen=True)
class SyncLimits:
    max_places: int = 5000
    max_requests: int = 10000
    max_cost: Decimal = Decimal("80")
    alert_cost: Decimal = Decimal("50")
    max_photos_per_place: int = 3


class SyncOrchestrator:
    """Runs at most one sync per scope on a thread pool.

    Each page is applied while holding the job's lock and metrics are saved
    once per page, so status readers never see a half-applied page. ``cancel``
    takes the same lock: it lands between pages, and a page that was in flight
    when the job was cancelled is discarded.
    """

    def __init__(
        self,
        ingestion: PlaceIngestionClient,
        engine: DeduplicationEngine,
        candidates: CandidateRepository,
        raw_places: RawPlaceStore,
        jobs: SyncJobStore,
        listings: ListingGateway,
        normalizer: Optional[VenueNormalizer] = None,
        limits: Optional[SyncLimits] = None,
        max_workers: int = 4,
    ) -> None:
        self.ingestion = ingestion
        self.engine = engine
        self.candidates = candidates
        self.raw_places = raw_places
        self.jobs = jobs
        self.listings = listings
        self.normalizer = normalizer or PassThroughNormalizer()
        self.limits = limits or SyncLimits()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="places-sync")
        self._registry_lock = threading.Lock()
        self._active: Dict[str, str] = {}
        self._job_locks: Dict[str, threading.Lock] = {}
        self._cancelled: Set[str] = set()
        self._futures: Dict[str, Future] = {}

    # ---------- Commands ----------

    def trigger(
        self,
        scope: Scope,
        max_places: Optional[int] = None,
        sync_type: Union[SyncType, str] = SyncType.FULL,
        triggered_by: str = "system",
    ) -> str:
        """Create a processing job for ``scope`` and start it in the background."""
        sync_type = SyncType(sync_type)
        if max_places is None:
            max_places = self.limits.max_places
        if max_places <= 0:
            raise ValueError("maxPlaces must be positive")
        max_places = min(max_places, self.limits.max_places)

        with self._registry_lock:
            running_id = self._active.get(scope.key)
            if running_id is None:
                running = self.jobs.find_processing(scope.key)
                running_id = running.id if running else None
            if running_id is not None:
                logger.warning("Sync already processing for scope=%s (job %s)", scope.key, running_id)
                raise AlreadyRunning(scope.key, running_id)

            job = SyncJob(
                id=str(uuid.uuid4()),
                scope=scope,
                sync_type=sync_type,
                max_places=max_places,
                status=SyncStatus.PROCESSING,
                triggered_by=triggered_by or "system",
                started_at=utcnow(),
            )
            try:
                self.jobs.insert(job)
            except AlreadyRunning as exc:
                logger.warning("Sync already processing for scope=%s (job %s)", scope.key, exc.sync_job_id)
                raise
            self._active[scope.key] = job.id
            self._job_locks[job.id] = threading.Lock()
            self._futures[job.id] = self._executor.submit(self._run, job.id)

        logger.info(
            "Triggered %s sync %s for scope=%s (maxPlaces=%d, by %s)",
            sync_type.value,
            job.id,
            scope.key,
            max_places,
            job.triggered_by,
        )
        return job.id

    def cancel(self, job_id: str) -> SyncJob:
        """Cancel a processing job; a no-op for jobs that already finished."""
        self.get_job(job_id)
        with self._lock_for(job_id):
            job = self.get_job(job_id)
            if job.status.is_terminal:
                logger.info("Sync %s already %s; cancel ignored", job_id, job.status.value)
                return job
            self._cancelled.add(job_id)
            job.status = SyncStatus.CANCELLED
            job.stop_reason = STOP_CANCELLED
            job.finished_at = utcnow()
            saved = self.jobs.save(job)
            self._release(job)
        if not saved:
            return self.get_job(job_id)
        logger.info("Sync %s cancelled after %d places", job_id, job.places_found)
        return job

    def recover_orphaned_jobs(self) -> int:
        """Fail jobs left processing by a previous server process.

        Only safe where no other process is running syncs against the same
        store, i.e. at server start.
        """
        recovered = 0
        for job in self.jobs.list_processing():
            if job.id in self._futures:
                continue
            job.status = SyncStatus.FAILED
            job.stop_reason = STOP_ERROR
            job.finished_at = utcnow()
            job.error_message = "orphaned by restart"
            if not self.jobs.save(job):
                continue
            recovered += 1
            logger.warning("Marked orphaned sync %s for scope=%s as failed", job.id, job.scope.key)
        return recovered

    # ---------- Queries ----------

    def get_job(self, job_id: str) -> SyncJob:
        job = self.jobs.get(job_id)
        if job is None:
            raise SyncJobNotFound(f"sync job {job_id} not found")
        return job

    def status(self, scope: Union[Scope, str, None] = None) -> Optional[SyncJob]:
        """The processing job for ``scope`` (or any scope when omitted), else None."""
        if scope is None:
            processing = self.jobs.list_processing()
            return processing[-1] if processing else None
        key = scope.key if isinstance(scope, Scope) else scope
        return self.jobs.find_processing(key)

    def logs(self, limit: int = 20) -> List[SyncJob]:
        if limit <= 0:
            raise ValueError("limit must be positive")
        return self.jobs.list_recent(min(limit, MAX_LOG_LIMIT))

    def wait(self, job_id: str, timeout: Optional[float] = None) -> SyncJob:
        """Block until the job's worker returns, then return the stored job."""
        future = self._futures.get(job_id)
        if future is not None:
            future.result(timeout=timeout)
        return self.get_job(job_id)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    # ---------- Worker ----------

    def _lock_for(self, job_id: str) -> threading.Lock:
        with self._registry_lock:
            return self._job_locks.setdefault(job_id, threading.Lock())

    def _release(self, job: SyncJob) -> None:
        with self._registry_lock:
            if self._active.get(job.scope.key) == job.id:
                del self._active[job.scope.key]

    def _run(self, job_id: str) -> None:
        job = self.get_job(job_id)
        try:
            self._ingest(job)
        except Exception as exc:
            logger.exception("Sync %s crashed", job_id)
            self._finish(
                job,
                SyncStatus.FAILED,
                STOP_ERROR,
                error_message=str(exc) or type(exc).__name__,
                error_details={"error": type(exc).__name__, "message": str(exc)},
            )
        finally:
            self._release(job)

    def _ingest(self, job: SyncJob) -> None:
        page_token: Optional[str] = None
        alerted = False
        while True:
            if job.id in self._cancelled:
                return
            stop_reason = self._budget_stop(job)
            if stop_reason is not None:
                self._finish(job, SyncStatus.COMPLETED, stop_reason)
                return

            try:
                page = self.ingestion.fetch_page(job.scope, page_token)
            except IngestionFailed as exc:
                with self._lock_for(job.id):
                    if job.id in self._cancelled:
                        return
                    job.api_requests_made += exc.attempts
                self._finish(
                    job,
                    SyncStatus.FAILED,
                    STOP_ERROR,
                    error_message=str(exc),
                    error_details=exc.details,
                )
                return

            with self._lock_for(job.id):
                if job.id in self._cancelled:
                    logger.info("Sync %s cancelled; discarding fetched page of %d venues", job.id, len(page.venues))
                    return
                self._apply_page(job, page)
                if not self.jobs.save(job):
                    logger.warning("Sync %s was finished elsewhere; stopping", job.id)
                    return

            logger.info(
                "Sync %s applied page: found=%d updated=%d requests=%d cost=%s",
                job.id,
                job.places_found,
                job.places_updated,
                job.api_requests_made,
                job.estimated_cost_usd,
            )
            if not alerted and job.estimated_cost_usd >= self.limits.alert_cost:
                alerted = True
                logger.warning(
                    "Sync %s estimated cost $%s crossed the alert threshold $%s",
                    job.id,
                    job.estimated_cost_usd,
                    self.limits.alert_cost,
                )

            if job.places_found >= job.max_places:
                self._finish(job, SyncStatus.COMPLETED, STOP_MAX_PLACES)
                return
            if not page.next_page_token:
                self._finish(job, SyncStatus.COMPLETED, STOP_EXHAUSTED)
                return
            page_token = page.next_page_token

    def _budget_stop(self, job: SyncJob) -> Optional[str]:
        if job.estimated_cost_usd >= self.limits.max_cost:
            logger.warning("Sync %s stopped at cost budget $%s", job.id, self.limits.max_cost)
            return STOP_BUDGET
        if job.api_requests_made >= self.limits.max_requests:
            logger.warning("Sync %s stopped at request limit %d", job.id, self.limits.max_requests)
            return STOP_REQUEST_LIMIT
        return None

    def _apply_page(self, job: SyncJob, page: IngestionPage) -> None:
        job.api_requests_made += page.requests_made
        job.estimated_cost_usd += page.request_cost
        for venue in page.venues:
            stored, created = self.raw_places.upsert(venue, job.id)
            job.places_found += 1
            job.photos_downloaded += min(len(venue.photo_refs), self.limits.max_photos_per_place)
            if not created:
                job.places_updated += 1
                if job.sync_type is SyncType.INCREMENTAL and self.candidates.has_candidate(stored.id):
                    continue
            self._score_and_record(job, stored)

    def _score_and_record(self, job: SyncJob, raw_place: RawPlace) -> None:
        venue = self._normalize(raw_place)
        existing = self.listings.existing_listings(venue, self.engine.radius_m)
        breakdown, comparison = self.engine.score(venue, existing)
        try:
            self.candidates.create(raw_place, breakdown, comparison, sync_job_id=job.id)
        except DuplicatePendingCandidate:
            logger.debug("Raw place %s already has a pending candidate; skipped", raw_place.id)

    def _normalize(self, raw_place: RawPlace) -> RawPlace:
        try:
            return self.normalizer.normalize(raw_place)
        except Exception:
            logger.warning("Normalizer failed for %s; scoring raw fields", raw_place.external_id, exc_info=True)
            return raw_place

    def _finish(
        self,
        job: SyncJob,
        status: SyncStatus,
        stop_reason: str,
        error_message: Optional[str] = None,
        error_details: Optional[Dict[str, Any]] = None,
    ) -> None:
        with self._lock_for(job.id):
            if job.id in self._cancelled:
                return
            job.status = status
            job.stop_reason = stop_reason
            job.finished_at = utcnow()
            job.error_message = error_message
            job.error_details = error_details
            if not self.jobs.save(job):
                logger.warning("Sync %s was finished elsewhere; %s not recorded", job.id, status.value)
                return
        if status is SyncStatus.FAILED:
            logger.error("Sync %s failed: %s", job.id, error_message)
        else:
            logger.info(
                "Sync %s %s (%s): found=%d updated=%d requests=%d cost=$%s duration=%ss",
                job.id,
                status.value,
                stop_reason,
                job.places_found,
                job.places_updated,
                job.api_requests_made,
                job.estimated_cost_usd,
                job.duration_seconds,
            )
