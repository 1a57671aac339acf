"""PostgreSQL stores for raw places, import candidates and sync jobs."""

import logging
import uuid
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from psycopg2 import errors, extras

from places_pipeline.core.db import get_connection
from places_pipeline.errors import AlreadyRunning, DuplicatePendingCandidate
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
    Pending,
    RawPlace,
    Rejected,
    Scope,
    SyncJob,
    SyncStatus,
    SyncType,
)

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS raw_places (
    id UUID PRIMARY KEY,
    external_id TEXT NOT NULL UNIQUE,
    source TEXT NOT NULL,
    name TEXT NOT NULL,
    address TEXT,
    latitude DOUBLE PRECISION,
    longitude DOUBLE PRECISION,
    phone TEXT,
    website TEXT,
    rating NUMERIC(2,1),
    rating_count INT,
    category_hints JSONB NOT NULL DEFAULT '[]',
    primary_category TEXT,
    photo_refs JSONB NOT NULL DEFAULT '[]',
    place_hash TEXT,
    raw_payload JSONB NOT NULL,
    last_seen_sync_job_id UUID,
    fetched_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_raw_places_place_hash ON raw_places(place_hash);

CREATE TABLE IF NOT EXISTS sync_jobs (
    seq BIGSERIAL,
    id UUID PRIMARY KEY,
    scope JSONB NOT NULL,
    scope_key TEXT NOT NULL,
    sync_type TEXT NOT NULL,
    max_places INT NOT NULL,
    status TEXT NOT NULL CHECK (status IN ('idle', 'processing', 'completed', 'failed', 'cancelled')),
    triggered_by TEXT NOT NULL DEFAULT 'system',
    started_at TIMESTAMPTZ,
    finished_at TIMESTAMPTZ,
    places_found INT NOT NULL DEFAULT 0,
    places_updated INT NOT NULL DEFAULT 0,
    api_requests_made INT NOT NULL DEFAULT 0,
    estimated_cost_usd NUMERIC(12,4) NOT NULL DEFAULT 0,
    photos_downloaded INT NOT NULL DEFAULT 0,
    stop_reason TEXT,
    error_message TEXT,
    error_details JSONB
);
CREATE INDEX IF NOT EXISTS idx_sync_jobs_started_at ON sync_jobs(started_at DESC);
CREATE UNIQUE INDEX IF NOT EXISTS uq_sync_jobs_processing ON sync_jobs(scope_key) WHERE status = 'processing';

CREATE TABLE IF NOT EXISTS import_candidates (
    seq BIGSERIAL,
    id UUID PRIMARY KEY,
    raw_place_id UUID NOT NULL REFERENCES raw_places(id) ON DELETE CASCADE,
    external_id TEXT NOT NULL,
    sync_job_id UUID,
    name TEXT NOT NULL,
    address TEXT,
    rating NUMERIC(2,1),
    rating_count INT,
    confidence_score NUMERIC(5,4) NOT NULL CHECK (confidence_score BETWEEN 0 AND 1),
    is_duplicate BOOLEAN NOT NULL DEFAULT FALSE,
    duplicate_of TEXT,
    confidence_breakdown JSONB NOT NULL,
    duplicate_comparison JSONB,
    status TEXT NOT NULL DEFAULT 'pending' CHECK (status IN ('pending', 'approved', 'rejected', 'imported')),
    rejection_reason TEXT,
    listing_id TEXT,
    decided_by TEXT,
    decided_at TIMESTAMPTZ,
    imported_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    CHECK (status <> 'rejected' OR rejection_reason IS NOT NULL),
    CHECK (status <> 'imported' OR listing_id IS NOT NULL)
);
CREATE UNIQUE INDEX IF NOT EXISTS uq_import_candidates_pending
    ON import_candidates(raw_place_id) WHERE status = 'pending';
CREATE INDEX IF NOT EXISTS idx_import_candidates_status ON import_candidates(status);
"""


def create_schema() -> None:
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(SCHEMA_SQL)
    logger.info("Database schema ensured")


# ---------- Raw places ----------

_UPSERT_RAW_PLACE = """
INSERT INTO raw_places (
    id,
    external_id,
    source,
    name,
    address,
    latitude,
    longitude,
    phone,
    website,
    rating,
    rating_count,
    category_hints,
    primary_category,
    photo_refs,
    place_hash,
    raw_payload,
    last_seen_sync_job_id,
    fetched_at,
    updated_at
) VALUES (
    %(id)s,
    %(external_id)s,
    %(source)s,
    %(name)s,
    %(address)s,
    %(latitude)s,
    %(longitude)s,
    %(phone)s,
    %(website)s,
    %(rating)s,
    %(rating_count)s,
    %(category_hints)s,
    %(primary_category)s,
    %(photo_refs)s,
    %(place_hash)s,
    %(raw_payload)s,
    %(last_seen_sync_job_id)s,
    COALESCE(%(fetched_at)s, NOW()),
    NOW()
)
ON CONFLICT (external_id) DO UPDATE SET
    last_seen_sync_job_id = EXCLUDED.last_seen_sync_job_id,
    fetched_at = EXCLUDED.fetched_at,
    updated_at = NOW()
RETURNING *, (xmax = 0) AS inserted;
"""


def _raw_place_params(place: RawPlace, sync_job_id: Optional[str]) -> Dict[str, Any]:
    return {
        "id": str(uuid.uuid4()),
        "external_id": place.external_id,
        "source": place.source,
        "name": place.name,
        "address": place.address,
        "latitude": place.latitude,
        "longitude": place.longitude,
        "phone": place.phone,
        "website": place.website,
        "rating": place.rating,
        "rating_count": place.rating_count,
        "category_hints": extras.Json(list(place.category_hints)),
        "primary_category": place.primary_category,
        "photo_refs": extras.Json(list(place.photo_refs)),
        "place_hash": place.place_hash,
        "raw_payload": extras.Json(place.raw_payload or {}),
        "last_seen_sync_job_id": sync_job_id,
        "fetched_at": place.fetched_at,
    }


def _float_or_none(value: Any) -> Optional[float]:
    return float(value) if value is not None else None


def _raw_place_from_row(row: Dict[str, Any]) -> RawPlace:
    return RawPlace(
        id=str(row["id"]),
        external_id=row["external_id"],
        source=row["source"],
        name=row["name"],
        address=row.get("address"),
        latitude=_float_or_none(row.get("latitude")),
        longitude=_float_or_none(row.get("longitude")),
        phone=row.get("phone"),
        website=row.get("website"),
        rating=_float_or_none(row.get("rating")),
        rating_count=row.get("rating_count"),
        category_hints=list(row.get("category_hints") or []),
        primary_category=row.get("primary_category"),
        photo_refs=list(row.get("photo_refs") or []),
        place_hash=row.get("place_hash"),
        raw_payload=row.get("raw_payload") or {},
        last_seen_sync_job_id=str(row["last_seen_sync_job_id"]) if row.get("last_seen_sync_job_id") else None,
        fetched_at=row.get("fetched_at"),
    )


class PostgresRawPlaceStore:
    def upsert(self, place: RawPlace, sync_job_id: Optional[str]) -> Tuple[RawPlace, bool]:
        with get_connection() as conn:
            with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                cur.execute(_UPSERT_RAW_PLACE, _raw_place_params(place, sync_job_id))
                row = cur.fetchone()
        logger.debug("Upserted raw place %s", place.external_id)
        return _raw_place_from_row(row), bool(row.get("inserted"))

    def get(self, raw_place_id: str) -> Optional[RawPlace]:
        with get_connection() as conn:
            with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                cur.execute("SELECT * FROM raw_places WHERE id = %(id)s", {"id": raw_place_id})
                row = cur.fetchone()
        return _raw_place_from_row(row) if row else None


# ---------- Candidates ----------

_INSERT_CANDIDATE = """
INSERT INTO import_candidates (
    id,
    raw_place_id,
    external_id,
    sync_job_id,
    name,
    address,
    rating,
    rating_count,
    confidence_score,
    is_duplicate,
    duplicate_of,
    confidence_breakdown,
    duplicate_comparison,
    status,
    created_at
) VALUES (
    %(id)s,
    %(raw_place_id)s,
    %(external_id)s,
    %(sync_job_id)s,
    %(name)s,
    %(address)s,
    %(rating)s,
    %(rating_count)s,
    %(confidence_score)s,
    %(is_duplicate)s,
    %(duplicate_of)s,
    %(confidence_breakdown)s,
    %(duplicate_comparison)s,
    %(status)s,
    %(created_at)s
);
"""

_TRANSITION_CANDIDATE = """
UPDATE import_candidates SET
    status = %(status)s,
    rejection_reason = %(rejection_reason)s,
    listing_id = %(listing_id)s,
    decided_by = %(decided_by)s,
    decided_at = %(decided_at)s,
    imported_at = %(imported_at)s
WHERE id = %(id)s AND status = %(expected)s;
"""


def _state_params(state: CandidateState) -> Dict[str, Any]:
    return {
        "status": state.status.value,
        "rejection_reason": getattr(state, "reason", None),
        "listing_id": getattr(state, "listing_id", None),
        "decided_by": getattr(state, "decided_by", None),
        "decided_at": getattr(state, "decided_at", None),
        "imported_at": getattr(state, "imported_at", None),
    }


def _state_from_row(row: Dict[str, Any]) -> CandidateState:
    status = CandidateStatus(row["status"])
    if status is CandidateStatus.APPROVED:
        return Approved(decided_by=row["decided_by"], decided_at=row["decided_at"])
    if status is CandidateStatus.REJECTED:
        return Rejected(decided_by=row["decided_by"], decided_at=row["decided_at"], reason=row["rejection_reason"])
    if status is CandidateStatus.IMPORTED:
        return Imported(
            decided_by=row["decided_by"],
            decided_at=row["decided_at"],
            listing_id=row["listing_id"],
            imported_at=row["imported_at"],
        )
    return Pending()


def _candidate_from_row(row: Dict[str, Any]) -> ImportCandidate:
    comparison = row.get("duplicate_comparison")
    return ImportCandidate(
        id=str(row["id"]),
        raw_place_id=str(row["raw_place_id"]),
        external_id=row["external_id"],
        sync_job_id=str(row["sync_job_id"]) if row.get("sync_job_id") else None,
        name=row["name"],
        address=row.get("address"),
        rating=_float_or_none(row.get("rating")),
        rating_count=row.get("rating_count"),
        breakdown=ConfidenceBreakdown.from_dict(row["confidence_breakdown"]),
        comparison=DuplicateComparison.from_dict(comparison) if comparison else None,
        state=_state_from_row(row),
        created_at=row["created_at"],
    )


class PostgresCandidateStore:
    def insert(self, candidate: ImportCandidate) -> ImportCandidate:
        params = {
            "id": candidate.id,
            "raw_place_id": candidate.raw_place_id,
            "external_id": candidate.external_id,
            "sync_job_id": candidate.sync_job_id,
            "name": candidate.name,
            "address": candidate.address,
            "rating": candidate.rating,
            "rating_count": candidate.rating_count,
            "confidence_score": candidate.confidence_score,
            "is_duplicate": candidate.is_duplicate,
            "duplicate_of": candidate.duplicate_of,
            "confidence_breakdown": extras.Json(candidate.breakdown.to_dict()),
            "duplicate_comparison": extras.Json(candidate.comparison.to_dict()) if candidate.comparison else None,
            "status": candidate.status.value,
            "created_at": candidate.created_at,
        }
        try:
            with get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(_INSERT_CANDIDATE, params)
        except errors.UniqueViolation as exc:
            raise DuplicatePendingCandidate(candidate.raw_place_id) from exc
        return candidate

    def get(self, candidate_id: str) -> Optional[ImportCandidate]:
        with get_connection() as conn:
            with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                cur.execute("SELECT * FROM import_candidates WHERE id = %(id)s", {"id": candidate_id})
                row = cur.fetchone()
        return _candidate_from_row(row) if row else None

    def compare_and_set(self, candidate: ImportCandidate, expected: CandidateStatus) -> bool:
        params = _state_params(candidate.state)
        params.update({"id": candidate.id, "expected": expected.value})
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(_TRANSITION_CANDIDATE, params)
                updated = cur.rowcount
        return updated == 1

    def query(self, filters: CandidateFilter, pagination: Pagination) -> Tuple[List[ImportCandidate], int]:
        clauses: List[str] = []
        params: Dict[str, Any] = {"limit": pagination.limit, "offset": pagination.offset}
        if filters.status is not None:
            clauses.append("status = %(status)s")
            params["status"] = filters.status.value
        if filters.is_duplicate is not None:
            clauses.append("is_duplicate = %(is_duplicate)s")
            params["is_duplicate"] = filters.is_duplicate
        if filters.min_confidence is not None:
            clauses.append("confidence_score >= %(min_confidence)s")
            params["min_confidence"] = filters.min_confidence
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        with get_connection() as conn:
            with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                cur.execute(f"SELECT COUNT(*) AS total FROM import_candidates {where}", params)
                total = int(cur.fetchone()["total"])
                cur.execute(
                    f"SELECT * FROM import_candidates {where} ORDER BY seq ASC LIMIT %(limit)s OFFSET %(offset)s",
                    params,
                )
                rows = cur.fetchall()
        return [_candidate_from_row(row) for row in rows], total

    def exists_for_raw_place(self, raw_place_id: str) -> bool:
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT 1 FROM import_candidates WHERE raw_place_id = %(id)s LIMIT 1",
                    {"id": raw_place_id},
                )
                return cur.fetchone() is not None


# ---------- Sync jobs ----------

_INSERT_SYNC_JOB = """
INSERT INTO sync_jobs (
    id,
    scope,
    scope_key,
    sync_type,
    max_places,
    status,
    triggered_by,
    started_at,
    finished_at,
    places_found,
    places_updated,
    api_requests_made,
    estimated_cost_usd,
    photos_downloaded,
    stop_reason,
    error_message,
    error_details
) VALUES (
    %(id)s,
    %(scope)s,
    %(scope_key)s,
    %(sync_type)s,
    %(max_places)s,
    %(status)s,
    %(triggered_by)s,
    %(started_at)s,
    %(finished_at)s,
    %(places_found)s,
    %(places_updated)s,
    %(api_requests_made)s,
    %(estimated_cost_usd)s,
    %(photos_downloaded)s,
    %(stop_reason)s,
    %(error_message)s,
    %(error_details)s
);
"""

_UPDATE_SYNC_JOB = """
UPDATE sync_jobs SET
    status = %(status)s,
    finished_at = %(finished_at)s,
    places_found = %(places_found)s,
    places_updated = %(places_updated)s,
    api_requests_made = %(api_requests_made)s,
    estimated_cost_usd = %(estimated_cost_usd)s,
    photos_downloaded = %(photos_downloaded)s,
    stop_reason = %(stop_reason)s,
    error_message = %(error_message)s,
    error_details = %(error_details)s
WHERE id = %(id)s AND status = 'processing';
"""


def _job_params(job: SyncJob) -> Dict[str, Any]:
    return {
        "id": job.id,
        "scope": extras.Json(job.scope.to_dict()),
        "scope_key": job.scope.key,
        "sync_type": job.sync_type.value,
        "max_places": job.max_places,
        "status": job.status.value,
        "triggered_by": job.triggered_by,
        "started_at": job.started_at,
        "finished_at": job.finished_at,
        "places_found": job.places_found,
        "places_updated": job.places_updated,
        "api_requests_made": job.api_requests_made,
        "estimated_cost_usd": job.estimated_cost_usd,
        "photos_downloaded": job.photos_downloaded,
        "stop_reason": job.stop_reason,
        "error_message": job.error_message,
        "error_details": extras.Json(job.error_details) if job.error_details is not None else None,
    }


def _job_from_row(row: Dict[str, Any]) -> SyncJob:
    return SyncJob(
        id=str(row["id"]),
        scope=Scope.from_dict(row["scope"]),
        sync_type=SyncType(row["sync_type"]),
        max_places=row["max_places"],
        status=SyncStatus(row["status"]),
        triggered_by=row["triggered_by"],
        started_at=row.get("started_at"),
        finished_at=row.get("finished_at"),
        places_found=row["places_found"],
        places_updated=row["places_updated"],
        api_requests_made=row["api_requests_made"],
        estimated_cost_usd=Decimal(row["estimated_cost_usd"]),
        photos_downloaded=row["photos_downloaded"],
        stop_reason=row.get("stop_reason"),
        error_message=row.get("error_message"),
        error_details=row.get("error_details"),
    )


class PostgresSyncJobStore:
    def insert(self, job: SyncJob) -> SyncJob:
        try:
            with get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(_INSERT_SYNC_JOB, _job_params(job))
        except errors.UniqueViolation as exc:
            running = self.find_processing(job.scope.key)
            raise AlreadyRunning(job.scope.key, running.id if running else "unknown") from exc
        return job

    def save(self, job: SyncJob) -> bool:
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(_UPDATE_SYNC_JOB, _job_params(job))
                updated = cur.rowcount
        if updated != 1:
            logger.warning("Sync job %s is no longer processing; update skipped", job.id)
        return updated == 1

    def _fetch(self, sql: str, params: Dict[str, Any]) -> List[SyncJob]:
        with get_connection() as conn:
            with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                cur.execute(sql, params)
                rows = cur.fetchall()
        return [_job_from_row(row) for row in rows]

    def get(self, job_id: str) -> Optional[SyncJob]:
        jobs = self._fetch("SELECT * FROM sync_jobs WHERE id = %(id)s", {"id": job_id})
        return jobs[0] if jobs else None

    def list_recent(self, limit: int) -> List[SyncJob]:
        return self._fetch(
            "SELECT * FROM sync_jobs ORDER BY started_at DESC NULLS LAST, seq DESC LIMIT %(limit)s",
            {"limit": limit},
        )

    def find_processing(self, scope_key: str) -> Optional[SyncJob]:
        jobs = self._fetch(
            "SELECT * FROM sync_jobs WHERE status = 'processing' AND scope_key = %(scope_key)s "
            "ORDER BY seq DESC LIMIT 1",
            {"scope_key": scope_key},
        )
        return jobs[0] if jobs else None

    def list_processing(self) -> List[SyncJob]:
        return self._fetch("SELECT * FROM sync_jobs WHERE status = 'processing' ORDER BY seq", {})
