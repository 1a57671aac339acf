"""HTTP surface for the admin UI and the scheduler."""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any, Dict, Optional

from flask import Flask, jsonify, request

from places_pipeline.core.config import ConfigError, get_settings
from places_pipeline.core.dedup import rank_listings
from places_pipeline.core.wiring import Pipeline, build_pipeline
from places_pipeline.errors import (
    AlreadyRunning,
    CandidateNotFound,
    ImportPersistenceFailed,
    InvalidStateTransition,
    ListingGatewayError,
    PipelineError,
    SyncJobNotFound,
)
from places_pipeline.models import CandidateFilter, CandidateStatus, Pagination, Scope, SyncType

# ---------- Logging ----------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s - %(message)s",
)
logger = logging.getLogger(__name__)

# ---------- App ----------
app = Flask(__name__)

BULK_APPROVE_LIMIT = 100
_TRUE = {"true", "1", "yes"}
_FALSE = {"false", "0", "no"}


@lru_cache(maxsize=1)
def get_pipeline() -> Pipeline:
    return build_pipeline(get_settings(), recover_orphans=True)


def _body() -> Dict[str, Any]:
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


def _decided_by(payload: Dict[str, Any]) -> str:
    return str(payload.get("decidedBy") or request.headers.get("X-Admin-Id") or "admin")


def _parse_bool(value: Optional[str], name: str) -> Optional[bool]:
    if value is None or value == "":
        return None
    lowered = value.strip().lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise ValueError(f"{name} must be true or false")


def _parse_min_confidence(value: Optional[str]) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        number = float(value)
    except ValueError as exc:
        raise ValueError("minConfidence must be numeric") from exc
    if not 0.0 <= number <= 1.0:
        raise ValueError("minConfidence must be between 0 and 1")
    return number


def _parse_status(value: Optional[str]) -> Optional[CandidateStatus]:
    if not value:
        return None
    try:
        return CandidateStatus(value.strip().lower())
    except ValueError as exc:
        raise ValueError(f"unknown candidate status {value!r}") from exc


# ---------- Error handlers ----------


def _error(message: str, status: int, **extra: Any):
    body: Dict[str, Any] = {"error": message}
    body.update(extra)
    return jsonify(body), status


@app.errorhandler(AlreadyRunning)
def _already_running(exc: AlreadyRunning):
    return _error(str(exc), 409, syncJobId=exc.sync_job_id)


@app.errorhandler(InvalidStateTransition)
def _invalid_transition(exc: InvalidStateTransition):
    return _error(str(exc), 409, currentStatus=exc.current)


@app.errorhandler(CandidateNotFound)
@app.errorhandler(SyncJobNotFound)
def _not_found(exc: PipelineError):
    return _error(str(exc), 404)


@app.errorhandler(ImportPersistenceFailed)
@app.errorhandler(ListingGatewayError)
def _upstream_failed(exc: PipelineError):
    return _error(str(exc), 502)


@app.errorhandler(ValueError)
def _bad_request(exc: ValueError):
    return _error(str(exc), 400)


@app.errorhandler(ConfigError)
def _config_error(exc: ConfigError):
    logger.error("Configuration error: %s", exc)
    return _error(str(exc), 503)


# ---------- Routes ----------


@app.get("/healthz")
def healthcheck() -> Any:
    settings = get_settings()
    return (
        jsonify(
            {
                "status": "ok",
                "directory": settings.directory_backend,
                "database": bool(settings.database_url),
                "listingService": bool(settings.listing_api_url),
            }
        ),
        200,
    )


@app.post("/sync/trigger")
def trigger_sync() -> Any:
    """
    Start a sync in the background.
    Required JSON fields: scope.query
    Optional: scope.category, scope.latitude/longitude/radiusM, syncType, maxPlaces
    """
    payload = _body()
    scope_payload = payload.get("scope")
    if not isinstance(scope_payload, dict):
        return _error("scope is required", 400)
    scope = Scope.from_dict(scope_payload)

    sync_type = str(payload.get("syncType") or SyncType.FULL.value).lower()
    if sync_type not in (SyncType.FULL.value, SyncType.INCREMENTAL.value):
        return _error("syncType must be full or incremental", 400)

    max_places_raw = payload.get("maxPlaces")
    max_places = None
    if max_places_raw is not None:
        try:
            max_places = int(max_places_raw)
        except (TypeError, ValueError):
            return _error("maxPlaces must be numeric", 400)

    get_settings().require_directory_key()
    job_id = get_pipeline().orchestrator.trigger(
        scope,
        max_places=max_places,
        sync_type=SyncType(sync_type),
        triggered_by=_decided_by(payload),
    )
    return jsonify({"data": {"syncJobId": job_id}}), 202


@app.post("/sync/cancel")
def cancel_sync() -> Any:
    payload = _body()
    job_id = payload.get("syncJobId")
    if not job_id:
        return _error("syncJobId is required", 400)
    job = get_pipeline().orchestrator.cancel(str(job_id))
    return jsonify({"data": {"ok": True, "status": job.status.value}}), 200


@app.get("/sync/status")
def sync_status() -> Any:
    scope_key = request.args.get("scope") or None
    job = get_pipeline().orchestrator.status(scope_key)
    return jsonify({"data": job.to_dict() if job else None}), 200


@app.get("/sync/logs")
def sync_logs() -> Any:
    limit_raw = request.args.get("limit", "20")
    try:
        limit = int(limit_raw)
    except ValueError:
        return _error("limit must be numeric", 400)
    jobs = get_pipeline().orchestrator.logs(limit)
    return jsonify({"data": [job.to_dict() for job in jobs]}), 200


@app.get("/sync/jobs/<job_id>")
def sync_job(job_id: str) -> Any:
    job = get_pipeline().orchestrator.get_job(job_id)
    return jsonify({"data": job.to_dict()}), 200


@app.get("/candidates")
def list_candidates() -> Any:
    filters = CandidateFilter(
        status=_parse_status(request.args.get("status")),
        is_duplicate=_parse_bool(request.args.get("isDuplicate"), "isDuplicate"),
        min_confidence=_parse_min_confidence(request.args.get("minConfidence")),
    )
    pagination = Pagination.coerce(request.args.get("limit"), request.args.get("offset"))
    candidates, total = get_pipeline().candidates.list(filters, pagination)
    return (
        jsonify(
            {
                "data": [candidate.to_dict() for candidate in candidates],
                "pagination": {
                    "total": total,
                    "limit": pagination.limit,
                    "offset": pagination.offset,
                    "hasMore": pagination.offset + len(candidates) < total,
                },
            }
        ),
        200,
    )


@app.get("/candidates/<candidate_id>")
def candidate_detail(candidate_id: str) -> Any:
    pipeline = get_pipeline()
    candidate = pipeline.candidates.get(candidate_id)
    raw_place = pipeline.raw_places.get(candidate.raw_place_id)
    data = candidate.to_dict()
    data["rawPlace"] = raw_place.to_dict(include_payload=True) if raw_place else None
    data["nearbyListings"] = []
    if raw_place is not None:
        listings = pipeline.listings.existing_listings(raw_place, pipeline.engine.radius_m)
        data["nearbyListings"] = [
            {"breakdown": breakdown.to_dict(), "comparison": comparison.to_dict()}
            for breakdown, comparison in rank_listings(pipeline.engine, raw_place, listings)
        ]
    return jsonify({"data": data}), 200


@app.post("/candidates/<candidate_id>/approve")
def approve_candidate(candidate_id: str) -> Any:
    """Approve a pending candidate and materialise it as a listing."""
    pipeline = get_pipeline()
    pipeline.candidates.approve(candidate_id, _decided_by(_body()))
    listing_id = pipeline.importer.import_candidate(candidate_id)
    return jsonify({"data": {"listingId": listing_id}}), 200


@app.post("/candidates/<candidate_id>/import")
def import_candidate(candidate_id: str) -> Any:
    """Retry materialisation for a candidate that is approved but not imported."""
    listing_id = get_pipeline().importer.import_candidate(candidate_id)
    return jsonify({"data": {"listingId": listing_id}}), 200


@app.post("/candidates/<candidate_id>/reject")
def reject_candidate(candidate_id: str) -> Any:
    payload = _body()
    reason = payload.get("reason")
    if not isinstance(reason, str) or not reason.strip():
        return _error("reason is required", 400)
    get_pipeline().candidates.reject(candidate_id, _decided_by(payload), reason)
    return jsonify({"data": {"ok": True}}), 200


@app.post("/candidates/bulk-approve")
def bulk_approve() -> Any:
    payload = _body()
    candidate_ids = payload.get("candidateIds")
    if not isinstance(candidate_ids, list) or not candidate_ids:
        return _error("candidateIds must be a non-empty list", 400)
    if len(candidate_ids) > BULK_APPROVE_LIMIT:
        return _error(f"at most {BULK_APPROVE_LIMIT} candidates per request", 400)

    pipeline = get_pipeline()
    decided_by = _decided_by(payload)
    imported = []
    failed = []
    for candidate_id in candidate_ids:
        candidate_id = str(candidate_id)
        try:
            pipeline.candidates.approve(candidate_id, decided_by)
            listing_id = pipeline.importer.import_candidate(candidate_id)
        except PipelineError as exc:
            logger.warning("Bulk approve failed for candidate %s: %s", candidate_id, exc)
            failed.append({"candidateId": candidate_id, "error": str(exc)})
            continue
        imported.append({"candidateId": candidate_id, "listingId": listing_id})

    logger.info("Bulk approve by %s: %d imported, %d failed", decided_by, len(imported), len(failed))
    return jsonify({"data": {"imported": imported, "failed": failed}}), 200


def main() -> None:
    settings = get_settings()
    get_pipeline()
    port = int(settings.worker_port)
    logger.info("Starting places pipeline server on port %s", port)
    app.run(host="0.0.0.0", port=port)


if __name__ == "__main__":
    main()
