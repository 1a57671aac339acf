"""Core data models shared by the ingestion, review and import stages."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Union


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


# ---------- Scope ----------


@dataclass(frozen=True)
class Scope:
    """Geographic/category boundary a sync run pages through."""

    query: str
    category: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    radius_m: Optional[float] = None

    def __post_init__(self) -> None:
        if not self.query or not self.query.strip():
            raise ValueError("scope query must not be empty")
        if (self.latitude is None) != (self.longitude is None):
            raise ValueError("scope latitude and longitude must be provided together")

    @property
    def has_location(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    @property
    def key(self) -> str:
        """Stable identifier used to enforce one processing job per scope."""
        parts = [re.sub(r"\s+", " ", self.query.strip().lower()), (self.category or "*").lower()]
        if self.has_location:
            parts.append(f"{self.latitude:.4f},{self.longitude:.4f},{int(self.radius_m or 0)}")
        return "|".join(parts)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "query": self.query,
            "category": self.category,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "radiusM": self.radius_m,
            "key": self.key,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "Scope":
        def _float(name: str, *aliases: str) -> Optional[float]:
            for key in (name, *aliases):
                value = payload.get(key)
                if value is not None and value != "":
                    try:
                        return float(value)
                    except (TypeError, ValueError) as exc:
                        raise ValueError(f"{name} must be numeric") from exc
            return None

        return cls(
            query=str(payload.get("query") or "").strip(),
            category=(str(payload["category"]).strip() or None) if payload.get("category") else None,
            latitude=_float("latitude", "lat"),
            longitude=_float("longitude", "lng"),
            radius_m=_float("radiusM", "radius_m", "radius"),
        )


# ---------- Raw places ----------


@dataclass(slots=True)
class RawPlace:
    """A venue exactly as the external directory returned it, plus extracted fields."""

    external_id: str
    name: str
    address: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    phone: Optional[str] = None
    website: Optional[str] = None
    rating: Optional[float] = None
    rating_count: Optional[int] = None
    category_hints: List[str] = field(default_factory=list)
    primary_category: Optional[str] = None
    photo_refs: List[str] = field(default_factory=list)
    source: str = "google_places"
    place_hash: Optional[str] = None
    raw_payload: Dict[str, Any] = field(default_factory=dict, repr=False)
    id: Optional[str] = None
    last_seen_sync_job_id: Optional[str] = None
    fetched_at: Optional[datetime] = None

    def to_dict(self, include_payload: bool = False) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "externalId": self.external_id,
            "name": self.name,
            "address": self.address,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "phone": self.phone,
            "website": self.website,
            "rating": self.rating,
            "ratingCount": self.rating_count,
            "categoryHints": list(self.category_hints),
            "primaryCategory": self.primary_category,
            "photoRefs": list(self.photo_refs),
            "source": self.source,
            "placeHash": self.place_hash,
            "lastSeenSyncJobId": self.last_seen_sync_job_id,
            "fetchedAt": _iso(self.fetched_at),
        }
        if include_payload:
            data["rawPayload"] = self.raw_payload
        return data


@dataclass(slots=True)
class ExistingListing:
    """Snapshot of a platform listing used as a deduplication target."""

    id: str
    name: str
    address: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    phone: Optional[str] = None
    website: Optional[str] = None
    listing_type: Optional[str] = None


# ---------- Sync jobs ----------


class SyncStatus(str, Enum):
    IDLE = "idle"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (SyncStatus.COMPLETED, SyncStatus.FAILED, SyncStatus.CANCELLED)


class SyncType(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"


@dataclass(slots=True)
class SyncJob:
    """One ingestion run and its accumulated metrics."""

    id: str
    scope: Scope
    sync_type: SyncType = SyncType.FULL
    max_places: int = 0
    status: SyncStatus = SyncStatus.IDLE
    triggered_by: str = "system"
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    places_found: int = 0
    places_updated: int = 0
    api_requests_made: int = 0
    estimated_cost_usd: Decimal = Decimal("0")
    photos_downloaded: int = 0
    stop_reason: Optional[str] = None
    error_message: Optional[str] = None
    error_details: Optional[Dict[str, Any]] = None

    @property
    def duration_seconds(self) -> Optional[int]:
        if self.started_at is None or self.finished_at is None:
            return None
        return int((self.finished_at - self.started_at).total_seconds())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "scope": self.scope.to_dict(),
            "syncType": self.sync_type.value,
            "maxPlaces": self.max_places,
            "status": self.status.value,
            "triggeredBy": self.triggered_by,
            "startedAt": _iso(self.started_at),
            "finishedAt": _iso(self.finished_at),
            "durationSeconds": self.duration_seconds,
            "placesFound": self.places_found,
            "placesUpdated": self.places_updated,
            "apiRequestsMade": self.api_requests_made,
            "estimatedCostUsd": float(self.estimated_cost_usd),
            "photosDownloaded": self.photos_downloaded,
            "stopReason": self.stop_reason,
            "errorMessage": self.error_message,
            "errorDetails": self.error_details,
        }


# ---------- Scoring ----------


DEFAULT_WEIGHTS: Dict[str, float] = {
    "name_similarity": 0.40,
    "location_proximity": 0.35,
    "contact_match": 0.15,
    "category_match": 0.10,
}


@dataclass(frozen=True)
class ConfidenceBreakdown:
    """Named sub-scores and the weights that produced ``confidence_score``."""

    name_similarity: float
    location_proximity: float
    contact_match: float
    category_match: float
    confidence_score: float
    weights: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_WEIGHTS))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nameSimilarity": self.name_similarity,
            "locationProximity": self.location_proximity,
            "contactMatch": self.contact_match,
            "categoryMatch": self.category_match,
            "confidenceScore": self.confidence_score,
            "weights": {
                "nameSimilarity": self.weights.get("name_similarity", 0.0),
                "locationProximity": self.weights.get("location_proximity", 0.0),
                "contactMatch": self.weights.get("contact_match", 0.0),
                "categoryMatch": self.weights.get("category_match", 0.0),
            },
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "ConfidenceBreakdown":
        weights = payload.get("weights") or {}
        return cls(
            name_similarity=float(payload.get("nameSimilarity", 0.0)),
            location_proximity=float(payload.get("locationProximity", 0.0)),
            contact_match=float(payload.get("contactMatch", 0.0)),
            category_match=float(payload.get("categoryMatch", 0.0)),
            confidence_score=float(payload.get("confidenceScore", 0.0)),
            weights={
                "name_similarity": float(weights.get("nameSimilarity", DEFAULT_WEIGHTS["name_similarity"])),
                "location_proximity": float(weights.get("locationProximity", DEFAULT_WEIGHTS["location_proximity"])),
                "contact_match": float(weights.get("contactMatch", DEFAULT_WEIGHTS["contact_match"])),
                "category_match": float(weights.get("categoryMatch", DEFAULT_WEIGHTS["category_match"])),
            },
        )


@dataclass(frozen=True)
class DuplicateComparison:
    """Field-by-field comparison against the listing a venue duplicates."""

    listing_id: str
    listing_name: str
    name_match: bool
    address_match: bool
    phone_match: bool
    distance_m: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "listingId": self.listing_id,
            "listingName": self.listing_name,
            "nameMatch": self.name_match,
            "addressMatch": self.address_match,
            "phoneMatch": self.phone_match,
            "distanceM": self.distance_m,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "DuplicateComparison":
        distance = payload.get("distanceM")
        return cls(
            listing_id=str(payload["listingId"]),
            listing_name=str(payload.get("listingName") or ""),
            name_match=bool(payload.get("nameMatch")),
            address_match=bool(payload.get("addressMatch")),
            phone_match=bool(payload.get("phoneMatch")),
            distance_m=float(distance) if distance is not None else None,
        )


# ---------- Candidates ----------


class CandidateStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    IMPORTED = "imported"


@dataclass(frozen=True)
class Pending:
    status: ClassVar[CandidateStatus] = CandidateStatus.PENDING


@dataclass(frozen=True)
class Approved:
    decided_by: str
    decided_at: datetime
    status: ClassVar[CandidateStatus] = CandidateStatus.APPROVED


@dataclass(frozen=True)
class Rejected:
    decided_by: str
    decided_at: datetime
    reason: str
    status: ClassVar[CandidateStatus] = CandidateStatus.REJECTED


@dataclass(frozen=True)
class Imported:
    decided_by: str
    decided_at: datetime
    listing_id: str
    imported_at: datetime
    status: ClassVar[CandidateStatus] = CandidateStatus.IMPORTED


CandidateState = Union[Pending, Approved, Rejected, Imported]


@dataclass(slots=True)
class ImportCandidate:
    """Reviewable unit created for every fetched venue."""

    id: str
    raw_place_id: str
    external_id: str
    name: str
    breakdown: ConfidenceBreakdown
    comparison: Optional[DuplicateComparison] = None
    address: Optional[str] = None
    rating: Optional[float] = None
    rating_count: Optional[int] = None
    sync_job_id: Optional[str] = None
    state: CandidateState = field(default_factory=Pending)
    created_at: datetime = field(default_factory=utcnow)

    @property
    def status(self) -> CandidateStatus:
        return self.state.status

    @property
    def confidence_score(self) -> float:
        return self.breakdown.confidence_score

    @property
    def is_duplicate(self) -> bool:
        return self.comparison is not None

    @property
    def duplicate_of(self) -> Optional[str]:
        return self.comparison.listing_id if self.comparison is not None else None

    @property
    def rejection_reason(self) -> Optional[str]:
        return self.state.reason if isinstance(self.state, Rejected) else None

    @property
    def listing_id(self) -> Optional[str]:
        return self.state.listing_id if isinstance(self.state, Imported) else None

    @property
    def decided_by(self) -> Optional[str]:
        return getattr(self.state, "decided_by", None)

    @property
    def decided_at(self) -> Optional[datetime]:
        return getattr(self.state, "decided_at", None)

    def to_dict(self) -> Dict[str, Any]:
        imported_at = self.state.imported_at if isinstance(self.state, Imported) else None
        return {
            "id": self.id,
            "rawPlaceId": self.raw_place_id,
            "externalId": self.external_id,
            "syncJobId": self.sync_job_id,
            "name": self.name,
            "address": self.address,
            "rating": self.rating,
            "ratingCount": self.rating_count,
            "confidenceScore": self.confidence_score,
            "isDuplicate": self.is_duplicate,
            "duplicateOf": self.duplicate_of,
            "status": self.status.value,
            "rejectionReason": self.rejection_reason,
            "listingId": self.listing_id,
            "confidenceBreakdown": self.breakdown.to_dict(),
            "duplicateComparison": self.comparison.to_dict() if self.comparison else None,
            "createdAt": _iso(self.created_at),
            "decidedBy": self.decided_by,
            "decidedAt": _iso(self.decided_at),
            "importedAt": _iso(imported_at),
        }


@dataclass(frozen=True)
class CandidateFilter:
    status: Optional[CandidateStatus] = None
    is_duplicate: Optional[bool] = None
    min_confidence: Optional[float] = None


@dataclass(frozen=True)
class Pagination:
    limit: int = 25
    offset: int = 0

    MAX_LIMIT: ClassVar[int] = 100

    @classmethod
    def coerce(cls, limit: Any = None, offset: Any = None) -> "Pagination":
        try:
            resolved_limit = int(limit) if limit not in (None, "") else 25
            resolved_offset = int(offset) if offset not in (None, "") else 0
        except (TypeError, ValueError) as exc:
            raise ValueError("limit and offset must be integers") from exc
        if resolved_limit <= 0:
            raise ValueError("limit must be positive")
        if resolved_offset < 0:
            raise ValueError("offset must not be negative")
        return cls(limit=min(resolved_limit, cls.MAX_LIMIT), offset=resolved_offset)
