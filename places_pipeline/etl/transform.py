"""Utilities for transforming directory payloads into raw places and listings."""

import hashlib
import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

from places_pipeline.models import ImportCandidate, RawPlace, utcnow
from places_pipeline.vendors.google_places import photo_media_url

logger = logging.getLogger(__name__)

_IGNORE_TYPES = {"point_of_interest", "establishment", "political", "premise", "tourist_attraction"}


def place_hash(name: Optional[str], address: Optional[str]) -> str:
    data = f"{(name or '').strip().lower()}|{(address or '').strip().lower()}"
    return hashlib.md5(data.encode("utf-8")).hexdigest()


def _extract_primary_type(types: Iterable[str]) -> Optional[str]:
    for type_name in types or []:
        if type_name and type_name not in _IGNORE_TYPES:
            return type_name
    return None


def _strip_or_none(value: Any) -> Optional[str]:
    if value is None:
        return None
    value_str = str(value).strip()
    return value_str or None


def _safe_float(value: Any) -> Optional[float]:
    try:
        if value is None:
            return None
        return float(value)
    except (TypeError, ValueError):
        return None


def _safe_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        digits = "".join(ch for ch in value if ch.isdigit())
        if digits:
            return int(digits)
    return None


def from_google_place(result: Dict[str, Any]) -> Optional[RawPlace]:
    """Map a Places API (New) result to a RawPlace; None when unusable."""
    external_id = _strip_or_none(result.get("id"))
    display_name = result.get("displayName")
    name = _strip_or_none(display_name.get("text") if isinstance(display_name, dict) else display_name)
    if not external_id or not name:
        logger.debug("Skipping place without id or name: %s", result.get("id"))
        return None

    location = result.get("location") or {}
    types = [t for t in result.get("types") or [] if isinstance(t, str)]
    primary = _strip_or_none(result.get("primaryType")) or _extract_primary_type(types)
    address = _strip_or_none(result.get("formattedAddress"))
    photos = [p.get("name") for p in result.get("photos") or [] if isinstance(p, dict) and p.get("name")]

    return RawPlace(
        external_id=external_id,
        name=name,
        address=address,
        latitude=_safe_float(location.get("latitude")),
        longitude=_safe_float(location.get("longitude")),
        phone=_strip_or_none(result.get("internationalPhoneNumber") or result.get("nationalPhoneNumber")),
        website=_strip_or_none(result.get("websiteUri")),
        rating=_safe_float(result.get("rating")),
        rating_count=_safe_int(result.get("userRatingCount")),
        category_hints=types,
        primary_category=primary,
        photo_refs=photos,
        source="google_places",
        place_hash=place_hash(name, address),
        raw_payload=result,
        fetched_at=utcnow(),
    )


def from_serpapi_place(raw: Dict[str, Any]) -> Optional[RawPlace]:
    """Map a SerpAPI local result to a RawPlace; None when unusable."""
    name = _strip_or_none(raw.get("title") or raw.get("name"))
    external_id = _strip_or_none(raw.get("place_id") or raw.get("data_id"))
    if not external_id or not name:
        logger.debug("Skipping SerpAPI result without place_id or title: %s", name)
        return None

    gps = raw.get("gps_coordinates") or {}
    hints: List[str] = []
    if isinstance(raw.get("types"), list):
        hints = [str(t).strip().lower().replace(" ", "_") for t in raw["types"] if t]
    elif raw.get("type"):
        hints = [str(raw["type"]).strip().lower().replace(" ", "_")]
    address = _strip_or_none(raw.get("address"))
    thumbnail = _strip_or_none(raw.get("thumbnail"))

    return RawPlace(
        external_id=external_id,
        name=name,
        address=address,
        latitude=_safe_float(gps.get("latitude")),
        longitude=_safe_float(gps.get("longitude")),
        phone=_strip_or_none(raw.get("phone")),
        website=_strip_or_none(raw.get("website")),
        rating=_safe_float(raw.get("rating")),
        rating_count=_safe_int(raw.get("reviews_count") or raw.get("reviews")),
        category_hints=hints,
        primary_category=_extract_primary_type(hints),
        photo_refs=[thumbnail] if thumbnail else [],
        source="serpapi_google_maps",
        place_hash=place_hash(name, address),
        raw_payload=raw,
        fetched_at=utcnow(),
    )


def photo_source_url(raw_place: RawPlace, photo_ref: str) -> str:
    if raw_place.source == "google_places":
        return photo_media_url(photo_ref)
    return photo_ref


def to_listing_payload(
    candidate: ImportCandidate,
    raw_place: RawPlace,
    max_photos: int = 3,
) -> Tuple[Dict[str, Any], List[str]]:
    """Build the listing payload and ordered photo URLs for an approved candidate."""
    payload = {
        "name": candidate.name or raw_place.name,
        "address": candidate.address or raw_place.address,
        "latitude": raw_place.latitude,
        "longitude": raw_place.longitude,
        "phone": raw_place.phone,
        "website": raw_place.website,
        "listing_type": raw_place.primary_category,
        "rating_average": candidate.rating if candidate.rating is not None else (raw_place.rating or 0),
        "review_count": candidate.rating_count if candidate.rating_count is not None else (raw_place.rating_count or 0),
        "source": raw_place.source,
        "external_id": raw_place.external_id,
        "import_candidate_id": candidate.id,
        "status": "approved",
        "is_verified": True,
        "is_active": True,
    }
    photos = [photo_source_url(raw_place, ref) for ref in raw_place.photo_refs[:max_photos]]
    return payload, photos
