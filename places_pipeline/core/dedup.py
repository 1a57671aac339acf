"""Duplicate detection between fetched venues and existing listings.

Four sub-scores, each clamped to [0, 1], are combined with fixed weights:

- name similarity: token-sorted fuzzy ratio over case and diacritic folded names
- location proximity: ``1 - distance / radius`` on the great-circle distance,
  0 beyond the radius or when either side has no coordinates
- contact match: 1 when the phone, website or address normalises identically
- category match: 1 when the venue's category agrees with the listing type
"""

from __future__ import annotations

import logging
import math
import re
import unicodedata
from typing import Dict, Iterable, Optional, Sequence, Tuple
from urllib.parse import urlparse

from rapidfuzz import fuzz, utils

from places_pipeline.models import (
    DEFAULT_WEIGHTS,
    ConfidenceBreakdown,
    DuplicateComparison,
    ExistingListing,
    RawPlace,
)

logger = logging.getLogger(__name__)

EARTH_RADIUS_M = 6371008.8
DEFAULT_THRESHOLD = 0.85
DEFAULT_RADIUS_M = 500.0
NAME_MATCH_THRESHOLD = 0.9
MIN_PHONE_DIGITS = 7
SCORE_PRECISION = 4


def _clamp(value: Optional[float]) -> float:
    if value is None:
        return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(number):
        return 0.0
    return max(0.0, min(1.0, number))


def fold_text(value: object | None) -> str:
    """Lower-case, strip diacritics and punctuation, collapse whitespace."""
    if value is None:
        return ""
    text = unicodedata.normalize("NFD", str(value))
    text = "".join(ch for ch in text if unicodedata.category(ch) != "Mn")
    return " ".join(utils.default_process(text.casefold()).split())


def compute_name_similarity(name1: object | None, name2: object | None) -> float:
    folded1 = fold_text(name1)
    folded2 = fold_text(name2)
    if not folded1 or not folded2:
        return 0.0
    if folded1 == folded2:
        return 1.0
    return _clamp(fuzz.token_sort_ratio(folded1, folded2) / 100.0)


def haversine_m(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(a)))


def distance_between(venue: RawPlace, listing: ExistingListing) -> Optional[float]:
    coords = (venue.latitude, venue.longitude, listing.latitude, listing.longitude)
    if any(c is None for c in coords):
        return None
    try:
        distance = haversine_m(*(float(c) for c in coords))
    except (TypeError, ValueError):
        return None
    return None if math.isnan(distance) else distance


def compute_location_proximity(distance_m: Optional[float], radius_m: float = DEFAULT_RADIUS_M) -> float:
    if distance_m is None or radius_m <= 0:
        return 0.0
    return _clamp(1.0 - (distance_m / radius_m))


def normalize_phone(phone: object | None) -> str:
    """Digits only, without the trunk prefix."""
    if phone is None:
        return ""
    return re.sub(r"\D", "", str(phone)).lstrip("0")


def phones_match(phone1: object | None, phone2: object | None) -> bool:
    digits1 = normalize_phone(phone1)
    digits2 = normalize_phone(phone2)
    if not digits1 or not digits2:
        return False
    if digits1 == digits2:
        return True
    shorter, longer = sorted((digits1, digits2), key=len)
    # A country code prefix is the only difference allowed.
    return len(shorter) >= MIN_PHONE_DIGITS and longer.endswith(shorter) and len(longer) - len(shorter) <= 3


def normalize_website(url: object | None) -> str:
    if not url:
        return ""
    text = str(url).strip().lower()
    parsed = urlparse(text if "://" in text else f"http://{text}")
    host = (parsed.hostname or "").removeprefix("www.")
    return f"{host}{parsed.path.rstrip('/')}"


def addresses_match(address1: object | None, address2: object | None) -> bool:
    folded1 = fold_text(address1)
    return bool(folded1) and folded1 == fold_text(address2)


def compute_category_match(venue: RawPlace, listing: ExistingListing) -> float:
    listing_type = fold_text(listing.listing_type)
    if not listing_type:
        return 0.0
    venue_categories = {fold_text(venue.primary_category)} | {fold_text(hint) for hint in venue.category_hints}
    venue_categories.discard("")
    return 1.0 if listing_type in venue_categories else 0.0


def weighted_score(features: Dict[str, float], weights: Dict[str, float] = DEFAULT_WEIGHTS) -> float:
    total = 0.0
    for key, weight in weights.items():
        total += weight * _clamp(features.get(key, 0.0))
    return round(_clamp(total), SCORE_PRECISION)


class DeduplicationEngine:
    """Scores a venue against existing listings and flags likely duplicates."""

    def __init__(
        self,
        threshold: float = DEFAULT_THRESHOLD,
        radius_m: float = DEFAULT_RADIUS_M,
        weights: Optional[Dict[str, float]] = None,
    ) -> None:
        if not 0.0 <= threshold <= 1.0:
            raise ValueError("threshold must be between 0 and 1")
        self.threshold = threshold
        self.radius_m = radius_m
        self.weights = dict(weights or DEFAULT_WEIGHTS)

    def compare(self, venue: RawPlace, listing: ExistingListing) -> Tuple[ConfidenceBreakdown, DuplicateComparison]:
        """Score one venue/listing pair and describe how the fields line up."""
        distance = distance_between(venue, listing)
        name_similarity = compute_name_similarity(venue.name, listing.name)
        phone_match = phones_match(venue.phone, listing.phone)
        address_match = addresses_match(venue.address, listing.address)
        website1 = normalize_website(venue.website)
        website_match = bool(website1) and website1 == normalize_website(listing.website)

        features = {
            "name_similarity": round(name_similarity, SCORE_PRECISION),
            "location_proximity": round(compute_location_proximity(distance, self.radius_m), SCORE_PRECISION),
            "contact_match": 1.0 if (phone_match or website_match or address_match) else 0.0,
            "category_match": compute_category_match(venue, listing),
        }
        breakdown = ConfidenceBreakdown(
            confidence_score=weighted_score(features, self.weights),
            weights=dict(self.weights),
            **features,
        )
        comparison = DuplicateComparison(
            listing_id=listing.id,
            listing_name=listing.name,
            name_match=name_similarity >= NAME_MATCH_THRESHOLD,
            address_match=address_match,
            phone_match=phone_match,
            distance_m=round(distance, 1) if distance is not None else None,
        )
        return breakdown, comparison

    def score(
        self,
        venue: RawPlace,
        existing_listings: Iterable[ExistingListing],
    ) -> Tuple[ConfidenceBreakdown, Optional[DuplicateComparison]]:
        """Return the best match's breakdown, plus its comparison when it is a duplicate.

        The best match has the highest score; ties go to the smallest distance
        (unknown distances last) and then to the lowest listing id.
        """
        scored = [self.compare(venue, listing) for listing in existing_listings]
        if not scored:
            return self.empty_breakdown(), None

        def _rank(item: Tuple[ConfidenceBreakdown, DuplicateComparison]):
            breakdown, comparison = item
            distance = comparison.distance_m if comparison.distance_m is not None else math.inf
            return (-breakdown.confidence_score, distance, comparison.listing_id)

        breakdown, comparison = min(scored, key=_rank)
        if self.is_duplicate(breakdown.confidence_score):
            logger.debug(
                "Venue %s duplicates listing %s (score=%.4f)",
                venue.external_id,
                comparison.listing_id,
                breakdown.confidence_score,
            )
            return breakdown, comparison
        return breakdown, None

    def is_duplicate(self, confidence_score: float) -> bool:
        return confidence_score >= self.threshold

    def empty_breakdown(self) -> ConfidenceBreakdown:
        return ConfidenceBreakdown(
            name_similarity=0.0,
            location_proximity=0.0,
            contact_match=0.0,
            category_match=0.0,
            confidence_score=0.0,
            weights=dict(self.weights),
        )


def rank_listings(engine: DeduplicationEngine, venue: RawPlace, listings: Sequence[ExistingListing], limit: int = 5):
    """Top ``limit`` comparisons for the candidate detail view, best first."""
    scored = [engine.compare(venue, listing) for listing in listings]
    scored.sort(
        key=lambda item: (
            -item[0].confidence_score,
            item[1].distance_m if item[1].distance_m is not None else math.inf,
            item[1].listing_id,
        )
    )
    return scored[:limit]
