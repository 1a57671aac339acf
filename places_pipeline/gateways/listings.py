"""Clients for the listing service that owns the platform's venue records."""

import logging
import threading
import uuid
from typing import Any, Dict, List, Optional, Protocol

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from places_pipeline.core.dedup import distance_between
from places_pipeline.errors import ListingGatewayError
from places_pipeline.models import ExistingListing, RawPlace

logger = logging.getLogger(__name__)


class ListingGateway(Protocol):
    def existing_listings(self, venue: RawPlace, radius_m: float) -> List[ExistingListing]:
        ...

    def create_listing(self, payload: Dict[str, Any]) -> str:
        ...

    def attach_photo(self, listing_id: str, url: str, position: int) -> None:
        ...


def _listing_from_json(item: Dict[str, Any]) -> ExistingListing:
    def _float(value: Any) -> Optional[float]:
        try:
            return float(value) if value is not None else None
        except (TypeError, ValueError):
            return None

    return ExistingListing(
        id=str(item["id"]),
        name=item.get("name") or "",
        address=item.get("address"),
        latitude=_float(item.get("latitude")),
        longitude=_float(item.get("longitude")),
        phone=item.get("phone"),
        website=item.get("website"),
        listing_type=item.get("listing_type") or item.get("listingType"),
    )


class HttpListingGateway:
    """JSON client for the listing service.

    The session retries connection errors and 5xx responses; anything still
    failing is raised as ``ListingGatewayError``.
    """

    def __init__(self, base_url: str, token: str = "", timeout: float = 10.0, retries: int = 3) -> None:
        if not base_url:
            raise ValueError("listing service base URL is required")
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = requests.Session()
        retry = Retry(
            total=retries,
            backoff_factor=1,
            status_forcelist=(500, 502, 503, 504),
            allowed_methods=("POST", "GET"),
        )
        self.session.mount("http://", HTTPAdapter(max_retries=retry))
        self.session.mount("https://", HTTPAdapter(max_retries=retry))
        self.session.headers.update({"Accept": "application/json"})
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as exc:
            logger.error("Listing service call %s %s failed: %s", method, path, exc)
            raise ListingGatewayError(f"listing service unreachable: {exc}") from exc

        if not (200 <= response.status_code < 300):
            logger.error(
                "Listing service returned non-2xx status (%s) for %s %s: %s",
                response.status_code,
                method,
                path,
                response.text[:500],
            )
            raise ListingGatewayError(f"listing service returned {response.status_code}")
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise ListingGatewayError("listing service returned invalid JSON") from exc

    def existing_listings(self, venue: RawPlace, radius_m: float) -> List[ExistingListing]:
        params: Dict[str, Any] = {"q": venue.name}
        if venue.latitude is not None and venue.longitude is not None:
            params.update({"lat": venue.latitude, "lng": venue.longitude, "radiusM": radius_m})
        body = self._request("GET", "/listings/nearby", params=params)
        items = body.get("data") if isinstance(body, dict) else body
        return [_listing_from_json(item) for item in items or [] if item.get("id") is not None]

    def create_listing(self, payload: Dict[str, Any]) -> str:
        headers = {}
        if payload.get("import_candidate_id"):
            headers["Idempotency-Key"] = str(payload["import_candidate_id"])
        body = self._request("POST", "/listings", json=payload, headers=headers)
        data = body.get("data", body)
        listing_id = data.get("id") if isinstance(data, dict) else None
        if not listing_id:
            raise ListingGatewayError("listing service response did not include an id")
        logger.info("Created listing %s for %s", listing_id, payload.get("external_id"))
        return str(listing_id)

    def attach_photo(self, listing_id: str, url: str, position: int) -> None:
        self._request(
            "POST",
            f"/listings/{listing_id}/photos",
            json={"url": url, "position": position, "isPrimary": position == 0},
        )


class InMemoryListingGateway:
    """Dict-backed listing service for local runs and tests.

    ``fail_creates`` and ``fail_photos`` make the next N calls raise.
    Creates are idempotent on ``import_candidate_id``.
    """

    def __init__(self, listings: Optional[List[ExistingListing]] = None) -> None:
        self._lock = threading.Lock()
        self.listings: Dict[str, ExistingListing] = {listing.id: listing for listing in listings or []}
        self.payloads: Dict[str, Dict[str, Any]] = {}
        self.photos: Dict[str, List[Dict[str, Any]]] = {}
        self.fail_creates = 0
        self.fail_photos = 0

    def add(self, listing: ExistingListing) -> None:
        with self._lock:
            self.listings[listing.id] = listing

    def existing_listings(self, venue: RawPlace, radius_m: float) -> List[ExistingListing]:
        with self._lock:
            listings = list(self.listings.values())
        nearby = []
        for listing in listings:
            distance = distance_between(venue, listing)
            if distance is None or distance <= radius_m:
                nearby.append(listing)
        return nearby

    def create_listing(self, payload: Dict[str, Any]) -> str:
        with self._lock:
            if self.fail_creates > 0:
                self.fail_creates -= 1
                raise ListingGatewayError("listing service unavailable")
            key = payload.get("import_candidate_id")
            if key:
                for listing_id, created in self.payloads.items():
                    if created.get("import_candidate_id") == key:
                        return listing_id
            listing_id = str(uuid.uuid4())
            self.payloads[listing_id] = dict(payload)
            self.listings[listing_id] = ExistingListing(
                id=listing_id,
                name=payload.get("name") or "",
                address=payload.get("address"),
                latitude=payload.get("latitude"),
                longitude=payload.get("longitude"),
                phone=payload.get("phone"),
                website=payload.get("website"),
                listing_type=payload.get("listing_type"),
            )
            return listing_id

    def attach_photo(self, listing_id: str, url: str, position: int) -> None:
        with self._lock:
            if self.fail_photos > 0:
                self.fail_photos -= 1
                raise ListingGatewayError("photo upload failed")
            if listing_id not in self.listings:
                raise ListingGatewayError(f"listing {listing_id} not found")
            self.photos.setdefault(listing_id, []).append(
                {"url": url, "position": position, "isPrimary": position == 0}
            )
