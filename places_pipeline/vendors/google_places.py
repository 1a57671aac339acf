"""Client utilities for the Google Places API (New)."""

import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

import requests

from places_pipeline.errors import DirectoryError, RateLimited, TransientDirectoryError, Unauthorized
from places_pipeline.models import Scope

logger = logging.getLogger(__name__)
_SESSION = requests.Session()
_BASE_URL = "https://places.googleapis.com/v1"
_MAX_BIAS_RADIUS_M = 50000.0

FIELD_MASK = ",".join(
    [
        "places.id",
        "places.displayName",
        "places.formattedAddress",
        "places.location",
        "places.internationalPhoneNumber",
        "places.nationalPhoneNumber",
        "places.websiteUri",
        "places.rating",
        "places.userRatingCount",
        "places.types",
        "places.primaryType",
        "places.photos",
        "places.businessStatus",
        "places.googleMapsUri",
        "nextPageToken",
    ]
)


class GooglePlacesError(DirectoryError):
    """Raised when the Places API rejects a request for a non-retryable reason."""


def _error_message(response: requests.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200] or f"HTTP {response.status_code}"
    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict):
        return error.get("message") or error.get("status") or f"HTTP {response.status_code}"
    return f"HTTP {response.status_code}"


def build_search_body(scope: Scope, page_size: int, language_code: str, page_token: Optional[str]) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "textQuery": scope.query.strip(),
        "pageSize": page_size,
        "languageCode": language_code,
    }
    if scope.category:
        body["includedType"] = scope.category
    if scope.has_location:
        radius = min(float(scope.radius_m or _MAX_BIAS_RADIUS_M), _MAX_BIAS_RADIUS_M)
        body["locationBias"] = {
            "circle": {
                "center": {"latitude": scope.latitude, "longitude": scope.longitude},
                "radius": radius,
            }
        }
    if page_token:
        body["pageToken"] = page_token
    return body


def search_text(
    scope: Scope,
    api_key: str,
    page_token: Optional[str] = None,
    page_size: int = 20,
    language_code: str = "en",
    timeout: float = 10,
) -> Dict[str, Any]:
    """Fetch one page of Text Search results.

    Raises ``RateLimited`` on 429, ``Unauthorized`` on 401/403,
    ``TransientDirectoryError`` on network failures and 5xx, and
    ``GooglePlacesError`` for any other rejected request.
    """
    headers = {
        "Content-Type": "application/json",
        "X-Goog-Api-Key": api_key,
        "X-Goog-FieldMask": FIELD_MASK,
    }
    body = build_search_body(scope, page_size, language_code, page_token)
    try:
        response = _SESSION.post(f"{_BASE_URL}/places:searchText", json=body, headers=headers, timeout=timeout)
    except requests.Timeout as exc:
        raise TransientDirectoryError(f"search_text timed out after {timeout}s") from exc
    except requests.RequestException as exc:
        raise TransientDirectoryError(f"search_text request failed: {exc}") from exc

    status = response.status_code
    if status == 429:
        raise RateLimited(_error_message(response), status_code=status)
    if status in (401, 403):
        logger.error("search_text rejected credentials: status=%s", status)
        raise Unauthorized(_error_message(response), status_code=status)
    if status >= 500:
        raise TransientDirectoryError(_error_message(response), status_code=status)
    if status >= 400:
        logger.error("search_text failed: status=%s, error_message=%s", status, _error_message(response))
        raise GooglePlacesError(_error_message(response), status_code=status)

    try:
        payload = response.json()
    except ValueError as exc:
        raise TransientDirectoryError("search_text returned a non-JSON body") from exc
    return payload if isinstance(payload, dict) else {}


class GooglePlacesDirectory:
    """Directory backend paging through Text Search results."""

    source = "google_places"

    def __init__(
        self,
        api_key: str,
        request_cost: Decimal,
        page_size: int = 20,
        language_code: str = "en",
        timeout: float = 10,
    ) -> None:
        self.api_key = api_key
        self.request_cost = request_cost
        self.page_size = page_size
        self.language_code = language_code
        self.timeout = timeout

    def search_page(self, scope: Scope, page_token: Optional[str]):
        payload = search_text(
            scope,
            self.api_key,
            page_token=page_token,
            page_size=self.page_size,
            language_code=self.language_code,
            timeout=self.timeout,
        )
        places: List[Dict[str, Any]] = [p for p in payload.get("places") or [] if isinstance(p, dict)]
        return places, payload.get("nextPageToken") or None, self.request_cost


def photo_media_url(photo_ref: str, max_width_px: int = 1600) -> str:
    """URL the listing service fetches a photo from (it supplies its own key)."""
    return f"{_BASE_URL}/{photo_ref}/media?maxWidthPx={max_width_px}"
