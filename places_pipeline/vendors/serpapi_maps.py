"""SerpAPI Google Maps directory backend.

SerpAPI charges per request, so each page fetched here is reported with its
cost and counted against the sync budget like a Places API call.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple

import requests
from serpapi import GoogleSearch

from places_pipeline.errors import DirectoryError, RateLimited, TransientDirectoryError, Unauthorized
from places_pipeline.models import Scope

logger = logging.getLogger(__name__)

DEFAULT_ZOOM = 13
_RATE_LIMIT_MARKERS = ("run out of searches", "rate limit", "too many requests", "hourly searches")
_AUTH_MARKERS = ("invalid api key", "api key", "account")


def build_serpapi_params(scope: Scope, api_key: str, start: int = 0, language_code: str = "en") -> Dict[str, Any]:
    """Construct SerpAPI request parameters for the Google Maps engine."""
    query = scope.query.strip()
    if scope.category:
        query = f"{query} {scope.category.replace('_', ' ')}"

    params: Dict[str, Any] = {
        "engine": "google_maps",
        "q": query,
        "api_key": api_key,
        "type": "search",
        "hl": language_code,
    }
    if scope.has_location:
        params["ll"] = f"@{scope.latitude},{scope.longitude},{DEFAULT_ZOOM}z"
    if start:
        params["start"] = start
    return params


def _classify_error(message: str) -> DirectoryError:
    lowered = message.lower()
    if any(marker in lowered for marker in _RATE_LIMIT_MARKERS):
        return RateLimited(message)
    if any(marker in lowered for marker in _AUTH_MARKERS):
        return Unauthorized(message)
    return TransientDirectoryError(message)


def fetch_from_serpapi(params: Dict[str, Any], timeout: float = 10) -> Dict[str, Any]:
    """Call SerpAPI Google Maps once and return the raw JSON payload."""
    logger.info("Calling SerpAPI for q=%s start=%s", params.get("q"), params.get("start", 0))
    search = GoogleSearch(params)
    search.timeout = timeout
    try:
        data = search.get_dict()
    except requests.RequestException as exc:
        raise TransientDirectoryError(f"SerpAPI request failed: {exc}") from exc
    except ValueError as exc:
        raise TransientDirectoryError(f"SerpAPI returned a non-JSON body: {exc}") from exc
    if not data:
        raise TransientDirectoryError("SerpAPI returned an empty payload.")
    if "error" in data:
        message = str(data.get("error") or data)
        if "hasn't returned any results" in message.lower():
            return {"local_results": []}
        raise _classify_error(message)
    return data


def extract_items(data: Dict[str, Any]) -> List[Dict[str, Any]]:
    """SerpAPI sometimes returns local_results as a list or nested dict."""
    local_results = data.get("local_results")
    items: Iterable[Any] = []
    if isinstance(local_results, list):
        items = local_results
    elif isinstance(local_results, dict):
        logger.debug("local_results is dict with keys: %s", list(local_results.keys())[:10])
        for maybe in (local_results.get("places"), local_results.get("results"), local_results.get("local_results")):
            if isinstance(maybe, list):
                items = maybe
                break
    else:
        place_results = data.get("place_results")
        if isinstance(place_results, list):
            items = place_results
        elif isinstance(place_results, dict):
            items = [place_results]
    return [item for item in items if isinstance(item, dict)]


class SerpApiMapsDirectory:
    """Directory backend paging SerpAPI results with the ``start`` offset."""

    source = "serpapi_google_maps"
    page_size = 20

    def __init__(self, api_key: str, request_cost: Decimal, language_code: str = "en", timeout: float = 10) -> None:
        self.api_key = api_key
        self.request_cost = request_cost
        self.language_code = language_code
        self.timeout = timeout

    def search_page(self, scope: Scope, page_token: Optional[str]) -> Tuple[List[Dict[str, Any]], Optional[str], Decimal]:
        try:
            start = int(page_token) if page_token else 0
        except ValueError as exc:
            raise DirectoryError(f"invalid SerpAPI page token {page_token!r}") from exc

        params = build_serpapi_params(scope, self.api_key, start=start, language_code=self.language_code)
        data = fetch_from_serpapi(params, timeout=self.timeout)
        items = extract_items(data)

        pagination = data.get("serpapi_pagination") or {}
        next_token = str(start + len(items)) if items and pagination.get("next") else None
        return items, next_token, self.request_cost
