"""SerpAPI helpers for review collection and web lookups."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

from serpapi import GoogleSearch

from extraction_worker.core.errors import ErrorKind, StepError

logger = logging.getLogger(__name__)

REVIEWS_PAGE_SIZE = 20
_NO_RESULTS_MARKERS = ("hasn't returned any results", "no results")


class SerpApiError(StepError):
    """Raised when SerpAPI answers with an error payload."""


def _error_kind(message: str) -> ErrorKind:
    lowered = message.lower()
    if "run out of searches" in lowered or "rate limit" in lowered or "too many requests" in lowered:
        return ErrorKind.QUOTA_EXCEEDED
    if "invalid api key" in lowered or ("api key" in lowered and "missing" in lowered):
        return ErrorKind.FATAL
    return ErrorKind.INVALID_INPUT


def _search(params: Dict[str, Any], search_factory: Callable[[Dict[str, Any]], Any]) -> Dict[str, Any]:
    """Run one SerpAPI request; an empty result set comes back as ``{}``.

    SerpAPI charges per request, so callers page only as far as they need.
    """
    logger.info("Calling SerpAPI engine=%s", params.get("engine"))
    data = search_factory(params).get_dict()
    if not data:
        raise SerpApiError(ErrorKind.TRANSIENT, "SerpAPI returned an empty payload.")
    if "error" in data:
        message = str(data.get("error") or data)
        if any(marker in message.lower() for marker in _NO_RESULTS_MARKERS):
            return {}
        raise SerpApiError(_error_kind(message), f"SerpAPI returned an error response: {message}")
    return data


def build_reviews_params(place_id: str, api_key: str, next_page_token: Optional[str] = None) -> Dict[str, Any]:
    if not place_id or not place_id.strip():
        raise ValueError("place_id must be provided for review lookups.")
    params: Dict[str, Any] = {
        "engine": "google_maps_reviews",
        "place_id": place_id.strip(),
        "api_key": api_key,
        "sort_by": "newestFirst",
        "hl": "en",
    }
    if next_page_token:
        params["next_page_token"] = next_page_token
        params["num"] = REVIEWS_PAGE_SIZE
    return params


def parse_reviews(data: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    reviews: List[Dict[str, Any]] = []
    for raw in (data or {}).get("reviews") or []:
        if not isinstance(raw, dict):
            continue
        text = (raw.get("snippet") or raw.get("extracted_snippet", {}).get("original") or "").strip()
        rating = raw.get("rating")
        if not text and rating is None:
            continue
        reviews.append(
            {
                "author": (raw.get("user") or {}).get("name"),
                "rating": rating,
                "text": text or None,
                "date": raw.get("iso_date") or raw.get("date"),
                "likes": raw.get("likes"),
                "source": "google_maps",
            }
        )
    return reviews


def fetch_reviews(
    place_id: str,
    api_key: str,
    max_reviews: int = 50,
    search_factory: Callable[[Dict[str, Any]], Any] = GoogleSearch,
) -> List[Dict[str, Any]]:
    """Collect up to ``max_reviews`` reviews, following ``next_page_token``."""
    collected: List[Dict[str, Any]] = []
    token: Optional[str] = None
    while len(collected) < max_reviews:
        data = _search(build_reviews_params(place_id, api_key, token), search_factory)
        page = parse_reviews(data)
        if not page:
            break
        collected.extend(page)
        token = (data.get("serpapi_pagination") or {}).get("next_page_token")
        if not token:
            break
    logger.info("Fetched %d reviews for %s", min(len(collected), max_reviews), place_id)
    return collected[:max_reviews]


def web_search(
    query: str,
    api_key: str,
    num: int = 10,
    search_factory: Callable[[Dict[str, Any]], Any] = GoogleSearch,
) -> List[Dict[str, Any]]:
    """Organic Google results as ``{title, link, snippet}`` dicts."""
    if not query or not query.strip():
        raise ValueError("Query must be provided for SerpAPI lookups.")
    params = {"engine": "google", "q": query.strip(), "api_key": api_key, "num": num}
    data = _search(params, search_factory)
    results: List[Dict[str, Any]] = []
    for raw in data.get("organic_results") or []:
        link = raw.get("link")
        if link:
            results.append({"title": raw.get("title"), "link": link, "snippet": raw.get("snippet")})
    return results
