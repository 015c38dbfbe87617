"""Client utilities for the Google Places API."""

import logging
from typing import Any, Dict, Optional

import requests

from extraction_worker.core.errors import ErrorKind, StepError

logger = logging.getLogger(__name__)
_SESSION = requests.Session()
_BASE_URL = "https://maps.googleapis.com/maps/api/place"

DETAIL_FIELDS = ",".join(
    (
        "place_id",
        "name",
        "formatted_address",
        "formatted_phone_number",
        "international_phone_number",
        "geometry",
        "website",
        "rating",
        "user_ratings_total",
        "price_level",
        "opening_hours",
        "types",
        "address_components",
        "photos",
        "reviews",
        "business_status",
    )
)

_STATUS_KINDS = {
    "OVER_QUERY_LIMIT": ErrorKind.QUOTA_EXCEEDED,
    "REQUEST_DENIED": ErrorKind.FATAL,
    "INVALID_REQUEST": ErrorKind.INVALID_INPUT,
    "NOT_FOUND": ErrorKind.INVALID_INPUT,
    "ZERO_RESULTS": ErrorKind.INVALID_INPUT,
    "UNKNOWN_ERROR": ErrorKind.TRANSIENT,
}


class GooglePlacesError(StepError):
    """Raised when the Places API returns a non-successful response."""


def _check_status(payload: Dict[str, Any], operation: str) -> None:
    status = payload.get("status")
    if status == "OK":
        return
    logger.error("%s failed: status=%s, error_message=%s", operation, status, payload.get("error_message"))
    kind = _STATUS_KINDS.get(status, ErrorKind.TRANSIENT)
    raise GooglePlacesError(kind, payload.get("error_message") or status or "unknown status")


def place_details(
    place_id: str,
    api_key: str,
    fields: str = DETAIL_FIELDS,
    session: Optional[requests.Session] = None,
) -> Dict[str, Any]:
    params = {"place_id": place_id, "key": api_key, "fields": fields}
    response = (session or _SESSION).get(f"{_BASE_URL}/details/json", params=params, timeout=10)
    response.raise_for_status()
    payload = response.json()
    _check_status(payload, "place_details")
    return payload.get("result", {})


def photo_url(photo_reference: str, api_key: Optional[str] = None, max_width: int = 1600) -> str:
    """Photo endpoint URL; without ``api_key`` the result is safe to persist."""
    url = f"{_BASE_URL}/photo?maxwidth={max_width}&photo_reference={photo_reference}"
    return f"{url}&key={api_key}" if api_key else url
