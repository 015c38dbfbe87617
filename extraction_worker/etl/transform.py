"""Utilities for transforming Google Places responses into entity field updates."""

import logging
import re
import unicodedata
from typing import Any, Dict, Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)

_IGNORE_TYPES = {"point_of_interest", "establishment", "political", "premise"}
_SLUG_STRIP = re.compile(r"[^a-z0-9\s-]")
_SLUG_DASH = re.compile(r"[\s_-]+")


def parse_city_country(address_components: Iterable[Dict[str, Any]]) -> Tuple[Optional[str], Optional[str]]:
    city = None
    country = None
    for component in address_components or []:
        types = set(component.get("types", []))
        if "locality" in types or "administrative_area_level_2" in types:
            city = component.get("long_name")
        if "country" in types:
            country = component.get("long_name")
    return city, country


def parse_area(address_components: Iterable[Dict[str, Any]]) -> Optional[str]:
    for component in address_components or []:
        types = set(component.get("types", []))
        if types & {"sublocality", "sublocality_level_1", "neighborhood"}:
            return component.get("long_name")
    return None


def extract_area(address: Optional[str], city: Optional[str] = None, country: Optional[str] = None) -> Optional[str]:
    """First comma-separated part of a formatted address that isn't a street, city or country."""
    if not address:
        return None
    skip = {value.strip().lower() for value in (city, country) if value}
    parts = [part.strip() for part in address.split(",") if part.strip()]
    if len(parts) < 2:
        return None
    for part in parts[1:]:
        if part.lower() in skip or any(char.isdigit() for char in part):
            continue
        return part
    return None


def _extract_primary_type(types: Iterable[str]) -> Optional[str]:
    for type_name in types or []:
        if type_name not in _IGNORE_TYPES:
            return type_name
    return None


def map_price_level(value: Any) -> Optional[int]:
    """Normalise a price level to 1-4; accepts Google's 0-4 integer or a ``$$`` string."""
    if value is None or value == "":
        return None
    if isinstance(value, str):
        stripped = value.strip()
        if stripped and set(stripped) <= {"$"}:
            return min(len(stripped), 4)
        try:
            value = int(stripped)
        except ValueError:
            return None
    try:
        level = int(value)
    except (TypeError, ValueError):
        return None
    return max(1, min(level, 4))


def opening_hours_from_details(opening_hours: Optional[Dict[str, Any]]) -> Optional[List[str]]:
    weekday_text = (opening_hours or {}).get("weekday_text")
    if not weekday_text:
        return None
    return [str(line) for line in weekday_text]


def slugify(value: Optional[str]) -> str:
    if not value:
        return ""
    normalized = unicodedata.normalize("NFKD", value).encode("ascii", "ignore").decode("ascii")
    slug = _SLUG_STRIP.sub("", normalized.lower())
    return _SLUG_DASH.sub("-", slug).strip("-")


def compact(update: Dict[str, Any]) -> Dict[str, Any]:
    """Drop keys whose value is None, an empty string or an empty collection."""
    return {key: value for key, value in update.items() if value not in (None, "", [], {})}


def seed_fields(place_data: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Fields known at creation time from a search result."""
    if not place_data:
        return {}
    location = (place_data.get("geometry") or {}).get("location") or {}
    address = place_data.get("formatted_address")
    return compact(
        {
            "name": place_data.get("name"),
            "address": address,
            "area": extract_area(address),
            "latitude": location.get("lat"),
            "longitude": location.get("lng"),
            "google_rating": place_data.get("rating"),
            "google_review_count": place_data.get("user_ratings_total"),
        }
    )


def to_entity_update(
    result: Dict[str, Any],
    fallback_city: Optional[str] = None,
    fallback_country: Optional[str] = None,
) -> Dict[str, Any]:
    geometry = result.get("geometry", {}).get("location", {})
    components = result.get("address_components", [])
    city, country = parse_city_country(components)
    if not city:
        city = fallback_city
    if not country:
        country = fallback_country
    address = result.get("formatted_address")

    photos = [photo.get("photo_reference") for photo in result.get("photos", []) if photo.get("photo_reference")]
    reviews = [
        {
            "author": review.get("author_name"),
            "rating": review.get("rating"),
            "text": review.get("text"),
            "time": review.get("time"),
            "source": "google_places",
        }
        for review in result.get("reviews", [])
        if review.get("text")
    ]

    return compact(
        {
            "name": result.get("name"),
            "address": address,
            "area": parse_area(components) or extract_area(address, city, country),
            "city": city,
            "country": country,
            "latitude": geometry.get("lat"),
            "longitude": geometry.get("lng"),
            "phone": result.get("international_phone_number") or result.get("formatted_phone_number"),
            "website": result.get("website"),
            "google_rating": result.get("rating"),
            "google_review_count": result.get("user_ratings_total"),
            "price_level": map_price_level(result.get("price_level")),
            "opening_hours": opening_hours_from_details(result.get("opening_hours")),
            "primary_type": _extract_primary_type(result.get("types", [])),
            "google_types": [t for t in result.get("types", []) if t not in _IGNORE_TYPES],
            "photo_references": photos,
            "provider_reviews": reviews,
        }
    )
