"""Weighted 0-10 rating computed from provider ratings, reviews and sentiment."""

from __future__ import annotations

from typing import Any, Dict, Iterable, Mapping, Optional

DEFAULT_BASE_SCORE = 7.0

COMPONENT_WEIGHTS = {
    "quality": 0.35,
    "service": 0.25,
    "ambience": 0.20,
    "value": 0.15,
    "accessibility": 0.05,
}

# Share of the sentiment modifier applied to each component.
SENTIMENT_IMPACT = {
    "quality": 1.0,
    "service": 0.8,
    "ambience": 0.8,
    "value": 0.6,
    "accessibility": 0.3,
}

_MODIFIER_ALIASES = {
    "quality": ("quality", "food_quality", "food", "product_quality", "facilities"),
    "service": ("service", "staff"),
    "ambience": ("ambience", "atmosphere", "ambiance", "cleanliness"),
    "value": ("value", "price", "value_for_money"),
    "accessibility": ("accessibility", "location", "parking"),
}

# (component, feature keywords, bonus)
FEATURE_BONUSES = (
    ("quality", ("chef special",), 0.2),
    ("service", ("reservation",), 0.1),
    ("service", ("table service", "waiter service", "concierge"), 0.15),
    ("ambience", ("outdoor",), 0.15),
    ("ambience", ("live music",), 0.1),
    ("ambience", ("romantic", "fine dining"), 0.1),
    ("accessibility", ("wheelchair",), 0.3),
    ("accessibility", ("parking",), 0.15),
    ("accessibility", ("restroom",), 0.1),
    ("accessibility", ("wifi",), 0.1),
)

SCORE_LABELS = (
    (9.0, "Exceptional"),
    (8.0, "Excellent"),
    (7.0, "Very Good"),
    (6.0, "Good"),
    (5.0, "Average"),
)


def normalize_rating(rating: float, max_scale: float = 5.0) -> float:
    return rating / max_scale * 10


def clamp(score: float) -> float:
    return min(max(score, 0.0), 10.0)


def score_label(score: float) -> str:
    for threshold, label in SCORE_LABELS:
        if score >= threshold:
            return label
    return "Below Average"


def rating_sources(fields: Mapping[str, Any]) -> Dict[str, Dict[str, float]]:
    sources: Dict[str, Dict[str, float]] = {}
    rating = fields.get("google_rating")
    count = fields.get("google_review_count")
    if rating and count:
        sources["google"] = {"rating": float(rating), "count": int(count), "normalized": normalize_rating(float(rating))}

    sampled = [float(r["rating"]) for r in fields.get("reviews") or [] if isinstance(r.get("rating"), (int, float))]
    if sampled:
        average = sum(sampled) / len(sampled)
        sources["review_sample"] = {
            "rating": round(average, 2),
            "count": len(sampled),
            "normalized": normalize_rating(average),
        }
    return sources


def weighted_base(sources: Mapping[str, Mapping[str, float]]) -> float:
    total_reviews = sum(source["count"] for source in sources.values())
    if not total_reviews:
        return DEFAULT_BASE_SCORE
    return sum(source["normalized"] * source["count"] for source in sources.values()) / total_reviews


def sentiment_modifiers(raw: Optional[Mapping[str, Any]]) -> Dict[str, float]:
    modifiers: Dict[str, float] = {}
    lowered = {str(key).lower(): value for key, value in (raw or {}).items()}
    for component, aliases in _MODIFIER_ALIASES.items():
        for alias in aliases:
            value = lowered.get(alias)
            if isinstance(value, (int, float)):
                modifiers[component] = max(-1.0, min(float(value), 1.0))
                break
    return modifiers


def _has_feature(features: Iterable[str], keywords: Iterable[str]) -> bool:
    names = [str(feature).lower() for feature in features]
    return any(keyword in name for name in names for keyword in keywords)


def component_scores(
    base: float,
    *,
    features: Iterable[str] = (),
    price_level: Optional[int] = None,
    description: Optional[str] = None,
    modifiers: Optional[Mapping[str, float]] = None,
) -> Dict[str, float]:
    features = list(features)
    scores = {component: base for component in COMPONENT_WEIGHTS}

    for component, keywords, bonus in FEATURE_BONUSES:
        if _has_feature(features, keywords):
            scores[component] += bonus
    if description and len(description) > 200:
        scores["quality"] += 0.1
    level = price_level or 2
    if level >= 3:
        scores["service"] += 0.15
    if level == 1:
        scores["value"] += 0.1
    elif level == 4:
        scores["value"] -= 0.1

    for component, modifier in (modifiers or {}).items():
        scores[component] += modifier * SENTIMENT_IMPACT[component]
    return {component: clamp(score) for component, score in scores.items()}


def calculate(fields: Mapping[str, Any]) -> Dict[str, Any]:
    """Score an entity from its enriched fields."""
    sources = rating_sources(fields)
    base = weighted_base(sources)
    modifiers = sentiment_modifiers(fields.get("sentiment_modifiers"))
    components = component_scores(
        base,
        features=fields.get("suggested_features") or [],
        price_level=fields.get("price_level"),
        description=fields.get("description"),
        modifiers=modifiers,
    )
    overall = round(sum(components[name] * weight for name, weight in COMPONENT_WEIGHTS.items()), 1)
    return {
        "overall_score": overall,
        "score_label": score_label(overall),
        "component_scores": {name: round(score, 1) for name, score in components.items()},
        "rating_sources": sources,
        "total_review_count": sum(int(source["count"]) for source in sources.values()),
        "sentiment_analyzed": bool(modifiers),
    }
