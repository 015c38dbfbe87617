"""Ordered step declarations per entity type.

Ordering encodes data dependencies (``ai_enhancement`` reads what
``web_scrape`` and ``review_fetch`` wrote). Nothing here infers dependencies;
changing an order is a reviewed change to this file.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, Optional, Tuple

from extraction_worker.models import EntityType


FORCE_ALL = "*"


class Criticality(str, Enum):
    CRITICAL = "critical"
    OPTIONAL = "optional"


@dataclass(frozen=True)
class StepSpec:
    name: str
    criticality: Criticality = Criticality.OPTIONAL
    max_retries: int = 2
    timeout: Optional[float] = None
    estimated_cost_usd: float = 0.0
    estimated_seconds: float = 5.0
    outputs: Tuple[str, ...] = ()

    @property
    def critical(self) -> bool:
        return self.criticality is Criticality.CRITICAL


class RegistryError(ValueError):
    """Raised when a step registry is malformed."""


@dataclass(frozen=True)
class StepRegistry:
    entity_type: EntityType
    steps: Tuple[StepSpec, ...]

    def __post_init__(self) -> None:
        names = [spec.name for spec in self.steps]
        if len(set(names)) != len(names):
            raise RegistryError(f"duplicate step names in {self.entity_type.value} registry: {names}")
        if not names or names[0] != "initial_creation":
            raise RegistryError(f"{self.entity_type.value} registry must start with initial_creation")
        for spec in self.steps:
            if spec.max_retries < 0:
                raise RegistryError(f"{spec.name}: max_retries must be >= 0")

    @property
    def step_names(self) -> Tuple[str, ...]:
        return tuple(spec.name for spec in self.steps)

    def get(self, name: str) -> StepSpec:
        for spec in self.steps:
            if spec.name == name:
                return spec
        raise KeyError(name)

    def resolve_forced(self, force_steps: Iterable[str]) -> Tuple[str, ...]:
        """Registry steps named in ``force_steps``; ``"*"`` selects every step but ``initial_creation``."""
        requested = set(force_steps)
        if FORCE_ALL in requested:
            return tuple(name for name in self.step_names if name != "initial_creation")
        return tuple(name for name in self.step_names if name in requested)

    def _selected(self, names: Optional[Iterable[str]]) -> Tuple[StepSpec, ...]:
        if names is None:
            return self.steps
        wanted = set(names)
        return tuple(spec for spec in self.steps if spec.name in wanted)

    def estimated_cost_usd(self, names: Optional[Iterable[str]] = None) -> float:
        """Summed vendor cost of ``names`` (every step when omitted)."""
        return sum(spec.estimated_cost_usd for spec in self._selected(names))

    def estimated_seconds(self, names: Optional[Iterable[str]] = None) -> float:
        return sum(spec.estimated_seconds for spec in self._selected(names))


INITIAL_CREATION = StepSpec("initial_creation", Criticality.CRITICAL, max_retries=0, estimated_seconds=0.0)
PROVIDER_FETCH = StepSpec(
    "provider_fetch",
    Criticality.CRITICAL,
    max_retries=3,
    timeout=20.0,
    estimated_cost_usd=0.017,
    estimated_seconds=3.0,
    outputs=(
        "name", "address", "area", "city", "country", "latitude", "longitude", "phone", "website",
        "google_rating", "google_review_count", "price_level", "opening_hours", "primary_type", "google_types",
        "photo_references", "provider_reviews",
    ),
)
WEB_SCRAPE = StepSpec(
    "web_scrape",
    max_retries=1,
    timeout=60.0,
    estimated_seconds=20.0,
    outputs=("website_text", "about_summary", "emails", "phones", "socials", "menu_link", "contact_form_url"),
)
SOCIAL_MEDIA_SEARCH = StepSpec(
    "social_media_search",
    max_retries=1,
    timeout=30.0,
    estimated_cost_usd=0.01,
    estimated_seconds=8.0,
    outputs=("instagram", "facebook", "twitter", "tiktok"),
)
REVIEW_FETCH = StepSpec(
    "review_fetch",
    max_retries=2,
    timeout=60.0,
    estimated_cost_usd=0.02,
    estimated_seconds=15.0,
    outputs=("reviews", "review_count_fetched"),
)
IMAGE_EXTRACTION = StepSpec(
    "image_extraction",
    max_retries=1,
    timeout=120.0,
    estimated_cost_usd=0.07,
    estimated_seconds=40.0,
    outputs=("images", "hero_image"),
)
AI_SENTIMENT = StepSpec(
    "ai_sentiment",
    max_retries=2,
    timeout=60.0,
    estimated_cost_usd=0.01,
    estimated_seconds=10.0,
    outputs=("review_sentiment", "sentiment_modifiers"),
)
AI_ENHANCEMENT = StepSpec(
    "ai_enhancement",
    max_retries=2,
    timeout=90.0,
    estimated_cost_usd=0.03,
    estimated_seconds=25.0,
    outputs=(
        "description", "short_description", "meta_title", "meta_description", "faqs",
        "suggested_categories", "suggested_features", "ai_enhanced_at",
    ),
)
CATEGORY_MATCHING = StepSpec(
    "category_matching",
    max_retries=1,
    timeout=15.0,
    estimated_seconds=1.0,
    outputs=("category_ids", "primary_category_id"),
)
SCORE_CALCULATION = StepSpec(
    "score_calculation",
    Criticality.CRITICAL,
    max_retries=0,
    timeout=10.0,
    estimated_seconds=0.5,
    outputs=(
        "overall_score", "score_label", "component_scores", "rating_sources", "total_review_count",
        "sentiment_analyzed", "last_rated_at",
    ),
)


REGISTRIES: Dict[EntityType, StepRegistry] = {
    EntityType.RESTAURANT: StepRegistry(
        EntityType.RESTAURANT,
        (
            INITIAL_CREATION, PROVIDER_FETCH, WEB_SCRAPE, REVIEW_FETCH, IMAGE_EXTRACTION,
            AI_SENTIMENT, AI_ENHANCEMENT, CATEGORY_MATCHING, SCORE_CALCULATION,
        ),
    ),
    EntityType.HOTEL: StepRegistry(
        EntityType.HOTEL,
        (
            INITIAL_CREATION, PROVIDER_FETCH, WEB_SCRAPE, SOCIAL_MEDIA_SEARCH, REVIEW_FETCH,
            IMAGE_EXTRACTION, AI_SENTIMENT, AI_ENHANCEMENT, CATEGORY_MATCHING, SCORE_CALCULATION,
        ),
    ),
    EntityType.MALL: StepRegistry(
        EntityType.MALL,
        (
            INITIAL_CREATION, PROVIDER_FETCH, WEB_SCRAPE, SOCIAL_MEDIA_SEARCH, REVIEW_FETCH,
            IMAGE_EXTRACTION, AI_ENHANCEMENT, CATEGORY_MATCHING, SCORE_CALCULATION,
        ),
    ),
    EntityType.ATTRACTION: StepRegistry(
        EntityType.ATTRACTION,
        (
            INITIAL_CREATION, PROVIDER_FETCH, WEB_SCRAPE, SOCIAL_MEDIA_SEARCH, REVIEW_FETCH,
            IMAGE_EXTRACTION, AI_SENTIMENT, AI_ENHANCEMENT, CATEGORY_MATCHING, SCORE_CALCULATION,
        ),
    ),
    EntityType.FITNESS: StepRegistry(
        EntityType.FITNESS,
        (
            INITIAL_CREATION, PROVIDER_FETCH, WEB_SCRAPE, SOCIAL_MEDIA_SEARCH, REVIEW_FETCH,
            IMAGE_EXTRACTION, AI_ENHANCEMENT, CATEGORY_MATCHING, SCORE_CALCULATION,
        ),
    ),
    EntityType.SCHOOL: StepRegistry(
        EntityType.SCHOOL,
        (
            INITIAL_CREATION, PROVIDER_FETCH, WEB_SCRAPE, SOCIAL_MEDIA_SEARCH, REVIEW_FETCH,
            IMAGE_EXTRACTION, AI_ENHANCEMENT, CATEGORY_MATCHING, SCORE_CALCULATION,
        ),
    ),
}


def get_registry(entity_type: EntityType) -> StepRegistry:
    return REGISTRIES[EntityType(entity_type)]


def all_step_names(registries: Optional[Iterable[StepRegistry]] = None) -> Tuple[str, ...]:
    seen: Dict[str, None] = {}
    for registry in registries or REGISTRIES.values():
        for name in registry.step_names:
            seen.setdefault(name, None)
    return tuple(seen)
