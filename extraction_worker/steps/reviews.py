"""Review collection via SerpAPI."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from extraction_worker.core.errors import ErrorKind, StepError
from extraction_worker.models import JobContext, StepMetrics, StepResult
from extraction_worker.steps.base import BaseAdapter
from extraction_worker.vendors import serp_reviews

logger = logging.getLogger(__name__)

COST_PER_PAGE_USD = 0.01


def merge_reviews(*groups: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Concatenate review lists, dropping repeats of the same author and text."""
    seen: Set[Tuple[Optional[str], str]] = set()
    merged: List[Dict[str, Any]] = []
    for group in groups:
        for review in group or []:
            key = ((review.get("author") or "").strip().lower() or None, (review.get("text") or "")[:200])
            if key in seen:
                continue
            seen.add(key)
            merged.append(dict(review))
    return merged


class ReviewFetchAdapter(BaseAdapter):
    name = "review_fetch"

    def __init__(
        self,
        serpapi_api_key: Optional[str],
        *,
        max_reviews: int = 50,
        fetch: Callable[..., List[Dict[str, Any]]] = serp_reviews.fetch_reviews,
    ) -> None:
        self.serpapi_api_key = serpapi_api_key
        self.max_reviews = max_reviews
        self.fetch = fetch

    def execute(self, ctx: JobContext) -> StepResult:
        if not self.serpapi_api_key:
            raise StepError(ErrorKind.FATAL, "SERPAPI_API_KEY is not configured")
        fetched = self.fetch(ctx.external_place_id, self.serpapi_api_key, max_reviews=self.max_reviews)
        reviews = merge_reviews(fetched, list(ctx.get("provider_reviews") or []))[: self.max_reviews]
        pages = max(1, -(-len(fetched) // serp_reviews.REVIEWS_PAGE_SIZE))
        update = {"reviews": reviews, "review_count_fetched": len(reviews)} if reviews else {}
        return StepResult(update=update, metrics=StepMetrics(cost_usd=pages * COST_PER_PAGE_USD, items=len(reviews)))
