"""Maps AI-suggested category names onto the directory's category table."""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional

from extraction_worker.etl.transform import slugify
from extraction_worker.models import JobContext, StepMetrics, StepResult
from extraction_worker.steps.base import BaseAdapter

logger = logging.getLogger(__name__)


def find_category(suggestion: str, categories: Iterable[Mapping[str, Any]]) -> Optional[Mapping[str, Any]]:
    """Exact name, then slug, then containment either way; case-insensitive."""
    wanted = suggestion.strip().lower()
    if not wanted:
        return None
    categories = list(categories)
    for category in categories:
        if str(category.get("name", "")).lower() == wanted:
            return category
    wanted_slug = slugify(wanted)
    for category in categories:
        if category.get("slug") == wanted_slug:
            return category
    for category in categories:
        name = str(category.get("name", "")).lower()
        if name and (name in wanted or wanted in name):
            return category
    return None


def match_categories(suggestions: Iterable[str], categories: Iterable[Mapping[str, Any]]) -> List[str]:
    categories = list(categories)
    matched: List[str] = []
    for suggestion in suggestions:
        category = find_category(str(suggestion), categories)
        if category is not None and category["id"] not in matched:
            matched.append(category["id"])
    return matched


class CategoryMatchingAdapter(BaseAdapter):
    name = "category_matching"

    def __init__(self, store) -> None:
        self.store = store

    def applies(self, ctx: JobContext) -> bool:
        return bool(ctx.get("suggested_categories") or ctx.get("primary_type"))

    def execute(self, ctx: JobContext) -> StepResult:
        suggestions = list(ctx.get("suggested_categories") or [])
        if ctx.get("primary_type"):
            suggestions.append(ctx.get("primary_type").replace("_", " "))
        categories = self.store.list_categories(ctx.entity_type)
        matched = match_categories(suggestions, categories)
        if not matched:
            logger.info("No categories matched for %s from %s", ctx.entity_id, suggestions)
            return StepResult(metrics=StepMetrics(items=0))
        update: Dict[str, Any] = {"category_ids": matched, "primary_category_id": matched[0]}
        return StepResult(update=update, metrics=StepMetrics(items=len(matched)))
