"""Adapters that call the chat-completion API."""

from __future__ import annotations

import logging
from typing import Any, Dict, List

from extraction_worker.etl.transform import compact
from extraction_worker.models import JobContext, StepMetrics, StepResult, utcnow
from extraction_worker.steps.base import BaseAdapter
from extraction_worker.vendors.ai_client import AIClient

logger = logging.getLogger(__name__)

FACT_FIELDS = (
    "address",
    "area",
    "city",
    "country",
    "primary_type",
    "google_types",
    "google_rating",
    "google_review_count",
    "price_level",
    "opening_hours",
    "about_summary",
    "menu_link",
)


def _reviews(ctx: JobContext) -> List[Dict[str, Any]]:
    return list(ctx.get("reviews") or ctx.get("provider_reviews") or [])


def _string_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(item).strip() for item in value if str(item).strip()]


class AISentimentAdapter(BaseAdapter):
    name = "ai_sentiment"

    def __init__(self, client: AIClient) -> None:
        self.client = client

    def applies(self, ctx: JobContext) -> bool:
        return any(review.get("text") for review in _reviews(ctx))

    def execute(self, ctx: JobContext) -> StepResult:
        reviews = _reviews(ctx)
        result = self.client.analyze_sentiment(ctx.entity_type.value, ctx.get("name"), reviews)
        modifiers = result.get("modifiers") if isinstance(result.get("modifiers"), dict) else {}
        sentiment = compact(
            {
                "summary": result.get("summary"),
                "overall": result.get("overall"),
                "positives": _string_list(result.get("positives")),
                "negatives": _string_list(result.get("negatives")),
            }
        )
        update = compact({"review_sentiment": sentiment, "sentiment_modifiers": modifiers})
        return StepResult(update=update, metrics=StepMetrics(cost_usd=result.get("_cost_usd", 0.0), items=len(reviews)))


class AIEnhancementAdapter(BaseAdapter):
    name = "ai_enhancement"

    def __init__(self, client: AIClient) -> None:
        self.client = client

    def execute(self, ctx: JobContext) -> StepResult:
        facts = {name: ctx.get(name) for name in FACT_FIELDS if ctx.get(name) not in (None, "", [])}
        if ctx.get("review_sentiment"):
            facts["review_sentiment"] = ctx.get("review_sentiment")
        result = self.client.enhance_content(
            ctx.entity_type.value,
            ctx.get("name"),
            facts,
            website_text=ctx.get("website_text"),
            reviews=_reviews(ctx),
        )
        faqs = [
            {"question": str(faq["question"]).strip(), "answer": str(faq["answer"]).strip()}
            for faq in result.get("faqs") or []
            if isinstance(faq, dict) and faq.get("question") and faq.get("answer")
        ]
        update = compact(
            {
                "description": result.get("description"),
                "short_description": result.get("short_description"),
                "meta_title": result.get("meta_title"),
                "meta_description": result.get("meta_description"),
                "faqs": faqs,
                "suggested_categories": _string_list(result.get("suggested_categories")),
                "suggested_features": _string_list(result.get("suggested_features")),
            }
        )
        if update:
            update["ai_enhanced_at"] = utcnow().isoformat()
        logger.info("AI enhancement for %s produced %d fields", ctx.entity_id, len(update))
        return StepResult(update=update, metrics=StepMetrics(cost_usd=result.get("_cost_usd", 0.0), items=len(update)))
