"""Concrete step adapters, one per registry step name."""

from __future__ import annotations

from typing import Dict, Optional

import requests

from extraction_worker.core.config import Settings
from extraction_worker.steps.ai import AIEnhancementAdapter, AISentimentAdapter
from extraction_worker.steps.base import BaseAdapter, StepAdapter
from extraction_worker.steps.categories import CategoryMatchingAdapter
from extraction_worker.steps.images import ImageExtractionAdapter
from extraction_worker.steps.places import InitialCreationAdapter, ProviderFetchAdapter
from extraction_worker.steps.reviews import ReviewFetchAdapter
from extraction_worker.steps.scoring import ScoreCalculationAdapter
from extraction_worker.steps.web import SocialMediaSearchAdapter, WebScrapeAdapter
from extraction_worker.vendors.ai_client import AIClient
from extraction_worker.vendors.image_store import ImageStore


def build_adapters(settings: Settings, store, session: Optional[requests.Session] = None) -> Dict[str, StepAdapter]:
    ai_client = AIClient(settings.ai_api_key, api_url=settings.ai_api_url, model=settings.ai_model, session=session)
    image_store = (
        ImageStore(settings.image_store_url, settings.image_store_token) if settings.image_store_url else None
    )
    adapters = [
        InitialCreationAdapter(),
        ProviderFetchAdapter(settings.google_api_key, session=session),
        WebScrapeAdapter(
            default_region=settings.default_phone_region,
            use_js_renderer=settings.enrich_use_js_renderer,
        ),
        SocialMediaSearchAdapter(settings.serpapi_api_key),
        ReviewFetchAdapter(settings.serpapi_api_key, max_reviews=settings.max_reviews),
        ImageExtractionAdapter(settings.google_api_key, image_store, max_images=settings.max_images),
        AISentimentAdapter(ai_client),
        AIEnhancementAdapter(ai_client),
        CategoryMatchingAdapter(store),
        ScoreCalculationAdapter(),
    ]
    return {adapter.name: adapter for adapter in adapters}


__all__ = ["BaseAdapter", "StepAdapter", "build_adapters"]
