"""Copies Google Places photos into the image store."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from extraction_worker.core.errors import ErrorKind, StepError
from extraction_worker.models import JobContext, StepMetrics, StepResult
from extraction_worker.steps.base import BaseAdapter
from extraction_worker.vendors import google_places
from extraction_worker.vendors.image_store import ImageStore

logger = logging.getLogger(__name__)

PHOTO_COST_USD = 0.007


class ImageExtractionAdapter(BaseAdapter):
    name = "image_extraction"

    def __init__(self, google_api_key: Optional[str], store: Optional[ImageStore] = None, max_images: int = 10) -> None:
        self.google_api_key = google_api_key
        self.store = store
        self.max_images = max_images

    def applies(self, ctx: JobContext) -> bool:
        return bool(ctx.get("photo_references"))

    def execute(self, ctx: JobContext) -> StepResult:
        references = list(ctx.get("photo_references") or [])[: self.max_images]
        if self.store is None:
            # No store configured: keep key-less source URLs so the listing can still show photos.
            images = [{"url": google_places.photo_url(ref), "source": "google_places"} for ref in references]
            return StepResult(update=self._update(images), metrics=StepMetrics(items=len(images)))
        if not self.google_api_key:
            raise StepError(ErrorKind.FATAL, "GOOGLE_API_KEY is not configured")

        images: List[Dict[str, Any]] = []
        last_error: Optional[StepError] = None
        for index, ref in enumerate(references):
            key = f"{ctx.entity_type.value}/{ctx.entity_id}/{index:02d}"
            try:
                url = self.store.copy(google_places.photo_url(ref, self.google_api_key), key)
            except StepError as exc:
                if exc.kind is ErrorKind.FATAL:
                    raise
                logger.warning("Skipping photo %d for %s: %s", index, ctx.entity_id, exc.message)
                last_error = exc
                continue
            images.append({"url": url, "source": "google_places", "position": index})

        if references and not images and last_error is not None:
            raise last_error
        metrics = StepMetrics(cost_usd=len(references) * PHOTO_COST_USD, items=len(images))
        return StepResult(update=self._update(images), metrics=metrics)

    @staticmethod
    def _update(images: List[Dict[str, Any]]) -> Dict[str, Any]:
        if not images:
            return {}
        return {"images": images, "hero_image": images[0]["url"]}
