"""Adapters backed by the Google Places API."""

from __future__ import annotations

import logging
from typing import Optional

import requests

from extraction_worker.core.errors import ErrorKind, StepError
from extraction_worker.etl.transform import to_entity_update
from extraction_worker.models import JobContext, StepMetrics, StepResult
from extraction_worker.steps.base import BaseAdapter
from extraction_worker.vendors import google_places

logger = logging.getLogger(__name__)

DETAILS_COST_USD = 0.017


class InitialCreationAdapter(BaseAdapter):
    """Record creation happens in the service; a pending entry here only needs closing."""

    name = "initial_creation"

    def execute(self, ctx: JobContext) -> StepResult:
        return StepResult()


class ProviderFetchAdapter(BaseAdapter):
    name = "provider_fetch"

    def __init__(self, api_key: Optional[str], session: Optional[requests.Session] = None) -> None:
        self.api_key = api_key
        self.session = session

    def execute(self, ctx: JobContext) -> StepResult:
        if not self.api_key:
            raise StepError(ErrorKind.FATAL, "GOOGLE_API_KEY is not configured")
        details = google_places.place_details(ctx.external_place_id, self.api_key, session=self.session)
        if not details:
            raise StepError(ErrorKind.INVALID_INPUT, f"no place details for {ctx.external_place_id}")
        update = to_entity_update(details, fallback_city=ctx.get("city"), fallback_country=ctx.get("country"))
        logger.info("Fetched place details for %s: %s", ctx.external_place_id, update.get("name"))
        return StepResult(update=update, metrics=StepMetrics(cost_usd=DETAILS_COST_USD, items=len(update)))
