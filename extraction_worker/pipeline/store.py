"""Persistence contract consumed by the pipeline."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol

from extraction_worker.models import EntityRecord, EntityType, OverallStatus, Progress, StepState
from extraction_worker.pipeline.registry import StepRegistry


class EntityStore(Protocol):
    def get_entity(self, entity_id: str) -> EntityRecord: ...

    def find_by_external_id(self, entity_type: EntityType, external_place_id: str) -> Optional[EntityRecord]: ...

    def find_similar(self, entity_type: EntityType, locality: str, limit: int = 200) -> List[EntityRecord]: ...

    def slug_exists(self, entity_type: EntityType, slug: str) -> bool: ...

    def create_entity(self, record: EntityRecord) -> bool: ...

    def merge_progress(self, entity_id: str, step: str, state: StepState) -> int: ...

    def merge_fields(
        self, entity_id: str, update: Mapping[str, Any], expected_version: Optional[int] = None
    ) -> int: ...

    def clear_fields(self, entity_id: str, names: Iterable[str]) -> int: ...

    def set_overall_status(self, entity_id: str, status: OverallStatus, reason: Optional[str] = None) -> int: ...

    def reset_for_extraction(
        self, entity_id: str, progress: Mapping[str, Any], clear_fields: Iterable[str] = ()
    ) -> int: ...

    def find_stale_processing(self, older_than: datetime) -> List[EntityRecord]: ...

    def list_categories(self, entity_type: EntityType) -> List[Dict[str, Any]]: ...


def load_progress(record: EntityRecord, registry: StepRegistry) -> Progress:
    """Typed view of a record's ``progress`` column for a given registry."""
    return Progress.load(registry.step_names, record.progress)
