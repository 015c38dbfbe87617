"""Shared test doubles: an in-memory entity store and scripted step adapters."""

import copy
import threading
import uuid
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional

from extraction_worker.core.errors import EntityNotFoundError, ErrorKind, StaleVersionError, StepError
from extraction_worker.models import (
    EntityRecord,
    EntityType,
    OverallStatus,
    StepMetrics,
    StepResult,
    StepState,
    initial_progress,
    utcnow,
)
from extraction_worker.pipeline.registry import REGISTRIES
from extraction_worker.steps.base import BaseAdapter


class InMemoryEntityStore:
    """Dict-backed store with the same version and merge semantics as the Postgres one."""

    def __init__(self, categories: Optional[Dict[EntityType, List[Dict[str, Any]]]] = None) -> None:
        self._records: Dict[str, EntityRecord] = {}
        self._lock = threading.Lock()
        self.categories = categories or {}
        self.writes: List[tuple] = []

    # -- helpers used by tests --

    def add(
        self,
        entity_type: EntityType = EntityType.RESTAURANT,
        external_place_id: Optional[str] = None,
        *,
        name: str = "Sample Place",
        status: OverallStatus = OverallStatus.PENDING,
        progress: Optional[Dict[str, Any]] = None,
        fields: Optional[Dict[str, Any]] = None,
        updated_at=None,
    ) -> EntityRecord:
        if progress is None:
            progress = initial_progress(REGISTRIES[entity_type].step_names).to_dict()
        record = EntityRecord(
            id=str(uuid.uuid4()),
            entity_type=entity_type,
            external_place_id=external_place_id or f"place-{uuid.uuid4().hex[:6]}",
            slug=name.lower().replace(" ", "-"),
            name=name,
            overall_status=status,
            progress=copy.deepcopy(progress),
            fields=dict(fields or {}),
            version=1,
            created_at=utcnow(),
            updated_at=updated_at or utcnow(),
        )
        self._records[record.id] = record
        return record

    def raw(self, entity_id: str) -> EntityRecord:
        return self._records[entity_id]

    def _bump(self, record: EntityRecord, op: str) -> int:
        record.version += 1
        record.updated_at = utcnow()
        self.writes.append((op, record.id))
        return record.version

    def _get(self, entity_id: str) -> EntityRecord:
        try:
            return self._records[entity_id]
        except KeyError:
            raise EntityNotFoundError(entity_id) from None

    # -- EntityStore protocol --

    def get_entity(self, entity_id: str) -> EntityRecord:
        with self._lock:
            return copy.deepcopy(self._get(entity_id))

    def find_by_external_id(self, entity_type: EntityType, external_place_id: str) -> Optional[EntityRecord]:
        with self._lock:
            for record in self._records.values():
                if record.entity_type is EntityType(entity_type) and record.external_place_id == external_place_id:
                    return copy.deepcopy(record)
        return None

    def find_similar(self, entity_type: EntityType, locality: str, limit: int = 200) -> List[EntityRecord]:
        needle = locality.lower()
        with self._lock:
            matches = [
                copy.deepcopy(record)
                for record in self._records.values()
                if record.entity_type is EntityType(entity_type)
                and any(needle in str(record.fields.get(key) or "").lower() for key in ("area", "city", "address"))
            ]
        return matches[:limit]

    def slug_exists(self, entity_type: EntityType, slug: str) -> bool:
        with self._lock:
            return any(
                record.entity_type is EntityType(entity_type) and record.slug == slug
                for record in self._records.values()
            )

    def create_entity(self, record: EntityRecord) -> bool:
        with self._lock:
            for existing in self._records.values():
                if (
                    existing.entity_type is record.entity_type
                    and existing.external_place_id == record.external_place_id
                ):
                    return False
            stored = copy.deepcopy(record)
            stored.version = 1
            stored.created_at = stored.updated_at = utcnow()
            self._records[stored.id] = stored
            self.writes.append(("create", stored.id))
            return True

    def merge_progress(self, entity_id: str, step: str, state: StepState) -> int:
        with self._lock:
            record = self._get(entity_id)
            record.progress[step] = state.to_dict()
            return self._bump(record, f"progress:{step}:{state.status.value}")

    def merge_fields(self, entity_id: str, update: Mapping[str, Any], expected_version: Optional[int] = None) -> int:
        with self._lock:
            record = self._get(entity_id)
            if expected_version is not None and record.version != expected_version:
                raise StaleVersionError(entity_id, expected_version, record.version)
            record.fields.update(copy.deepcopy(dict(update)))
            if update.get("name"):
                record.name = update["name"]
            return self._bump(record, "fields")

    def clear_fields(self, entity_id: str, names: Iterable[str]) -> int:
        with self._lock:
            record = self._get(entity_id)
            for name in names:
                record.fields.pop(name, None)
            return self._bump(record, "clear")

    def set_overall_status(self, entity_id: str, status: OverallStatus, reason: Optional[str] = None) -> int:
        with self._lock:
            record = self._get(entity_id)
            record.overall_status = OverallStatus(status)
            record.status_reason = reason
            return self._bump(record, f"status:{record.overall_status.value}")

    def reset_for_extraction(self, entity_id: str, progress: Mapping[str, Any], clear_fields: Iterable[str] = ()) -> int:
        with self._lock:
            record = self._get(entity_id)
            record.progress = copy.deepcopy(dict(progress))
            for name in clear_fields:
                record.fields.pop(name, None)
            record.overall_status = OverallStatus.PENDING
            record.status_reason = None
            return self._bump(record, "reset")

    def find_stale_processing(self, older_than) -> List[EntityRecord]:
        with self._lock:
            return [
                copy.deepcopy(record)
                for record in self._records.values()
                if record.overall_status is OverallStatus.PROCESSING and record.updated_at < older_than
            ]

    def list_categories(self, entity_type: EntityType) -> List[Dict[str, Any]]:
        return list(self.categories.get(EntityType(entity_type), []))

    def age(self, entity_id: str, minutes: int) -> None:
        self._records[entity_id].updated_at = utcnow() - timedelta(minutes=minutes)


class ScriptedAdapter(BaseAdapter):
    """Adapter whose behaviour per call is taken from ``script``.

    Each entry is either a dict (returned as the update), an exception
    instance (raised) or a callable receiving the context. ``applies`` is a
    bool or a predicate over the context.
    """

    def __init__(self, name: str, script: Optional[List[Any]] = None, *, applies: Any = True) -> None:
        self.name = name
        self.script = list(script) if script is not None else [{}]
        self.calls = 0
        self.contexts: List[Any] = []
        self._applies = applies

    def applies(self, ctx) -> bool:
        if callable(self._applies):
            return bool(self._applies(ctx))
        return self._applies

    def execute(self, ctx) -> StepResult:
        self.calls += 1
        self.contexts.append(ctx)
        entry = self.script[min(self.calls, len(self.script)) - 1]
        if callable(entry):
            entry = entry(ctx)
        if isinstance(entry, BaseException):
            raise entry
        if isinstance(entry, StepResult):
            return entry
        return StepResult(update=dict(entry or {}), metrics=StepMetrics(items=len(entry or {})))


def transient(message: str = "flaky") -> StepError:
    return StepError(ErrorKind.TRANSIENT, message)


def adapters_for(entity_type: EntityType, **overrides) -> Dict[str, BaseAdapter]:
    """One scripted adapter per registry step, returning ``{}`` unless overridden."""
    adapters: Dict[str, BaseAdapter] = {}
    for name in REGISTRIES[entity_type].step_names:
        adapters[name] = overrides.get(name) or ScriptedAdapter(name)
    return adapters
