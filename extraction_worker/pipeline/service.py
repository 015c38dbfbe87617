"""Entry point for starting extractions (HTTP, batch and CLI all call this)."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional

from extraction_worker.etl.transform import extract_area, seed_fields, slugify
from extraction_worker.models import (
    EntityRecord,
    EntityType,
    Job,
    OverallStatus,
    StepStatus,
    initial_progress,
)
from extraction_worker.pipeline.guard import DUPLICATE, IN_PROGRESS, DuplicateGuard
from extraction_worker.pipeline.registry import REGISTRIES
from extraction_worker.pipeline.store import load_progress

logger = logging.getLogger(__name__)


@dataclass
class StartResult:
    accepted: bool
    entity_id: Optional[str]
    status: Optional[OverallStatus] = None
    reason: Optional[str] = None
    existing_status: Optional[OverallStatus] = None
    probable_duplicates: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "accepted": self.accepted,
            "entity_id": self.entity_id,
            "status": self.status.value if self.status else None,
            "reason": self.reason,
            "existing_status": self.existing_status.value if self.existing_status else None,
            "probable_duplicates": self.probable_duplicates,
        }


class ExtractionService:
    def __init__(
        self,
        store,
        runner,
        *,
        registries: Optional[Mapping] = None,
        guard: Optional[DuplicateGuard] = None,
    ) -> None:
        self.store = store
        self.runner = runner
        self.registries = dict(registries or REGISTRIES)
        self.guard = guard or DuplicateGuard(store)

    def start_extraction(
        self,
        entity_type: EntityType,
        external_place_id: str,
        search_query: Optional[str] = None,
        override: bool = False,
        force_steps: Iterable[str] = (),
        place_data: Optional[Dict[str, Any]] = None,
    ) -> StartResult:
        """Create or reuse the entity for ``external_place_id`` and queue its job.

        Returns immediately; ``accepted`` is False when the guard reports a
        conflict, with ``reason`` and the existing record's id and status.
        """
        entity_type = EntityType(entity_type)
        if not external_place_id:
            raise ValueError("external_place_id is required")
        force_steps = tuple(force_steps or ())

        decision = self.guard.check(
            entity_type, external_place_id, override=override, is_running=self.runner.is_running
        )
        if not decision.proceed:
            return self._conflict(decision.existing, decision.reason)

        duplicates: List[Dict[str, Any]] = []
        if decision.existing is None:
            record = self._create(entity_type, external_place_id, search_query, place_data)
            if record is None:
                existing = self.store.find_by_external_id(entity_type, external_place_id)
                return self._conflict(existing, DUPLICATE)
            reservation = self.runner.reserve(record.id)
            if reservation is None:
                return self._conflict(record, IN_PROGRESS)
            locality = record.fields.get("area") or extract_area(record.fields.get("address"))
            duplicates = [
                match.to_dict()
                for match in self.guard.probable_duplicates(entity_type, record.name, locality, external_place_id)
            ]
        else:
            # The slot is claimed before the reset so a job that started after
            # the guard check is never rewound.
            reservation = self.runner.reserve(decision.existing.id)
            if reservation is None:
                return self._conflict(decision.existing, IN_PROGRESS)
            try:
                record = self._reset(self.store.get_entity(decision.existing.id), force_steps)
            except Exception:
                self.runner.release(decision.existing.id, reservation)
                raise

        job = Job(
            entity_id=record.id,
            entity_type=entity_type,
            external_place_id=external_place_id,
            search_query=search_query,
            force_steps=force_steps,
        )
        if not self.runner.submit(job, reservation):
            self.runner.release(record.id, reservation)
            return self._conflict(record, IN_PROGRESS)

        logger.info(
            "Extraction accepted for %s %s (%s) override=%s force=%s",
            entity_type.value,
            external_place_id,
            record.id,
            override,
            list(force_steps),
        )
        return StartResult(
            accepted=True,
            entity_id=record.id,
            status=OverallStatus.PENDING,
            probable_duplicates=duplicates,
        )

    def _conflict(self, existing: Optional[EntityRecord], reason: Optional[str]) -> StartResult:
        logger.info("Extraction rejected (%s) for %s", reason, existing.id if existing else None)
        return StartResult(
            accepted=False,
            entity_id=existing.id if existing else None,
            status=existing.overall_status if existing else None,
            reason=reason,
            existing_status=existing.overall_status if existing else None,
        )

    def _unique_slug(self, entity_type: EntityType, base: str) -> str:
        candidate = base
        suffix = 2
        while self.store.slug_exists(entity_type, candidate):
            candidate = f"{base}-{suffix}"
            suffix += 1
        return candidate

    def _create(
        self,
        entity_type: EntityType,
        external_place_id: str,
        search_query: Optional[str],
        place_data: Optional[Dict[str, Any]],
    ) -> Optional[EntityRecord]:
        fields = seed_fields(place_data)
        name = fields.get("name") or search_query or external_place_id
        base_slug = slugify(name) or slugify(external_place_id) or uuid.uuid4().hex[:8]
        registry = self.registries[entity_type]
        record = EntityRecord(
            id=str(uuid.uuid4()),
            entity_type=entity_type,
            external_place_id=external_place_id,
            slug=self._unique_slug(entity_type, base_slug),
            name=name,
            overall_status=OverallStatus.PENDING,
            progress=initial_progress(registry.step_names).to_dict(),
            fields=fields,
        )
        if not self.store.create_entity(record):
            logger.info("Lost creation race for %s %s", entity_type.value, external_place_id)
            return None
        logger.info("Created %s %s (%s) slug=%s", entity_type.value, record.name, record.id, record.slug)
        return record

    def _reset(self, record: EntityRecord, force_steps: Iterable[str]) -> EntityRecord:
        """Prepare an existing record for a resumed run.

        Completed steps are kept unless forced; forced steps go back to
        ``pending`` and the fields they own are cleared.
        """
        registry = self.registries[record.entity_type]
        progress = load_progress(record, registry)
        forced = registry.resolve_forced(force_steps)
        cleared: List[str] = []
        for name in forced:
            progress[name].reset()
            cleared.extend(field_name for field_name in registry.get(name).outputs if field_name in record.fields)
        record.version = self.store.reset_for_extraction(record.id, progress.to_dict(), cleared)
        record.progress = progress.to_dict()
        for name in cleared:
            record.fields.pop(name, None)
        record.overall_status = OverallStatus.PENDING
        record.status_reason = None
        logger.info("Reset %s for re-extraction (forced=%s, cleared=%s)", record.id, list(forced), cleared)
        return record

    def status(self, entity_id: str) -> Dict[str, Any]:
        """Polling view of one entity: overall status plus per-step progress.

        The remaining cost and time estimates cover steps that are neither
        completed nor skipped, so failed steps count as outstanding work.
        """
        record = self.store.get_entity(entity_id)
        registry = self.registries[record.entity_type]
        progress = load_progress(record, registry)
        steps = []
        remaining = []
        for name in registry.step_names:
            state = progress[name]
            spec = registry.get(name)
            steps.append({"name": name, "critical": spec.critical, **state.to_dict()})
            if state.status not in (StepStatus.COMPLETED, StepStatus.SKIPPED):
                remaining.append(name)
        return {
            "id": record.id,
            "entity_type": record.entity_type.value,
            "external_place_id": record.external_place_id,
            "name": record.name,
            "slug": record.slug,
            "overall_status": record.overall_status.value,
            "status_reason": record.status_reason,
            "running": self.runner.is_running(record.id),
            "percentage": progress.percentage(),
            "estimated_remaining_cost_usd": round(registry.estimated_cost_usd(remaining), 4),
            "estimated_remaining_seconds": registry.estimated_seconds(remaining),
            "steps": steps,
            "legacy_steps": progress.unknown_steps,
            "version": record.version,
            "updated_at": record.updated_at.isoformat() if record.updated_at else None,
        }

    def cancel(self, entity_id: str) -> bool:
        self.store.get_entity(entity_id)
        return self.runner.cancel(entity_id)
