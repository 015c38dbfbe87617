"""Throttled bulk submission of extraction requests."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from extraction_worker.models import EntityType
from extraction_worker.pipeline.rate import RateController

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BatchItem:
    entity_type: EntityType
    external_place_id: str
    search_query: Optional[str] = None
    override: bool = False
    force_steps: Tuple[str, ...] = ()
    place_data: Optional[Dict[str, Any]] = None

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any], default_type: Optional[str] = None) -> "BatchItem":
        entity_type = payload.get("entity_type") or default_type
        external_place_id = payload.get("external_place_id") or payload.get("place_id")
        if not entity_type or not external_place_id:
            raise ValueError("entity_type and external_place_id are required")
        return cls(
            entity_type=EntityType(entity_type),
            external_place_id=str(external_place_id),
            search_query=payload.get("search_query"),
            override=bool(payload.get("override", False)),
            force_steps=tuple(payload.get("force_steps") or ()),
            place_data=payload.get("place_data"),
        )


@dataclass
class BatchReport:
    accepted: List[str] = field(default_factory=list)
    conflicts: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.accepted) + len(self.conflicts) + len(self.errors)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "accepted": self.accepted,
            "conflicts": self.conflicts,
            "errors": self.errors,
            "total": self.total,
        }


class BatchDriver:
    def __init__(self, service, rate: RateController, *, runner=None) -> None:
        self.service = service
        self.rate = rate
        self.runner = runner

    def run(self, items: Iterable[BatchItem], *, wait: bool = False) -> BatchReport:
        """Submit ``items`` in chunks of ``rate.batch_size``.

        Submissions inside a chunk are spaced by ``rate.job_delay`` and chunks
        by ``rate.batch_delay``. With ``wait`` the driver also blocks until the
        runner is idle before starting the next chunk.
        """
        report = BatchReport()
        batches = self.rate.chunk(list(items))
        for batch_index, batch in enumerate(batches):
            if batch_index:
                if wait and self.runner is not None:
                    self.runner.wait_idle()
                self.rate.between_batches()
            logger.info("Submitting batch %d/%d (%d items)", batch_index + 1, len(batches), len(batch))
            for item_index, item in enumerate(batch):
                if item_index:
                    self.rate.between_jobs()
                self._submit(item, report)
        if wait and self.runner is not None:
            self.runner.wait_idle()
        logger.info(
            "Batch finished: %d accepted, %d conflicts, %d errors",
            len(report.accepted),
            len(report.conflicts),
            len(report.errors),
        )
        return report

    def _submit(self, item: BatchItem, report: BatchReport) -> None:
        try:
            result = self.service.start_extraction(
                item.entity_type,
                item.external_place_id,
                search_query=item.search_query,
                override=item.override,
                force_steps=item.force_steps,
                place_data=item.place_data,
            )
        except Exception as exc:  # noqa: BLE001
            logger.exception("Batch item %s failed to start: %s", item.external_place_id, exc)
            report.errors.append({"external_place_id": item.external_place_id, "error": str(exc)})
            return
        if result.accepted:
            report.accepted.append(result.entity_id)
        else:
            report.conflicts.append(
                {
                    "external_place_id": item.external_place_id,
                    "entity_id": result.entity_id,
                    "reason": result.reason,
                    "existing_status": result.existing_status.value if result.existing_status else None,
                }
            )
