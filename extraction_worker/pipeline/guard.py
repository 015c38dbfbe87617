"""Pre-flight duplicate checks for new extraction requests."""

from __future__ import annotations

import difflib
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from extraction_worker.models import EntityRecord, EntityType, OverallStatus

logger = logging.getLogger(__name__)

IN_PROGRESS = "extraction already in progress"
DUPLICATE = "duplicate"

_NAME_NOISE = re.compile(r"[^a-z0-9 ]+")


@dataclass
class GuardDecision:
    proceed: bool
    existing: Optional[EntityRecord] = None
    reason: Optional[str] = None

    @property
    def existing_status(self) -> Optional[OverallStatus]:
        return self.existing.overall_status if self.existing else None


@dataclass
class ProbableDuplicate:
    entity_id: str
    name: str
    external_place_id: str
    similarity: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_id": self.entity_id,
            "name": self.name,
            "external_place_id": self.external_place_id,
            "similarity": round(self.similarity, 3),
        }


def _normalise_name(name: str) -> str:
    return " ".join(_NAME_NOISE.sub(" ", (name or "").lower()).split())


class DuplicateGuard:
    def __init__(self, store, *, similarity_threshold: float = 0.85) -> None:
        self.store = store
        self.similarity_threshold = similarity_threshold

    def check(
        self,
        entity_type: EntityType,
        external_place_id: str,
        *,
        override: bool = False,
        is_running=None,
    ) -> GuardDecision:
        """Decide whether an extraction for ``external_place_id`` may start.

        ``is_running`` is the runner's in-flight predicate; an entity it
        reports is rejected even with ``override``.
        """
        existing = self.store.find_by_external_id(entity_type, external_place_id)
        if existing is None:
            return GuardDecision(proceed=True)

        if is_running is not None and is_running(existing.id):
            logger.info("Rejecting %s: job for %s is in flight", external_place_id, existing.id)
            return GuardDecision(proceed=False, existing=existing, reason=IN_PROGRESS)
        if override:
            logger.info("Override requested for %s (%s)", external_place_id, existing.overall_status.value)
            return GuardDecision(proceed=True, existing=existing)
        if existing.overall_status is OverallStatus.PROCESSING:
            return GuardDecision(proceed=False, existing=existing, reason=IN_PROGRESS)
        return GuardDecision(proceed=False, existing=existing, reason=DUPLICATE)

    def probable_duplicates(
        self,
        entity_type: EntityType,
        name: Optional[str],
        locality: Optional[str],
        external_place_id: str,
    ) -> List[ProbableDuplicate]:
        """Records of the same type with a similar name in the same locality.

        Advisory only: the caller reports them but never blocks on them.
        """
        target = _normalise_name(name or "")
        if not target or not locality:
            return []
        matches: List[ProbableDuplicate] = []
        for record in self.store.find_similar(entity_type, locality):
            if record.external_place_id == external_place_id:
                continue
            ratio = difflib.SequenceMatcher(None, target, _normalise_name(record.name)).ratio()
            if ratio >= self.similarity_threshold:
                matches.append(
                    ProbableDuplicate(
                        entity_id=record.id,
                        name=record.name,
                        external_place_id=record.external_place_id,
                        similarity=ratio,
                    )
                )
        matches.sort(key=lambda match: match.similarity, reverse=True)
        if matches:
            logger.info("Found %d probable duplicates for %r in %s", len(matches), name, locality)
        return matches
