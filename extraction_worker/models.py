"""Core data models shared by the extraction pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from extraction_worker.core.errors import InvalidTransitionError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _format_timestamp(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class EntityType(str, Enum):
    RESTAURANT = "restaurant"
    HOTEL = "hotel"
    MALL = "mall"
    ATTRACTION = "attraction"
    FITNESS = "fitness"
    SCHOOL = "school"


class OverallStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


_ALLOWED_TRANSITIONS = {
    StepStatus.PENDING: {StepStatus.RUNNING, StepStatus.SKIPPED},
    StepStatus.RUNNING: {StepStatus.COMPLETED, StepStatus.FAILED},
    StepStatus.COMPLETED: set(),
    StepStatus.FAILED: set(),
    StepStatus.SKIPPED: set(),
}


@dataclass(slots=True)
class StepMetrics:
    cost_usd: float = 0.0
    items: int = 0
    elapsed_ms: int = 0
    attempts: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cost_usd": round(self.cost_usd, 6),
            "items": self.items,
            "elapsed_ms": self.elapsed_ms,
            "attempts": self.attempts,
        }

    @classmethod
    def from_dict(cls, raw: Optional[Mapping[str, Any]]) -> "StepMetrics":
        raw = raw or {}
        return cls(
            cost_usd=float(raw.get("cost_usd") or 0.0),
            items=int(raw.get("items") or 0),
            elapsed_ms=int(raw.get("elapsed_ms") or 0),
            attempts=int(raw.get("attempts") or 0),
        )


@dataclass(slots=True)
class StepState:
    """Persisted state of a single pipeline step.

    ``unknown`` marks entries whose step name is not in the current registry
    (legacy pipelines). They are kept verbatim in ``raw`` so a write does not
    drop them, and always report ``skipped``.
    """

    status: StepStatus = StepStatus.PENDING
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[Dict[str, Any]] = None
    metrics: StepMetrics = field(default_factory=StepMetrics)
    unknown: bool = False
    raw: Optional[Dict[str, Any]] = field(default=None, repr=False)

    def transition(self, new_status: StepStatus, *, at: Optional[datetime] = None) -> None:
        if new_status not in _ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(f"cannot move step from {self.status.value} to {new_status.value}")
        now = at or utcnow()
        self.status = new_status
        if new_status is StepStatus.RUNNING:
            self.started_at = now
            self.completed_at = None
            self.error = None
        elif new_status in (StepStatus.COMPLETED, StepStatus.FAILED):
            self.completed_at = now

    def reset(self) -> None:
        """Return the step to ``pending`` ahead of a re-run."""
        self.status = StepStatus.PENDING
        self.started_at = None
        self.completed_at = None
        self.error = None
        self.metrics = StepMetrics()

    def to_dict(self) -> Dict[str, Any]:
        if self.unknown and self.raw is not None:
            return dict(self.raw)
        return {
            "status": self.status.value,
            "started_at": _format_timestamp(self.started_at),
            "completed_at": _format_timestamp(self.completed_at),
            "error": self.error,
            "metrics": self.metrics.to_dict(),
        }

    @classmethod
    def from_dict(cls, raw: Optional[Mapping[str, Any]]) -> "StepState":
        """Parse a stored entry, accepting the legacy ``timestamp``/``failed_at`` layout."""
        if not raw:
            return cls()
        try:
            status = StepStatus(raw.get("status") or StepStatus.PENDING.value)
        except ValueError:
            status = StepStatus.PENDING

        legacy_timestamp = _parse_timestamp(raw.get("timestamp"))
        started_at = _parse_timestamp(raw.get("started_at"))
        completed_at = _parse_timestamp(raw.get("completed_at")) or _parse_timestamp(raw.get("failed_at"))
        if status is StepStatus.RUNNING and not started_at:
            started_at = legacy_timestamp
        if status in (StepStatus.COMPLETED, StepStatus.FAILED) and not completed_at:
            completed_at = legacy_timestamp

        error = raw.get("error")
        if isinstance(error, str):
            error = {"kind": "unknown", "message": error}

        return cls(
            status=status,
            started_at=started_at,
            completed_at=completed_at,
            error=error,
            metrics=StepMetrics.from_dict(raw.get("metrics")),
        )

    @classmethod
    def legacy(cls, raw: Optional[Mapping[str, Any]]) -> "StepState":
        return cls(status=StepStatus.SKIPPED, unknown=True, raw=dict(raw or {}))


class Progress:
    """Ordered step-name -> StepState map for one entity.

    Registry steps come first in registry order; any other names found in the
    stored payload follow as ``unknown`` entries.
    """

    def __init__(self, step_names: Iterable[str], states: Optional[Mapping[str, StepState]] = None) -> None:
        self.step_names: Tuple[str, ...] = tuple(step_names)
        self._states: Dict[str, StepState] = {}
        states = states or {}
        for name in self.step_names:
            self._states[name] = states.get(name) or StepState()
        for name, state in states.items():
            if name not in self._states:
                self._states[name] = state

    @classmethod
    def load(cls, step_names: Iterable[str], raw: Optional[Mapping[str, Any]]) -> "Progress":
        names = tuple(step_names)
        known = set(names)
        states: Dict[str, StepState] = {}
        for name, entry in (raw or {}).items():
            if name in known:
                states[name] = StepState.from_dict(entry if isinstance(entry, Mapping) else None)
            else:
                states[name] = StepState.legacy(entry if isinstance(entry, Mapping) else {"value": entry})
        return cls(names, states)

    def __getitem__(self, name: str) -> StepState:
        return self._states[name]

    def __contains__(self, name: object) -> bool:
        return name in self._states

    def items(self) -> List[Tuple[str, StepState]]:
        return list(self._states.items())

    @property
    def unknown_steps(self) -> List[str]:
        return [name for name, state in self._states.items() if state.unknown]

    def percentage(self) -> int:
        if not self.step_names:
            return 0
        done = sum(1 for name in self.step_names if self._states[name].status is StepStatus.COMPLETED)
        return round(done * 100 / len(self.step_names))

    def to_dict(self) -> Dict[str, Any]:
        return {name: state.to_dict() for name, state in self._states.items()}


def initial_progress(step_names: Iterable[str], *, at: Optional[datetime] = None) -> Progress:
    """Fresh progress map with ``initial_creation`` already completed."""
    progress = Progress(step_names)
    if "initial_creation" in progress:
        state = progress["initial_creation"]
        state.transition(StepStatus.RUNNING, at=at)
        state.transition(StepStatus.COMPLETED, at=at)
    return progress


@dataclass(slots=True)
class EntityRecord:
    """A directory place being enriched."""

    id: str
    entity_type: EntityType
    external_place_id: str
    slug: str
    name: str
    overall_status: OverallStatus = OverallStatus.PENDING
    status_reason: Optional[str] = None
    progress: Dict[str, Any] = field(default_factory=dict)
    fields: Dict[str, Any] = field(default_factory=dict)
    verified: bool = False
    active: bool = False
    version: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "entity_type": self.entity_type.value,
            "external_place_id": self.external_place_id,
            "slug": self.slug,
            "name": self.name,
            "overall_status": self.overall_status.value,
            "status_reason": self.status_reason,
            "progress": self.progress,
            "fields": self.fields,
            "verified": self.verified,
            "active": self.active,
            "version": self.version,
            "created_at": _format_timestamp(self.created_at),
            "updated_at": _format_timestamp(self.updated_at),
        }


@dataclass(frozen=True)
class JobContext:
    """Read-only input handed to a step adapter."""

    entity_id: str
    entity_type: EntityType
    external_place_id: str
    search_query: Optional[str]
    fields: Mapping[str, Any]
    outputs: Mapping[str, Mapping[str, Any]]
    started_at: datetime

    @classmethod
    def build(
        cls,
        record: EntityRecord,
        *,
        search_query: Optional[str],
        outputs: Mapping[str, Mapping[str, Any]],
        started_at: datetime,
    ) -> "JobContext":
        return cls(
            entity_id=record.id,
            entity_type=record.entity_type,
            external_place_id=record.external_place_id,
            search_query=search_query,
            fields=MappingProxyType(dict(record.fields, name=record.fields.get("name") or record.name)),
            outputs=MappingProxyType({name: MappingProxyType(dict(out)) for name, out in outputs.items()}),
            started_at=started_at,
        )

    def get(self, key: str, default: Any = None) -> Any:
        return self.fields.get(key, default)


@dataclass(slots=True)
class StepResult:
    update: Dict[str, Any] = field(default_factory=dict)
    metrics: StepMetrics = field(default_factory=StepMetrics)


@dataclass(slots=True)
class Job:
    entity_id: str
    entity_type: EntityType
    external_place_id: str
    search_query: Optional[str] = None
    force_steps: Tuple[str, ...] = ()
    started_at: datetime = field(default_factory=utcnow)
