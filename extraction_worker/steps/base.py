"""Step adapter contract."""

from __future__ import annotations

from typing import Protocol

from extraction_worker.models import JobContext, StepResult


class StepAdapter(Protocol):
    name: str

    def applies(self, ctx: JobContext) -> bool:
        """Return False to mark the step ``skipped`` without calling ``execute``."""
        ...

    def execute(self, ctx: JobContext) -> StepResult: ...


class BaseAdapter:
    """Convenience base: always applicable, subclasses implement ``execute``."""

    name = "base"

    def applies(self, ctx: JobContext) -> bool:
        return True

    def execute(self, ctx: JobContext) -> StepResult:
        raise NotImplementedError
