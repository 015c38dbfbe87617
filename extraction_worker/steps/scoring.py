from __future__ import annotations

from extraction_worker.etl import scoring
from extraction_worker.models import JobContext, StepMetrics, StepResult, utcnow
from extraction_worker.steps.base import BaseAdapter


class ScoreCalculationAdapter(BaseAdapter):
    name = "score_calculation"

    def execute(self, ctx: JobContext) -> StepResult:
        update = scoring.calculate(ctx.fields)
        update["last_rated_at"] = utcnow().isoformat()
        return StepResult(update=update, metrics=StepMetrics(items=len(update["rating_sources"])))
