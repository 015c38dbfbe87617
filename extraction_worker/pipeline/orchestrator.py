"""Generic per-entity extraction loop.

One ``Orchestrator`` serves every entity type; the registry passed in for the
job's type decides which steps run and in what order.
"""

from __future__ import annotations

import copy
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from extraction_worker.core.errors import ErrorKind, StaleVersionError, StepError, classify_exception
from extraction_worker.models import (
    EntityRecord,
    Job,
    JobContext,
    OverallStatus,
    StepMetrics,
    StepResult,
    StepState,
    StepStatus,
)
from extraction_worker.pipeline.events import EventBus, ProgressWriter, StepEvent
from extraction_worker.pipeline.rate import RateController
from extraction_worker.pipeline.registry import FORCE_ALL, REGISTRIES, StepRegistry, StepSpec
from extraction_worker.pipeline.store import EntityStore, load_progress
from extraction_worker.steps.base import StepAdapter

logger = logging.getLogger(__name__)

CANCELLED_REASON = "cancelled"


class CancellationToken:
    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class JobOutcome:
    entity_id: str
    status: OverallStatus
    reason: Optional[str] = None
    executed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    adapter_calls: int = 0


class Orchestrator:
    def __init__(
        self,
        store: EntityStore,
        adapters: Mapping[str, StepAdapter],
        *,
        registries: Optional[Mapping] = None,
        rate: Optional[RateController] = None,
        bus: Optional[EventBus] = None,
        default_timeout: Optional[float] = 30.0,
        retry_base_delay: float = 2.0,
        quota_backoff_multiplier: float = 4.0,
        sleep: Callable[[float], None] = time.sleep,
        adapter_workers: int = 8,
        merge_attempts: int = 3,
    ) -> None:
        self.store = store
        self.adapters: Dict[str, StepAdapter] = dict(adapters)
        self.registries = dict(registries or REGISTRIES)
        self.rate = rate or RateController(step_delay=0.0, job_delay=0.0, sleep=sleep)
        self.bus = bus or EventBus()
        self.bus.subscribe(ProgressWriter(store), required=True)
        self.default_timeout = default_timeout
        self.retry_base_delay = retry_base_delay
        self.quota_backoff_multiplier = quota_backoff_multiplier
        self._sleep = sleep
        self.merge_attempts = max(1, merge_attempts)
        self._executor = ThreadPoolExecutor(max_workers=adapter_workers, thread_name_prefix="step")

    def registry_for(self, record: EntityRecord) -> StepRegistry:
        return self.registries[record.entity_type]

    def close(self) -> None:
        self._executor.shutdown(wait=False)

    # ------------------------------------------------------------------ #
    # Loop
    # ------------------------------------------------------------------ #

    def run(self, job: Job, cancel: Optional[CancellationToken] = None) -> JobOutcome:
        record = self.store.get_entity(job.entity_id)
        registry = self.registry_for(record)
        progress = load_progress(record, registry)
        forced = self._forced_steps(job, registry)
        outcome = JobOutcome(entity_id=record.id, status=OverallStatus.COMPLETED)

        initial_ctx = JobContext.build(record, search_query=job.search_query, outputs={}, started_at=job.started_at)
        todo = [
            spec
            for spec in registry.steps
            if self._needs_run(progress[spec.name], spec.name in forced)
            or self._applies_again(self.adapters.get(spec.name), progress[spec.name], initial_ctx)
        ]
        if not todo:
            logger.info("Nothing to do for %s (%s); all steps settled", record.id, record.entity_type.value)
            outcome.skipped = list(registry.step_names)
            if record.overall_status is not OverallStatus.COMPLETED:
                self.store.set_overall_status(record.id, OverallStatus.COMPLETED)
            return outcome

        logger.info(
            "Starting extraction for %s (%s) steps=%s forced=%s",
            record.id,
            record.entity_type.value,
            [spec.name for spec in todo],
            sorted(forced),
        )
        if record.overall_status is not OverallStatus.PROCESSING:
            self.store.set_overall_status(record.id, OverallStatus.PROCESSING)

        outputs: Dict[str, Dict] = {}
        for spec in registry.steps:
            if cancel is not None and cancel.cancelled:
                logger.warning("Extraction for %s cancelled before %s", record.id, spec.name)
                outcome.status = OverallStatus.FAILED
                outcome.reason = CANCELLED_REASON
                break

            state = progress[spec.name]
            is_forced = spec.name in forced
            adapter = self.adapters.get(spec.name)
            ctx = JobContext.build(record, search_query=job.search_query, outputs=outputs, started_at=job.started_at)
            if not self._needs_run(state, is_forced) and not self._applies_again(adapter, state, ctx):
                outcome.skipped.append(spec.name)
                continue

            self._prepare(record, spec, state, is_forced)
            if adapter is not None and not adapter.applies(ctx):
                logger.info("Step %s not applicable for %s; skipping", spec.name, record.id)
                state.transition(StepStatus.SKIPPED)
                self._publish(record.id, spec.name, state)
                outcome.skipped.append(spec.name)
                continue

            state.transition(StepStatus.RUNNING)
            self._publish(record.id, spec.name, state)
            baseline = self._refresh(record)
            ctx = JobContext.build(record, search_query=job.search_query, outputs=outputs, started_at=job.started_at)

            result, error, calls = self._execute(spec, adapter, ctx, outcome.adapter_calls)
            outcome.adapter_calls += calls

            if error is None:
                update = self._merge_update(record, spec.name, dict(result.update), baseline)
                outputs[spec.name] = update
                state.metrics = result.metrics
                state.transition(StepStatus.COMPLETED)
                self._publish(record.id, spec.name, state)
                outcome.executed.append(spec.name)
                logger.info("Step %s completed for %s (%d fields)", spec.name, record.id, len(update))
                continue

            state.error = error.to_dict()
            state.metrics = result.metrics
            state.transition(StepStatus.FAILED)
            self._publish(record.id, spec.name, state)
            outcome.failed.append(spec.name)

            if error.kind is ErrorKind.FATAL:
                logger.error("Fatal error in %s for %s: %s", spec.name, record.id, error.message)
                outcome.status = OverallStatus.FAILED
                outcome.reason = f"fatal error in {spec.name}: {error.message}"
                break
            if spec.critical:
                logger.error("Critical step %s failed for %s: %s", spec.name, record.id, error.message)
                outcome.status = OverallStatus.FAILED
                outcome.reason = f"critical step {spec.name} failed: {error.message}"
                break
            logger.warning("Optional step %s failed for %s, continuing: %s", spec.name, record.id, error.message)

        self.store.set_overall_status(record.id, outcome.status, outcome.reason)
        logger.info(
            "Extraction for %s finished status=%s executed=%d failed=%s calls=%d",
            record.id,
            outcome.status.value,
            len(outcome.executed),
            outcome.failed,
            outcome.adapter_calls,
        )
        return outcome

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #

    @staticmethod
    def _forced_steps(job: Job, registry: StepRegistry) -> set:
        unknown = set(job.force_steps) - set(registry.step_names) - {FORCE_ALL}
        if unknown:
            logger.warning("Ignoring forced steps not in %s registry: %s", registry.entity_type.value, sorted(unknown))
        return set(registry.resolve_forced(job.force_steps))

    @staticmethod
    def _needs_run(state: StepState, forced: bool) -> bool:
        if forced:
            return True
        return state.status in (StepStatus.PENDING, StepStatus.RUNNING, StepStatus.FAILED)

    def _refresh(self, record: EntityRecord) -> Dict[str, Any]:
        """Reload fields and version just before an adapter call; returns the field snapshot."""
        current = self.store.get_entity(record.id)
        record.fields = dict(current.fields)
        record.version = current.version
        record.name = current.name
        return copy.deepcopy(current.fields)

    def _merge_update(
        self, record: EntityRecord, step: str, update: Dict[str, Any], baseline: Mapping[str, Any]
    ) -> Dict[str, Any]:
        """Merge a step's update against the version it was computed from.

        When the record moved on in the meantime, keys someone else changed
        since ``baseline`` keep their newer value and only the rest is merged.
        Returns the update actually written.
        """
        expected = record.version
        for attempt in range(1, self.merge_attempts + 1):
            if not update:
                return update
            try:
                record.version = self.store.merge_fields(record.id, update, expected_version=expected)
            except StaleVersionError:
                if attempt == self.merge_attempts:
                    raise
                current = self.store.get_entity(record.id)
                kept = {key: value for key, value in update.items() if current.fields.get(key) == baseline.get(key)}
                dropped = sorted(set(update) - set(kept))
                if dropped:
                    logger.warning(
                        "Step %s for %s: keeping concurrent edits to %s", step, record.id, dropped
                    )
                record.fields = dict(current.fields)
                record.name = current.name
                update = kept
                expected = current.version
                continue
            record.fields.update(update)
            if update.get("name"):
                record.name = update["name"]
            return update

    @staticmethod
    def _applies_again(adapter: Optional[StepAdapter], state: StepState, ctx: JobContext) -> bool:
        """A step skipped for missing inputs runs once an earlier step supplies them."""
        return state.status is StepStatus.SKIPPED and adapter is not None and adapter.applies(ctx)

    def _prepare(self, record: EntityRecord, spec: StepSpec, state: StepState, forced: bool) -> None:
        """Bring a step back to ``pending`` before it runs again.

        A ``running`` entry here is left over from a crashed process, a
        ``failed`` one is being retried and a ``skipped`` one now has its
        inputs. Forced steps also drop the fields they own so later steps
        never read a stale value from an earlier run.
        """
        if state.status is StepStatus.PENDING:
            return
        previous = state.status
        state.reset()
        self._publish(record.id, spec.name, state)
        if forced and spec.outputs:
            present = [name for name in spec.outputs if name in record.fields]
            if present:
                self.store.clear_fields(record.id, present)
                for name in present:
                    record.fields.pop(name, None)
        logger.info("Reset step %s for %s (was %s, forced=%s)", spec.name, record.id, previous.value, forced)

    def _publish(self, entity_id: str, step: str, state: StepState) -> None:
        snapshot = copy.deepcopy(state)
        self.bus.publish(StepEvent(entity_id=entity_id, step=step, status=snapshot.status, state=snapshot))

    def _execute(
        self,
        spec: StepSpec,
        adapter: Optional[StepAdapter],
        ctx: JobContext,
        calls_so_far: int,
    ) -> Tuple[StepResult, Optional[StepError], int]:
        """Invoke an adapter with timeout, pacing and retry; never raises."""
        if adapter is None:
            return StepResult(), StepError(ErrorKind.FATAL, f"no adapter registered for step {spec.name}"), 0

        max_attempts = spec.max_retries + 1
        timeout = spec.timeout if spec.timeout is not None else self.default_timeout
        started = time.monotonic()
        attempts = 0
        while True:
            attempts += 1
            self.rate.before_step(calls_so_far + attempts - 1)
            try:
                result = self._call(adapter, ctx, timeout)
            except Exception as exc:  # noqa: BLE001
                error = classify_exception(exc)
            else:
                metrics = result.metrics or StepMetrics()
                metrics.attempts = attempts
                metrics.elapsed_ms = int((time.monotonic() - started) * 1000)
                return StepResult(update=dict(result.update or {}), metrics=metrics), None, attempts

            if error.kind.retryable and attempts < max_attempts:
                delay = self.retry_base_delay * (2 ** (attempts - 1))
                if error.kind is ErrorKind.QUOTA_EXCEEDED:
                    delay *= self.quota_backoff_multiplier
                logger.warning(
                    "Step %s attempt %d/%d failed (%s): %s; retrying in %.1fs",
                    spec.name,
                    attempts,
                    max_attempts,
                    error.kind.value,
                    error.message,
                    delay,
                )
                self._sleep(delay)
                continue

            metrics = StepMetrics(attempts=attempts, elapsed_ms=int((time.monotonic() - started) * 1000))
            return StepResult(metrics=metrics), error, attempts

    def _call(self, adapter: StepAdapter, ctx: JobContext, timeout: Optional[float]) -> StepResult:
        if not timeout:
            return adapter.execute(ctx)
        future = self._executor.submit(adapter.execute, ctx)
        try:
            return future.result(timeout=timeout)
        except FutureTimeout as exc:
            future.cancel()
            raise StepError(ErrorKind.TRANSIENT, f"{adapter.name} timed out after {timeout:.0f}s") from exc
