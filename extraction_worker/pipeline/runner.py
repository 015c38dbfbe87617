"""Background execution of extraction jobs."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from datetime import timedelta
from typing import Callable, Dict, List, Optional

from extraction_worker.models import Job, OverallStatus, utcnow
from extraction_worker.pipeline.orchestrator import CancellationToken, JobOutcome, Orchestrator

logger = logging.getLogger(__name__)

ORPHANED_REASON = "orphaned"


class BackgroundRunner:
    """Fire-and-forget job runner with one in-flight job per entity.

    ``submit`` returns as soon as the job is queued; callers poll the entity
    record for progress. Anything that escapes the orchestrator is logged and
    persisted as a failed job.
    """

    def __init__(self, orchestrator: Orchestrator, store, *, max_workers: int = 4) -> None:
        self.orchestrator = orchestrator
        self.store = store
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="extraction")
        self._lock = threading.Lock()
        self._tokens: Dict[str, CancellationToken] = {}
        self._futures: Dict[str, Future] = {}

    def reserve(self, entity_id: str) -> Optional[CancellationToken]:
        """Claim the in-flight slot for ``entity_id`` ahead of any store write.

        Returns the reservation token, or None when another request or job
        already holds the slot. Pass the token to ``submit`` or ``release``.
        """
        with self._lock:
            if entity_id in self._tokens:
                logger.info("Job for %s already in flight; not reserving", entity_id)
                return None
            token = CancellationToken()
            self._tokens[entity_id] = token
        return token

    def release(self, entity_id: str, reservation: CancellationToken) -> None:
        """Give back a reservation that will not be submitted."""
        with self._lock:
            if self._tokens.get(entity_id) is reservation and entity_id not in self._futures:
                del self._tokens[entity_id]

    def submit(self, job: Job, reservation: Optional[CancellationToken] = None) -> bool:
        """Queue ``job``; returns False if the entity already has a job in flight.

        With ``reservation`` the slot claimed by ``reserve`` is used; without
        one the slot is claimed here.
        """
        with self._lock:
            held = self._tokens.get(job.entity_id)
            if reservation is None:
                if held is not None:
                    logger.info("Job for %s already in flight; not queueing another", job.entity_id)
                    return False
                token = CancellationToken()
                self._tokens[job.entity_id] = token
            else:
                if held is not reservation or job.entity_id in self._futures:
                    logger.warning("Reservation for %s is no longer held; not queueing", job.entity_id)
                    return False
                token = reservation
            try:
                future = self._executor.submit(self._run_job_safe, job, token)
            except RuntimeError:
                self._tokens.pop(job.entity_id, None)
                raise
            self._futures[job.entity_id] = future
        logger.info("Queued extraction job for %s (%s)", job.entity_id, job.entity_type.value)
        return True

    def is_running(self, entity_id: str) -> bool:
        with self._lock:
            return entity_id in self._tokens

    def in_flight(self) -> List[str]:
        with self._lock:
            return list(self._tokens)

    def cancel(self, entity_id: str) -> bool:
        with self._lock:
            token = self._tokens.get(entity_id)
        if token is None:
            return False
        token.cancel()
        logger.info("Cancellation requested for %s", entity_id)
        return True

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until every queued job finishes; False if ``timeout`` expired first."""
        with self._lock:
            pending = list(self._futures.values())
        if not pending:
            return True
        _, not_done = wait_futures(pending, timeout=timeout)
        return not not_done

    def shutdown(self, wait: bool = True, cancel_running: bool = False) -> None:
        if cancel_running:
            for entity_id in self.in_flight():
                self.cancel(entity_id)
        self._executor.shutdown(wait=wait)
        logger.info("Background runner stopped")

    def _run_job_safe(self, job: Job, token: CancellationToken) -> Optional[JobOutcome]:
        try:
            return self.orchestrator.run(job, token)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Extraction job for %s crashed: %s", job.entity_id, exc)
            self._persist_crash(job.entity_id, exc)
            return None
        finally:
            with self._lock:
                self._tokens.pop(job.entity_id, None)
                self._futures.pop(job.entity_id, None)

    def _persist_crash(self, entity_id: str, exc: Exception) -> None:
        try:
            self.store.set_overall_status(entity_id, OverallStatus.FAILED, f"crashed: {exc.__class__.__name__}: {exc}")
        except Exception as persist_exc:  # noqa: BLE001
            logger.error("Could not record failure for %s: %s", entity_id, persist_exc)


def reconcile_orphans(
    store,
    timeout_minutes: int,
    *,
    is_running: Optional[Callable[[str], bool]] = None,
    now=utcnow,
) -> List[str]:
    """Mark ``processing`` records untouched for ``timeout_minutes`` as failed.

    Such records belong to a process that died mid-job. Resubmitting one with
    ``override`` resumes from its last completed step.
    """
    cutoff = now() - timedelta(minutes=timeout_minutes)
    reconciled: List[str] = []
    for record in store.find_stale_processing(cutoff):
        if is_running is not None and is_running(record.id):
            continue
        store.set_overall_status(record.id, OverallStatus.FAILED, ORPHANED_REASON)
        reconciled.append(record.id)
        logger.warning("Marked orphaned extraction %s (%s) as failed", record.id, record.name)
    if reconciled:
        logger.info("Reconciled %d orphaned extraction(s)", len(reconciled))
    return reconciled



def reconcile_after_restart(store, *, is_running: Optional[Callable[[str], bool]] = None, now=utcnow) -> List[str]:
    """Fail every ``processing`` record the freshly started runner does not own.

    Nothing survives a restart, so the idle timeout does not apply here.
    """
    return reconcile_orphans(store, 0, is_running=is_running, now=now)


class OrphanSweeper:
    """Runs ``reconcile_orphans`` every ``interval`` seconds on a daemon thread."""

    def __init__(
        self,
        store,
        timeout_minutes: int,
        *,
        interval: float,
        is_running: Optional[Callable[[str], bool]] = None,
    ) -> None:
        self.store = store
        self.timeout_minutes = timeout_minutes
        self.interval = interval
        self.is_running = is_running
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def sweep_once(self) -> List[str]:
        return reconcile_orphans(self.store, self.timeout_minutes, is_running=self.is_running)

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._loop, name="orphan-sweeper", daemon=True)
        self._thread.start()
        logger.info(
            "Orphan sweeper started (every %.0fs, timeout %d minutes)", self.interval, self.timeout_minutes
        )

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _loop(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.sweep_once()
            except Exception:  # noqa: BLE001
                logger.exception("Orphan sweep failed")
