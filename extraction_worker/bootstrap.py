"""Wires settings, store, adapters and runner into one worker instance."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Mapping, Optional

from extraction_worker.core.config import Settings, get_settings
from extraction_worker.core.db import PostgresEntityStore
from extraction_worker.pipeline.batch import BatchDriver
from extraction_worker.pipeline.events import EventBus
from extraction_worker.pipeline.orchestrator import Orchestrator
from extraction_worker.pipeline.rate import RateController
from extraction_worker.pipeline.runner import BackgroundRunner
from extraction_worker.pipeline.service import ExtractionService
from extraction_worker.steps import StepAdapter, build_adapters

logger = logging.getLogger(__name__)


@dataclass
class Worker:
    settings: Settings
    store: object
    bus: EventBus
    rate: RateController
    orchestrator: Orchestrator
    runner: BackgroundRunner
    service: ExtractionService

    def batch_driver(self) -> BatchDriver:
        return BatchDriver(self.service, self.rate, runner=self.runner)

    def close(self, wait: bool = True) -> None:
        self.runner.shutdown(wait=wait)
        self.orchestrator.close()


def build_worker(
    settings: Optional[Settings] = None,
    *,
    store=None,
    adapters: Optional[Mapping[str, StepAdapter]] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Worker:
    settings = settings or get_settings()
    store = store or PostgresEntityStore()
    bus = EventBus()
    rate = RateController.from_settings(settings, sleep=sleep)
    orchestrator = Orchestrator(
        store,
        adapters if adapters is not None else build_adapters(settings, store),
        rate=rate,
        bus=bus,
        default_timeout=settings.step_timeout_seconds,
        retry_base_delay=settings.retry_base_delay_seconds,
        sleep=sleep,
        adapter_workers=max(2, settings.runner_max_workers * 2),
    )
    runner = BackgroundRunner(orchestrator, store, max_workers=settings.runner_max_workers)
    service = ExtractionService(store, runner)
    logger.info("Worker ready (max_workers=%d)", settings.runner_max_workers)
    return Worker(
        settings=settings,
        store=store,
        bus=bus,
        rate=rate,
        orchestrator=orchestrator,
        runner=runner,
        service=service,
    )
