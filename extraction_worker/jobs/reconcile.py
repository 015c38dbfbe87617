"""CLI job to fail extractions left in ``processing`` by a dead worker."""

import argparse
import logging
from typing import List, Optional

from extraction_worker.core.config import get_settings
from extraction_worker.core.db import PostgresEntityStore, init_pool
from extraction_worker.pipeline.runner import reconcile_orphans

logger = logging.getLogger(__name__)


def run_reconcile_job(*, timeout_minutes: Optional[int], store=None) -> List[str]:
    if store is None:
        init_pool()
        store = PostgresEntityStore()
    minutes = timeout_minutes if timeout_minutes is not None else get_settings().orphan_timeout_minutes
    logger.info("Reconciling extractions idle for more than %d minutes", minutes)
    return reconcile_orphans(store, minutes)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Mark orphaned extractions as failed")
    parser.add_argument(
        "--timeout-minutes",
        dest="timeout_minutes",
        type=int,
        help="Idle minutes after which a processing record counts as orphaned",
    )
    return parser


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s - %(message)s")
    parser = build_parser()
    args = parser.parse_args()

    reconciled = run_reconcile_job(timeout_minutes=args.timeout_minutes)
    logger.info("Reconciled %d record(s)", len(reconciled))


if __name__ == "__main__":
    main()
