"""CLI job to run one extraction to completion and print its final status."""

import argparse
import json
import logging
from typing import Any, Dict, List, Optional

from extraction_worker.bootstrap import Worker, build_worker
from extraction_worker.core.db import init_pool
from extraction_worker.models import EntityType

logger = logging.getLogger(__name__)


def run_extraction_job(
    *,
    entity_type: str,
    external_place_id: str,
    search_query: Optional[str],
    override: bool,
    force_steps: List[str],
    worker: Optional[Worker] = None,
) -> Dict[str, Any]:
    if worker is None:
        init_pool()
        worker = build_worker()

    try:
        result = worker.service.start_extraction(
            EntityType(entity_type),
            external_place_id,
            search_query=search_query,
            override=override,
            force_steps=force_steps,
        )
        if not result.accepted:
            logger.warning("Extraction not started: %s (existing status %s)", result.reason, result.existing_status)
            return {"accepted": False, **result.to_dict()}

        logger.info("Running extraction %s for %s", result.entity_id, external_place_id)
        worker.runner.wait_idle()
        status = worker.service.status(result.entity_id)
        logger.info(
            "Completed extraction %s: status=%s progress=%d%%",
            result.entity_id,
            status["overall_status"],
            status["percentage"],
        )
        return {"accepted": True, **status}
    finally:
        worker.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run a single directory extraction")
    parser.add_argument(
        "--type",
        dest="entity_type",
        required=True,
        choices=[member.value for member in EntityType],
        help="Entity type to extract",
    )
    parser.add_argument("--place-id", dest="external_place_id", required=True, help="Provider place identifier")
    parser.add_argument("--query", dest="search_query", help="Search query that surfaced this place")
    parser.add_argument(
        "--override",
        dest="override",
        action="store_true",
        help="Resume or re-run an entity that already exists",
    )
    parser.add_argument(
        "--force-step",
        dest="force_steps",
        action="append",
        default=[],
        help="Re-run this step even if it completed (repeatable; '*' for all)",
    )
    return parser


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s - %(message)s")
    parser = build_parser()
    args = parser.parse_args()

    outcome = run_extraction_job(
        entity_type=args.entity_type,
        external_place_id=args.external_place_id,
        search_query=args.search_query,
        override=args.override,
        force_steps=args.force_steps,
    )
    print(json.dumps(outcome, indent=2, default=str))


if __name__ == "__main__":
    main()
