"""CLI job to submit a file of places for throttled bulk extraction."""

import argparse
import csv
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from extraction_worker.bootstrap import Worker, build_worker
from extraction_worker.core.db import init_pool
from extraction_worker.pipeline.batch import BatchItem

logger = logging.getLogger(__name__)


def load_items(path: Path, default_type: Optional[str] = None) -> List[BatchItem]:
    """Read batch items from a JSON array or a CSV file with a header row.

    CSV columns: entity_type, external_place_id (or place_id), search_query,
    override, force_steps (separated by ``|``).
    """
    if path.suffix.lower() == ".json":
        with path.open("r", encoding="utf-8") as handle:
            raw_items = json.load(handle)
        if not isinstance(raw_items, list):
            raise ValueError(f"{path} must contain a JSON array")
    else:
        with path.open("r", encoding="utf-8", newline="") as handle:
            raw_items = [_csv_row(row) for row in csv.DictReader(handle)]
    return [BatchItem.from_dict(raw, default_type=default_type) for raw in raw_items]


def _csv_row(row: Dict[str, str]) -> Dict[str, Any]:
    item: Dict[str, Any] = {key: value.strip() for key, value in row.items() if key and value and value.strip()}
    if "override" in item:
        item["override"] = item["override"].lower() in {"1", "true", "yes", "y"}
    if "force_steps" in item:
        item["force_steps"] = [step.strip() for step in item["force_steps"].split("|") if step.strip()]
    return item


def run_batch_job(
    *,
    path: Path,
    default_type: Optional[str],
    wait: bool,
    worker: Optional[Worker] = None,
) -> Dict[str, Any]:
    items = load_items(path, default_type=default_type)
    if not items:
        raise ValueError(f"No batch items found in {path}")

    if worker is None:
        init_pool()
        worker = build_worker()

    logger.info("Submitting %d items from %s", len(items), path)
    try:
        report = worker.batch_driver().run(items, wait=wait)
    finally:
        worker.close(wait=wait)
    return report.to_dict()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run a throttled batch of directory extractions")
    parser.add_argument("path", type=Path, help="JSON or CSV file of places to extract")
    parser.add_argument("--type", dest="default_type", help="Entity type for rows that do not set one")
    parser.add_argument(
        "--no-wait",
        dest="wait",
        action="store_false",
        help="Return after submission instead of waiting for every job to finish",
    )
    return parser


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s - %(message)s")
    parser = build_parser()
    args = parser.parse_args()

    report = run_batch_job(path=args.path, default_type=args.default_type, wait=args.wait)
    print(json.dumps(report, indent=2))


if __name__ == "__main__":
    main()
