"""HTTP entrypoint that accepts extraction requests and reports their progress."""

from __future__ import annotations

import logging
import os
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional

from flask import Flask, jsonify, request

from extraction_worker.bootstrap import Worker, build_worker
from extraction_worker.core.config import get_settings
from extraction_worker.core.errors import EntityNotFoundError
from extraction_worker.models import EntityType
from extraction_worker.pipeline.batch import BatchItem
from extraction_worker.pipeline.runner import OrphanSweeper, reconcile_after_restart

# ---------- Logging ----------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s - %(message)s",
)
logger = logging.getLogger(__name__)

# ---------- App & executor ----------
app = Flask(__name__)
# Batch submissions pause between chunks; they run here rather than in the request thread.
_executor = ThreadPoolExecutor(max_workers=1)
_worker: Optional[Worker] = None
_worker_lock = threading.Lock()


def get_worker() -> Worker:
    global _worker
    with _worker_lock:
        if _worker is None:
            _worker = build_worker()
        return _worker


# ---------- Routes ----------


@app.get("/")
def root() -> Any:
    return "ok", 200


@app.get("/healthz")
def healthcheck() -> Any:
    """Lightweight health endpoint; reads settings only, never the database."""
    settings = get_settings()
    return (
        jsonify(
            {
                "status": "ok",
                "worker_port_config": settings.worker_port,
                "revision": os.getenv("K_REVISION", "unknown"),
            }
        ),
        200,
    )


def _parse_force_steps(raw: Any) -> List[str]:
    if raw is None:
        return []
    if not isinstance(raw, list) or not all(isinstance(item, str) for item in raw):
        raise ValueError("force_steps must be a list of step names")
    return raw


@app.post("/extractions")
def start_extraction() -> Any:
    """
    Start (or resume, with override) an extraction.
    Required JSON fields: entity_type, external_place_id
    Optional: search_query, override (bool), force_steps (list), place_data (object)
    """
    payload: Dict[str, Any] = request.get_json(silent=True) or {}

    external_place_id = payload.get("external_place_id") or payload.get("place_id")
    missing = [name for name, value in (("entity_type", payload.get("entity_type")), ("external_place_id", external_place_id)) if not value]
    if missing:
        return jsonify({"error": f"missing fields: {', '.join(missing)}"}), 400

    try:
        entity_type = EntityType(payload["entity_type"])
    except ValueError:
        return jsonify({"error": f"unknown entity_type {payload['entity_type']!r}"}), 400
    try:
        force_steps = _parse_force_steps(payload.get("force_steps"))
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 400
    place_data = payload.get("place_data")
    if place_data is not None and not isinstance(place_data, dict):
        return jsonify({"error": "place_data must be an object"}), 400

    result = get_worker().service.start_extraction(
        entity_type,
        str(external_place_id),
        search_query=payload.get("search_query"),
        override=bool(payload.get("override", False)),
        force_steps=force_steps,
        place_data=place_data,
    )
    if not result.accepted:
        return jsonify({"error": result.reason, "data": result.to_dict()}), 409
    return jsonify({"data": result.to_dict()}), 202


@app.get("/extractions/<entity_id>")
def extraction_status(entity_id: str) -> Any:
    try:
        status = get_worker().service.status(entity_id)
    except EntityNotFoundError:
        return jsonify({"error": "not found"}), 404
    return jsonify({"data": status}), 200


@app.post("/extractions/<entity_id>/cancel")
def cancel_extraction(entity_id: str) -> Any:
    try:
        cancelled = get_worker().service.cancel(entity_id)
    except EntityNotFoundError:
        return jsonify({"error": "not found"}), 404
    if not cancelled:
        return jsonify({"error": "no extraction in progress"}), 409
    return jsonify({"data": {"entity_id": entity_id, "status": "cancelling"}}), 202


@app.post("/extractions/batch")
def start_batch() -> Any:
    """
    Queue many extractions, throttled like the batch CLI.
    Required JSON fields: items (list of objects with external_place_id)
    Optional: entity_type (default for items without one)
    """
    payload: Dict[str, Any] = request.get_json(silent=True) or {}
    raw_items = payload.get("items")
    if not isinstance(raw_items, list) or not raw_items:
        return jsonify({"error": "items must be a non-empty list"}), 400

    try:
        items = [BatchItem.from_dict(raw, default_type=payload.get("entity_type")) for raw in raw_items]
    except (TypeError, ValueError, AttributeError) as exc:
        return jsonify({"error": f"invalid batch item: {exc}"}), 400

    logger.info("Queueing batch of %d extractions", len(items))
    _executor.submit(_run_batch_safe, items)
    return jsonify({"data": {"status": "queued", "count": len(items)}}), 202


# ---------- Internals ----------


def _run_batch_safe(items: List[BatchItem]) -> None:
    try:
        report = get_worker().batch_driver().run(items)
        logger.info("Batch report: %s", report.to_dict())
    except Exception as exc:  # noqa: BLE001
        logger.exception("Batch submission failed: %s", exc)


def start_maintenance(worker: Worker, settings) -> OrphanSweeper:
    """Fail records orphaned by the previous process, then keep sweeping."""
    reconciled = reconcile_after_restart(worker.store, is_running=worker.runner.is_running)
    logger.info("[BOOT] Reconciled %d orphaned extraction(s)", len(reconciled))
    sweeper = OrphanSweeper(
        worker.store,
        settings.orphan_timeout_minutes,
        interval=settings.orphan_sweep_interval_seconds,
        is_running=worker.runner.is_running,
    )
    sweeper.start()
    return sweeper


def main() -> None:
    settings = get_settings()
    worker = get_worker()
    worker.store.ensure_schema()
    start_maintenance(worker, settings)

    port = int(os.getenv("PORT") or settings.worker_port)
    logger.info("[BOOT] Binding on 0.0.0.0:%d", port)
    app.run(host="0.0.0.0", port=port)


if __name__ == "__main__":
    main()
