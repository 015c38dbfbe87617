import pytest

from extraction_worker.models import EntityType, OverallStatus
from extraction_worker.pipeline.batch import BatchDriver, BatchItem
from extraction_worker.pipeline.rate import RateController
from extraction_worker.pipeline.service import StartResult


class DummyService:
    def __init__(self, conflicts=(), errors=()):
        self.conflicts = set(conflicts)
        self.errors = set(errors)
        self.calls = []

    def start_extraction(self, entity_type, external_place_id, **kwargs):
        self.calls.append((entity_type, external_place_id, kwargs))
        if external_place_id in self.errors:
            raise RuntimeError("db down")
        if external_place_id in self.conflicts:
            return StartResult(
                accepted=False,
                entity_id=f"id-{external_place_id}",
                status=OverallStatus.COMPLETED,
                reason="duplicate",
                existing_status=OverallStatus.COMPLETED,
            )
        return StartResult(accepted=True, entity_id=f"id-{external_place_id}", status=OverallStatus.PENDING)


class DummyRunner:
    def __init__(self, timeline):
        self.timeline = timeline

    def wait_idle(self, timeout=None):
        self.timeline.append("wait")
        return True


def _items(*place_ids):
    return [BatchItem(EntityType.RESTAURANT, place_id) for place_id in place_ids]


def test_batch_item_from_dict_accepts_place_id_alias():
    item = BatchItem.from_dict({"place_id": "p1", "force_steps": ["web_scrape"]}, default_type="hotel")

    assert item.entity_type is EntityType.HOTEL
    assert item.external_place_id == "p1"
    assert item.force_steps == ("web_scrape",)


def test_batch_item_requires_type_and_place():
    with pytest.raises(ValueError):
        BatchItem.from_dict({"entity_type": "hotel"})
    with pytest.raises(ValueError):
        BatchItem.from_dict({"place_id": "p1"})
    with pytest.raises(ValueError):
        BatchItem.from_dict({"place_id": "p1", "entity_type": "spaceport"})


def test_driver_paces_jobs_and_batches():
    timeline = []
    rate = RateController(job_delay=5.0, batch_size=2, batch_delay=180.0, sleep=timeline.append)
    service = DummyService()

    report = BatchDriver(service, rate).run(_items("a", "b", "c"))

    assert timeline == [5.0, 180.0]
    assert report.accepted == ["id-a", "id-b", "id-c"]
    assert [call[1] for call in service.calls] == ["a", "b", "c"]


def test_driver_waits_for_runner_between_batches_when_asked():
    timeline = []
    rate = RateController(job_delay=0.0, batch_size=1, batch_delay=1.0, sleep=timeline.append)

    BatchDriver(DummyService(), rate, runner=DummyRunner(timeline)).run(_items("a", "b"), wait=True)

    assert timeline == ["wait", 1.0, "wait"]


def test_driver_collects_conflicts_and_errors():
    rate = RateController(job_delay=0.0, batch_delay=0.0, sleep=lambda s: None)
    service = DummyService(conflicts={"b"}, errors={"c"})

    report = BatchDriver(service, rate).run(_items("a", "b", "c"))

    assert report.total == 3
    assert report.accepted == ["id-a"]
    assert report.conflicts[0]["existing_status"] == "completed"
    assert report.errors == [{"external_place_id": "c", "error": "db down"}]
    assert report.to_dict()["total"] == 3
