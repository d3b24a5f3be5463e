import asyncio

import httpx

from enricher.src.services.external_data import ExternalDataService, pick_path
from enricher.src.services.scheduler import SchedulerCoordinator


class SlowProcessor:
    def __init__(self):
        self.runs = 0
        self.release = asyncio.Event()
        self.lock = asyncio.Lock()

    @property
    def busy(self):
        return self.lock.locked()

    async def run_main_process(self):
        async with self.lock:
            self.runs += 1
            await self.release.wait()


def test_overlapping_schedule_ticks_are_skipped():
    async def scenario():
        processor = SlowProcessor()
        coordinator = SchedulerCoordinator(processor, schedule_minutes=1)
        coordinator.run_scheduled_job()
        await asyncio.sleep(0)
        coordinator.run_scheduled_job()
        coordinator.run_scheduled_job()
        processor.release.set()
        await coordinator._run_task
        return processor.runs

    assert asyncio.run(scenario()) == 1


def test_scheduler_stops_and_waits_for_current_run():
    async def scenario():
        processor = SlowProcessor()
        coordinator = SchedulerCoordinator(processor, schedule_minutes=1)
        loop_task = asyncio.get_running_loop().create_task(coordinator.start_scheduler(poll_seconds=0.01))
        coordinator.run_scheduled_job()
        await asyncio.sleep(0.02)
        coordinator.request_stop()
        await asyncio.sleep(0.02)
        assert not loop_task.done()
        processor.release.set()
        await loop_task
        return processor.runs, coordinator.scheduler.jobs

    runs, jobs = asyncio.run(scenario())
    assert runs == 1
    assert jobs == []


def test_disabled_automatic_processing_skips_initial_scan():
    async def scenario():
        processor = SlowProcessor()
        coordinator = SchedulerCoordinator(processor, schedule_minutes=1, enabled=False)
        await coordinator.run_initial_process()
        return processor.runs

    assert asyncio.run(scenario()) == 0


def test_pick_path_follows_dicts_and_lists():
    data = {"a": {"items": [{"name": "x"}, {"name": "y"}]}}
    assert pick_path(data, "a.items.1.name") == "y"
    assert pick_path(data, None) is data
    assert pick_path(data, "a.items.5.name") is None


def test_external_data_is_extracted_and_capped(make_settings):
    settings = make_settings(
        EXTERNAL_API_ENABLED=True,
        EXTERNAL_API_URL="http://context.local/data",
        EXTERNAL_API_DATA_PATH="payload.text",
        EXTERNAL_API_HEADERS='{"X-Key": "abc"}',
    )

    def handler(request):
        assert request.headers["X-Key"] == "abc"
        return httpx.Response(200, json={"payload": {"text": "word " * 2000}})

    service = ExternalDataService(settings, transport=httpx.MockTransport(handler))
    text = asyncio.run(service.fetch())

    assert text.startswith("word word")
    assert len(text) <= 500 * 4


def test_external_data_failure_is_not_fatal(make_settings):
    settings = make_settings(EXTERNAL_API_ENABLED=True, EXTERNAL_API_URL="http://context.local/data")

    def handler(request):
        return httpx.Response(503)

    service = ExternalDataService(settings, transport=httpx.MockTransport(handler))
    assert asyncio.run(service.fetch()) is None


def test_external_data_disabled(settings):
    assert asyncio.run(ExternalDataService(settings).fetch()) is None


def test_external_data_with_broken_json_body_is_not_fatal(make_settings):
    settings = make_settings(EXTERNAL_API_ENABLED=True, EXTERNAL_API_URL="http://context.local/data")

    def handler(request):
        return httpx.Response(200, content=b"<html>oops", headers={"content-type": "application/json"})

    service = ExternalDataService(settings, transport=httpx.MockTransport(handler))
    assert asyncio.run(service.fetch()) is None
