import asyncio
import contextlib
from typing import Optional

import schedule
from loguru import logger


class SchedulerCoordinator:
    """Coordinates scheduled scans inside the event loop and handles overlap."""

    def __init__(self, processor, schedule_minutes: int, enabled: bool = True):
        self.document_processor = processor
        self.schedule_minutes = schedule_minutes
        self.enabled = enabled
        self.scheduler = schedule.Scheduler()
        self.stop_event = asyncio.Event()
        self._run_task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._run_task is not None and not self._run_task.done()

    async def _guarded_run(self):
        try:
            await self.document_processor.run_main_process()
        except Exception as exc:
            logger.error(f"[scan] run aborted: {exc}")

    def run_scheduled_job(self):
        """Start a scan unless one is running or the pipeline is busy."""
        if self.stop_event.is_set():
            return

        if self.running or self.document_processor.busy:
            logger.warning(
                "Previous run still in progress; skipping this schedule tick."
            )
            return

        self._run_task = asyncio.get_running_loop().create_task(self._guarded_run())

    async def run_initial_process(self):
        """Run the first scan right away if automatic processing is enabled."""
        if self.stop_event.is_set():
            logger.info("Shutdown requested before run; skipping initial scan.")
            return
        if not self.enabled:
            logger.info("[scan] automatic processing disabled; waiting for webhooks only.")
            return
        await self._guarded_run()

    async def start_scheduler(self, poll_seconds: float = 1.0):
        """Run the schedule loop until a stop is requested."""
        if self.enabled:
            self.scheduler.every(self.schedule_minutes).minutes.do(self.run_scheduled_job)

        while not self.stop_event.is_set():
            self.scheduler.run_pending()
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self.stop_event.wait(), timeout=poll_seconds)

        self.scheduler.clear()
        if self.running:
            logger.info("[scan] waiting for the current run to finish...")
            await self._run_task

    def request_stop(self):
        """Request a graceful shutdown."""
        self.stop_event.set()
