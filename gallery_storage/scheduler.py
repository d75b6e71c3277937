"""
Periodic background sync using APScheduler.

Runs SyncEngine.sync_all on a BackgroundScheduler thread pool, apart from
request handling threads. Can be paused during deploys, triggered on demand
and shut down with or without draining the running job.
"""
import logging
from datetime import UTC, datetime

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from gallery_storage.config import SYNC_INTERVAL_MINUTES
from gallery_storage.services.sync_engine import SyncEngine

logger = logging.getLogger(__name__)

SYNC_JOB_ID = "storage_sync_all"


class SyncScheduler:
    def __init__(self, engine: SyncEngine, interval_minutes: int = SYNC_INTERVAL_MINUTES):
        self.engine = engine
        self.interval_minutes = interval_minutes
        self.scheduler = BackgroundScheduler(timezone="UTC")
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def _run(self) -> None:
        logger.info("Starting scheduled sync job")
        try:
            results = self.engine.sync_all()
        except Exception:
            logger.exception("Scheduled sync job failed")
            return
        logger.info("Scheduled sync job finished: %d connections synced", len(results))

    def start(self) -> None:
        if self._running:
            logger.warning("Sync scheduler already running")
            return
        self.scheduler.add_job(
            self._run,
            trigger=IntervalTrigger(minutes=self.interval_minutes),
            id=SYNC_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.start()
        self._running = True
        logger.info("Sync scheduler started (every %d minutes)", self.interval_minutes)

    def pause(self) -> None:
        if self._running:
            self.scheduler.pause_job(SYNC_JOB_ID)
            logger.info("Sync scheduler paused")

    def resume(self) -> None:
        if self._running:
            self.scheduler.resume_job(SYNC_JOB_ID)
            logger.info("Sync scheduler resumed")

    def trigger_now(self) -> None:
        """Queue an immediate one-off sync_all run alongside the interval job."""
        if not self._running:
            logger.warning("Sync scheduler not running; ignoring manual trigger")
            return
        self.scheduler.add_job(self._run, next_run_time=datetime.now(UTC))
        logger.info("Manual sync triggered")

    def shutdown(self, wait: bool = True) -> None:
        if not self._running:
            return
        self.scheduler.shutdown(wait=wait)
        self._running = False
        logger.info("Sync scheduler stopped")
