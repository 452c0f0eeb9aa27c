"""
APScheduler Configuration for Maintenance Jobs

Periodic housekeeping for the checkout backend:
- Delete delegated tokens expired beyond the grace window
- Evict idempotency records past the retention window

Jobs live in the in-memory job store and are registered on every startup,
so nothing needs to survive a restart.
"""
import logging
from typing import Awaitable, Callable, List, Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .idempotency_service import IdempotencyGuard
from .vault_service import AllowanceVault

logger = logging.getLogger(__name__)

VAULT_CLEANUP_JOB_ID = "vault_cleanup"
IDEMPOTENCY_CLEANUP_JOB_ID = "idempotency_cleanup"


class MaintenanceScheduler:
    """
    Owns the AsyncIOScheduler running the cleanup jobs.

    Must be started from inside a running event loop (FastAPI lifespan).
    """

    def __init__(self, interval_minutes: float = 60):
        self.interval_minutes = interval_minutes
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._initialize_scheduler()

    def _initialize_scheduler(self):
        """
        Configuration:
        - AsyncIOExecutor so jobs run on the application loop
        - Coalesce: True (one run for any number of missed runs)
        - Max instances: 1 per job (cleanups never overlap)
        """
        executors = {
            'default': AsyncIOExecutor()
        }

        job_defaults = {
            'coalesce': True,
            'max_instances': 1,
            'misfire_grace_time': 300
        }

        self._scheduler = AsyncIOScheduler(
            executors=executors,
            job_defaults=job_defaults,
            timezone='UTC'
        )

    @property
    def running(self) -> bool:
        return self._scheduler.running

    def add_cleanup_job(
        self,
        job_id: str,
        job_func: Callable[[], Awaitable[int]],
        interval_minutes: Optional[float] = None
    ) -> str:
        """
        Register a periodic async cleanup.

        Args:
            job_id: Unique job identifier
            job_func: Coroutine function returning the number of removed rows
            interval_minutes: Override for the default interval

        Returns:
            Job ID
        """
        interval = interval_minutes or self.interval_minutes

        async def run():
            try:
                removed = await job_func()
                logger.debug(f"Maintenance job {job_id} removed {removed} rows")
            except Exception as e:
                logger.error(f"Maintenance job {job_id} failed: {e}", exc_info=True)

        self._scheduler.add_job(
            run,
            trigger=IntervalTrigger(minutes=interval),
            id=job_id,
            name=f"Maintenance: {job_id}",
            replace_existing=True,
        )
        logger.info(f"Added maintenance job: {job_id}, interval={interval}min")
        return job_id

    def register_defaults(self, vault: AllowanceVault, idempotency: IdempotencyGuard) -> None:
        self.add_cleanup_job(VAULT_CLEANUP_JOB_ID, vault.cleanup_expired)
        self.add_cleanup_job(IDEMPOTENCY_CLEANUP_JOB_ID, idempotency.cleanup_expired)

    def get_job_ids(self) -> List[str]:
        return [job.id for job in self._scheduler.get_jobs()]

    def start(self):
        if not self._scheduler.running:
            self._scheduler.start()
            logger.info(f"Scheduler started. Jobs: {self.get_job_ids()}")
        else:
            logger.warning("Scheduler already running")

    def shutdown(self, wait: bool = True):
        if self._scheduler and self._scheduler.running:
            self._scheduler.shutdown(wait=wait)
            logger.info(f"Scheduler shutdown (wait={wait})")
