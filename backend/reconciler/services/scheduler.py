"""
APScheduler Configuration for the Pending Order Sweep

Periodically re-queries orders that are still PENDING so an order whose
callback never arrives (and whose customer never returns) still settles.

Reconciliation Notes:
- The sweep uses the authenticated pull path only; it never trusts client data
- Jobs are in-memory: the sweep is re-registered on every startup
- max_instances=1 keeps sweeps from overlapping on a slow gateway
"""
import logging
from datetime import timedelta
from typing import List, Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .reconciliation_service import ReconciliationProtocol, ReconciliationResult

logger = logging.getLogger(__name__)

SWEEP_JOB_ID = "pending_order_sweep"


class PendingSweepScheduler:
    """
    Owns the AsyncIOScheduler that drives ReconciliationProtocol.sweep_pending.

    One instance per application, created by the service factory and
    started/stopped from the FastAPI lifespan.
    """

    def __init__(
        self,
        protocol: ReconciliationProtocol,
        interval_seconds: int = 60,
        min_age_seconds: int = 30
    ):
        """
        Args:
            protocol: Reconciliation protocol whose pull path settles orders
            interval_seconds: Time between sweeps
            min_age_seconds: Orders touched more recently than this are skipped
        """
        self.protocol = protocol
        self.interval_seconds = interval_seconds
        self.min_age = timedelta(seconds=min_age_seconds)
        self._scheduler: Optional[AsyncIOScheduler] = None

    def _initialize_scheduler(self) -> AsyncIOScheduler:
        """
        Configuration:
        - AsyncIOScheduler for async job execution
        - AsyncIOExecutor, default in-memory job store
        - Coalesce: True (one catch-up run after a stall)
        - Max instances: 1 per job
        """
        executors = {
            'default': AsyncIOExecutor()
        }

        job_defaults = {
            'coalesce': True,
            'max_instances': 1,
            'misfire_grace_time': 30
        }

        return AsyncIOScheduler(
            executors=executors,
            job_defaults=job_defaults,
            timezone='UTC'
        )

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self) -> None:
        """
        Start the scheduler and register the sweep job.

        Must be called with the event loop running (FastAPI lifespan).
        """
        if self.running:
            logger.warning("Scheduler already running")
            return

        self._scheduler = self._initialize_scheduler()
        self._scheduler.add_job(
            self.run_sweep,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id=SWEEP_JOB_ID,
            name="Pending order sweep",
            replace_existing=True
        )
        self._scheduler.start()

        next_run = self._scheduler.get_job(SWEEP_JOB_ID).next_run_time
        logger.info(
            f"Pending sweep scheduled: interval={self.interval_seconds}s, "
            f"min_age={self.min_age.total_seconds():.0f}s, next_run={next_run}"
        )

    def shutdown(self, wait: bool = True) -> None:
        """
        Args:
            wait: Wait for a running sweep to complete before shutdown
        """
        if self.running:
            self._scheduler.shutdown(wait=wait)
            logger.info(f"Scheduler shutdown (wait={wait})")
        self._scheduler = None

    async def run_sweep(self) -> List[ReconciliationResult]:
        """
        One sweep over stale PENDING orders.

        Errors are logged so the job keeps its schedule.
        """
        try:
            return await self.protocol.sweep_pending(self.min_age)
        except Exception as e:
            logger.error(f"Pending sweep failed: {e}", exc_info=True)
            return []
