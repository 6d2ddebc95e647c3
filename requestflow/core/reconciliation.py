"""
Reconciliation sweeper for requests left behind by a finished workflow.
Runs as a background task settling stuck requests periodically.
"""

import asyncio
from typing import Optional
import structlog

from requestflow.models.database import Database
from requestflow.models.orm import _now
from requestflow.core.request_service import RequestService
from requestflow.core.target_data import TargetDataAccessor
from requestflow.config.settings import settings

logger = structlog.get_logger()


class ReconciliationSweeper:
    """
    Background service that runs the stuck-request sweep.
    """

    def __init__(
        self,
        db: Database,
        event_bus=None,
        target_data: Optional[TargetDataAccessor] = None,
        interval_seconds: Optional[int] = None,
    ):
        self.db = db
        self.event_bus = event_bus
        self.target_data = target_data or TargetDataAccessor()
        self.interval_seconds = interval_seconds or settings.reconciliation_interval_seconds
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self.runs = 0
        self.last_run_at: Optional[float] = None
        self.last_processed = 0

    @property
    def running(self) -> bool:
        return self._running

    async def start(self):
        """Start the sweep loop"""
        if self._running:
            logger.warning("reconciliation_sweeper_already_running")
            return

        self._running = True
        self._task = asyncio.create_task(self._sweep_loop())
        logger.info("reconciliation_sweeper_started", interval_seconds=self.interval_seconds)

    async def stop(self):
        """Stop the sweep loop"""
        if not self._running:
            return

        self._running = False

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

        logger.info("reconciliation_sweeper_stopped", runs=self.runs)

    async def _sweep_loop(self):
        while self._running:
            try:
                # Sweep immediately on first iteration, then sleep
                await self.run_once()
                await asyncio.sleep(self.interval_seconds)

            except asyncio.CancelledError:
                logger.info("reconciliation_sweep_cancelled")
                break
            except Exception as e:
                logger.error("reconciliation_sweep_error", error=str(e), exc_info=True)
                # Continue running even if one sweep fails
                await asyncio.sleep(self.interval_seconds)

    async def run_once(self, actor_id: Optional[str] = None, actor_name: Optional[str] = None) -> int:
        """Run one sweep as the system actor (or the given actor)"""
        async with self.db.session() as session:
            service = RequestService(session, self.target_data, self.event_bus)
            processed = await service.process_stuck_workflow_requests(
                actor_id or settings.system_actor_id,
                actor_name or settings.system_actor_name,
            )

        self.runs += 1
        self.last_run_at = _now()
        self.last_processed = processed
        if processed:
            logger.info("reconciliation_sweep_completed", processed=processed)
        return processed

    def get_stats(self) -> dict:
        return {
            "running": self._running,
            "interval_seconds": self.interval_seconds,
            "runs": self.runs,
            "last_run_at": self.last_run_at,
            "last_processed": self.last_processed,
        }
