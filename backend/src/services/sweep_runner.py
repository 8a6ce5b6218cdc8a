"""
Periodic background sweeps.

Runs the pipeline's time-driven work as independent asyncio loops started
from the application lifespan:

- delivery: dispatch due notifications and scheduled retries
- expiry: expire ended snoozes and mutes, then re-optimize touched users
- queue: replay the offline event queue
- registry: hourly re-optimization of every user's active geofences
- retention: purge history past its retention period

Each pass runs its synchronous work in a worker thread with its own
database session, since request-scoped sessions are not available here.
Overlapping passes (several app instances) are safe because the work is
taken through row claims.
"""

import asyncio
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from backend.src.config.pipeline import PipelineConfig
from backend.src.services.geofence_registry_service import GeofenceRegistryService
from backend.src.services.geofence_sync import GeofenceSpecsPublisher
from backend.src.services.notification_scheduler import DeliverySweepResult, NotificationScheduler
from backend.src.services.offline_queue_service import OfflineQueueService, QueueRunResult
from backend.src.services.push_gateway import PushGateway
from backend.src.services.retention_service import CleanupStats, RetentionService
from backend.src.services.suppression_service import ExpirySweepResult, SuppressionService
from backend.src.utils.logging_config import get_logger


logger = get_logger("sweeps")

SessionFactory = Callable[[], Session]

RETENTION_INTERVAL = timedelta(hours=24)


@dataclass
class SweepSchedule:
    """Loop periods, in seconds."""

    delivery: float = 30.0
    expiry: float = 30.0
    queue: float = 30.0
    registry: float = 3600.0
    retention: float = RETENTION_INTERVAL.total_seconds()

    @classmethod
    def from_intervals(cls, sweep_seconds: int, recheck_minutes: int) -> "SweepSchedule":
        return cls(
            delivery=float(sweep_seconds),
            expiry=float(sweep_seconds),
            queue=float(sweep_seconds),
            registry=float(recheck_minutes * 60),
        )


class SweepRunner:
    """
    Owns the background sweep loops.

    Usage:
        >>> runner = SweepRunner(SessionLocal, config, gateway, publisher)
        >>> runner.start()
        >>> ...
        >>> await runner.stop()

    The ``run_*`` methods perform a single synchronous pass and are what
    the loops call; tests call them directly.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        config: Optional[PipelineConfig] = None,
        gateway: Optional[PushGateway] = None,
        publisher: Optional[GeofenceSpecsPublisher] = None,
        schedule: Optional[SweepSchedule] = None,
    ):
        self._session_factory = session_factory
        self.config = config or PipelineConfig()
        self.gateway = gateway
        self.publisher = publisher
        self.schedule = schedule or SweepSchedule()
        self._tasks: List[asyncio.Task] = []

    # ========================================================================
    # Single passes
    # ========================================================================

    def run_delivery(self) -> DeliverySweepResult:
        """Dispatch due notifications and retries."""
        db = self._session_factory()
        try:
            return NotificationScheduler(db, self.config, self.gateway).run_delivery_sweep()
        finally:
            db.close()

    def run_expiry(self) -> ExpirySweepResult:
        """Expire ended snoozes and mutes, then re-optimize affected users."""
        db = self._session_factory()
        try:
            result = SuppressionService(db, self.config).run_expiry_sweep()
            if result.users_touched:
                registry = GeofenceRegistryService(db, self.config, self.publisher)
                for user_id in result.users_touched:
                    registry.optimize_user(user_id)
            return result
        finally:
            db.close()

    def run_queue(self) -> QueueRunResult:
        """Replay the offline event queue."""
        db = self._session_factory()
        try:
            return OfflineQueueService(db, self.config, self.gateway).process_queue()
        finally:
            db.close()

    def run_registry_recheck(self) -> int:
        """Re-optimize every user's active geofence set."""
        db = self._session_factory()
        try:
            return GeofenceRegistryService(db, self.config, self.publisher).recheck_all_users()
        finally:
            db.close()

    def run_retention(self) -> CleanupStats:
        """Purge history past retention."""
        db = self._session_factory()
        try:
            return RetentionService(db, self.config).run_cleanup()
        finally:
            db.close()

    # ========================================================================
    # Loops
    # ========================================================================

    def start(self) -> None:
        """Start every loop on the running event loop."""
        if self._tasks:
            return
        loops: Dict[str, tuple] = {
            "delivery": (self.run_delivery, self.schedule.delivery),
            "expiry": (self.run_expiry, self.schedule.expiry),
            "queue": (self.run_queue, self.schedule.queue),
            "registry": (self.run_registry_recheck, self.schedule.registry),
            "retention": (self.run_retention, self.schedule.retention),
        }
        for name, (work, interval) in loops.items():
            self._tasks.append(
                asyncio.create_task(self._loop(name, work, interval), name=f"sweep-{name}")
            )
        logger.info("Background sweeps started", extra={"loops": list(loops)})

    async def stop(self) -> None:
        """Cancel every loop and wait for it to finish."""
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Background sweeps stopped")

    async def _loop(self, name: str, work: Callable[[], object], interval: float) -> None:
        while True:
            await self._run_once(name, work)
            await asyncio.sleep(interval)

    async def _run_once(self, name: str, work: Callable[[], object]) -> None:
        # A failed pass must not kill the loop; the next pass retries
        try:
            await asyncio.to_thread(work)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                "Sweep pass failed",
                extra={"sweep": name, "error_type": type(e).__name__, "error": str(e)},
                exc_info=True,
            )
