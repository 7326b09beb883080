"""
Reservation cleanup service.

Periodically releases expired reservations and purges stale live-tracker
state. Runs as a background asyncio task started from the application
lifespan.
"""

import asyncio
import logging
import time
from collections import deque
from datetime import timedelta
from decimal import Decimal
from typing import Optional

from .ledger import LedgerEngine
from .tracker import StreamingUsageTracker
from ..db.models import utc_now

logger = logging.getLogger(__name__)

MAX_RECORDED_ERRORS = 50
HEALTHY_RUN_WINDOW = timedelta(minutes=10)
RECENT_ERROR_WINDOW = timedelta(hours=1)


class ReservationCleanupService:
    """
    Background sweep for expired reservations and stale trackers.

    Usage:
        cleanup = ReservationCleanupService(ledger, usage_tracker)
        await cleanup.start(interval_minutes=5)
        ...
        await cleanup.stop()
    """

    def __init__(
        self,
        ledger: LedgerEngine,
        tracker: Optional[StreamingUsageTracker] = None,
        batch_size: Optional[int] = None,
        stale_minutes: Optional[float] = None,
    ):
        self.ledger = ledger
        self.tracker = tracker
        self.batch_size = batch_size or ledger.settings.cleanup_batch_size
        self.stale_minutes = stale_minutes or ledger.settings.tracker_stale_minutes
        self.interval_minutes = ledger.settings.cleanup_interval_minutes
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self.reset_stats()

    @property
    def is_running(self) -> bool:
        return self._running

    def reset_stats(self) -> None:
        self.total_runs = 0
        self.total_reservations_processed = 0
        self.total_credits_refunded = Decimal("0")
        self.total_trackers_cleaned = 0
        self.last_run_time = None
        self.last_run_duration_ms = 0
        self.errors: deque = deque(maxlen=MAX_RECORDED_ERRORS)

    def _record_error(self, error_type: str, message: str) -> None:
        self.errors.append({
            "type": error_type,
            "message": message,
            "timestamp": utc_now(),
        })

    async def start(self, interval_minutes: Optional[float] = None) -> None:
        """Run one sweep immediately, then every interval_minutes."""
        if self._running:
            logger.warning("Reservation cleanup service is already running")
            return

        self._running = True
        if interval_minutes:
            self.interval_minutes = interval_minutes

        try:
            await self.run_once()
        except Exception as e:
            logger.error(f"Initial cleanup failed: {e}")

        self._task = asyncio.create_task(self._run_loop())
        logger.info(f"Reservation cleanup service started (every {self.interval_minutes:g} minutes)")

    async def stop(self) -> None:
        if not self._running:
            logger.warning("Reservation cleanup service is not running")
            return

        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Reservation cleanup service stopped")

    async def _run_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.interval_minutes * 60)
            if not self._running:
                break
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Scheduled cleanup failed: {e}")
                self._record_error("scheduled_cleanup_failed", str(e))

    async def run_once(self) -> dict:
        """
        Run one cleanup cycle.

        Expired reservations and stale trackers are handled independently: a
        failure in one step is recorded and does not prevent the other.

        Returns:
            Dict with expired_reservations, stale_trackers and duration_ms
        """
        started = time.monotonic()
        self.total_runs += 1
        logger.info(f"Starting reservation cleanup cycle #{self.total_runs}")

        reservations = {"processed": 0, "refunded": Decimal("0"), "errors": []}
        try:
            sweep = await self.ledger.expire_reservations(batch_size=self.batch_size)
            reservations = {
                "processed": sweep.processed,
                "refunded": sweep.total_refunded,
                "errors": sweep.errors,
            }
            for message in sweep.errors:
                self._record_error("reservation_cleanup_error", message)
        except Exception as e:
            logger.error(f"Failed to clean up expired reservations: {e}")
            self._record_error("reservation_cleanup_failed", str(e))
            reservations["errors"] = [str(e)]

        self.total_reservations_processed += reservations["processed"]
        self.total_credits_refunded += reservations["refunded"]

        trackers = {"found": 0, "cleaned": 0, "errors": []}
        if self.tracker is not None:
            try:
                trackers = await self.tracker.cleanup_stale(self.stale_minutes)
                for error in trackers["errors"]:
                    self._record_error("tracker_cleanup_error", error["error"])
            except Exception as e:
                logger.error(f"Failed to clean up stale trackers: {e}")
                self._record_error("tracker_cleanup_failed", str(e))
                trackers = {"found": 0, "cleaned": 0, "errors": [str(e)]}

        self.total_trackers_cleaned += trackers["cleaned"]

        duration_ms = int((time.monotonic() - started) * 1000)
        self.last_run_time = utc_now()
        self.last_run_duration_ms = duration_ms

        logger.info(
            f"Cleanup cycle completed in {duration_ms}ms: "
            f"{reservations['processed']} reservations expired ({reservations['refunded']} credits refunded), "
            f"{trackers['cleaned']} trackers cleaned"
        )
        return {
            "expired_reservations": reservations,
            "stale_trackers": trackers,
            "duration_ms": duration_ms,
        }

    def get_stats(self) -> dict:
        return {
            "total_runs": self.total_runs,
            "total_reservations_processed": self.total_reservations_processed,
            "total_credits_refunded": self.total_credits_refunded,
            "total_trackers_cleaned": self.total_trackers_cleaned,
            "last_run_time": self.last_run_time,
            "last_run_duration_ms": self.last_run_duration_ms,
            "is_running": self._running,
            "errors": list(self.errors),
        }

    def get_health_status(self) -> dict:
        """Healthy when running and the last run finished within the last 10 minutes."""
        now = utc_now()
        healthy = (
            self._running
            and self.last_run_time is not None
            and now - self.last_run_time < HEALTHY_RUN_WINDOW
        )
        recent_errors = [e for e in self.errors if now - e["timestamp"] < RECENT_ERROR_WINDOW]

        return {
            "status": "healthy" if healthy else "unhealthy",
            "is_running": self._running,
            "last_run": self.last_run_time,
            "total_runs": self.total_runs,
            "recent_errors": len(recent_errors),
            "total_credits_refunded": self.total_credits_refunded,
            "details": {
                "reservations_processed": self.total_reservations_processed,
                "trackers_cleaned": self.total_trackers_cleaned,
                "last_run_duration_ms": self.last_run_duration_ms,
            },
        }
