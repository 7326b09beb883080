"""
Live usage tracking for streaming model responses.

A tracker wraps one reservation: it sizes and places the hold before the
stream starts, keeps a running estimate while chunks arrive, and settles the
hold with the measured usage when the stream ends.
"""

import logging
import math
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional, Sequence

from .credits import CostEstimator
from .errors import LedgerOperationError
from .ledger import LedgerEngine
from .pricing import ModelPricing
from ..db.models import utc_now
from ..models.credits import (
    CancelResult,
    CreditEstimate,
    OperationContext,
    ReservationContext,
    ReservationType,
    SettlementResult,
    UnitCount,
    UsageData,
)

logger = logging.getLogger(__name__)

# Characters per unit for live output estimates
CHARS_PER_UNIT = {
    "openai": 3.8,
    "anthropic": 3.5,
    "google": 4.0,
}
DEFAULT_CHARS_PER_UNIT = 4.0

USAGE_WARNING_RATIO = 0.8


class TrackerError(Exception):
    """Unknown tracker, inactive tracker, or capacity reached."""


@dataclass
class StreamTracker:
    """State of one tracked stream, keyed by its reservation ID."""
    reservation_id: str
    user_id: str
    model: str
    provider: str
    pricing: ModelPricing
    estimate: CreditEstimate
    credits_reserved: int
    expires_at: datetime
    conversation_id: Optional[str] = None
    message_id: Optional[str] = None
    status: str = "active"
    input_units: int = 0
    output_units: int = 0
    credits_used: Decimal = Decimal("0")
    credits_charged: Optional[int] = None
    chunks_received: int = 0
    total_chars: int = 0
    started_at: datetime = field(default_factory=utc_now)
    last_update: datetime = field(default_factory=utc_now)
    finished_at: Optional[datetime] = None
    errors: list[str] = field(default_factory=list)

    @property
    def usage_ratio(self) -> float:
        if not self.credits_reserved:
            return 0.0
        return float(self.credits_used) / self.credits_reserved

    @property
    def streaming_rate(self) -> float:
        """Characters per second since the stream started."""
        elapsed = (self.last_update - self.started_at).total_seconds()
        return self.total_chars / elapsed if elapsed > 0 else 0.0


class StreamingUsageTracker:
    """
    In-memory registry of live stream trackers.

    Usage:
        tracker = await usage_tracker.start_tracking(user_id, content, "gpt-4o", "openai")
        async for chunk in stream:
            usage_tracker.update_with_chunk(tracker.reservation_id, chunk)
        await usage_tracker.complete(tracker.reservation_id, output_units=reported)
    """

    def __init__(self, ledger: LedgerEngine, estimator: CostEstimator):
        self.ledger = ledger
        self.estimator = estimator
        self.settings = ledger.settings
        self.trackers: dict[str, StreamTracker] = {}
        self.counters: Counter = Counter()

    @property
    def active_count(self) -> int:
        return sum(1 for t in self.trackers.values() if t.status == "active")

    def _get(self, tracker_id: str) -> StreamTracker:
        tracker = self.trackers.get(tracker_id)
        if tracker is None:
            raise TrackerError(f"Tracker not found: {tracker_id}")
        return tracker

    def _count(self, provider: str, event: str) -> None:
        self.counters[(provider, event)] += 1

    @staticmethod
    def units_from_chars(char_count: int, provider: str) -> int:
        return math.ceil(char_count / CHARS_PER_UNIT.get(provider, DEFAULT_CHARS_PER_UNIT))

    async def start_tracking(
        self,
        user_id: str,
        content: str,
        model: str,
        provider: str,
        conversation_id: Optional[str] = None,
        message_id: Optional[str] = None,
        system_prompt: Optional[str] = None,
        conversation_history: Sequence[str] = (),
        attachments: int = 0,
        unit_count: Optional[UnitCount] = None,
        ttl_minutes: Optional[float] = None,
        context: Optional[OperationContext] = None,
    ) -> StreamTracker:
        """
        Estimate the request, reserve credits with the buffer applied, and
        start tracking.

        Raises:
            TrackerError: if required fields are missing or capacity is reached
            LedgerOperationError: if the reservation is refused
        """
        for name, value in (("user_id", user_id), ("content", content), ("model", model), ("provider", provider)):
            if not value:
                raise TrackerError(f"Missing required field: {name}")

        if self.active_count >= self.settings.max_active_trackers:
            raise TrackerError("Maximum active trackers exceeded")

        estimate = await self.estimator.estimate_message_credits(
            content,
            model,
            provider,
            system_prompt=system_prompt,
            conversation_history=conversation_history,
            attachments=attachments,
            unit_count=unit_count,
        )
        amount = max(1, self.estimator.reservation_amount(estimate))

        context = context or OperationContext()
        context = context.model_copy(update={
            "conversation_id": conversation_id or context.conversation_id,
            "message_id": message_id or context.message_id,
        })

        reservation = (await self.ledger.reserve(
            user_id,
            amount,
            reservation_context=ReservationContext(
                model=model,
                provider=provider,
                estimated_units=estimate.input_units + estimate.estimated_output_units,
                operation_type="chat_completion",
                token_count_method=estimate.token_count_method,
                buffer_multiplier=estimate.buffer_multiplier,
                confidence=estimate.confidence,
            ),
            context=context,
            reservation_type=ReservationType.STREAMING,
            ttl_minutes=ttl_minutes,
        )).unwrap()

        tracker = StreamTracker(
            reservation_id=reservation.reservation_id,
            user_id=user_id,
            model=model,
            provider=provider,
            pricing=await self.estimator.pricing.get_pricing(model, provider),
            estimate=estimate,
            credits_reserved=amount,
            expires_at=reservation.expires_at,
            conversation_id=context.conversation_id,
            message_id=context.message_id,
            input_units=estimate.input_units,
        )
        self.trackers[tracker.reservation_id] = tracker
        self._count(provider, "started")

        logger.info(f"Started tracking stream {tracker.reservation_id} for {user_id}: {amount} credits reserved")
        return tracker

    def update_with_chunk(self, tracker_id: str, chunk: str) -> dict:
        """Add a received chunk and refresh the running usage estimate."""
        tracker = self._get(tracker_id)
        if tracker.status != "active":
            raise TrackerError(f"Cannot update inactive tracker: {tracker.status}")

        tracker.chunks_received += 1
        tracker.total_chars += len(chunk)
        tracker.last_update = utc_now()
        tracker.output_units = self.units_from_chars(tracker.total_chars, tracker.provider)
        tracker.credits_used = self.estimator.calculate_credits(
            tracker.input_units, tracker.output_units, tracker.pricing
        ).actual_credits

        ratio = tracker.usage_ratio
        approaching_limit = ratio > USAGE_WARNING_RATIO
        if approaching_limit:
            logger.warning(f"Stream approaching credit limit: {ratio:.0%} used for tracker {tracker_id}")

        return {
            "tracker_id": tracker_id,
            "chunks_received": tracker.chunks_received,
            "output_units_estimated": tracker.output_units,
            "credits_used": tracker.credits_used,
            "credits_remaining": tracker.credits_reserved - tracker.credits_used,
            "usage_ratio": round(ratio * 100, 2),
            "is_approaching_limit": approaching_limit,
        }

    async def complete(
        self,
        tracker_id: str,
        output_units: Optional[int] = None,
        total_text: Optional[str] = None,
    ) -> SettlementResult:
        """
        Settle the reservation with the final usage.

        Reported output units win over an estimate from the full text, which
        wins over the running estimate. If settlement fails the reservation is
        cancelled and the error is re-raised.
        """
        tracker = self._get(tracker_id)
        if tracker.status != "active":
            raise TrackerError(f"Cannot complete inactive tracker: {tracker.status}")
        tracker.status = "completing"

        try:
            if output_units is not None:
                final_output = output_units
            elif total_text is not None:
                final_output = self.units_from_chars(len(total_text), tracker.provider)
            else:
                final_output = tracker.output_units

            calculation = await self.estimator.credits_for_usage(
                tracker.model, tracker.provider, tracker.input_units, final_output
            )
            processing_ms = int((utc_now() - tracker.started_at).total_seconds() * 1000)

            settlement = (await self.ledger.settle(
                tracker.reservation_id,
                calculation.chargeable_credits,
                UsageData(
                    input_units=tracker.input_units,
                    output_units=final_output,
                    processing_time_ms=processing_ms,
                    metadata={"chunks_received": tracker.chunks_received},
                ),
            )).unwrap()
        except Exception as e:
            tracker.status = "failed"
            tracker.finished_at = utc_now()
            tracker.errors.append(str(e))
            self._count(tracker.provider, "failed")
            logger.error(f"Stream completion failed for tracker {tracker_id}: {e}")

            cancel = await self.ledger.cancel(tracker.reservation_id, f"Streaming completion failed: {e}")
            if not cancel.ok:
                logger.error(f"Failed to cancel reservation {tracker.reservation_id}: {cancel.error.message}")
            raise

        tracker.status = "completed"
        tracker.output_units = final_output
        tracker.credits_used = calculation.actual_credits
        tracker.credits_charged = calculation.chargeable_credits
        tracker.finished_at = utc_now()
        self._count(tracker.provider, "completed")
        return settlement

    async def cancel(self, tracker_id: str, reason: str = "User cancelled") -> CancelResult:
        """Cancel a tracked stream and refund its reservation."""
        tracker = self._get(tracker_id)
        result = await self.ledger.cancel(tracker.reservation_id, reason)

        tracker.finished_at = utc_now()
        try:
            cancellation = result.unwrap()
        except LedgerOperationError:
            tracker.status = "failed"
            raise

        tracker.status = "cancelled"
        self._count(tracker.provider, "cancelled")
        return cancellation

    def get_status(self, tracker_id: str) -> Optional[dict]:
        """Snapshot of a tracker, or None if unknown."""
        tracker = self.trackers.get(tracker_id)
        if tracker is None:
            return None

        return {
            "tracker_id": tracker_id,
            "status": tracker.status,
            "elapsed_seconds": round((utc_now() - tracker.started_at).total_seconds(), 2),
            "units": {
                "input": tracker.input_units,
                "output": tracker.output_units,
                "estimated_output": tracker.estimate.estimated_output_units,
            },
            "credits": {
                "reserved": tracker.credits_reserved,
                "used": tracker.credits_used,
                "remaining": tracker.credits_reserved - tracker.credits_used,
            },
            "chunks_received": tracker.chunks_received,
            "total_chars": tracker.total_chars,
            "streaming_rate": round(tracker.streaming_rate, 2),
            "errors": len(tracker.errors),
            "last_update": tracker.last_update,
        }

    def get_stats(self) -> dict:
        by_provider: dict[str, dict[str, int]] = {}
        totals: Counter = Counter()
        for (provider, event), count in self.counters.items():
            by_provider.setdefault(provider, {})[event] = count
            totals[event] += count

        return {
            "active_trackers": self.active_count,
            "tracked": len(self.trackers),
            "total_started": totals["started"],
            "total_completed": totals["completed"],
            "total_failed": totals["failed"],
            "total_cancelled": totals["cancelled"],
            "by_provider": by_provider,
        }

    async def cleanup_stale(self, max_age_minutes: Optional[float] = None, now: Optional[datetime] = None) -> dict:
        """
        Cancel trackers with no activity for max_age_minutes and drop finished
        trackers past the retention window.

        Returns:
            Dict with found, cleaned and errors
        """
        now = now or utc_now()
        max_age = timedelta(minutes=max_age_minutes or self.settings.tracker_stale_minutes)
        retention = timedelta(seconds=self.settings.tracker_retention_seconds)

        results = {"found": 0, "cleaned": 0, "errors": []}
        for tracker_id, tracker in list(self.trackers.items()):
            if tracker.status == "active":
                if now - tracker.last_update < max_age:
                    continue
                results["found"] += 1
                try:
                    await self.cancel(tracker_id, "Stale tracker cleanup")
                except Exception as e:
                    logger.error(f"Failed to cancel stale tracker {tracker_id}: {e}")
                    results["errors"].append({"tracker_id": tracker_id, "error": str(e)})
                    continue
                del self.trackers[tracker_id]
                results["cleaned"] += 1
            elif tracker.finished_at is not None and now - tracker.finished_at >= retention:
                results["found"] += 1
                del self.trackers[tracker_id]
                results["cleaned"] += 1

        if results["found"]:
            logger.info(f"Stale tracker cleanup: {results['cleaned']} of {results['found']} removed")
        return results
