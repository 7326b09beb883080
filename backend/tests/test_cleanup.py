"""Tests for the reservation cleanup service."""

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import update

from creditledger.core.cleanup import MAX_RECORDED_ERRORS, ReservationCleanupService
from creditledger.core.tracker import StreamingUsageTracker
from creditledger.db.models import CreditReservationModel, utc_now
from creditledger.db.repository import ReservationRepository
from creditledger.models.credits import ReservationContext

CONTEXT = ReservationContext(model="gpt-4o", provider="openai")


@pytest.fixture
def tracker(ledger, estimator):
    return StreamingUsageTracker(ledger, estimator)


@pytest.fixture
def cleanup(ledger, tracker):
    return ReservationCleanupService(ledger, tracker)


async def backdate(ledger, reservation_ids: list[str]) -> None:
    async with ledger.db.transaction() as session:
        await session.execute(
            update(CreditReservationModel)
            .where(CreditReservationModel.id.in_(reservation_ids))
            .values(expires_at=utc_now() - timedelta(minutes=5))
        )


class TestRunOnce:
    """Test a single cleanup cycle."""

    @pytest.mark.asyncio
    async def test_expired_reservations_released(self, ledger, cleanup, user_id):
        expired = [
            (await ledger.reserve(user_id, amount, reservation_context=CONTEXT)).unwrap().reservation_id
            for amount in (10, 20, 30)
        ]
        active = (await ledger.reserve(user_id, 40, reservation_context=CONTEXT)).unwrap().reservation_id
        await backdate(ledger, expired)

        results = await cleanup.run_once()

        assert results["expired_reservations"]["processed"] == 3
        assert results["expired_reservations"]["refunded"] == Decimal("60")
        assert (await ledger.check_balance(user_id, 0)).value.balance == Decimal("960")

        async with ledger.db.session() as session:
            repo = ReservationRepository(session)
            assert {(await repo.get(r)).status for r in expired} == {"expired"}
            assert (await repo.get(active)).status == "active"

        stats = cleanup.get_stats()
        assert stats["total_runs"] == 1
        assert stats["total_reservations_processed"] == 3
        assert stats["total_credits_refunded"] == Decimal("60")
        assert stats["last_run_time"] is not None

    @pytest.mark.asyncio
    async def test_stale_trackers_purged(self, ledger, cleanup, tracker, user_id):
        stream = await tracker.start_tracking(user_id, "Hello there", "gpt-4o", "openai")
        stream.last_update = utc_now() - timedelta(minutes=45)

        results = await cleanup.run_once()

        assert results["stale_trackers"]["cleaned"] == 1
        assert stream.reservation_id not in tracker.trackers
        assert cleanup.get_stats()["total_trackers_cleaned"] == 1
        assert (await ledger.check_balance(user_id, 0)).value.balance == Decimal("1000")

    @pytest.mark.asyncio
    async def test_works_without_tracker(self, ledger, user_id):
        service = ReservationCleanupService(ledger)

        results = await service.run_once()

        assert results["stale_trackers"] == {"found": 0, "cleaned": 0, "errors": []}


class TestLifecycle:
    """Test start/stop and health reporting."""

    @pytest.mark.asyncio
    async def test_start_runs_immediately_and_stop_is_idempotent(self, cleanup, user_id):
        await cleanup.start(interval_minutes=5)
        await cleanup.start(interval_minutes=5)

        assert cleanup.is_running
        assert cleanup.get_stats()["total_runs"] == 1
        assert cleanup.get_health_status()["status"] == "healthy"

        await cleanup.stop()
        await cleanup.stop()

        assert not cleanup.is_running
        assert cleanup.get_health_status()["status"] == "unhealthy"

    @pytest.mark.asyncio
    async def test_unhealthy_when_last_run_is_old(self, cleanup):
        await cleanup.start(interval_minutes=5)
        cleanup.last_run_time = utc_now() - timedelta(minutes=11)

        assert cleanup.get_health_status()["status"] == "unhealthy"
        await cleanup.stop()

    def test_error_buffer_is_capped(self, cleanup):
        for i in range(MAX_RECORDED_ERRORS + 10):
            cleanup._record_error("reservation_cleanup_error", f"error {i}")

        errors = cleanup.get_stats()["errors"]
        assert len(errors) == MAX_RECORDED_ERRORS
        assert errors[-1]["message"] == f"error {MAX_RECORDED_ERRORS + 9}"

        cleanup.reset_stats()
        assert cleanup.get_stats()["errors"] == []
        assert cleanup.get_stats()["total_runs"] == 0
