"""Tests for the ledger engine: deduct, reserve, settle, cancel and expiry."""

import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from creditledger.core.errors import LedgerErrorKind, LedgerOperationError
from creditledger.core.ledger import is_transient_conflict, parse_credits
from creditledger.db.models import utc_now
from creditledger.db.repository import AuditRepository, ReservationRepository, UserRepository
from creditledger.models.credits import (
    AuditOperation,
    OperationContext,
    ReservationContext,
    ReservationType,
    SettlementType,
    UsageData,
    UsageInput,
)

STREAMING_CONTEXT = ReservationContext(model="gpt-4o", provider="openai", estimated_units=1000)


async def balance_of(ledger, user_id: str) -> Decimal:
    async with ledger.db.session() as session:
        user = await UserRepository(session).get(user_id)
        return Decimal(user.credit_balance)


class TestDeduct:
    """Test atomic deductions."""

    @pytest.mark.asyncio
    async def test_deduct_writes_balance_and_audit_entry(self, ledger, user_id):
        result = await ledger.deduct(user_id, 250, OperationContext(message_id="msg-1", ip_address="10.0.0.1"))

        assert result.ok
        assert result.value.previous_balance == Decimal("1000")
        assert result.value.new_balance == Decimal("750")
        assert await balance_of(ledger, user_id) == Decimal("750")

        entries = await ledger.get_audit_trail(user_id, operation=AuditOperation.DEDUCT)
        assert len(entries) == 1
        assert entries[0].balance_before == Decimal("1000")
        assert entries[0].balance_after == Decimal("750")
        assert entries[0].related_entity_id == "msg-1"
        assert entries[0].ip_address == "10.0.0.1"
        assert entries[0].entry_metadata["schema_version"] == 1

    @pytest.mark.asyncio
    async def test_insufficient_funds_leaves_balance_untouched(self, ledger, user_id):
        await ledger.deduct(user_id, 900)

        result = await ledger.deduct(user_id, 200)

        assert not result.ok
        assert result.error.kind == LedgerErrorKind.INSUFFICIENT_FUNDS
        assert await balance_of(ledger, user_id) == Decimal("100")
        assert len(await ledger.get_audit_trail(user_id, operation=AuditOperation.DEDUCT)) == 1

    @pytest.mark.asyncio
    async def test_unknown_user(self, ledger):
        result = await ledger.deduct("nobody", 10)

        assert result.error.kind == LedgerErrorKind.NOT_FOUND

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -5, "abc", None, float("nan")])
    async def test_invalid_amounts_rejected(self, ledger, user_id, amount):
        result = await ledger.deduct(user_id, amount)

        assert result.error.kind == LedgerErrorKind.INVALID_INPUT
        assert await balance_of(ledger, user_id) == Decimal("1000")

    @pytest.mark.asyncio
    async def test_empty_user_id_rejected(self, ledger):
        result = await ledger.deduct("", 10)

        assert result.error.kind == LedgerErrorKind.INVALID_INPUT

    @pytest.mark.asyncio
    async def test_safety_ceiling(self, ledger, user_id):
        await ledger.grant(user_id, 1000)

        result = await ledger.deduct(user_id, 1001)

        assert result.error.kind == LedgerErrorKind.SAFETY_LIMIT_EXCEEDED
        assert await balance_of(ledger, user_id) == Decimal("2000")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", ["1e25", Decimal("1e40"), 10**30])
    async def test_huge_amounts_hit_safety_ceiling(self, ledger, user_id, amount):
        result = await ledger.deduct(user_id, amount)

        assert result.error.kind == LedgerErrorKind.SAFETY_LIMIT_EXCEEDED
        assert await balance_of(ledger, user_id) == Decimal("1000")

    @pytest.mark.asyncio
    async def test_huge_amounts_rejected_by_reserve_and_grant(self, ledger, user_id):
        reserve = await ledger.reserve(user_id, "1e25", reservation_context=STREAMING_CONTEXT)
        grant = await ledger.grant(user_id, "1e25")

        assert reserve.error.kind == LedgerErrorKind.SAFETY_LIMIT_EXCEEDED
        assert grant.error.kind == LedgerErrorKind.SAFETY_LIMIT_EXCEEDED

    @pytest.mark.asyncio
    async def test_concurrent_deductions_never_overdraw(self, ledger, user_id):
        results = await asyncio.gather(*[ledger.deduct(user_id, 150) for _ in range(10)])

        successes = [r for r in results if r.ok]
        failures = [r for r in results if not r.ok]
        assert len(successes) <= 6
        assert all(
            r.error.kind in (LedgerErrorKind.INSUFFICIENT_FUNDS, LedgerErrorKind.CONFLICT)
            for r in failures
        )
        assert await balance_of(ledger, user_id) == Decimal("1000") - 150 * len(successes)

    @pytest.mark.asyncio
    async def test_unwrap_raises_for_failures(self, ledger):
        result = await ledger.deduct("nobody", 10)

        with pytest.raises(LedgerOperationError) as exc_info:
            result.unwrap()
        assert exc_info.value.error.kind == LedgerErrorKind.NOT_FOUND


class TestGrantAndBalance:
    """Test credit additions and balance checks."""

    @pytest.mark.asyncio
    async def test_grant_purchase(self, ledger, user_id):
        result = await ledger.grant(user_id, 500, AuditOperation.PURCHASE, OperationContext(reason="Credit pack"))

        assert result.ok
        assert result.value.new_balance == Decimal("1500")
        entries = await ledger.get_audit_trail(user_id, operation=AuditOperation.PURCHASE)
        assert entries[0].reason == "Credit pack"

    @pytest.mark.asyncio
    async def test_grant_rejects_debit_operations(self, ledger, user_id):
        result = await ledger.grant(user_id, 10, AuditOperation.DEDUCT)

        assert result.error.kind == LedgerErrorKind.INVALID_INPUT

    @pytest.mark.asyncio
    async def test_check_balance(self, ledger, user_id):
        enough = await ledger.check_balance(user_id, 999)
        too_much = await ledger.check_balance(user_id, 1001)
        missing = await ledger.check_balance("nobody", 1)

        assert enough.value.has_credits
        assert enough.value.subscription_tier == "free"
        assert not too_much.value.has_credits
        assert too_much.value.reason == "Insufficient credits"
        assert not missing.value.has_credits
        assert missing.value.reason == "User not found"

    @pytest.mark.asyncio
    async def test_create_user_audits_initial_allocation(self, ledger, user_id):
        entries = await ledger.get_audit_trail(user_id)

        assert len(entries) == 1
        assert entries[0].operation == "refresh"
        assert entries[0].balance_before == Decimal("0")
        assert entries[0].balance_after == Decimal("1000")

    @pytest.mark.asyncio
    async def test_create_user_twice(self, ledger, user_id):
        result = await ledger.create_user(user_id)

        assert result.error.kind == LedgerErrorKind.INVALID_INPUT


class TestReservations:
    """Test the reserve / settle / cancel lifecycle."""

    @pytest.mark.asyncio
    async def test_settle_under_reservation_refunds_difference(self, ledger, user_id):
        reservation = (await ledger.reserve(
            user_id, 50, reservation_context=STREAMING_CONTEXT, ttl_minutes=15
        )).unwrap()
        assert reservation.new_balance == Decimal("950")

        result = await ledger.settle(
            reservation.reservation_id, 30, UsageData(input_units=600, output_units=400)
        )

        assert result.ok
        settlement = result.value
        assert settlement.credits_refunded == Decimal("20")
        assert settlement.settlement_type == SettlementType.COMPLETED
        assert settlement.new_balance == Decimal("970")
        assert settlement.accuracy_metrics["accuracy_category"] == "excellent"

        async with ledger.db.session() as session:
            repo = ReservationRepository(session)
            row = await repo.get(reservation.reservation_id)
            settlements = await repo.get_settlements(reservation.reservation_id)
        assert row.status == "settled"
        assert row.actual_credits_used == Decimal("30")
        assert row.settled_at is not None
        assert len(settlements) == 1
        assert settlements[0].settlement_type == "completed"

    @pytest.mark.asyncio
    async def test_settle_over_reservation_deducts_excess(self, ledger, user_id):
        reservation = (await ledger.reserve(user_id, 50, reservation_context=STREAMING_CONTEXT)).unwrap()

        settlement = (await ledger.settle(reservation.reservation_id, 70)).unwrap()

        assert settlement.credits_refunded == Decimal("0")
        assert settlement.settlement_type == SettlementType.EXCEEDED
        assert settlement.new_balance == Decimal("930")

        async with ledger.db.session() as session:
            entries = await AuditRepository(session).get_for_entity("reservation", reservation.reservation_id)
        assert [e.operation for e in entries] == ["reserve", "deduct"]
        assert entries[1].credits_amount == Decimal("20")
        assert "exceeded" in entries[1].reason

    @pytest.mark.asyncio
    async def test_expiry_in_the_past_rejected(self, ledger, user_id):
        result = await ledger.reserve(
            user_id, 50,
            reservation_context=STREAMING_CONTEXT,
            expires_at=utc_now() - timedelta(minutes=1),
        )

        assert result.error.kind == LedgerErrorKind.INVALID_INPUT
        assert await balance_of(ledger, user_id) == Decimal("1000")

    @pytest.mark.asyncio
    async def test_expiry_beyond_one_hour_rejected(self, ledger, user_id):
        result = await ledger.reserve(
            user_id, 50,
            reservation_context=STREAMING_CONTEXT,
            expires_at=utc_now() + timedelta(hours=2),
        )

        assert result.error.kind == LedgerErrorKind.INVALID_INPUT

    @pytest.mark.asyncio
    async def test_ttl_is_capped(self, ledger, user_id):
        before = utc_now()
        reservation = (await ledger.reserve(
            user_id, 10, reservation_context=STREAMING_CONTEXT, ttl_minutes=240
        )).unwrap()

        assert reservation.expires_at <= utc_now() + timedelta(minutes=60)
        assert reservation.expires_at > before + timedelta(minutes=59)

    @pytest.mark.asyncio
    async def test_huge_ttl_is_capped(self, ledger, user_id):
        reservation = (await ledger.reserve(
            user_id, 10, reservation_type=ReservationType.MANUAL, ttl_minutes=1e15
        )).unwrap()

        assert reservation.expires_at <= utc_now() + timedelta(minutes=60)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("ttl", [float("inf"), float("nan"), 0, -5])
    async def test_invalid_ttl_rejected(self, ledger, user_id, ttl):
        result = await ledger.reserve(user_id, 10, reservation_type=ReservationType.MANUAL, ttl_minutes=ttl)

        assert result.error.kind == LedgerErrorKind.INVALID_INPUT
        assert await balance_of(ledger, user_id) == Decimal("1000")

    @pytest.mark.asyncio
    async def test_settle_rejects_unrepresentable_usage(self, ledger, user_id):
        reservation = (await ledger.reserve(user_id, 50, reservation_context=STREAMING_CONTEXT)).unwrap()

        result = await ledger.settle(reservation.reservation_id, "1e25")

        assert result.error.kind == LedgerErrorKind.INVALID_INPUT
        assert await balance_of(ledger, user_id) == Decimal("950")
        async with ledger.db.session() as session:
            row = await ReservationRepository(session).get(reservation.reservation_id)
        assert row.status == "active"

    @pytest.mark.asyncio
    async def test_streaming_reservation_requires_model_and_provider(self, ledger, user_id):
        result = await ledger.reserve(user_id, 10, reservation_context=ReservationContext(model="gpt-4o"))

        assert result.error.kind == LedgerErrorKind.INVALID_INPUT
        assert result.error.details["missing"] == ["provider"]

    @pytest.mark.asyncio
    async def test_manual_reservation_needs_no_model(self, ledger, user_id):
        result = await ledger.reserve(user_id, 10, reservation_type=ReservationType.MANUAL)

        assert result.ok

    @pytest.mark.asyncio
    async def test_reservation_ceiling(self, ledger, user_id):
        result = await ledger.reserve(user_id, 1500, reservation_context=STREAMING_CONTEXT)

        assert result.error.kind == LedgerErrorKind.SAFETY_LIMIT_EXCEEDED

    @pytest.mark.asyncio
    async def test_reserve_insufficient_funds(self, ledger, user_id):
        await ledger.deduct(user_id, 990)

        result = await ledger.reserve(user_id, 50, reservation_context=STREAMING_CONTEXT)

        assert result.error.kind == LedgerErrorKind.INSUFFICIENT_FUNDS

    @pytest.mark.asyncio
    async def test_double_settle_rejected(self, ledger, user_id):
        reservation = (await ledger.reserve(user_id, 50, reservation_context=STREAMING_CONTEXT)).unwrap()
        (await ledger.settle(reservation.reservation_id, 30)).unwrap()

        second = await ledger.settle(reservation.reservation_id, 10)

        assert second.error.kind == LedgerErrorKind.INVALID_STATE_TRANSITION
        assert await balance_of(ledger, user_id) == Decimal("970")

    @pytest.mark.asyncio
    async def test_settle_validation(self, ledger, user_id):
        reservation = (await ledger.reserve(user_id, 50, reservation_context=STREAMING_CONTEXT)).unwrap()

        negative = await ledger.settle(reservation.reservation_id, -1)
        unknown = await ledger.settle("missing-id", 10)

        assert negative.error.kind == LedgerErrorKind.INVALID_INPUT
        assert unknown.error.kind == LedgerErrorKind.NOT_FOUND

    @pytest.mark.asyncio
    async def test_cancel_refunds_in_full(self, ledger, user_id):
        reservation = (await ledger.reserve(user_id, 50, reservation_context=STREAMING_CONTEXT)).unwrap()

        result = await ledger.cancel(reservation.reservation_id, "Client disconnected")

        assert result.value.credits_refunded == Decimal("50")
        assert result.value.new_balance == Decimal("1000")
        async with ledger.db.session() as session:
            row = await ReservationRepository(session).get(reservation.reservation_id)
        assert row.status == "cancelled"
        assert row.error_reason == "Client disconnected"

    @pytest.mark.asyncio
    async def test_cancel_after_settle_rejected(self, ledger, user_id):
        reservation = (await ledger.reserve(user_id, 50, reservation_context=STREAMING_CONTEXT)).unwrap()
        await ledger.settle(reservation.reservation_id, 50)

        result = await ledger.cancel(reservation.reservation_id)

        assert result.error.kind == LedgerErrorKind.INVALID_STATE_TRANSITION

    @pytest.mark.asyncio
    async def test_active_reservations_listing(self, ledger, user_id):
        first = (await ledger.reserve(user_id, 10, reservation_context=STREAMING_CONTEXT)).unwrap()
        second = (await ledger.reserve(user_id, 20, reservation_type=ReservationType.BATCH,
                                       reservation_context=STREAMING_CONTEXT)).unwrap()
        await ledger.cancel(first.reservation_id)

        active = await ledger.get_active_reservations(user_id)
        streaming_only = await ledger.get_active_reservations(user_id, ReservationType.STREAMING)

        assert [r.id for r in active] == [second.reservation_id]
        assert not active[0].is_expired
        assert active[0].context["model"] == "gpt-4o"
        assert streaming_only == []


class TestExpirySweep:
    """Test releasing expired reservations."""

    @pytest.mark.asyncio
    async def test_expired_reservations_refunded(self, ledger, user_id):
        short = [
            (await ledger.reserve(user_id, 10, reservation_context=STREAMING_CONTEXT, ttl_minutes=5)).unwrap()
            for _ in range(3)
        ]
        long = (await ledger.reserve(user_id, 40, reservation_context=STREAMING_CONTEXT, ttl_minutes=60)).unwrap()

        result = await ledger.expire_reservations(now=utc_now() + timedelta(minutes=10))

        assert result.processed == 3
        assert result.total_refunded == Decimal("30")
        assert result.errors == []
        assert await balance_of(ledger, user_id) == Decimal("960")

        async with ledger.db.session() as session:
            repo = ReservationRepository(session)
            for reservation in short:
                row = await repo.get(reservation.reservation_id)
                assert row.status == "expired"
                assert row.actual_credits_used is None
            assert (await repo.get(long.reservation_id)).status == "active"

        expire_entries = await ledger.get_audit_trail(user_id, operation=AuditOperation.EXPIRE)
        assert len(expire_entries) == 3

    @pytest.mark.asyncio
    async def test_nothing_to_expire(self, ledger, user_id):
        await ledger.reserve(user_id, 10, reservation_context=STREAMING_CONTEXT)

        result = await ledger.expire_reservations()

        assert result.processed == 0
        assert await balance_of(ledger, user_id) == Decimal("990")


class TestUsageRecords:
    """Test usage recording and statistics."""

    @pytest.mark.asyncio
    async def test_credits_charged_is_ceiling(self, ledger, user_id):
        result = await ledger.record_usage(UsageInput(
            user_id=user_id, provider="openai", model="gpt-4o",
            input_units=1000, output_units=1000, message_id="msg-1",
        ))

        record = result.unwrap()
        # (1000/1000 * 0.0025 + 1000/1000 * 0.01) / 0.001 = 12.5 credits
        assert record.credits_used == Decimal("12.5")
        assert record.credits_charged == 13
        assert record.total_units == 2000
        assert record.total_cost_usd == Decimal("0.0125")

    @pytest.mark.asyncio
    async def test_duplicate_message_rejected(self, ledger, user_id):
        usage = UsageInput(
            user_id=user_id, provider="openai", model="gpt-4o",
            input_units=10, output_units=10, message_id="msg-1",
        )
        (await ledger.record_usage(usage)).unwrap()

        duplicate = await ledger.record_usage(usage)

        assert duplicate.error.kind == LedgerErrorKind.INVALID_INPUT

    @pytest.mark.asyncio
    async def test_unknown_user(self, ledger):
        result = await ledger.record_usage(UsageInput(
            user_id="nobody", provider="openai", model="gpt-4o", input_units=1, output_units=1,
        ))

        assert result.error.kind == LedgerErrorKind.NOT_FOUND

    @pytest.mark.asyncio
    async def test_usage_stats(self, ledger, user_id):
        for i in range(3):
            await ledger.record_usage(UsageInput(
                user_id=user_id, provider="openai", model="gpt-4o",
                input_units=1000, output_units=1000, message_id=f"msg-{i}",
            ))

        stats = (await ledger.get_usage_stats(user_id)).unwrap()

        assert stats.total_requests == 3
        assert stats.total_units == 6000
        assert stats.total_credits_used == Decimal("37.5")
        assert stats.current_balance == Decimal("1000")
        assert len(stats.recent_usage) == 3


class TestConflicts:
    """Test transient conflict handling."""

    def test_operational_errors_are_transient(self):
        error = OperationalError("BEGIN IMMEDIATE", {}, Exception("database is locked"))

        assert is_transient_conflict(error)

    @pytest.mark.asyncio
    async def test_conflict_returned_as_result(self, ledger):
        async def locked():
            raise OperationalError("BEGIN IMMEDIATE", {}, Exception("database is locked"))

        result = await ledger._guarded("deduct", locked())

        assert result.error.kind == LedgerErrorKind.CONFLICT

    def test_parse_credits(self):
        assert parse_credits("12.34567") == Decimal("12.3457")
        assert parse_credits(True) is None
        assert parse_credits("inf") is None
