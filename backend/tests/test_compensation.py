"""Tests for queued compensation refunds."""

from decimal import Decimal

import pytest
from sqlalchemy import delete

from creditledger.core.compensation import CompensationProcessor
from creditledger.core.errors import LedgerErrorKind
from creditledger.db.models import UserModel
from creditledger.db.repository import CompensationRepository
from creditledger.models.credits import AuditOperation


@pytest.fixture
def processor(ledger):
    return CompensationProcessor(ledger)


class TestCompensation:
    """Test creating and applying compensations."""

    @pytest.mark.asyncio
    async def test_pending_compensation_is_applied(self, ledger, processor, user_id):
        compensation = (await processor.create_compensation(
            user_id, 25, "Model call failed after charge", message_id="msg-9"
        )).unwrap()
        assert compensation.status == "pending"

        outcomes = await processor.process_pending()

        assert len(outcomes) == 1
        assert outcomes[0].success
        assert outcomes[0].credits_refunded == Decimal("25")
        assert (await ledger.check_balance(user_id, 0)).value.balance == Decimal("1025")

        entries = await ledger.get_audit_trail(user_id, operation=AuditOperation.REFUND)
        assert len(entries) == 1
        assert entries[0].related_entity_type == "compensation"
        assert entries[0].related_entity_id == compensation.id
        assert entries[0].reason == "Compensation: Model call failed after charge"

        async with ledger.db.session() as session:
            row = await CompensationRepository(session).get(compensation.id)
        assert row.status == "processed"
        assert row.processed_at is not None

    @pytest.mark.asyncio
    async def test_processed_compensations_are_not_reapplied(self, ledger, processor, user_id):
        await processor.create_compensation(user_id, 10, "Timeout")
        await processor.process_pending()

        assert await processor.process_pending() == []
        assert (await ledger.check_balance(user_id, 0)).value.balance == Decimal("1010")

    @pytest.mark.asyncio
    async def test_failure_is_isolated(self, ledger, processor, user_id):
        await ledger.create_user("user-2", initial_credits=0)
        doomed = (await processor.create_compensation("user-2", 5, "Provider error")).unwrap()
        kept = (await processor.create_compensation(user_id, 5, "Provider error")).unwrap()

        async with ledger.db.transaction() as session:
            await session.execute(delete(UserModel).where(UserModel.id == "user-2"))

        outcomes = {o.compensation_id: o for o in await processor.process_pending()}

        assert not outcomes[doomed.id].success
        assert outcomes[doomed.id].error == "User not found"
        assert outcomes[kept.id].success

        async with ledger.db.session() as session:
            row = await CompensationRepository(session).get(doomed.id)
        assert row.status == "failed"
        assert row.error_reason == "User not found"

    @pytest.mark.asyncio
    async def test_validation(self, processor, user_id):
        unknown = await processor.create_compensation("nobody", 5, "Timeout")
        too_large = await processor.create_compensation(user_id, 5000, "Timeout")
        negative = await processor.create_compensation(user_id, -5, "Timeout")
        no_reason = await processor.create_compensation(user_id, 5, "")

        assert unknown.error.kind == LedgerErrorKind.NOT_FOUND
        assert too_large.error.kind == LedgerErrorKind.SAFETY_LIMIT_EXCEEDED
        assert negative.error.kind == LedgerErrorKind.INVALID_INPUT
        assert no_reason.error.kind == LedgerErrorKind.INVALID_INPUT

    @pytest.mark.asyncio
    async def test_batch_size(self, processor, user_id):
        for _ in range(3):
            await processor.create_compensation(user_id, 1, "Timeout")

        assert len(await processor.process_pending(batch_size=2)) == 2
        assert len(await processor.process_pending(batch_size=2)) == 1
