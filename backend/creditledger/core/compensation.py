"""Queued refunds for failed operations that were charged without a reservation."""

import logging
from decimal import Decimal
from typing import Optional

from .audit import build_audit_entry
from .credits import quantize_credits
from .errors import LedgerErrorKind, LedgerResult
from .ledger import LedgerEngine
from ..db.models import CreditCompensationModel, generate_uuid, utc_now
from ..db.repository import CompensationRepository, UserRepository
from ..models.credits import (
    AuditOperation,
    CompensationOutcome,
    CompensationStatus,
    RelatedEntityType,
)

logger = logging.getLogger(__name__)


class CompensationError(Exception):
    """A single compensation could not be applied."""


class CompensationProcessor:
    """
    Creates compensation records and applies pending ones in batches.

    Each compensation is applied in its own transaction. A failure marks that
    compensation as failed and the batch moves on to the next one.
    """

    def __init__(self, ledger: LedgerEngine):
        self.ledger = ledger
        self.db = ledger.db
        self.settings = ledger.settings

    async def create_compensation(
        self,
        user_id: str,
        credits,
        reason: str,
        message_id: Optional[str] = None,
    ) -> LedgerResult[CreditCompensationModel]:
        """
        Queue a refund for a user.

        Args:
            user_id: User ID string
            credits: Credits to refund
            reason: Why the user is being compensated
            message_id: Message the failed operation belonged to

        Returns:
            LedgerResult with the pending CreditCompensationModel
        """
        check = self.ledger.validate_move(user_id, credits)
        if not check.ok:
            return LedgerResult(error=check.error)
        if not reason:
            return LedgerResult.failure(LedgerErrorKind.INVALID_INPUT, "Compensation reason is required")

        async with self.db.transaction() as session:
            if await UserRepository(session).get(user_id) is None:
                await session.rollback()
                return LedgerResult.failure(LedgerErrorKind.NOT_FOUND, "User not found", user_id=user_id)

            compensation = CreditCompensationModel(
                id=generate_uuid(),
                user_id=user_id,
                message_id=message_id,
                credits_to_refund=check.value,
                reason=reason,
                status=CompensationStatus.PENDING.value,
            )
            session.add(compensation)

        logger.info(f"Created compensation {compensation.id} for user {user_id}: {check.value} credits")
        return LedgerResult.success(compensation)

    async def process_pending(self, batch_size: Optional[int] = None) -> list[CompensationOutcome]:
        """
        Apply pending compensations, oldest first.

        Args:
            batch_size: Maximum number of compensations to process

        Returns:
            One CompensationOutcome per compensation attempted
        """
        limit = batch_size or self.settings.compensation_batch_size

        async with self.db.session() as session:
            compensation_ids = await CompensationRepository(session).list_pending_ids(limit)

        outcomes = []
        for compensation_id in compensation_ids:
            try:
                outcome = await self._apply(compensation_id)
            except Exception as e:
                logger.error(f"Failed to process compensation {compensation_id}: {e}")
                outcome = await self._mark_failed(compensation_id, str(e))

            if outcome is not None:
                outcomes.append(outcome)

        if outcomes:
            succeeded = sum(1 for o in outcomes if o.success)
            logger.info(f"Processed {len(outcomes)} compensations ({succeeded} succeeded)")
        return outcomes

    async def _apply(self, compensation_id: str) -> Optional[CompensationOutcome]:
        async with self.db.transaction() as session:
            compensation = await CompensationRepository(session).get_for_update(compensation_id)
            if compensation is None or compensation.status != CompensationStatus.PENDING.value:
                await session.rollback()
                return None  # Handled by a concurrent run

            user = await UserRepository(session).get_for_update(compensation.user_id)
            if user is None:
                raise CompensationError("User not found")

            credits = quantize_credits(compensation.credits_to_refund)
            current_balance = quantize_credits(user.credit_balance)
            new_balance = current_balance + credits
            user.credit_balance = new_balance

            session.add(build_audit_entry(
                user_id=compensation.user_id,
                operation=AuditOperation.REFUND,
                amount=credits,
                balance_before=current_balance,
                balance_after=new_balance,
                reason=f"Compensation: {compensation.reason}",
                entity_type=RelatedEntityType.COMPENSATION,
                entity_id=compensation.id,
                metadata={
                    "compensation_id": compensation.id,
                    "original_message_id": compensation.message_id,
                },
            ))

            compensation.status = CompensationStatus.PROCESSED.value
            compensation.processed_at = utc_now()
            user_id = compensation.user_id

        logger.info(f"Applied compensation {compensation_id}: refunded {credits} credits to {user_id}")
        return CompensationOutcome(
            compensation_id=compensation_id,
            user_id=user_id,
            success=True,
            credits_refunded=credits,
        )

    async def _mark_failed(self, compensation_id: str, error: str) -> Optional[CompensationOutcome]:
        """Record a failure in its own transaction, after the item transaction rolled back."""
        async with self.db.transaction() as session:
            compensation = await CompensationRepository(session).get_for_update(compensation_id)
            if compensation is None:
                await session.rollback()
                return None

            compensation.status = CompensationStatus.FAILED.value
            compensation.error_reason = error
            compensation.processed_at = utc_now()
            user_id = compensation.user_id

        return CompensationOutcome(
            compensation_id=compensation_id,
            user_id=user_id,
            success=False,
            credits_refunded=Decimal("0"),
            error=error,
        )
