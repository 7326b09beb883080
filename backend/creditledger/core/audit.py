"""
Audit trail construction and ledger invariant checks.

Every balance mutation produces exactly one audit entry. The checks here are
run before anything is flushed; a failure raises ConsistencyViolationError,
which aborts the surrounding transaction.
"""

import logging
from decimal import Decimal
from typing import Optional

from .credits import calculate_chargeable_credits
from .errors import ConsistencyViolationError
from ..db.models import (
    CreditAuditLogModel,
    CreditReservationModel,
    ReservationSettlementModel,
    UsageRecordModel,
)
from ..models.credits import AuditOperation, OperationContext, RelatedEntityType, ReservationStatus

logger = logging.getLogger(__name__)

AUDIT_TOLERANCE = Decimal("0.0001")
SETTLEMENT_TOLERANCE = Decimal("0.01")
COST_TOLERANCE = Decimal("0.00000001")

# Operations that take credits away from the balance. Everything else adds,
# including cancel, which returns the held amount.
DEBIT_OPERATIONS = frozenset({AuditOperation.DEDUCT, AuditOperation.RESERVE})


def _violation(message: str, **details) -> ConsistencyViolationError:
    logger.critical(f"Ledger consistency violation: {message} {details}")
    return ConsistencyViolationError(message, {k: str(v) for k, v in details.items()})


def expected_balance_after(operation: AuditOperation, balance_before: Decimal, amount: Decimal) -> Decimal:
    """Balance implied by an operation's sign rule."""
    if AuditOperation(operation) in DEBIT_OPERATIONS:
        return balance_before - amount
    return balance_before + amount


def verify_audit_arithmetic(
    operation: AuditOperation,
    balance_before: Decimal,
    amount: Decimal,
    balance_after: Decimal,
) -> None:
    """Raise ConsistencyViolationError if the entry does not add up."""
    expected = expected_balance_after(operation, Decimal(balance_before), Decimal(amount))
    if abs(Decimal(balance_after) - expected) > AUDIT_TOLERANCE:
        raise _violation(
            "Balance calculation mismatch in audit log",
            operation=AuditOperation(operation).value,
            balance_before=balance_before,
            amount=amount,
            balance_after=balance_after,
            expected=expected,
        )


def build_audit_entry(
    user_id: str,
    operation: AuditOperation,
    amount: Decimal,
    balance_before: Decimal,
    balance_after: Decimal,
    reason: str,
    entity_type: Optional[RelatedEntityType] = None,
    entity_id: Optional[str] = None,
    context: Optional[OperationContext] = None,
    metadata: Optional[dict] = None,
) -> CreditAuditLogModel:
    """
    Create a verified audit entry.

    The caller adds it to the same session as the balance update so both are
    committed or rolled back together.
    """
    verify_audit_arithmetic(operation, balance_before, amount, balance_after)

    context = context or OperationContext()
    entry_metadata = dict(context.metadata)
    entry_metadata.update(metadata or {})
    entry_metadata["schema_version"] = 1

    resolved_type = entity_type or context.entity_type
    return CreditAuditLogModel(
        user_id=user_id,
        operation=AuditOperation(operation).value,
        credits_amount=amount,
        balance_before=balance_before,
        balance_after=balance_after,
        related_entity_type=resolved_type.value if resolved_type else None,
        related_entity_id=entity_id or context.entity_id,
        reason=reason,
        entry_metadata=entry_metadata,
        ip_address=context.ip_address,
        user_agent=context.user_agent,
    )


def verify_settlement(settlement: ReservationSettlementModel) -> None:
    """Refund/excess rule for a settlement record."""
    reserved = Decimal(settlement.credits_reserved)
    used = Decimal(settlement.actual_credits_used)
    refunded = Decimal(settlement.credits_refunded)
    before = Decimal(settlement.balance_before)
    after = Decimal(settlement.balance_after)

    if used > reserved:
        if refunded != 0:
            raise _violation(
                "When usage exceeds reservation, refund must be 0",
                reserved=reserved, used=used, refunded=refunded,
            )
        expected_after = before - (used - reserved)
    else:
        expected_refund = reserved - used
        if abs(refunded - expected_refund) > SETTLEMENT_TOLERANCE:
            raise _violation(
                "Credits refunded must equal reserved minus used",
                reserved=reserved, used=used, refunded=refunded,
            )
        expected_after = before + refunded

    if abs(after - expected_after) > SETTLEMENT_TOLERANCE:
        raise _violation(
            "Settlement balance mismatch",
            balance_before=before, balance_after=after, expected=expected_after,
        )


def verify_reservation_state(reservation: CreditReservationModel) -> None:
    """Terminal-state field requirements for a reservation."""
    status = ReservationStatus(reservation.status)
    if status == ReservationStatus.SETTLED:
        if reservation.settled_at is None:
            raise _violation("Settled reservations must have settled_at", reservation_id=reservation.id)
        if reservation.actual_credits_used is None:
            raise _violation("Settled reservations must have actual_credits_used", reservation_id=reservation.id)
    elif status == ReservationStatus.EXPIRED and reservation.actual_credits_used is not None:
        raise _violation("Expired reservations must not have actual_credits_used", reservation_id=reservation.id)


def verify_usage_record(record: UsageRecordModel) -> None:
    """Unit, cost and charge consistency for a usage record."""
    if record.total_units != record.input_units + record.output_units:
        raise _violation("Total units must equal input plus output units", record_id=record.id)

    total_cost = Decimal(record.total_cost_usd)
    if abs(total_cost - (Decimal(record.input_cost_usd) + Decimal(record.output_cost_usd))) > COST_TOLERANCE:
        raise _violation("Total cost must equal input cost plus output cost", record_id=record.id)

    expected_charge = calculate_chargeable_credits(record.credits_used)
    if record.credits_charged != expected_charge:
        raise _violation(
            "Credits charged must be ceiling of credits used",
            credits_used=record.credits_used,
            credits_charged=record.credits_charged,
            expected=expected_charge,
        )
