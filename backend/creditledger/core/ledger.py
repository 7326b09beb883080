"""
Credit ledger engine.

All balance mutations go through LedgerEngine. Each mutating operation runs
in one transaction that locks the user row (and the reservation row where
relevant) before reading the balance, writes the new balance together with
exactly one audit entry, and either commits everything or nothing.

Operations return LedgerResult values. Expected failures (bad input,
insufficient funds, unknown ids, illegal state changes, safety limits,
transient lock conflicts) come back as typed errors. Broken invariants raise
ConsistencyViolationError.
"""

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation, ROUND_UP
from typing import Awaitable, Optional, TypeVar

from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError

from .audit import (
    build_audit_entry,
    verify_reservation_state,
    verify_settlement,
    verify_usage_record,
)
from .config import Settings, get_settings
from .credits import CREDIT_QUANTUM, CostEstimator, accuracy_metrics, quantize_credits
from .errors import LedgerErrorKind, LedgerResult
from ..db.database import Database
from ..db.models import (
    CreditAuditLogModel,
    CreditReservationModel,
    ReservationSettlementModel,
    UsageRecordModel,
    UserModel,
    generate_uuid,
    utc_now,
)
from ..db.repository import AuditRepository, ReservationRepository, UsageRepository, UserRepository
from ..models.credits import (
    ActiveReservation,
    AuditOperation,
    BalanceCheck,
    CancelResult,
    DeductResult,
    ExpirySweepResult,
    GrantResult,
    OperationContext,
    RelatedEntityType,
    ReservationContext,
    ReservationResult,
    ReservationStatus,
    ReservationType,
    SettlementResult,
    SettlementType,
    UsageData,
    UsageInput,
    UsageStats,
    UsageSummary,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Operations allowed through grant()
GRANT_OPERATIONS = frozenset({
    AuditOperation.PURCHASE,
    AuditOperation.REFRESH,
    AuditOperation.ADJUSTMENT,
    AuditOperation.REFUND,
})

# SQLSTATEs for serialization failure and deadlock
TRANSIENT_SQLSTATES = frozenset({"40001", "40P01"})


def is_transient_conflict(exc: DBAPIError) -> bool:
    """Whether a database error is a lock/serialization conflict worth retrying by the caller."""
    if isinstance(exc, OperationalError):
        return True
    orig = getattr(exc, "orig", None)
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    return code in TRANSIENT_SQLSTATES


def parse_amount(value) -> Optional[Decimal]:
    """Parse a finite number without rounding, or None."""
    if value is None or isinstance(value, bool):
        return None
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite():
        return None
    return amount


def parse_credits(value) -> Optional[Decimal]:
    """Parse a credit amount, or None if it is not a finite number that fits the credit precision."""
    amount = parse_amount(value)
    if amount is None:
        return None
    try:
        return quantize_credits(amount)
    except InvalidOperation:
        return None


class LedgerEngine:
    """
    Atomic balance operations with an audit trail.

    Usage:
        ledger = LedgerEngine(db, estimator)

        reservation = await ledger.reserve(user_id, 50, reservation_context=ctx)
        if reservation.ok:
            ...  # run the model call
            await ledger.settle(reservation.value.reservation_id, 30)
    """

    def __init__(
        self,
        db: Database,
        estimator: CostEstimator,
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.estimator = estimator
        self.settings = settings or get_settings()

    # ============ Shared checks ============

    def validate_move(
        self,
        user_id: str,
        amount,
        ceiling: Optional[Decimal] = None,
    ) -> LedgerResult[Decimal]:
        """Validate a balance move before any lock is taken."""
        if not user_id or not isinstance(user_id, str):
            return LedgerResult.failure(LedgerErrorKind.INVALID_INPUT, "Invalid user ID")

        raw = parse_amount(amount)
        if raw is None or raw <= 0:
            return LedgerResult.failure(
                LedgerErrorKind.INVALID_INPUT, "Invalid credit amount", amount=str(amount)
            )

        # Ceiling is checked on the raw value, before rounding to credit precision
        limit = Decimal(ceiling if ceiling is not None else self.settings.max_operation_credits)
        if raw > limit:
            return LedgerResult.failure(
                LedgerErrorKind.SAFETY_LIMIT_EXCEEDED,
                f"Credit amount {raw} exceeds safety limit of {limit}",
                amount=str(raw),
                limit=float(limit),
            )

        credits = quantize_credits(raw)
        if credits <= 0:
            return LedgerResult.failure(
                LedgerErrorKind.INVALID_INPUT, "Invalid credit amount", amount=str(amount)
            )
        return LedgerResult.success(credits)

    async def _guarded(self, operation: str, work: Awaitable[LedgerResult[T]]) -> LedgerResult[T]:
        """Turn transient lock/serialization failures into CONFLICT results."""
        try:
            return await work
        except DBAPIError as e:
            if not is_transient_conflict(e):
                raise
            logger.warning(f"Transient conflict during {operation}: {e}")
            return LedgerResult.failure(
                LedgerErrorKind.CONFLICT,
                f"Concurrent update conflict during {operation}, retry later",
            )

    # ============ Read-only ============

    async def check_balance(self, user_id: str, required) -> LedgerResult[BalanceCheck]:
        """
        Check whether a user can afford an amount.

        Read-only and unlocked. The answer is only a hint: a deduct or reserve
        issued afterwards can still fail if other requests spend first.

        Args:
            user_id: User ID string
            required: Credits needed

        Returns:
            LedgerResult with BalanceCheck
        """
        if not user_id or not isinstance(user_id, str):
            return LedgerResult.failure(LedgerErrorKind.INVALID_INPUT, "Invalid user ID")

        required_credits = parse_credits(required)
        if required_credits is None or required_credits < 0:
            return LedgerResult.failure(
                LedgerErrorKind.INVALID_INPUT, "Invalid credit amount", amount=str(required)
            )

        async with self.db.session() as session:
            user = await UserRepository(session).get(user_id)

        if user is None:
            return LedgerResult.success(BalanceCheck(
                has_credits=False,
                balance=Decimal("0"),
                required=required_credits,
                reason="User not found",
            ))

        balance = quantize_credits(user.credit_balance)
        has_credits = balance >= required_credits
        return LedgerResult.success(BalanceCheck(
            has_credits=has_credits,
            balance=balance,
            required=required_credits,
            subscription_tier=user.subscription_tier,
            reason=None if has_credits else "Insufficient credits",
        ))

    async def get_active_reservations(
        self,
        user_id: str,
        reservation_type: Optional[ReservationType] = None,
        limit: int = 50,
    ) -> list[ActiveReservation]:
        """Active reservations for a user, flagged when already past expiry."""
        async with self.db.session() as session:
            rows = await ReservationRepository(session).list_active_for_user(
                user_id,
                reservation_type=ReservationType(reservation_type).value if reservation_type else None,
                limit=limit,
            )

        now = utc_now()
        return [
            ActiveReservation(
                id=row.id,
                credits_reserved=quantize_credits(row.credits_reserved),
                reservation_type=ReservationType(row.reservation_type),
                context=row.context or {},
                expires_at=row.expires_at,
                created_at=row.created_at,
                is_expired=now > row.expires_at,
            )
            for row in rows
        ]

    async def get_audit_trail(
        self,
        user_id: str,
        limit: int = 50,
        offset: int = 0,
        operation: Optional[AuditOperation] = None,
    ) -> list[CreditAuditLogModel]:
        """Audit history for a user, newest first."""
        async with self.db.session() as session:
            return await AuditRepository(session).get_entries(
                user_id,
                limit=limit,
                offset=offset,
                operation=AuditOperation(operation).value if operation else None,
            )

    # ============ User accounts ============

    async def create_user(
        self,
        user_id: str,
        email: Optional[str] = None,
        initial_credits=0,
        tier: str = "free",
    ) -> LedgerResult[UserModel]:
        """
        Create a user with an optional initial allocation.

        The initial allocation is audited as a refresh from a zero balance.
        """
        if not user_id or not isinstance(user_id, str):
            return LedgerResult.failure(LedgerErrorKind.INVALID_INPUT, "Invalid user ID")

        raw = parse_amount(initial_credits)
        if raw is None or raw < 0:
            return LedgerResult.failure(
                LedgerErrorKind.INVALID_INPUT, "Invalid credit amount", amount=str(initial_credits)
            )
        credits = Decimal("0")
        if raw > 0:
            check = self.validate_move(user_id, raw)
            if not check.ok:
                return LedgerResult(error=check.error)
            credits = check.value

        return await self._guarded("create_user", self._create_user(user_id, email, credits, tier))

    async def _create_user(self, user_id: str, email: Optional[str], credits: Decimal, tier: str):
        async with self.db.transaction() as session:
            users = UserRepository(session)
            if await users.get(user_id) is not None:
                await session.rollback()
                return LedgerResult.failure(
                    LedgerErrorKind.INVALID_INPUT, "User already exists", user_id=user_id
                )

            user = users.add(user_id, email, credits, tier)
            if credits > 0:
                session.add(build_audit_entry(
                    user_id=user_id,
                    operation=AuditOperation.REFRESH,
                    amount=credits,
                    balance_before=Decimal("0"),
                    balance_after=credits,
                    reason="Initial credit allocation",
                    entity_type=RelatedEntityType.SUBSCRIPTION,
                    metadata={"tier": tier},
                ))

        logger.info(f"Created user {user_id} with {credits} credits")
        return LedgerResult.success(user)

    # ============ Deduct / grant ============

    async def deduct(
        self,
        user_id: str,
        amount,
        context: Optional[OperationContext] = None,
    ) -> LedgerResult[DeductResult]:
        """
        Deduct credits from a user's balance atomically.

        Args:
            user_id: User ID string
            amount: Credits to deduct (0 < amount <= safety ceiling)
            context: Optional provenance and correlation for the audit entry

        Returns:
            LedgerResult with DeductResult, or INVALID_INPUT, SAFETY_LIMIT_EXCEEDED,
            NOT_FOUND, INSUFFICIENT_FUNDS or CONFLICT
        """
        check = self.validate_move(user_id, amount)
        if not check.ok:
            return LedgerResult(error=check.error)
        return await self._guarded("deduct", self._deduct(user_id, check.value, context or OperationContext()))

    async def _deduct(self, user_id: str, amount: Decimal, context: OperationContext):
        async with self.db.transaction() as session:
            user = await UserRepository(session).get_for_update(user_id)
            if user is None:
                await session.rollback()
                return LedgerResult.failure(LedgerErrorKind.NOT_FOUND, "User not found", user_id=user_id)

            current_balance = quantize_credits(user.credit_balance)
            if current_balance < amount:
                logger.warning(f"Insufficient credits for user {user_id}: has {current_balance}, needs {amount}")
                await session.rollback()  # Release the lock
                return LedgerResult.failure(
                    LedgerErrorKind.INSUFFICIENT_FUNDS,
                    f"Insufficient credits. Current: {current_balance}, Required: {amount}",
                    available=float(current_balance),
                    required=float(amount),
                )

            new_balance = current_balance - amount
            user.credit_balance = new_balance

            session.add(build_audit_entry(
                user_id=user_id,
                operation=AuditOperation.DEDUCT,
                amount=amount,
                balance_before=current_balance,
                balance_after=new_balance,
                reason=context.reason or "AI model usage",
                entity_type=context.entity_type or RelatedEntityType.MESSAGE,
                entity_id=context.entity_id or context.message_id,
                context=context,
                metadata={"deduction_id": generate_uuid()},
            ))

        logger.info(f"Deducted {amount} credits from user {user_id}, new balance: {new_balance}")
        return LedgerResult.success(DeductResult(
            previous_balance=current_balance,
            new_balance=new_balance,
            credits_deducted=amount,
        ))

    async def grant(
        self,
        user_id: str,
        amount,
        operation: AuditOperation = AuditOperation.PURCHASE,
        context: Optional[OperationContext] = None,
    ) -> LedgerResult[GrantResult]:
        """
        Add credits to a user's balance (purchase, refresh, adjustment or refund).

        Args:
            user_id: User ID string
            amount: Credits to add (0 < amount <= safety ceiling)
            operation: Audit operation to record
            context: Optional provenance and correlation for the audit entry

        Returns:
            LedgerResult with GrantResult
        """
        try:
            operation = AuditOperation(operation)
        except ValueError:
            operation = None
        if operation not in GRANT_OPERATIONS:
            return LedgerResult.failure(
                LedgerErrorKind.INVALID_INPUT,
                "Grant operation must be purchase, refresh, adjustment or refund",
            )

        check = self.validate_move(user_id, amount)
        if not check.ok:
            return LedgerResult(error=check.error)
        return await self._guarded(
            "grant", self._grant(user_id, check.value, operation, context or OperationContext())
        )

    async def _grant(self, user_id: str, amount: Decimal, operation: AuditOperation, context: OperationContext):
        async with self.db.transaction() as session:
            user = await UserRepository(session).get_for_update(user_id)
            if user is None:
                await session.rollback()
                return LedgerResult.failure(LedgerErrorKind.NOT_FOUND, "User not found", user_id=user_id)

            current_balance = quantize_credits(user.credit_balance)
            new_balance = current_balance + amount
            user.credit_balance = new_balance

            session.add(build_audit_entry(
                user_id=user_id,
                operation=operation,
                amount=amount,
                balance_before=current_balance,
                balance_after=new_balance,
                reason=context.reason or f"Credit {operation.value}",
                context=context,
            ))

        logger.info(f"Granted {amount} credits ({operation.value}) to user {user_id}, new balance: {new_balance}")
        return LedgerResult.success(GrantResult(
            previous_balance=current_balance,
            new_balance=new_balance,
            credits_added=amount,
            operation=operation,
        ))

    # ============ Reservations ============

    def _resolve_expiry(
        self,
        now: datetime,
        ttl_minutes: Optional[float],
        expires_at: Optional[datetime],
    ) -> LedgerResult[datetime]:
        """Expiry must be strictly in the future and at most the maximum TTL away."""
        max_ttl = timedelta(minutes=self.settings.reservation_max_ttl_minutes)

        if expires_at is not None:
            if expires_at.tzinfo is None:
                expires_at = expires_at.replace(tzinfo=timezone.utc)
            if expires_at <= now:
                return LedgerResult.failure(
                    LedgerErrorKind.INVALID_INPUT, "Reservation expiry must be in the future"
                )
            if expires_at > now + max_ttl:
                return LedgerResult.failure(
                    LedgerErrorKind.INVALID_INPUT,
                    f"Reservation expiry cannot be more than {self.settings.reservation_max_ttl_minutes:g} minutes in the future",
                )
            return LedgerResult.success(expires_at)

        ttl = parse_amount(self.settings.reservation_default_ttl_minutes if ttl_minutes is None else ttl_minutes)
        if ttl is None:
            return LedgerResult.failure(
                LedgerErrorKind.INVALID_INPUT, "Invalid reservation TTL", ttl_minutes=str(ttl_minutes)
            )
        if ttl <= 0:
            return LedgerResult.failure(
                LedgerErrorKind.INVALID_INPUT, "Reservation expiry must be in the future", ttl_minutes=float(ttl)
            )
        ttl = min(float(ttl), self.settings.reservation_max_ttl_minutes)
        return LedgerResult.success(now + timedelta(minutes=ttl))

    async def reserve(
        self,
        user_id: str,
        amount,
        reservation_context: Optional[ReservationContext] = None,
        context: Optional[OperationContext] = None,
        reservation_type: ReservationType = ReservationType.STREAMING,
        ttl_minutes: Optional[float] = None,
        expires_at: Optional[datetime] = None,
    ) -> LedgerResult[ReservationResult]:
        """
        Hold credits before the true cost is known.

        The amount is debited immediately. The hold is later settled, cancelled,
        or expired by the cleanup sweep.

        Args:
            user_id: User ID string
            amount: Credits to hold
            reservation_context: What the hold is for (model, provider, estimate)
            context: Provenance and correlation (conversation/message ids, IP)
            reservation_type: streaming, batch, preprocessing or manual
            ttl_minutes: Minutes until expiry (default 15, capped at 60)
            expires_at: Explicit expiry, must be in the future and within the cap

        Returns:
            LedgerResult with ReservationResult
        """
        context = context or OperationContext()
        reservation_context = reservation_context or ReservationContext()

        ceiling = min(
            Decimal(self.settings.max_operation_credits),
            Decimal(self.settings.max_reservation_credits),
        )
        check = self.validate_move(user_id, amount, ceiling=ceiling)
        if not check.ok:
            return LedgerResult(error=check.error)

        try:
            reservation_type = ReservationType(reservation_type)
        except ValueError:
            return LedgerResult.failure(
                LedgerErrorKind.INVALID_INPUT, f"Unknown reservation type: {reservation_type}"
            )

        missing = reservation_context.missing_fields(reservation_type)
        if missing:
            return LedgerResult.failure(
                LedgerErrorKind.INVALID_INPUT,
                f"{reservation_type.value} reservations require: {', '.join(missing)}",
                missing=missing,
            )

        expiry = self._resolve_expiry(utc_now(), ttl_minutes, expires_at)
        if not expiry.ok:
            return LedgerResult(error=expiry.error)

        return await self._guarded("reserve", self._reserve(
            user_id, check.value, reservation_context, context, reservation_type, expiry.value
        ))

    async def _reserve(
        self,
        user_id: str,
        amount: Decimal,
        reservation_context: ReservationContext,
        context: OperationContext,
        reservation_type: ReservationType,
        expires_at: datetime,
    ):
        async with self.db.transaction() as session:
            user = await UserRepository(session).get_for_update(user_id)
            if user is None:
                await session.rollback()
                return LedgerResult.failure(LedgerErrorKind.NOT_FOUND, "User not found", user_id=user_id)

            current_balance = quantize_credits(user.credit_balance)
            if current_balance < amount:
                logger.warning(f"Insufficient credits for reservation by {user_id}: has {current_balance}, needs {amount}")
                await session.rollback()
                return LedgerResult.failure(
                    LedgerErrorKind.INSUFFICIENT_FUNDS,
                    f"Insufficient credits for reservation. Current: {current_balance}, Required: {amount}",
                    available=float(current_balance),
                    required=float(amount),
                )

            new_balance = current_balance - amount
            user.credit_balance = new_balance

            reservation = CreditReservationModel(
                id=generate_uuid(),
                user_id=user_id,
                conversation_id=context.conversation_id,
                message_id=context.message_id,
                credits_reserved=amount,
                status=ReservationStatus.ACTIVE.value,
                reservation_type=reservation_type.value,
                context=reservation_context.model_dump(mode="json"),
                expires_at=expires_at,
            )
            session.add(reservation)

            session.add(build_audit_entry(
                user_id=user_id,
                operation=AuditOperation.RESERVE,
                amount=amount,
                balance_before=current_balance,
                balance_after=new_balance,
                reason=f"Credit reservation for {reservation_type.value}",
                entity_type=RelatedEntityType.RESERVATION,
                entity_id=reservation.id,
                context=context,
                metadata={
                    "reservation_id": reservation.id,
                    "expires_at": expires_at.isoformat(),
                    "model": reservation_context.model,
                    "provider": reservation_context.provider,
                },
            ))

        logger.info(f"Reserved {amount} credits for user {user_id} (reservation {reservation.id}, expires {expires_at.isoformat()})")
        return LedgerResult.success(ReservationResult(
            reservation_id=reservation.id,
            credits_reserved=amount,
            previous_balance=current_balance,
            new_balance=new_balance,
            expires_at=expires_at,
            reservation_type=reservation_type,
        ))

    async def settle(
        self,
        reservation_id: str,
        actual_credits_used,
        usage: Optional[UsageData] = None,
    ) -> LedgerResult[SettlementResult]:
        """
        Close an active reservation against measured usage.

        Unused credits are refunded. If usage exceeded the hold, nothing is
        refunded and the excess is deducted separately.

        Args:
            reservation_id: Reservation ID
            actual_credits_used: Credits actually consumed (>= 0)
            usage: Measured unit counts and timing

        Returns:
            LedgerResult with SettlementResult, or NOT_FOUND,
            INVALID_STATE_TRANSITION, INVALID_INPUT or CONFLICT
        """
        if not reservation_id or not isinstance(reservation_id, str):
            return LedgerResult.failure(LedgerErrorKind.INVALID_INPUT, "Invalid reservation ID")

        actual = parse_credits(actual_credits_used)
        if actual is None or actual < 0:
            return LedgerResult.failure(
                LedgerErrorKind.INVALID_INPUT,
                "Actual credits used must be a non-negative number",
                actual_credits_used=str(actual_credits_used),
            )

        return await self._guarded("settle", self._settle(reservation_id, actual, usage or UsageData()))

    async def _settle(self, reservation_id: str, actual: Decimal, usage: UsageData):
        async with self.db.transaction() as session:
            reservation = await ReservationRepository(session).get_for_update(reservation_id)
            if reservation is None:
                await session.rollback()
                return LedgerResult.failure(
                    LedgerErrorKind.NOT_FOUND, "Reservation not found", reservation_id=reservation_id
                )

            if reservation.status != ReservationStatus.ACTIVE.value:
                status = reservation.status
                await session.rollback()
                return LedgerResult.failure(
                    LedgerErrorKind.INVALID_STATE_TRANSITION,
                    f"Cannot settle reservation with status: {status}",
                    reservation_id=reservation_id,
                    status=status,
                )

            user_id = reservation.user_id
            user = await UserRepository(session).get_for_update(user_id)
            if user is None:
                await session.rollback()
                return LedgerResult.failure(LedgerErrorKind.NOT_FOUND, "User not found", user_id=user_id)

            reserved = quantize_credits(reservation.credits_reserved)
            if actual > reserved * Decimal(str(self.settings.overrun_warning_ratio)):
                logger.warning(
                    f"Actual usage ({actual}) significantly exceeds reservation ({reserved}) "
                    f"for reservation {reservation_id}"
                )

            current_balance = quantize_credits(user.credit_balance)
            exceeded = actual > reserved
            if exceeded:
                excess = actual - reserved
                credits_refunded = Decimal("0").quantize(CREDIT_QUANTUM)
                new_balance = current_balance - excess
                settlement_type = SettlementType.EXCEEDED
                audit_operation = AuditOperation.DEDUCT
                audit_amount = excess
                audit_reason = "Reservation settlement - additional credits needed (usage exceeded reservation)"
            else:
                credits_refunded = reserved - actual
                new_balance = current_balance + credits_refunded
                settlement_type = SettlementType.COMPLETED
                audit_operation = AuditOperation.SETTLE
                audit_amount = credits_refunded
                audit_reason = "Reservation settlement - refund unused credits"

            now = utc_now()
            user.credit_balance = new_balance
            reservation.status = ReservationStatus.SETTLED.value
            reservation.actual_credits_used = actual
            reservation.settled_at = now
            verify_reservation_state(reservation)

            context = reservation.context or {}
            estimated_units = context.get("estimated_units") or 0
            metrics = accuracy_metrics(estimated_units, usage.total_units, context.get("token_count_method"))

            settlement = ReservationSettlementModel(
                id=generate_uuid(),
                reservation_id=reservation.id,
                user_id=reservation.user_id,
                credits_reserved=reserved,
                actual_credits_used=actual,
                credits_refunded=credits_refunded,
                balance_before=current_balance,
                balance_after=new_balance,
                settlement_type=settlement_type.value,
                usage_breakdown={
                    "input_units": usage.input_units,
                    "output_units": usage.output_units,
                    "total_units": usage.total_units,
                    "estimated_vs_actual": {
                        "estimated": estimated_units,
                        "actual": usage.total_units,
                    },
                },
                accuracy_metrics=metrics,
                processing_time_ms=usage.processing_time_ms,
            )
            verify_settlement(settlement)
            session.add(settlement)

            session.add(build_audit_entry(
                user_id=reservation.user_id,
                operation=audit_operation,
                amount=audit_amount,
                balance_before=current_balance,
                balance_after=new_balance,
                reason=audit_reason,
                entity_type=RelatedEntityType.RESERVATION,
                entity_id=reservation.id,
                metadata={
                    "reservation_id": reservation.id,
                    "settlement_id": settlement.id,
                    "credits_reserved": str(reserved),
                    "actual_credits_used": str(actual),
                    "credits_refunded": str(credits_refunded),
                    "exceeded": exceeded,
                },
            ))

        logger.info(
            f"Settled reservation {reservation_id}: reserved {reserved}, used {actual}, "
            f"refunded {credits_refunded}, new balance {new_balance}"
        )
        return LedgerResult.success(SettlementResult(
            reservation_id=reservation_id,
            settlement_id=settlement.id,
            credits_reserved=reserved,
            actual_credits_used=actual,
            credits_refunded=credits_refunded,
            previous_balance=current_balance,
            new_balance=new_balance,
            settlement_type=settlement_type,
            accuracy_metrics=metrics,
        ))

    async def cancel(self, reservation_id: str, reason: str = "Operation cancelled") -> LedgerResult[CancelResult]:
        """
        Cancel an active reservation and refund the full hold.

        Args:
            reservation_id: Reservation ID
            reason: Why the reservation was cancelled

        Returns:
            LedgerResult with CancelResult
        """
        if not reservation_id or not isinstance(reservation_id, str):
            return LedgerResult.failure(LedgerErrorKind.INVALID_INPUT, "Invalid reservation ID")
        return await self._guarded("cancel", self._cancel(reservation_id, reason))

    async def _cancel(self, reservation_id: str, reason: str):
        async with self.db.transaction() as session:
            reservation = await ReservationRepository(session).get_for_update(reservation_id)
            if reservation is None:
                await session.rollback()
                return LedgerResult.failure(
                    LedgerErrorKind.NOT_FOUND, "Reservation not found", reservation_id=reservation_id
                )

            if reservation.status != ReservationStatus.ACTIVE.value:
                status = reservation.status
                await session.rollback()
                return LedgerResult.failure(
                    LedgerErrorKind.INVALID_STATE_TRANSITION,
                    f"Cannot cancel reservation with status: {status}",
                    reservation_id=reservation_id,
                    status=status,
                )

            user_id = reservation.user_id
            user = await UserRepository(session).get_for_update(user_id)
            if user is None:
                await session.rollback()
                return LedgerResult.failure(LedgerErrorKind.NOT_FOUND, "User not found", user_id=user_id)

            reserved = quantize_credits(reservation.credits_reserved)
            current_balance = quantize_credits(user.credit_balance)
            new_balance = current_balance + reserved

            user.credit_balance = new_balance
            reservation.status = ReservationStatus.CANCELLED.value
            reservation.error_reason = reason
            reservation.settled_at = utc_now()

            session.add(build_audit_entry(
                user_id=reservation.user_id,
                operation=AuditOperation.CANCEL,
                amount=reserved,
                balance_before=current_balance,
                balance_after=new_balance,
                reason=f"Reservation cancelled: {reason}",
                entity_type=RelatedEntityType.RESERVATION,
                entity_id=reservation.id,
                metadata={
                    "reservation_id": reservation.id,
                    "credits_refunded": str(reserved),
                    "original_expires_at": reservation.expires_at.isoformat(),
                },
            ))

        logger.info(f"Cancelled reservation {reservation_id}, refunded {reserved} credits: {reason}")
        return LedgerResult.success(CancelResult(
            reservation_id=reservation_id,
            credits_refunded=reserved,
            previous_balance=current_balance,
            new_balance=new_balance,
            reason=reason,
        ))

    # ============ Expiry sweep ============

    async def expire_reservations(
        self,
        batch_size: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> ExpirySweepResult:
        """
        Release active reservations whose expiry has passed.

        Each reservation is handled in its own transaction, so one bad row is
        recorded in the result and the sweep moves on.

        Args:
            batch_size: Maximum number of reservations to process
            now: Reference time (defaults to the current time)

        Returns:
            ExpirySweepResult with processed count, credits refunded and errors
        """
        now = now or utc_now()
        limit = batch_size or self.settings.cleanup_batch_size

        async with self.db.session() as session:
            reservation_ids = await ReservationRepository(session).list_expired_ids(now, limit)

        result = ExpirySweepResult()
        for reservation_id in reservation_ids:
            try:
                outcome = await self._guarded("expire", self._expire_one(reservation_id, now))
            except Exception as e:
                logger.exception(f"Failed to expire reservation {reservation_id}")
                result.errors.append(f"Failed to process reservation {reservation_id}: {e}")
                continue

            if not outcome.ok:
                result.errors.append(f"{outcome.error.message} for reservation {reservation_id}")
                continue
            if outcome.value is None:
                continue  # Closed by another request since it was selected

            result.processed += 1
            result.total_refunded += outcome.value

        if result.processed or result.errors:
            logger.info(
                f"Expired {result.processed} reservations, refunded {result.total_refunded} credits, "
                f"{len(result.errors)} errors"
            )
        return result

    async def _expire_one(self, reservation_id: str, now: datetime):
        async with self.db.transaction() as session:
            reservation = await ReservationRepository(session).get_for_update(reservation_id)
            if (
                reservation is None
                or reservation.status != ReservationStatus.ACTIVE.value
                or reservation.expires_at >= now
            ):
                await session.rollback()
                return LedgerResult.success(None)

            user = await UserRepository(session).get_for_update(reservation.user_id)
            if user is None:
                await session.rollback()
                return LedgerResult.failure(LedgerErrorKind.NOT_FOUND, "User not found")

            reserved = quantize_credits(reservation.credits_reserved)
            current_balance = quantize_credits(user.credit_balance)
            new_balance = current_balance + reserved

            user.credit_balance = new_balance
            reservation.status = ReservationStatus.EXPIRED.value
            reservation.error_reason = "Reservation expired - credits refunded"
            reservation.settled_at = now
            verify_reservation_state(reservation)

            session.add(build_audit_entry(
                user_id=reservation.user_id,
                operation=AuditOperation.EXPIRE,
                amount=reserved,
                balance_before=current_balance,
                balance_after=new_balance,
                reason="Expired reservation cleanup - credits refunded",
                entity_type=RelatedEntityType.RESERVATION,
                entity_id=reservation.id,
                metadata={
                    "reservation_id": reservation.id,
                    "expired_at": now.isoformat(),
                    "original_expires_at": reservation.expires_at.isoformat(),
                },
            ))

        return LedgerResult.success(reserved)

    # ============ Usage records ============

    async def record_usage(self, usage: UsageInput) -> LedgerResult[UsageRecordModel]:
        """
        Record a billable model call with its cost.

        credits_charged is always the ceiling of credits_used.

        Args:
            usage: User, model, provider and unit counts for the call

        Returns:
            LedgerResult with the stored UsageRecordModel
        """
        calculation = await self.estimator.credits_for_usage(
            usage.model, usage.provider, usage.input_units, usage.output_units
        )

        input_cost = calculation.input_cost_usd.quantize(Decimal("0.00000001"))
        output_cost = calculation.output_cost_usd.quantize(Decimal("0.00000001"))
        # Rounding up keeps ceil(credits_used) equal to the ceiling of the exact amount
        credits_used = calculation.actual_credits.quantize(CREDIT_QUANTUM, rounding=ROUND_UP)

        record = UsageRecordModel(
            id=generate_uuid(),
            user_id=usage.user_id,
            conversation_id=usage.conversation_id,
            message_id=usage.message_id,
            provider=usage.provider,
            model=usage.model,
            input_units=usage.input_units,
            output_units=usage.output_units,
            total_units=usage.input_units + usage.output_units,
            input_cost_usd=input_cost,
            output_cost_usd=output_cost,
            total_cost_usd=input_cost + output_cost,
            credits_used=credits_used,
            credits_charged=calculation.chargeable_credits,
        )
        verify_usage_record(record)

        try:
            return await self._guarded("record_usage", self._record_usage(record))
        except IntegrityError:
            logger.warning(f"Duplicate usage record for message {usage.message_id} ({usage.provider})")
            return LedgerResult.failure(
                LedgerErrorKind.INVALID_INPUT,
                "Usage already recorded for this message and provider",
                message_id=usage.message_id,
                provider=usage.provider,
            )

    async def _record_usage(self, record: UsageRecordModel):
        async with self.db.transaction() as session:
            if await UserRepository(session).get(record.user_id) is None:
                await session.rollback()
                return LedgerResult.failure(LedgerErrorKind.NOT_FOUND, "User not found", user_id=record.user_id)
            session.add(record)

        logger.info(f"Recorded usage for {record.user_id}: {record.total_units} units, {record.credits_charged} credits charged")
        return LedgerResult.success(record)

    async def get_usage_stats(
        self,
        user_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 100,
    ) -> LedgerResult[UsageStats]:
        """
        Usage statistics for a user.

        Args:
            user_id: User ID string
            start: Optional lower bound on created_at
            end: Optional upper bound on created_at
            limit: Maximum number of recent records to include

        Returns:
            LedgerResult with UsageStats
        """
        if not user_id or not isinstance(user_id, str):
            return LedgerResult.failure(LedgerErrorKind.INVALID_INPUT, "Invalid user ID")

        async with self.db.session() as session:
            usage_repo = UsageRepository(session)
            recent = await usage_repo.get_recent(user_id, start, end, limit)
            totals = await usage_repo.get_totals(user_id, start, end)
            user = await UserRepository(session).get(user_id)

        return LedgerResult.success(UsageStats(
            current_balance=quantize_credits(user.credit_balance) if user else Decimal("0"),
            subscription_tier=user.subscription_tier if user else "free",
            total_units=totals["total_units"],
            total_cost_usd=totals["total_cost_usd"],
            total_credits_used=totals["total_credits_used"],
            total_requests=totals["total_requests"],
            recent_usage=[
                UsageSummary(
                    id=row.id,
                    provider=row.provider,
                    model=row.model,
                    total_units=row.total_units,
                    total_cost_usd=row.total_cost_usd,
                    credits_used=row.credits_used,
                    credits_charged=row.credits_charged,
                    created_at=row.created_at,
                )
                for row in recent
            ],
        ))
