"""
Periodic credit refresh.

Tops users up with their tier's monthly allocation once the refresh interval
has passed. Each refresh locks the user row, adds the credits, stamps
last_credit_refresh and writes a refresh audit entry plus a history row in
one transaction. Batch runs refresh users one transaction at a time.
"""

import asyncio
import logging
import math
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from .audit import build_audit_entry
from .credits import quantize_credits
from .errors import LedgerErrorKind, LedgerResult
from .ledger import LedgerEngine
from ..db.models import UserModel, utc_now
from ..db.repository import RefreshRepository, UserRepository
from ..models.credits import (
    AuditOperation,
    RefreshBatchResult,
    RefreshEligibility,
    RefreshInfo,
    RefreshResult,
    RefreshType,
    RelatedEntityType,
)

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400

REFRESH_TYPES_BY_REASON = {
    "scheduled": RefreshType.MONTHLY,
    "monthly": RefreshType.MONTHLY,
    "initial": RefreshType.INITIAL,
    "subscription_renewal": RefreshType.SUBSCRIPTION_RENEWAL,
}


class CreditRefreshService:
    """
    Monthly credit refresh on top of the ledger.

    Usage:
        refresh = CreditRefreshService(ledger)
        result = await refresh.refresh_user(user_id)
        batch = await refresh.refresh_all_eligible()
    """

    def __init__(self, ledger: LedgerEngine):
        self.ledger = ledger
        self.db = ledger.db
        self.settings = ledger.settings
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self.total_runs = 0
        self.last_run_time: Optional[datetime] = None
        self.last_batch: Optional[RefreshBatchResult] = None

    @property
    def is_running(self) -> bool:
        return self._running

    # ============ Eligibility ============

    def credit_amount(self, user: UserModel) -> Decimal:
        """Custom per-user amount if set, otherwise the tier amount (free tier as fallback)."""
        if user.custom_credit_amount is not None and user.custom_credit_amount > 0:
            return quantize_credits(user.custom_credit_amount)

        tiers = self.settings.refresh_tier_credits
        return quantize_credits(tiers.get(user.subscription_tier or "free", tiers["free"]))

    def check_eligibility(self, user: UserModel, now: Optional[datetime] = None) -> RefreshEligibility:
        now = now or utc_now()
        last_refresh = user.last_credit_refresh or user.created_at
        if last_refresh is None:
            return RefreshEligibility(eligible=False, reason="No refresh date found")

        days_since = (now - last_refresh).total_seconds() / SECONDS_PER_DAY
        days_until = self.settings.refresh_interval_days - days_since

        if user.credit_refresh_hold:
            return RefreshEligibility(
                eligible=False, reason="Refresh hold active", days_since_refresh=days_since
            )

        if days_since < self.settings.refresh_minimum_interval_days:
            return RefreshEligibility(
                eligible=False,
                reason="Too soon since last refresh",
                days_since_refresh=days_since,
                days_until_eligible=days_until,
            )

        if days_since >= self.settings.refresh_interval_days:
            return RefreshEligibility(
                eligible=True,
                reason="Refresh due",
                days_since_refresh=days_since,
                credits_to_add=self.credit_amount(user),
            )

        return RefreshEligibility(
            eligible=False,
            reason="Not yet due for refresh",
            days_since_refresh=days_since,
            days_until_eligible=days_until,
        )

    # ============ Refresh ============

    async def refresh_user(
        self,
        user_id: str,
        amount=None,
        reason: str = "scheduled",
        force: bool = False,
        metadata: Optional[dict] = None,
        now: Optional[datetime] = None,
    ) -> LedgerResult[RefreshResult]:
        """
        Refresh one user's credits.

        Args:
            user_id: User ID string
            amount: Credits to add instead of the tier amount
            reason: scheduled, monthly, initial, subscription_renewal or any manual reason
            force: Skip the eligibility check
            metadata: Extra audit metadata
            now: Reference time for eligibility

        Returns:
            LedgerResult with RefreshResult. A user who is not eligible gets
            INVALID_STATE_TRANSITION with the eligibility details.
        """
        if not user_id or not isinstance(user_id, str):
            return LedgerResult.failure(LedgerErrorKind.INVALID_INPUT, "Invalid user ID")

        credits = None
        if amount is not None:
            check = self.ledger.validate_move(user_id, amount, ceiling=self.settings.max_refresh_credits)
            if not check.ok:
                return LedgerResult(error=check.error)
            credits = check.value

        return await self.ledger._guarded(
            "refresh",
            self._refresh(user_id, credits, reason, force, metadata or {}, now or utc_now()),
        )

    async def _refresh(
        self,
        user_id: str,
        credits: Optional[Decimal],
        reason: str,
        force: bool,
        metadata: dict,
        now: datetime,
    ):
        refresh_type = REFRESH_TYPES_BY_REASON.get(reason, RefreshType.MANUAL)

        async with self.db.transaction() as session:
            user = await UserRepository(session).get_for_update(user_id)
            if user is None:
                await session.rollback()
                return LedgerResult.failure(LedgerErrorKind.NOT_FOUND, "User not found", user_id=user_id)

            if not force:
                eligibility = self.check_eligibility(user, now)
                if not eligibility.eligible:
                    await session.rollback()
                    return LedgerResult.failure(
                        LedgerErrorKind.INVALID_STATE_TRANSITION,
                        eligibility.reason,
                        user_id=user_id,
                        days_since_refresh=eligibility.days_since_refresh,
                        days_until_eligible=eligibility.days_until_eligible,
                    )

            if credits is None:
                check = self.ledger.validate_move(
                    user_id, self.credit_amount(user), ceiling=self.settings.max_refresh_credits
                )
                if not check.ok:
                    await session.rollback()
                    return LedgerResult(error=check.error)
                credits = check.value

            tier = user.subscription_tier
            email = user.email
            current_balance = quantize_credits(user.credit_balance)
            new_balance = current_balance + credits
            user.credit_balance = new_balance
            user.last_credit_refresh = now

            RefreshRepository(session).add_history(
                user_id, refresh_type.value, current_balance, new_balance, credits, now
            )
            session.add(build_audit_entry(
                user_id=user_id,
                operation=AuditOperation.REFRESH,
                amount=credits,
                balance_before=current_balance,
                balance_after=new_balance,
                reason=f"Monthly credit refresh ({reason})",
                entity_type=RelatedEntityType.SUBSCRIPTION,
                metadata={"refresh_type": reason, "subscription_tier": tier, **metadata},
            ))

        logger.info(f"Refreshed {credits} credits for user {user_id}, new balance: {new_balance}")
        return LedgerResult.success(RefreshResult(
            user_id=user_id,
            email=email,
            refresh_type=refresh_type,
            credits_added=credits,
            previous_balance=current_balance,
            new_balance=new_balance,
            subscription_tier=tier,
            refreshed_at=now,
        ))

    async def refresh_all_eligible(
        self,
        batch_size: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> RefreshBatchResult:
        """
        Refresh every user who is due, up to batch_size.

        Users are refreshed one transaction at a time. A failure is recorded
        and the batch continues. In dry-run mode nothing is written.
        """
        now = now or utc_now()
        limit = batch_size or self.settings.refresh_batch_size
        cutoff = now - timedelta(days=self.settings.refresh_interval_days)
        dry_run = self.settings.refresh_dry_run

        async with self.db.session() as session:
            user_ids = await RefreshRepository(session).list_due_ids(cutoff, limit)

        results = RefreshBatchResult(total=len(user_ids), dry_run=dry_run)
        logger.info(f"Starting credit refresh for {len(user_ids)} potentially eligible users")

        for user_id in user_ids:
            if dry_run:
                async with self.db.session() as session:
                    user = await UserRepository(session).get(user_id)
                eligibility = self.check_eligibility(user, now) if user is not None else None
                if eligibility is not None and eligibility.eligible:
                    logger.info(f"Dry run: would refresh {eligibility.credits_to_add} credits for user {user_id}")
                    results.successful += 1
                else:
                    results.skipped += 1
                continue

            try:
                outcome = await self.refresh_user(
                    user_id, reason="scheduled", metadata={"batch_run": True}, now=now
                )
            except Exception as e:
                logger.error(f"Credit refresh failed for user {user_id}: {e}")
                results.failed += 1
                results.errors.append({"user_id": user_id, "error": str(e)})
                continue

            if outcome.ok:
                results.successful += 1
                results.refreshed.append(outcome.value)
            elif outcome.error.kind == LedgerErrorKind.INVALID_STATE_TRANSITION:
                logger.info(f"Skipping user {user_id}: {outcome.error.message}")
                results.skipped += 1
            else:
                results.failed += 1
                results.errors.append({"user_id": user_id, "error": outcome.error.message})

        self.total_runs += 1
        self.last_run_time = utc_now()
        self.last_batch = results
        logger.info(
            f"Credit refresh completed: {results.successful} refreshed, "
            f"{results.failed} failed, {results.skipped} skipped"
        )
        return results

    # ============ Reporting ============

    async def get_next_refresh_info(
        self,
        user_id: str,
        now: Optional[datetime] = None,
    ) -> LedgerResult[RefreshInfo]:
        now = now or utc_now()
        async with self.db.session() as session:
            user = await UserRepository(session).get(user_id)

        if user is None:
            return LedgerResult.failure(LedgerErrorKind.NOT_FOUND, "User not found", user_id=user_id)

        eligibility = self.check_eligibility(user, now)
        last_refresh = user.last_credit_refresh or user.created_at
        next_date = None
        if last_refresh is not None:
            next_date = last_refresh + timedelta(days=self.settings.refresh_interval_days)
        days_remaining = max(0, math.ceil(eligibility.days_until_eligible or 0))

        return LedgerResult.success(RefreshInfo(
            next_refresh_date=next_date,
            days_remaining=days_remaining,
            credits_to_receive=self.credit_amount(user),
            current_balance=quantize_credits(user.credit_balance),
            subscription_tier=user.subscription_tier,
            is_eligible=eligibility.eligible,
            refresh_hold=bool(user.credit_refresh_hold),
            reason=eligibility.reason,
        ))

    async def get_statistics(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> dict:
        now = now or utc_now()
        cutoff = now - timedelta(days=self.settings.refresh_interval_days)

        async with self.db.session() as session:
            repo = RefreshRepository(session)
            by_type = await repo.get_totals_by_type(start, end)
            total_users = await repo.count_users()
            eligible_users = await repo.count_due(cutoff)

        return {
            "refresh_history": by_type,
            "total_users": total_users,
            "eligible_users": eligible_users,
            "next_batch_size": min(eligible_users, self.settings.refresh_batch_size),
            "total_runs": self.total_runs,
            "last_run_time": self.last_run_time,
            "is_running": self._running,
        }

    # ============ Scheduling ============

    async def start(self, interval_hours: Optional[float] = None) -> None:
        """Run a batch immediately, then every interval_hours."""
        if self._running:
            logger.warning("Credit refresh service is already running")
            return

        self._running = True
        interval = interval_hours or self.settings.refresh_check_interval_hours

        try:
            await self.refresh_all_eligible()
        except Exception as e:
            logger.error(f"Initial credit refresh failed: {e}")

        self._task = asyncio.create_task(self._run_loop(interval))
        logger.info(f"Credit refresh service started (every {interval:g} hours)")

    async def stop(self) -> None:
        if not self._running:
            logger.warning("Credit refresh service is not running")
            return

        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Credit refresh service stopped")

    async def _run_loop(self, interval_hours: float) -> None:
        while self._running:
            await asyncio.sleep(interval_hours * 3600)
            if not self._running:
                break
            try:
                await self.refresh_all_eligible()
            except Exception as e:
                logger.error(f"Scheduled credit refresh failed: {e}")
