"""Repository pattern for ledger database operations."""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from .models import (
    UserModel,
    CreditReservationModel,
    ReservationSettlementModel,
    CreditAuditLogModel,
    CreditCompensationModel,
    CreditRefreshHistoryModel,
    UsageRecordModel,
)

logger = logging.getLogger(__name__)


class UserRepository:
    """
    Repository for user balance rows.

    All methods work inside the caller's session so that reads, locks and
    writes share one transaction.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, user_id: str) -> Optional[UserModel]:
        """
        Get a user without locking.

        Args:
            user_id: User ID string

        Returns:
            UserModel or None if not found
        """
        result = await self.db.execute(
            select(UserModel).where(UserModel.id == user_id)
        )
        return result.scalar_one_or_none()

    async def get_for_update(self, user_id: str) -> Optional[UserModel]:
        """
        Get a user with a row-level lock for atomic balance updates.

        Uses SELECT ... FOR UPDATE to prevent lost updates when several
        requests change the same balance concurrently.

        Args:
            user_id: User ID string

        Returns:
            UserModel or None if not found
        """
        result = await self.db.execute(
            select(UserModel)
            .where(UserModel.id == user_id)
            .with_for_update()
        )
        return result.scalar_one_or_none()

    def add(self, user_id: str, email: Optional[str], balance: Decimal, tier: str) -> UserModel:
        user = UserModel(
            id=user_id,
            email=email,
            credit_balance=balance,
            subscription_tier=tier,
        )
        self.db.add(user)
        return user


class ReservationRepository:
    """Repository for credit reservations and their settlements."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_for_update(self, reservation_id: str) -> Optional[CreditReservationModel]:
        """Get a reservation with a row-level lock."""
        result = await self.db.execute(
            select(CreditReservationModel)
            .where(CreditReservationModel.id == reservation_id)
            .with_for_update()
        )
        return result.scalar_one_or_none()

    async def get(self, reservation_id: str) -> Optional[CreditReservationModel]:
        result = await self.db.execute(
            select(CreditReservationModel).where(CreditReservationModel.id == reservation_id)
        )
        return result.scalar_one_or_none()

    async def list_active_for_user(
        self,
        user_id: str,
        reservation_type: Optional[str] = None,
        limit: int = 50,
    ) -> list[CreditReservationModel]:
        """
        Get active reservations for a user, newest first.

        Args:
            user_id: User ID string
            reservation_type: Optional filter by type
            limit: Maximum number of reservations to return

        Returns:
            List of CreditReservationModel
        """
        query = select(CreditReservationModel).where(
            CreditReservationModel.user_id == user_id,
            CreditReservationModel.status == "active",
        )

        if reservation_type:
            query = query.where(CreditReservationModel.reservation_type == reservation_type)

        query = query.order_by(CreditReservationModel.created_at.desc()).limit(limit)

        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def list_expired_ids(self, now: datetime, limit: int) -> list[str]:
        """IDs of active reservations whose expiry has passed, oldest expiry first."""
        result = await self.db.execute(
            select(CreditReservationModel.id)
            .where(
                CreditReservationModel.status == "active",
                CreditReservationModel.expires_at < now,
            )
            .order_by(CreditReservationModel.expires_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_settlements(self, reservation_id: str) -> list[ReservationSettlementModel]:
        result = await self.db.execute(
            select(ReservationSettlementModel)
            .where(ReservationSettlementModel.reservation_id == reservation_id)
            .order_by(ReservationSettlementModel.created_at)
        )
        return list(result.scalars().all())


class CompensationRepository:
    """Repository for queued compensation refunds."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def list_pending_ids(self, limit: int) -> list[str]:
        """IDs of pending compensations, oldest first."""
        result = await self.db.execute(
            select(CreditCompensationModel.id)
            .where(CreditCompensationModel.status == "pending")
            .order_by(CreditCompensationModel.created_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_for_update(self, compensation_id: str) -> Optional[CreditCompensationModel]:
        result = await self.db.execute(
            select(CreditCompensationModel)
            .where(CreditCompensationModel.id == compensation_id)
            .with_for_update()
        )
        return result.scalar_one_or_none()

    async def get(self, compensation_id: str) -> Optional[CreditCompensationModel]:
        result = await self.db.execute(
            select(CreditCompensationModel).where(CreditCompensationModel.id == compensation_id)
        )
        return result.scalar_one_or_none()


class AuditRepository:
    """Read access to the audit trail. Entries are only ever appended by the ledger."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_entries(
        self,
        user_id: str,
        limit: int = 50,
        offset: int = 0,
        operation: Optional[str] = None,
    ) -> list[CreditAuditLogModel]:
        """
        Get audit history for a user, newest first.

        Args:
            user_id: User ID string
            limit: Maximum number of entries to return
            offset: Number of entries to skip
            operation: Optional filter by operation

        Returns:
            List of CreditAuditLogModel
        """
        query = select(CreditAuditLogModel).where(CreditAuditLogModel.user_id == user_id)

        if operation:
            query = query.where(CreditAuditLogModel.operation == operation)

        query = (
            query
            .order_by(CreditAuditLogModel.created_at.desc())
            .limit(limit)
            .offset(offset)
        )

        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def get_for_entity(self, entity_type: str, entity_id: str) -> list[CreditAuditLogModel]:
        result = await self.db.execute(
            select(CreditAuditLogModel)
            .where(
                CreditAuditLogModel.related_entity_type == entity_type,
                CreditAuditLogModel.related_entity_id == entity_id,
            )
            .order_by(CreditAuditLogModel.created_at)
        )
        return list(result.scalars().all())


class UsageRepository:
    """Repository for per-call usage records."""

    def __init__(self, db: AsyncSession):
        self.db = db

    def _filters(self, user_id: str, start: Optional[datetime], end: Optional[datetime]) -> list:
        filters = [UsageRecordModel.user_id == user_id]
        if start:
            filters.append(UsageRecordModel.created_at >= start)
        if end:
            filters.append(UsageRecordModel.created_at <= end)
        return filters

    async def get_recent(
        self,
        user_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 100,
    ) -> list[UsageRecordModel]:
        result = await self.db.execute(
            select(UsageRecordModel)
            .where(*self._filters(user_id, start, end))
            .order_by(UsageRecordModel.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_totals(
        self,
        user_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> dict:
        """
        Aggregate usage for a user.

        Returns:
            Dict with total_units, total_cost_usd, total_credits_used, total_requests
        """
        result = await self.db.execute(
            select(
                func.coalesce(func.sum(UsageRecordModel.total_units), 0),
                func.coalesce(func.sum(UsageRecordModel.total_cost_usd), 0),
                func.coalesce(func.sum(UsageRecordModel.credits_used), 0),
                func.count(UsageRecordModel.id),
            ).where(*self._filters(user_id, start, end))
        )
        total_units, total_cost, total_credits, total_requests = result.one()
        return {
            "total_units": int(total_units or 0),
            "total_cost_usd": Decimal(str(total_cost or 0)),
            "total_credits_used": Decimal(str(total_credits or 0)),
            "total_requests": int(total_requests or 0),
        }


class RefreshRepository:
    """Repository for periodic credit refreshes."""

    def __init__(self, db: AsyncSession):
        self.db = db

    def _due_filter(self, cutoff: datetime):
        """Users without a hold whose last refresh (or signup) is at or before cutoff."""
        return and_(
            UserModel.credit_refresh_hold.is_(False),
            or_(
                UserModel.last_credit_refresh <= cutoff,
                and_(UserModel.last_credit_refresh.is_(None), UserModel.created_at <= cutoff),
            ),
        )

    async def list_due_ids(self, cutoff: datetime, limit: int) -> list[str]:
        """IDs of users due a refresh, longest-waiting first."""
        result = await self.db.execute(
            select(UserModel.id)
            .where(self._due_filter(cutoff))
            .order_by(func.coalesce(UserModel.last_credit_refresh, UserModel.created_at))
            .limit(limit)
        )
        return list(result.scalars().all())

    async def count_due(self, cutoff: datetime) -> int:
        result = await self.db.execute(
            select(func.count(UserModel.id)).where(self._due_filter(cutoff))
        )
        return int(result.scalar_one())

    async def count_users(self) -> int:
        result = await self.db.execute(select(func.count(UserModel.id)))
        return int(result.scalar_one())

    def add_history(
        self,
        user_id: str,
        refresh_type: str,
        old_balance: Decimal,
        new_balance: Decimal,
        credits_added: Decimal,
        refresh_date: datetime,
    ) -> CreditRefreshHistoryModel:
        entry = CreditRefreshHistoryModel(
            user_id=user_id,
            refresh_type=refresh_type,
            old_balance=old_balance,
            new_balance=new_balance,
            credits_added=credits_added,
            refresh_date=refresh_date,
        )
        self.db.add(entry)
        return entry

    async def get_history(self, user_id: str, limit: int = 50) -> list[CreditRefreshHistoryModel]:
        result = await self.db.execute(
            select(CreditRefreshHistoryModel)
            .where(CreditRefreshHistoryModel.user_id == user_id)
            .order_by(CreditRefreshHistoryModel.refresh_date.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_totals_by_type(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[dict]:
        """
        Refresh count, total and average credits per refresh type.

        Returns:
            List of dicts with refresh_type, count, total_credits, avg_credits
        """
        filters = []
        if start:
            filters.append(CreditRefreshHistoryModel.created_at >= start)
        if end:
            filters.append(CreditRefreshHistoryModel.created_at <= end)

        result = await self.db.execute(
            select(
                CreditRefreshHistoryModel.refresh_type,
                func.count(CreditRefreshHistoryModel.id),
                func.coalesce(func.sum(CreditRefreshHistoryModel.credits_added), 0),
            )
            .where(*filters)
            .group_by(CreditRefreshHistoryModel.refresh_type)
        )
        totals = []
        for refresh_type, count, total in result.all():
            total_credits = Decimal(str(total or 0))
            totals.append({
                "refresh_type": refresh_type,
                "count": int(count),
                "total_credits": total_credits,
                "avg_credits": (total_credits / count).quantize(Decimal("0.0001")) if count else Decimal("0"),
            })
        return totals
