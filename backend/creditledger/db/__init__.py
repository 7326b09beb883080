"""Database module for the credit ledger."""

from .database import Base, Database
from .models import (
    UserModel,
    CreditReservationModel,
    ReservationSettlementModel,
    CreditAuditLogModel,
    CreditCompensationModel,
    CreditRefreshHistoryModel,
    UsageRecordModel,
    ModelPricingModel,
)
from .repository import (
    UserRepository,
    ReservationRepository,
    CompensationRepository,
    AuditRepository,
    UsageRepository,
    RefreshRepository,
)

__all__ = [
    "Base",
    "Database",
    "UserModel",
    "CreditReservationModel",
    "ReservationSettlementModel",
    "CreditAuditLogModel",
    "CreditCompensationModel",
    "CreditRefreshHistoryModel",
    "UsageRecordModel",
    "ModelPricingModel",
    "UserRepository",
    "ReservationRepository",
    "CompensationRepository",
    "AuditRepository",
    "UsageRepository",
    "RefreshRepository",
]
