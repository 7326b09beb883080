"""Data models for the credit ledger."""

from .credits import (
    AuditOperation,
    RelatedEntityType,
    ReservationStatus,
    ReservationType,
    SettlementType,
    CompensationStatus,
    OperationContext,
    ReservationContext,
    UsageData,
    UsageInput,
    UnitCount,
    DeductResult,
    GrantResult,
    ReservationResult,
    SettlementResult,
    CancelResult,
    BalanceCheck,
    ActiveReservation,
    UsageSummary,
    UsageStats,
    ExpirySweepResult,
    CompensationOutcome,
    RefreshType,
    RefreshEligibility,
    RefreshResult,
    RefreshBatchResult,
    RefreshInfo,
    CreditEstimate,
    UserResponse,
    AuditEntryResponse,
    UsageRecordResponse,
    CompensationResponse,
)

__all__ = [
    "AuditOperation",
    "RelatedEntityType",
    "ReservationStatus",
    "ReservationType",
    "SettlementType",
    "CompensationStatus",
    "OperationContext",
    "ReservationContext",
    "UsageData",
    "UsageInput",
    "UnitCount",
    "DeductResult",
    "GrantResult",
    "ReservationResult",
    "SettlementResult",
    "CancelResult",
    "BalanceCheck",
    "ActiveReservation",
    "UsageSummary",
    "UsageStats",
    "ExpirySweepResult",
    "CompensationOutcome",
    "RefreshType",
    "RefreshEligibility",
    "RefreshResult",
    "RefreshBatchResult",
    "RefreshInfo",
    "CreditEstimate",
    "UserResponse",
    "AuditEntryResponse",
    "UsageRecordResponse",
    "CompensationResponse",
]
