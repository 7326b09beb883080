"""Pydantic models for the credit ledger."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

# Scalar values allowed in structured metadata maps
MetadataValue = Union[str, int, float, bool, None]

CONTEXT_SCHEMA_VERSION = 1


class AuditOperation(str, Enum):
    """Balance mutations recorded in the audit log."""
    DEDUCT = "deduct"
    REFUND = "refund"
    REFRESH = "refresh"
    PURCHASE = "purchase"
    ADJUSTMENT = "adjustment"
    RESERVE = "reserve"
    SETTLE = "settle"
    CANCEL = "cancel"
    EXPIRE = "expire"


class RelatedEntityType(str, Enum):
    """Entity an audit entry points at."""
    MESSAGE = "message"
    CONVERSATION = "conversation"
    PURCHASE = "purchase"
    SUBSCRIPTION = "subscription"
    COMPENSATION = "compensation"
    RESERVATION = "reservation"
    SETTLEMENT = "settlement"


class ReservationStatus(str, Enum):
    ACTIVE = "active"
    SETTLED = "settled"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class ReservationType(str, Enum):
    STREAMING = "streaming"
    BATCH = "batch"
    PREPROCESSING = "preprocessing"
    MANUAL = "manual"


class SettlementType(str, Enum):
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    EXCEEDED = "exceeded"


class CompensationStatus(str, Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"


class RefreshType(str, Enum):
    MONTHLY = "monthly"
    INITIAL = "initial"
    MANUAL = "manual"
    SUBSCRIPTION_RENEWAL = "subscription_renewal"


# Context fields each reservation type must carry
REQUIRED_CONTEXT_FIELDS: dict[ReservationType, tuple[str, ...]] = {
    ReservationType.STREAMING: ("model", "provider"),
    ReservationType.BATCH: ("model", "provider"),
    ReservationType.PREPROCESSING: (),
    ReservationType.MANUAL: (),
}


# ============ Context maps ============


class OperationContext(BaseModel):
    """Caller provenance and correlation attached to a balance mutation."""
    entity_type: Optional[RelatedEntityType] = None
    entity_id: Optional[str] = None
    reason: Optional[str] = None
    conversation_id: Optional[str] = None
    message_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    metadata: dict[str, MetadataValue] = Field(default_factory=dict)


class ReservationContext(BaseModel):
    """
    Versioned description of what a reservation is holding credits for.

    Stored on the reservation row. Which fields are mandatory depends on the
    reservation type (see REQUIRED_CONTEXT_FIELDS).
    """
    schema_version: int = CONTEXT_SCHEMA_VERSION
    model: Optional[str] = None
    provider: Optional[str] = None
    estimated_units: Optional[int] = Field(default=None, ge=0)
    operation_type: Optional[str] = None
    token_count_method: Optional[str] = None
    buffer_multiplier: Optional[float] = None
    confidence: Optional[str] = None
    metadata: dict[str, MetadataValue] = Field(default_factory=dict)

    def missing_fields(self, reservation_type: ReservationType) -> list[str]:
        """Required fields for the reservation type that are not set."""
        return [
            name for name in REQUIRED_CONTEXT_FIELDS[reservation_type]
            if not getattr(self, name)
        ]


class UsageData(BaseModel):
    """Measured usage reported when a reservation is settled."""
    input_units: int = Field(default=0, ge=0)
    output_units: int = Field(default=0, ge=0)
    processing_time_ms: Optional[int] = Field(default=None, ge=0)
    metadata: dict[str, MetadataValue] = Field(default_factory=dict)

    @property
    def total_units(self) -> int:
        return self.input_units + self.output_units


class UsageInput(BaseModel):
    """A billable model call to be recorded."""
    user_id: str = Field(..., min_length=1)
    provider: str = Field(..., min_length=1)
    model: str = Field(..., min_length=1)
    input_units: int = Field(..., ge=0)
    output_units: int = Field(..., ge=0)
    conversation_id: Optional[str] = None
    message_id: Optional[str] = None


class UnitCount(BaseModel):
    """Unit (token) counts extracted upstream from a request."""
    input_units: int = Field(..., ge=0)
    estimated_output_units: int = Field(..., ge=0)
    is_exact: bool = False
    method: str = "simple-estimation"
    image_units: int = Field(default=0, ge=0)


# ============ Operation results ============


class DeductResult(BaseModel):
    previous_balance: Decimal
    new_balance: Decimal
    credits_deducted: Decimal


class GrantResult(BaseModel):
    previous_balance: Decimal
    new_balance: Decimal
    credits_added: Decimal
    operation: AuditOperation


class ReservationResult(BaseModel):
    reservation_id: str
    credits_reserved: Decimal
    previous_balance: Decimal
    new_balance: Decimal
    expires_at: datetime
    reservation_type: ReservationType


class SettlementResult(BaseModel):
    reservation_id: str
    settlement_id: str
    credits_reserved: Decimal
    actual_credits_used: Decimal
    credits_refunded: Decimal
    previous_balance: Decimal
    new_balance: Decimal
    settlement_type: SettlementType
    accuracy_metrics: dict = Field(default_factory=dict)


class CancelResult(BaseModel):
    reservation_id: str
    credits_refunded: Decimal
    previous_balance: Decimal
    new_balance: Decimal
    reason: str


class BalanceCheck(BaseModel):
    """Advisory, unlocked balance read. A later deduct may still fail."""
    has_credits: bool
    balance: Decimal
    required: Decimal
    subscription_tier: Optional[str] = None
    reason: Optional[str] = None


class ActiveReservation(BaseModel):
    id: str
    credits_reserved: Decimal
    reservation_type: ReservationType
    context: dict = Field(default_factory=dict)
    expires_at: datetime
    created_at: datetime
    is_expired: bool


class UsageSummary(BaseModel):
    id: str
    provider: str
    model: str
    total_units: int
    total_cost_usd: Decimal
    credits_used: Decimal
    credits_charged: int
    created_at: datetime


class UsageStats(BaseModel):
    current_balance: Decimal
    subscription_tier: str
    total_units: int
    total_cost_usd: Decimal
    total_credits_used: Decimal
    total_requests: int
    recent_usage: list[UsageSummary] = Field(default_factory=list)


class ExpirySweepResult(BaseModel):
    processed: int = 0
    total_refunded: Decimal = Decimal("0")
    errors: list[str] = Field(default_factory=list)


class CompensationOutcome(BaseModel):
    compensation_id: str
    user_id: str
    success: bool
    credits_refunded: Optional[Decimal] = None
    error: Optional[str] = None


class RefreshEligibility(BaseModel):
    eligible: bool
    reason: str
    days_since_refresh: Optional[float] = None
    days_until_eligible: Optional[float] = None
    credits_to_add: Optional[Decimal] = None


class RefreshResult(BaseModel):
    user_id: str
    email: Optional[str] = None
    refresh_type: RefreshType
    credits_added: Decimal
    previous_balance: Decimal
    new_balance: Decimal
    subscription_tier: str
    refreshed_at: datetime


class RefreshBatchResult(BaseModel):
    total: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    dry_run: bool = False
    refreshed: list[RefreshResult] = Field(default_factory=list)
    errors: list[dict] = Field(default_factory=list)


class RefreshInfo(BaseModel):
    next_refresh_date: Optional[datetime] = None
    days_remaining: int
    credits_to_receive: Decimal
    current_balance: Decimal
    subscription_tier: str
    is_eligible: bool
    refresh_hold: bool
    reason: str


class CreditEstimate(BaseModel):
    """Pre-flight credit estimate for a request."""
    input_units: int = Field(..., ge=0)
    estimated_output_units: int = Field(..., ge=0)
    input_cost_usd: Decimal
    output_cost_usd: Decimal
    total_cost_usd: Decimal
    credits_needed: Decimal
    credits_to_charge: int = Field(..., ge=0)
    is_exact: bool = False
    token_count_method: str
    confidence: str
    buffer_multiplier: float

    @model_validator(mode="after")
    def _charge_is_ceiling(self) -> "CreditEstimate":
        if self.credits_to_charge < self.credits_needed:
            raise ValueError("credits_to_charge must not be below credits_needed")
        return self


# ============ API request bodies ============


class DeductRequest(BaseModel):
    user_id: str
    amount: Decimal
    context: OperationContext = Field(default_factory=OperationContext)


class ReserveRequest(BaseModel):
    user_id: str
    amount: Decimal
    reservation_type: ReservationType = ReservationType.STREAMING
    ttl_minutes: Optional[float] = None
    expires_at: Optional[datetime] = None
    reservation_context: ReservationContext = Field(default_factory=ReservationContext)
    context: OperationContext = Field(default_factory=OperationContext)


class SettleRequest(BaseModel):
    actual_credits_used: Decimal
    usage: UsageData = Field(default_factory=UsageData)


class CancelRequest(BaseModel):
    reason: str = "Operation cancelled"


class EstimateRequest(BaseModel):
    content: str = ""
    model: str
    provider: str
    system_prompt: Optional[str] = None
    conversation_history: list[str] = Field(default_factory=list)
    attachments: int = Field(default=0, ge=0)
    unit_count: Optional[UnitCount] = None


class CompensationRequest(BaseModel):
    user_id: str
    credits: Decimal
    reason: str = Field(..., min_length=1)
    message_id: Optional[str] = None


class CreateUserRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=100)
    email: Optional[str] = None
    initial_credits: Decimal = Decimal("0")
    tier: str = "free"


class RefreshRequest(BaseModel):
    amount: Optional[Decimal] = None
    reason: str = "manual"
    force: bool = False


class GrantRequest(BaseModel):
    user_id: str
    amount: Decimal
    operation: AuditOperation = AuditOperation.PURCHASE
    context: OperationContext = Field(default_factory=OperationContext)


# ============ API responses ============


class UserResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    email: Optional[str] = None
    credit_balance: Decimal
    subscription_tier: str
    created_at: datetime


class AuditEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    operation: str
    credits_amount: Decimal
    balance_before: Decimal
    balance_after: Decimal
    related_entity_type: Optional[str] = None
    related_entity_id: Optional[str] = None
    reason: Optional[str] = None
    entry_metadata: Optional[dict] = Field(default=None, serialization_alias="metadata")
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime


class UsageRecordResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    conversation_id: Optional[str] = None
    message_id: Optional[str] = None
    provider: str
    model: str
    input_units: int
    output_units: int
    total_units: int
    input_cost_usd: Decimal
    output_cost_usd: Decimal
    total_cost_usd: Decimal
    credits_used: Decimal
    credits_charged: int
    created_at: datetime


class CompensationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    message_id: Optional[str] = None
    credits_to_refund: Decimal
    reason: str
    status: str
    created_at: datetime


class EstimateResponse(BaseModel):
    estimate: CreditEstimate
    reservation_amount: int
