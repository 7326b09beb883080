"""SQLAlchemy database models."""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    String,
    Text,
    Integer,
    Numeric,
    DateTime,
    ForeignKey,
    JSON,
    Index,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.types import TypeDecorator

from .database import Base


def generate_uuid() -> str:
    """Generate a UUID string."""
    return str(uuid.uuid4())


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware UTC timestamp.

    SQLite drops tzinfo on the way in and hands back naive values, so results
    are re-tagged as UTC and binds are normalised to UTC.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


# Credits are stored with 4 decimal places, USD prices with 8
Credits = Numeric(12, 4, asdecimal=True)
UsdAmount = Numeric(14, 8, asdecimal=True)


class UserModel(Base):
    """
    Database model for users.

    Users are created by the identity collaborator. The credit balance lives
    on this row and is only ever written by the ledger engine.
    """

    __tablename__ = "users"

    # Primary key - identity provider's user ID (string format)
    id = Column(String(100), primary_key=True)

    email = Column(String(255), nullable=True, unique=True, index=True)

    # Balance (4 decimal places, no hard floor)
    credit_balance = Column(Credits, nullable=False, default=0)
    subscription_tier = Column(String(50), nullable=False, default="free")

    # Monthly refresh
    last_credit_refresh = Column(UTCDateTime, nullable=True)
    credit_refresh_hold = Column(Boolean, nullable=False, default=False)
    custom_credit_amount = Column(Credits, nullable=True)  # Overrides the tier amount when set

    # Timestamps
    created_at = Column(UTCDateTime, default=utc_now, nullable=False)
    updated_at = Column(UTCDateTime, default=utc_now, onupdate=utc_now, nullable=False)

    __table_args__ = (
        Index("idx_users_last_refresh", "last_credit_refresh"),
    )

    # Relationships
    reservations = relationship(
        "CreditReservationModel",
        back_populates="user",
        cascade="all, delete-orphan",
    )
    audit_entries = relationship(
        "CreditAuditLogModel",
        back_populates="user",
        cascade="all, delete-orphan",
        order_by="desc(CreditAuditLogModel.created_at)",
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, balance={self.credit_balance})>"


class CreditReservationModel(Base):
    """
    Provisional hold of credits made before the true cost is known.

    Lifecycle: active -> settled | expired | cancelled (all terminal).
    """

    __tablename__ = "credit_reservations"

    id = Column(String(36), primary_key=True, default=generate_uuid)

    user_id = Column(
        String(100),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )

    # Correlation only, owned by the conversation collaborator
    conversation_id = Column(String(100), nullable=True)
    message_id = Column(String(100), nullable=True)

    credits_reserved = Column(Credits, nullable=False)
    actual_credits_used = Column(Credits, nullable=True)

    status = Column(String(20), nullable=False, default="active")  # active, settled, expired, cancelled
    reservation_type = Column(String(30), nullable=False, default="streaming")  # streaming, batch, preprocessing, manual

    # Structured ReservationContext (see models.credits)
    context = Column(JSON, nullable=True)

    expires_at = Column(UTCDateTime, nullable=False)
    settled_at = Column(UTCDateTime, nullable=True)
    error_reason = Column(Text, nullable=True)

    created_at = Column(UTCDateTime, default=utc_now, nullable=False)
    updated_at = Column(UTCDateTime, default=utc_now, onupdate=utc_now, nullable=False)

    user = relationship("UserModel", back_populates="reservations")
    settlements = relationship(
        "ReservationSettlementModel",
        back_populates="reservation",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        CheckConstraint("credits_reserved > 0", name="ck_reservations_positive"),
        Index("idx_reservations_user_status", "user_id", "status"),
        Index("idx_reservations_status_expires", "status", "expires_at"),
        Index("idx_reservations_conversation", "conversation_id", "status"),
        Index("idx_reservations_message", "message_id"),
        Index("idx_reservations_type_status", "reservation_type", "status", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<CreditReservation(id={self.id}, user_id={self.user_id}, status={self.status})>"


class ReservationSettlementModel(Base):
    """Reconciliation record written when a reservation closes normally."""

    __tablename__ = "reservation_settlements"

    id = Column(String(36), primary_key=True, default=generate_uuid)

    reservation_id = Column(
        String(36),
        ForeignKey("credit_reservations.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id = Column(
        String(100),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )

    credits_reserved = Column(Credits, nullable=False)
    actual_credits_used = Column(Credits, nullable=False)
    credits_refunded = Column(Credits, nullable=False)
    balance_before = Column(Credits, nullable=False)
    balance_after = Column(Credits, nullable=False)

    settlement_type = Column(String(20), nullable=False)  # completed, partial, failed, timeout, cancelled, exceeded

    usage_breakdown = Column(JSON, nullable=True)
    accuracy_metrics = Column(JSON, nullable=True)
    processing_time_ms = Column(Integer, nullable=True)

    created_at = Column(UTCDateTime, default=utc_now, nullable=False)

    reservation = relationship("CreditReservationModel", back_populates="settlements")

    __table_args__ = (
        CheckConstraint("actual_credits_used >= 0", name="ck_settlements_usage"),
        CheckConstraint("credits_refunded >= 0", name="ck_settlements_refund"),
        Index("idx_settlements_reservation", "reservation_id"),
        Index("idx_settlements_user_date", "user_id", "created_at"),
        Index("idx_settlements_type_date", "settlement_type", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<ReservationSettlement(id={self.id}, reservation_id={self.reservation_id}, type={self.settlement_type})>"


class CreditAuditLogModel(Base):
    """
    Append-only record of a single balance mutation.

    balance_after is always balance_before moved by credits_amount in the
    direction of the operation (see core.audit).
    """

    __tablename__ = "credit_audit_log"

    id = Column(String(36), primary_key=True, default=generate_uuid)

    user_id = Column(
        String(100),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )

    operation = Column(String(50), nullable=False)
    credits_amount = Column(Credits, nullable=False)
    balance_before = Column(Credits, nullable=False)
    balance_after = Column(Credits, nullable=False)

    related_entity_type = Column(String(50), nullable=True)
    related_entity_id = Column(String(100), nullable=True)

    reason = Column(Text, nullable=True)
    # Named "metadata" in the table; the attribute name is reserved by SQLAlchemy
    entry_metadata = Column("metadata", JSON, nullable=True)

    # Request provenance
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(Text, nullable=True)

    created_at = Column(UTCDateTime, default=utc_now, nullable=False)

    user = relationship("UserModel", back_populates="audit_entries")

    __table_args__ = (
        Index("idx_credit_audit_user_date", "user_id", "created_at"),
        Index("idx_credit_audit_operation", "operation", "created_at"),
        Index("idx_credit_audit_entity", "related_entity_type", "related_entity_id"),
    )

    def __repr__(self) -> str:
        return f"<CreditAuditLog(id={self.id}, user_id={self.user_id}, operation={self.operation})>"


class CreditCompensationModel(Base):
    """Queued refund for a failed operation that was not backed by a reservation."""

    __tablename__ = "credit_compensations"

    id = Column(String(36), primary_key=True, default=generate_uuid)

    user_id = Column(
        String(100),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    message_id = Column(String(100), nullable=True)

    credits_to_refund = Column(Credits, nullable=False)
    reason = Column(Text, nullable=False)

    status = Column(String(20), nullable=False, default="pending")  # pending, processed, failed
    processed_at = Column(UTCDateTime, nullable=True)
    error_reason = Column(Text, nullable=True)

    created_at = Column(UTCDateTime, default=utc_now, nullable=False)

    __table_args__ = (
        CheckConstraint("credits_to_refund > 0", name="ck_compensations_positive"),
        Index("idx_compensation_status_date", "status", "created_at"),
        Index("idx_compensation_user_date", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<CreditCompensation(id={self.id}, user_id={self.user_id}, status={self.status})>"


class CreditRefreshHistoryModel(Base):
    """One row per periodic credit refresh applied to a user."""

    __tablename__ = "credit_refresh_history"

    id = Column(String(36), primary_key=True, default=generate_uuid)

    user_id = Column(
        String(100),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )

    refresh_type = Column(String(30), nullable=False)  # monthly, initial, manual, subscription_renewal
    old_balance = Column(Credits, nullable=False)
    new_balance = Column(Credits, nullable=False)
    credits_added = Column(Credits, nullable=False)
    refresh_date = Column(UTCDateTime, default=utc_now, nullable=False)

    created_at = Column(UTCDateTime, default=utc_now, nullable=False)

    __table_args__ = (
        CheckConstraint("credits_added > 0", name="ck_refresh_positive"),
        Index("idx_refresh_user_date", "user_id", "refresh_date"),
        Index("idx_refresh_type_date", "refresh_type", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<CreditRefreshHistory(id={self.id}, user_id={self.user_id}, credits_added={self.credits_added})>"


class UsageRecordModel(Base):
    """One row per billable model call."""

    __tablename__ = "usage_records"

    id = Column(String(36), primary_key=True, default=generate_uuid)

    user_id = Column(
        String(100),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    conversation_id = Column(String(100), nullable=True)
    message_id = Column(String(100), nullable=True)

    provider = Column(String(50), nullable=False)
    model = Column(String(100), nullable=False)

    input_units = Column(Integer, nullable=False)
    output_units = Column(Integer, nullable=False)
    total_units = Column(Integer, nullable=False)

    input_cost_usd = Column(UsdAmount, nullable=False)
    output_cost_usd = Column(UsdAmount, nullable=False)
    total_cost_usd = Column(UsdAmount, nullable=False)

    credits_used = Column(Credits, nullable=False)
    credits_charged = Column(Integer, nullable=False)  # Always ceil(credits_used)

    created_at = Column(UTCDateTime, default=utc_now, nullable=False)

    __table_args__ = (
        CheckConstraint("input_units >= 0 AND output_units >= 0", name="ck_usage_units"),
        CheckConstraint("credits_charged >= 0", name="ck_usage_charged"),
        UniqueConstraint("message_id", "provider", name="unq_usage_message_provider"),
        Index("idx_usage_user_date", "user_id", "created_at"),
        Index("idx_usage_model", "provider", "model", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<UsageRecord(id={self.id}, user_id={self.user_id}, charged={self.credits_charged})>"


class ModelPricingModel(Base):
    """
    Versioned per-model unit pricing.

    A row applies from effective_date until deprecated_date (exclusive) or
    indefinitely when deprecated_date is null.
    """

    __tablename__ = "model_pricing"

    id = Column(String(36), primary_key=True, default=generate_uuid)

    model_name = Column(String(100), nullable=False)
    provider = Column(String(50), nullable=False)

    input_price_per_1k = Column(UsdAmount, nullable=False)
    output_price_per_1k = Column(UsdAmount, nullable=False)

    effective_date = Column(UTCDateTime, nullable=False)
    deprecated_date = Column(UTCDateTime, nullable=True)

    created_at = Column(UTCDateTime, default=utc_now, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "deprecated_date IS NULL OR effective_date < deprecated_date",
            name="ck_model_pricing_dates",
        ),
        CheckConstraint(
            "input_price_per_1k >= 0 AND output_price_per_1k >= 0",
            name="ck_model_pricing_prices",
        ),
        Index("idx_model_pricing_lookup", "model_name", "provider", "effective_date"),
    )

    def __repr__(self) -> str:
        return f"<ModelPricing(model={self.model_name}, provider={self.provider}, effective={self.effective_date})>"
