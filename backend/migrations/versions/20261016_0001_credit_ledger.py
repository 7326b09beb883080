"""Credit ledger schema: users, reservations, settlements, audit log,
compensations, usage records and model pricing.

Revision ID: 001
Revises:
Create Date: 2026-10-16

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

CREDITS = sa.Numeric(12, 4)
USD = sa.Numeric(14, 8)


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.String(100), primary_key=True),
        sa.Column('email', sa.String(255), nullable=True, unique=True, index=True),
        sa.Column('credit_balance', CREDITS, nullable=False, server_default='0'),
        sa.Column('subscription_tier', sa.String(50), nullable=False, server_default='free'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        'credit_reservations',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(100), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('conversation_id', sa.String(100), nullable=True),
        sa.Column('message_id', sa.String(100), nullable=True),
        sa.Column('credits_reserved', CREDITS, nullable=False),
        sa.Column('actual_credits_used', CREDITS, nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='active'),
        sa.Column('reservation_type', sa.String(30), nullable=False, server_default='streaming'),
        sa.Column('context', sa.JSON, nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('settled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('error_reason', sa.Text, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint('credits_reserved > 0', name='ck_reservations_positive'),
    )
    op.create_index('idx_reservations_user_status', 'credit_reservations', ['user_id', 'status'])
    op.create_index('idx_reservations_status_expires', 'credit_reservations', ['status', 'expires_at'])
    op.create_index('idx_reservations_conversation', 'credit_reservations', ['conversation_id', 'status'])
    op.create_index('idx_reservations_message', 'credit_reservations', ['message_id'])
    op.create_index('idx_reservations_type_status', 'credit_reservations', ['reservation_type', 'status', 'created_at'])

    op.create_table(
        'reservation_settlements',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('reservation_id', sa.String(36), sa.ForeignKey('credit_reservations.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_id', sa.String(100), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('credits_reserved', CREDITS, nullable=False),
        sa.Column('actual_credits_used', CREDITS, nullable=False),
        sa.Column('credits_refunded', CREDITS, nullable=False),
        sa.Column('balance_before', CREDITS, nullable=False),
        sa.Column('balance_after', CREDITS, nullable=False),
        sa.Column('settlement_type', sa.String(20), nullable=False),
        sa.Column('usage_breakdown', sa.JSON, nullable=True),
        sa.Column('accuracy_metrics', sa.JSON, nullable=True),
        sa.Column('processing_time_ms', sa.Integer, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint('actual_credits_used >= 0', name='ck_settlements_usage'),
        sa.CheckConstraint('credits_refunded >= 0', name='ck_settlements_refund'),
    )
    op.create_index('idx_settlements_reservation', 'reservation_settlements', ['reservation_id'])
    op.create_index('idx_settlements_user_date', 'reservation_settlements', ['user_id', 'created_at'])
    op.create_index('idx_settlements_type_date', 'reservation_settlements', ['settlement_type', 'created_at'])

    # Append-only; rows are never updated or deleted by the application
    op.create_table(
        'credit_audit_log',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(100), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('operation', sa.String(50), nullable=False),
        sa.Column('credits_amount', CREDITS, nullable=False),
        sa.Column('balance_before', CREDITS, nullable=False),
        sa.Column('balance_after', CREDITS, nullable=False),
        sa.Column('related_entity_type', sa.String(50), nullable=True),
        sa.Column('related_entity_id', sa.String(100), nullable=True),
        sa.Column('reason', sa.Text, nullable=True),
        sa.Column('metadata', sa.JSON, nullable=True),
        sa.Column('ip_address', sa.String(64), nullable=True),
        sa.Column('user_agent', sa.Text, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('idx_credit_audit_user_date', 'credit_audit_log', ['user_id', 'created_at'])
    op.create_index('idx_credit_audit_operation', 'credit_audit_log', ['operation', 'created_at'])
    op.create_index('idx_credit_audit_entity', 'credit_audit_log', ['related_entity_type', 'related_entity_id'])

    op.create_table(
        'credit_compensations',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(100), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('message_id', sa.String(100), nullable=True),
        sa.Column('credits_to_refund', CREDITS, nullable=False),
        sa.Column('reason', sa.Text, nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('error_reason', sa.Text, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint('credits_to_refund > 0', name='ck_compensations_positive'),
    )
    op.create_index('idx_compensation_status_date', 'credit_compensations', ['status', 'created_at'])
    op.create_index('idx_compensation_user_date', 'credit_compensations', ['user_id', 'created_at'])

    op.create_table(
        'usage_records',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(100), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('conversation_id', sa.String(100), nullable=True),
        sa.Column('message_id', sa.String(100), nullable=True),
        sa.Column('provider', sa.String(50), nullable=False),
        sa.Column('model', sa.String(100), nullable=False),
        sa.Column('input_units', sa.Integer, nullable=False),
        sa.Column('output_units', sa.Integer, nullable=False),
        sa.Column('total_units', sa.Integer, nullable=False),
        sa.Column('input_cost_usd', USD, nullable=False),
        sa.Column('output_cost_usd', USD, nullable=False),
        sa.Column('total_cost_usd', USD, nullable=False),
        sa.Column('credits_used', CREDITS, nullable=False),
        sa.Column('credits_charged', sa.Integer, nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint('input_units >= 0 AND output_units >= 0', name='ck_usage_units'),
        sa.CheckConstraint('credits_charged >= 0', name='ck_usage_charged'),
        sa.UniqueConstraint('message_id', 'provider', name='unq_usage_message_provider'),
    )
    op.create_index('idx_usage_user_date', 'usage_records', ['user_id', 'created_at'])
    op.create_index('idx_usage_model', 'usage_records', ['provider', 'model', 'created_at'])

    op.create_table(
        'model_pricing',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('model_name', sa.String(100), nullable=False),
        sa.Column('provider', sa.String(50), nullable=False),
        sa.Column('input_price_per_1k', USD, nullable=False),
        sa.Column('output_price_per_1k', USD, nullable=False),
        sa.Column('effective_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('deprecated_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint(
            'deprecated_date IS NULL OR effective_date < deprecated_date',
            name='ck_model_pricing_dates',
        ),
        sa.CheckConstraint(
            'input_price_per_1k >= 0 AND output_price_per_1k >= 0',
            name='ck_model_pricing_prices',
        ),
    )
    op.create_index('idx_model_pricing_lookup', 'model_pricing', ['model_name', 'provider', 'effective_date'])


def downgrade() -> None:
    op.drop_index('idx_model_pricing_lookup', table_name='model_pricing')
    op.drop_table('model_pricing')

    op.drop_index('idx_usage_model', table_name='usage_records')
    op.drop_index('idx_usage_user_date', table_name='usage_records')
    op.drop_table('usage_records')

    op.drop_index('idx_compensation_user_date', table_name='credit_compensations')
    op.drop_index('idx_compensation_status_date', table_name='credit_compensations')
    op.drop_table('credit_compensations')

    op.drop_index('idx_credit_audit_entity', table_name='credit_audit_log')
    op.drop_index('idx_credit_audit_operation', table_name='credit_audit_log')
    op.drop_index('idx_credit_audit_user_date', table_name='credit_audit_log')
    op.drop_table('credit_audit_log')

    op.drop_index('idx_settlements_type_date', table_name='reservation_settlements')
    op.drop_index('idx_settlements_user_date', table_name='reservation_settlements')
    op.drop_index('idx_settlements_reservation', table_name='reservation_settlements')
    op.drop_table('reservation_settlements')

    op.drop_index('idx_reservations_type_status', table_name='credit_reservations')
    op.drop_index('idx_reservations_message', table_name='credit_reservations')
    op.drop_index('idx_reservations_conversation', table_name='credit_reservations')
    op.drop_index('idx_reservations_status_expires', table_name='credit_reservations')
    op.drop_index('idx_reservations_user_status', table_name='credit_reservations')
    op.drop_table('credit_reservations')

    op.drop_table('users')
