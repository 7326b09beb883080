"""Monthly credit refresh: refresh columns on users and refresh history.

Revision ID: 002
Revises: 001
Create Date: 2026-10-16

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '002'
down_revision: Union[str, None] = '001'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

CREDITS = sa.Numeric(12, 4)


def upgrade() -> None:
    op.add_column('users', sa.Column('last_credit_refresh', sa.DateTime(timezone=True), nullable=True))
    op.add_column(
        'users',
        sa.Column('credit_refresh_hold', sa.Boolean, nullable=False, server_default=sa.false()),
    )
    op.add_column('users', sa.Column('custom_credit_amount', CREDITS, nullable=True))

    op.create_table(
        'credit_refresh_history',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(100), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('refresh_type', sa.String(30), nullable=False),
        sa.Column('old_balance', CREDITS, nullable=False),
        sa.Column('new_balance', CREDITS, nullable=False),
        sa.Column('credits_added', CREDITS, nullable=False),
        sa.Column('refresh_date', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint('credits_added > 0', name='ck_refresh_positive'),
    )
    op.create_index('idx_refresh_user_date', 'credit_refresh_history', ['user_id', 'refresh_date'])
    op.create_index('idx_refresh_type_date', 'credit_refresh_history', ['refresh_type', 'created_at'])
    op.create_index('idx_users_last_refresh', 'users', ['last_credit_refresh'])


def downgrade() -> None:
    op.drop_index('idx_users_last_refresh', table_name='users')
    op.drop_index('idx_refresh_type_date', table_name='credit_refresh_history')
    op.drop_index('idx_refresh_user_date', table_name='credit_refresh_history')
    op.drop_table('credit_refresh_history')

    op.drop_column('users', 'custom_credit_amount')
    op.drop_column('users', 'credit_refresh_hold')
    op.drop_column('users', 'last_credit_refresh')
