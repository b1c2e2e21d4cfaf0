"""Initial migration - owners, wallets, mining slots, activity log

Revision ID: 001
Revises: 
Create Date: 2026-10-17 12:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


ACTIVITY_LOG_TYPES = (
    'DEPOSIT', 'NEW_SLOT_PURCHASE', 'SLOT_EXTENSION', 'SLOT_UPGRADE', 'CLAIM',
    'SLOT_EXPIRED', 'BONUS', 'PENALTY', 'WITHDRAWAL',
)


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='Row creation time'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='Last modification time'),
    ]


def upgrade() -> None:
    # Create users table
    op.create_table('users',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('external_id', sa.BigInteger(), nullable=True, comment='Identifier assigned by the auth layer (e.g. Telegram user id)'),
        sa.Column('username', sa.String(length=64), nullable=True, comment='Display name'),
        sa.Column('is_active', sa.Boolean(), nullable=False, comment='Whether the owner may purchase or claim'),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('external_id')
    )
    op.create_index('idx_user_username', 'users', ['username'])

    # Create wallets table
    op.create_table('wallets',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False, comment='Owning user'),
        sa.Column('currency', sa.String(length=10), nullable=False, comment='Currency code'),
        sa.Column('balance', sa.Numeric(precision=20, scale=8), nullable=False, comment='Spendable balance'),
        *_timestamps(),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'currency', name='uq_wallet_user_currency'),
        sa.CheckConstraint('balance >= 0', name='ck_wallet_balance_non_negative')
    )

    # Create mining_slots table
    op.create_table('mining_slots',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False, comment='Owning user'),
        sa.Column('slot_type', sa.String(length=20), nullable=False),
        sa.Column('principal', sa.Numeric(precision=20, scale=8), nullable=False, comment='Invested amount, changed only by upgrades'),
        sa.Column('weekly_rate', sa.Numeric(precision=12, scale=8), nullable=False, comment='Fractional yield per 7 days, fixed at creation'),
        sa.Column('start_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('last_accrued_at', sa.DateTime(timezone=True), nullable=False, comment='Checkpoint: earnings before this point are realized'),
        sa.Column('accrued_earnings', sa.Numeric(precision=20, scale=8), nullable=False, comment='Realized but unclaimed earnings'),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('closed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('close_reason', sa.String(length=20), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('principal >= 0', name='ck_slot_principal_non_negative'),
        sa.CheckConstraint('accrued_earnings >= 0', name='ck_slot_accrued_non_negative')
    )
    op.create_index('idx_slot_active_expires', 'mining_slots', ['is_active', 'expires_at'])
    op.create_index('idx_slot_user', 'mining_slots', ['user_id'])

    # Create activity_logs table
    activity_log_type = postgresql.ENUM(*ACTIVITY_LOG_TYPES, name='activity_log_type')
    op.create_table('activity_logs',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False, comment='Owner whose balance moved'),
        sa.Column('type', activity_log_type, nullable=False, comment='Event kind'),
        sa.Column('amount', sa.Numeric(precision=20, scale=8), nullable=False, comment='Signed balance change'),
        sa.Column('currency', sa.String(length=10), nullable=False),
        sa.Column('slot_id', sa.String(length=36), nullable=True, comment='Slot involved, if any'),
        sa.Column('description', sa.Text(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_activity_user_time', 'activity_logs', ['user_id', 'created_at'])
    op.create_index('idx_activity_type_time', 'activity_logs', ['type', 'created_at'])


def downgrade() -> None:
    op.drop_index('idx_activity_type_time', table_name='activity_logs')
    op.drop_index('idx_activity_user_time', table_name='activity_logs')
    op.drop_index('idx_slot_user', table_name='mining_slots')
    op.drop_index('idx_slot_active_expires', table_name='mining_slots')
    op.drop_index('idx_user_username', table_name='users')

    op.drop_table('activity_logs')
    op.drop_table('mining_slots')
    op.drop_table('wallets')
    op.drop_table('users')

    op.execute("DROP TYPE IF EXISTS activity_log_type")
