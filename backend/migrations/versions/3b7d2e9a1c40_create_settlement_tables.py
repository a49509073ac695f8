"""create reward settlement tables

Revision ID: 3b7d2e9a1c40
Revises:
Create Date: 2026-10-17 09:12:41.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3b7d2e9a1c40'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'user_account',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('username', sa.String(), nullable=False),
        sa.Column('wallet_address', sa.String(), nullable=True),
        sa.Column('created_date', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('username'),
        sa.UniqueConstraint('wallet_address'),
    )
    op.create_index(op.f('ix_user_account_id'), 'user_account', ['id'], unique=False)

    op.create_table(
        'settlement_batches',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('total_amount', sa.Numeric(precision=18, scale=6), nullable=False),
        sa.Column('state', sa.Enum('Pending', 'Submitted', 'Confirmed', 'Failed', name='settlementstate'), nullable=False),
        sa.Column('tx_ref', sa.String(length=128), nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=False),
        sa.Column('last_error', sa.String(), nullable=True),
        sa.Column('claimed_at', sa.DateTime(), nullable=False),
        sa.Column('submitted_at', sa.DateTime(), nullable=True),
        sa.Column('settled_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['user_account.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_settlement_batches_id'), 'settlement_batches', ['id'], unique=False)
    op.create_index(op.f('ix_settlement_batches_user_id'), 'settlement_batches', ['user_id'], unique=False)

    op.create_table(
        'reward_credits',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('item_id', sa.String(length=64), nullable=False),
        sa.Column('item_type', sa.String(length=32), nullable=False),
        sa.Column('amount', sa.Numeric(precision=18, scale=6), nullable=False),
        sa.Column('issued_at', sa.DateTime(), nullable=False),
        sa.Column('batch_id', sa.Integer(), nullable=True),
        sa.CheckConstraint('amount > 0', name='ck_reward_credit_amount_positive'),
        sa.ForeignKeyConstraint(['user_id'], ['user_account.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['batch_id'], ['settlement_batches.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'item_id', name='uq_reward_credit_user_item'),
    )
    op.create_index(op.f('ix_reward_credits_id'), 'reward_credits', ['id'], unique=False)
    op.create_index(op.f('ix_reward_credits_batch_id'), 'reward_credits', ['batch_id'], unique=False)

    op.create_table(
        'wallet_transactions',
        sa.Column('id', sa.String(length=128), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('batch_id', sa.Integer(), nullable=True),
        sa.Column('amount', sa.Numeric(precision=18, scale=6), nullable=False),
        sa.Column('timestamp', sa.DateTime(), nullable=False),
        sa.Column('type', sa.Enum('Reward', 'Transfer', name='wallettransactiontype'), nullable=False),
        sa.Column('status', sa.Enum('Pending', 'Completed', 'Failed', name='wallettransactionstatus'), nullable=False),
        sa.Column('from_address', sa.String(), nullable=True),
        sa.Column('to_address', sa.String(), nullable=True),
        sa.Column('description', sa.String(), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['user_account.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['batch_id'], ['settlement_batches.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_wallet_transactions_user_id'), 'wallet_transactions', ['user_id'], unique=False)
    op.create_index(op.f('ix_wallet_transactions_batch_id'), 'wallet_transactions', ['batch_id'], unique=False)


def downgrade() -> None:
    op.drop_index(op.f('ix_wallet_transactions_batch_id'), table_name='wallet_transactions')
    op.drop_index(op.f('ix_wallet_transactions_user_id'), table_name='wallet_transactions')
    op.drop_table('wallet_transactions')
    op.drop_index(op.f('ix_reward_credits_batch_id'), table_name='reward_credits')
    op.drop_index(op.f('ix_reward_credits_id'), table_name='reward_credits')
    op.drop_table('reward_credits')
    op.drop_index(op.f('ix_settlement_batches_user_id'), table_name='settlement_batches')
    op.drop_index(op.f('ix_settlement_batches_id'), table_name='settlement_batches')
    op.drop_table('settlement_batches')
    op.drop_index(op.f('ix_user_account_id'), table_name='user_account')
    op.drop_table('user_account')
