"""Initial schema

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


stake_status = sa.Enum(
    'pending_acceptance', 'active', 'awaiting_settlement', 'settled', 'declined',
    name='stakestatus',
)
invite_status = sa.Enum('pending', 'accepted', 'declined', 'expired', name='invitestatus')


def upgrade() -> None:
    # Stake agreements table
    op.create_table(
        'stake_agreements',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('session_id', sa.String(255), nullable=False),
        sa.Column('staked_player_id', sa.String(64), nullable=False),
        sa.Column('staker_user_id', sa.String(64), nullable=True),
        sa.Column('manual_staker_name', sa.String(255), nullable=True),
        sa.Column('manual_staker_id', sa.String(36), nullable=True),
        sa.Column('staker_key', sa.String(320), nullable=False),
        sa.Column('is_off_platform_stake', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('stake_percentage', sa.Numeric(9, 6), nullable=False),
        sa.Column('markup', sa.Numeric(9, 4), nullable=False),
        sa.Column('total_buy_in', sa.Numeric(18, 2), nullable=False, server_default='0'),
        sa.Column('cashout', sa.Numeric(18, 2), nullable=False, server_default='0'),
        sa.Column('settlement_amount', sa.Numeric(18, 2), nullable=True),
        sa.Column('status', stake_status, nullable=False, server_default='active'),
        sa.Column('settlement_initiator_user_id', sa.String(64), nullable=True),
        sa.Column('settlement_confirmer_user_id', sa.String(64), nullable=True),
        sa.Column('is_tournament', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('session_game_name', sa.String(255), nullable=False, server_default=''),
        sa.Column('session_stakes', sa.String(64), nullable=False, server_default=''),
        sa.Column('session_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('source_invite_id', sa.String(36), nullable=True),
        sa.Column('proposed_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('accepted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('declined_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('settled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_stake_agreements_session_id', 'stake_agreements', ['session_id'])
    op.create_index('ix_stake_agreements_staked_player_id', 'stake_agreements', ['staked_player_id'])
    op.create_index('ix_stake_agreements_staker_user_id', 'stake_agreements', ['staker_user_id'])
    op.create_index('ix_stake_agreements_manual_staker_id', 'stake_agreements', ['manual_staker_id'])
    op.create_index(
        'ix_stake_agreements_session_staker', 'stake_agreements',
        ['session_id', 'staker_key'], unique=True,
    )
    op.create_index(
        'ix_stake_agreements_player_status', 'stake_agreements',
        ['staked_player_id', 'status'],
    )

    # Staking invites table
    op.create_table(
        'staking_invites',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('event_id', sa.String(255), nullable=False),
        sa.Column('event_name', sa.String(255), nullable=False, server_default=''),
        sa.Column('event_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('staked_player_id', sa.String(64), nullable=False),
        sa.Column('staker_user_id', sa.String(64), nullable=True),
        sa.Column('manual_staker_name', sa.String(255), nullable=True),
        sa.Column('manual_staker_id', sa.String(36), nullable=True),
        sa.Column('staker_key', sa.String(320), nullable=False),
        sa.Column('is_manual_staker', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('percentage', sa.Numeric(9, 6), nullable=False),
        sa.Column('markup', sa.Numeric(9, 4), nullable=False),
        sa.Column('max_bullets', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('amount_bought', sa.Numeric(18, 2), nullable=True),
        sa.Column('session_buy_in', sa.Numeric(18, 2), nullable=True),
        sa.Column('session_cashout', sa.Numeric(18, 2), nullable=True),
        sa.Column('session_completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('status', invite_status, nullable=False, server_default='pending'),
        sa.Column('stake_id', sa.String(36), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('responded_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_staking_invites_event_id', 'staking_invites', ['event_id'])
    op.create_index('ix_staking_invites_staked_player_id', 'staking_invites', ['staked_player_id'])
    op.create_index('ix_staking_invites_staker_user_id', 'staking_invites', ['staker_user_id'])
    op.create_index('ix_staking_invites_manual_staker_id', 'staking_invites', ['manual_staker_id'])
    op.create_index(
        'ix_staking_invites_event_player', 'staking_invites',
        ['event_id', 'staked_player_id'],
    )
    op.create_index('ix_staking_invites_status', 'staking_invites', ['status'])

    # Manual staker directory
    op.create_table(
        'manual_staker_profiles',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('created_by_user_id', sa.String(64), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('contact_info', sa.String(255), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('last_updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        'ix_manual_staker_profiles_created_by_user_id', 'manual_staker_profiles',
        ['created_by_user_id'],
    )


def downgrade() -> None:
    # Drop tables
    op.drop_table('manual_staker_profiles')
    op.drop_table('staking_invites')
    op.drop_table('stake_agreements')

    # Drop enum types (PostgreSQL only; no-op elsewhere)
    bind = op.get_bind()
    invite_status.drop(bind, checkfirst=True)
    stake_status.drop(bind, checkfirst=True)
