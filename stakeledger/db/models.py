"""
SQLAlchemy database models for the stake engine.
Stake agreements, staking invites and manual staker profiles.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Enum as SQLEnum,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from stakeledger.services.base import (
    ManualStaker,
    RegisteredStaker,
    StakerIdentity,
)


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all models."""
    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ===================
# Enums
# ===================

class StakeStatus(str, Enum):
    """Stake agreement lifecycle."""
    PENDING_ACCEPTANCE = "pending_acceptance"
    ACTIVE = "active"
    AWAITING_SETTLEMENT = "awaiting_settlement"
    SETTLED = "settled"
    DECLINED = "declined"

    @property
    def is_terminal(self) -> bool:
        return self in (StakeStatus.SETTLED, StakeStatus.DECLINED)


class InviteStatus(str, Enum):
    """Staking invite status."""
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    EXPIRED = "expired"


# Allowed stake transitions; settled and declined are terminal
STAKE_TRANSITIONS: dict[StakeStatus, frozenset[StakeStatus]] = {
    StakeStatus.PENDING_ACCEPTANCE: frozenset({StakeStatus.ACTIVE, StakeStatus.DECLINED}),
    StakeStatus.ACTIVE: frozenset({
        StakeStatus.AWAITING_SETTLEMENT,
        StakeStatus.SETTLED,
        StakeStatus.DECLINED,
    }),
    StakeStatus.AWAITING_SETTLEMENT: frozenset({StakeStatus.SETTLED}),
    StakeStatus.SETTLED: frozenset(),
    StakeStatus.DECLINED: frozenset(),
}


def can_transition(current: StakeStatus, target: StakeStatus) -> bool:
    return target in STAKE_TRANSITIONS[current]


class _StakerColumns:
    """Staker identity columns shared by agreements and invites."""

    # Exactly one of staker_user_id / manual_staker_name is the identity
    staker_user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    manual_staker_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    manual_staker_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    staker_key: Mapped[str] = mapped_column(String(320))

    @property
    def staker_identity(self) -> StakerIdentity:
        if self.staker_user_id:
            return RegisteredStaker(user_id=self.staker_user_id)
        return ManualStaker(name=self.manual_staker_name or "", directory_id=self.manual_staker_id)

    def set_staker_identity(self, identity: StakerIdentity) -> None:
        if isinstance(identity, RegisteredStaker):
            self.staker_user_id = identity.user_id
            self.manual_staker_name = None
            self.manual_staker_id = None
        else:
            self.staker_user_id = None
            self.manual_staker_name = identity.name.strip()
            self.manual_staker_id = identity.directory_id


# ===================
# Models
# ===================

class StakeAgreement(_StakerColumns, Base):
    """
    A staker's share of one session.
    At most one agreement exists per (session_id, staker_key).
    """

    __tablename__ = "stake_agreements"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    session_id: Mapped[str] = mapped_column(String(255), index=True)
    staked_player_id: Mapped[str] = mapped_column(String(64), index=True)
    is_off_platform_stake: Mapped[bool] = mapped_column(Boolean, default=False)

    # Terms
    stake_percentage: Mapped[Decimal] = mapped_column(Numeric(9, 6))  # fraction in (0, 1]
    markup: Mapped[Decimal] = mapped_column(Numeric(9, 4))

    # Results (zero until the session resolves)
    total_buy_in: Mapped[Decimal] = mapped_column(Numeric(18, 2), default=Decimal("0"))
    cashout: Mapped[Decimal] = mapped_column(Numeric(18, 2), default=Decimal("0"))
    settlement_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 2), nullable=True)

    status: Mapped[StakeStatus] = mapped_column(
        SQLEnum(StakeStatus, values_callable=lambda e: [m.value for m in e]),
        default=StakeStatus.ACTIVE
    )

    # Two-party settlement
    settlement_initiator_user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    settlement_confirmer_user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # Descriptive metadata copied at creation
    is_tournament: Mapped[bool] = mapped_column(Boolean, default=False)
    session_game_name: Mapped[str] = mapped_column(String(255), default="")
    session_stakes: Mapped[str] = mapped_column(String(64), default="")
    session_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Set when produced by accepting an invite
    source_invite_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)

    # Timestamps
    proposed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    accepted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    declined_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    settled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("ix_stake_agreements_session_staker", "session_id", "staker_key", unique=True),
        Index("ix_stake_agreements_player_status", "staked_player_id", "status"),
    )

    @property
    def profit(self) -> Decimal:
        return (self.cashout or Decimal("0")) - (self.total_buy_in or Decimal("0"))

    def __repr__(self) -> str:
        return (
            f"<StakeAgreement(id={self.id}, session={self.session_id}, "
            f"staker={self.staker_key}, status={self.status.value})>"
        )


class StakingInvite(_StakerColumns, Base):
    """Invitation for a staker to back a player at an event."""

    __tablename__ = "staking_invites"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    event_id: Mapped[str] = mapped_column(String(255), index=True)
    event_name: Mapped[str] = mapped_column(String(255), default="")
    event_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    staked_player_id: Mapped[str] = mapped_column(String(64), index=True)
    is_manual_staker: Mapped[bool] = mapped_column(Boolean, default=False)

    # Terms
    percentage: Mapped[Decimal] = mapped_column(Numeric(9, 6))
    markup: Mapped[Decimal] = mapped_column(Numeric(9, 4))
    max_bullets: Mapped[int] = mapped_column(Integer, default=1)
    amount_bought: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 2), nullable=True)

    # Populated if the session finishes before the invite is answered
    session_buy_in: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 2), nullable=True)
    session_cashout: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 2), nullable=True)
    session_completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    status: Mapped[InviteStatus] = mapped_column(
        SQLEnum(InviteStatus, values_callable=lambda e: [m.value for m in e]),
        default=InviteStatus.PENDING
    )
    stake_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    responded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("ix_staking_invites_event_player", "event_id", "staked_player_id"),
        Index("ix_staking_invites_status", "status"),
    )

    @property
    def has_session_results(self) -> bool:
        return self.session_buy_in is not None and self.session_cashout is not None

    @property
    def session_profit(self) -> Optional[Decimal]:
        if not self.has_session_results:
            return None
        return self.session_cashout - self.session_buy_in


class ManualStakerProfile(Base):
    """Directory entry for an off-platform backer, owned by the player who created it."""

    __tablename__ = "manual_staker_profiles"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    created_by_user_id: Mapped[str] = mapped_column(String(64), index=True)
    name: Mapped[str] = mapped_column(String(255))
    contact_info: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    last_updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    @property
    def display_name(self) -> str:
        return self.name
