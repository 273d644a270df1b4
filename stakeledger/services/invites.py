"""
Staking invite coordinator.

A player sets up staking for an upcoming event and invites each staker.
Session results may arrive before a staker answers: they are recorded on the
pending invites so the staker sees what they would settle into, and
accepting such an invite creates the agreement directly as settled.
"""

from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete as sql_delete
from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError

from stakeledger.config import settings
from stakeledger.db.database import generate_id, get_session
from stakeledger.db.models import InviteStatus, StakeAgreement, StakeStatus, StakingInvite, utcnow
from stakeledger.services.agreements import StakeAgreementStore, stake_store
from stakeledger.services.base import (
    AlreadyAnsweredError,
    EventMetadata,
    NotFoundError,
    OperationResult,
    SessionMetadata,
    StakerTerm,
    ValidationError,
    staker_key,
)
from stakeledger.services.settlement import Amount, to_decimal, validate_results, validate_terms
from stakeledger.utils.logging import LoggerMixin, log_context
from stakeledger.utils.retry import with_read_retry


def event_session_id(event_id: str, staked_player_id: str) -> str:
    """Temporary session id for agreements created before the event's session exists."""
    return f"event_{event_id}_{staked_player_id}"


class StakingInviteCoordinator(LoggerMixin):
    """Creates staking invites and turns accepted ones into agreements."""

    def __init__(
        self,
        store: Optional[StakeAgreementStore] = None,
        invite_expiry_days: Optional[int] = None,
    ):
        self.store = store or stake_store
        self.invite_expiry_days = invite_expiry_days or settings.invite_expiry_days

    # ===================
    # Create
    # ===================

    async def create_invites(
        self,
        event_id: str,
        event: EventMetadata,
        staked_player_id: str,
        terms: list[StakerTerm],
    ) -> list[StakingInvite]:
        """
        Create one pending invite per staker term.

        All terms are validated before anything is written; an invalid term
        rejects the whole batch.
        """
        if not event_id:
            raise ValidationError("event_id is required")
        if not staked_player_id:
            raise ValidationError("staked_player_id is required")
        if not terms:
            raise ValidationError("At least one staker term is required")

        validated = []
        seen_keys = set()
        for term in terms:
            pct, mk = validate_terms(term.percentage, term.markup)
            key = staker_key(term.staker)
            if key in seen_keys:
                raise ValidationError(f"Staker {key} appears more than once")
            seen_keys.add(key)
            amount = to_decimal(term.amount_bought, "amount_bought") if term.amount_bought is not None else None
            validated.append((term, key, pct, mk, amount))

        now = utcnow()
        invites = []
        async with get_session() as session:
            for term, key, pct, mk, amount in validated:
                invite = StakingInvite(
                    id=generate_id(),
                    event_id=event_id,
                    event_name=event.name,
                    event_date=event.event_date,
                    staked_player_id=staked_player_id,
                    staker_key=key,
                    is_manual_staker=term.staker.is_manual,
                    percentage=pct,
                    markup=mk,
                    max_bullets=event.max_bullets,
                    amount_bought=amount,
                    status=InviteStatus.PENDING,
                    created_at=now,
                    last_updated_at=now,
                )
                invite.set_staker_identity(term.staker)
                session.add(invite)
                invites.append(invite)

        self.log.info(
            "Created staking invites",
            event_id=event_id,
            staked_player_id=staked_player_id,
            count=len(invites),
        )
        return invites

    # ===================
    # Answer
    # ===================

    async def accept(self, invite_id: str) -> OperationResult[StakeAgreement]:
        """
        Accept a pending invite and produce its agreement in one transaction.

        Without session results the agreement is active; with results it is
        created already settled. Non-pending invites fail with AlreadyAnswered.
        """
        with log_context(invite_id=invite_id):
            try:
                return await self._accept(invite_id)
            except IntegrityError:
                # The pair was created concurrently; the second pass updates it
                self.log.info("Concurrent stake create during accept, retrying as update")
                return await self._accept(invite_id)

    async def _accept(self, invite_id: str) -> OperationResult[StakeAgreement]:
        async with get_session() as session:
            invite = await session.get(StakingInvite, invite_id)
            if invite is None:
                return OperationResult.fail(NotFoundError(f"Invite {invite_id} not found"))
            if invite.status != InviteStatus.PENDING:
                return OperationResult.fail(
                    AlreadyAnsweredError(f"Invite {invite_id} is already {invite.status.value}")
                )

            now = utcnow()
            # Conditional claim: only one device can move the invite out of pending
            claimed = await session.execute(
                update(StakingInvite)
                .where(StakingInvite.id == invite_id)
                .where(StakingInvite.status == InviteStatus.PENDING)
                .values(status=InviteStatus.ACCEPTED, responded_at=now, last_updated_at=now)
            )
            if claimed.rowcount == 0:
                return OperationResult.fail(
                    AlreadyAnsweredError(f"Invite {invite_id} was answered concurrently")
                )

            agreement = await self.store.stage_upsert(
                session,
                event_session_id(invite.event_id, invite.staked_player_id),
                invite.staker_identity,
                invite.staked_player_id,
                invite.percentage,
                invite.markup,
                SessionMetadata(
                    game_name=invite.event_name,
                    session_date=invite.event_date,
                    is_tournament=True,
                ),
                StakeStatus.ACTIVE,
                source_invite_id=invite.id,
            )
            if agreement.status == StakeStatus.PENDING_ACCEPTANCE:
                # The invite answer doubles as the staker's acceptance
                agreement.status = StakeStatus.ACTIVE
                agreement.accepted_at = now
            if invite.has_session_results:
                self.store.stage_settlement(agreement, invite.session_buy_in, invite.session_cashout)
            invite.stake_id = agreement.id

        self.log.info(
            "Accepted staking invite",
            invite_id=invite_id,
            stake_id=agreement.id,
            status=agreement.status.value,
        )
        return OperationResult.ok(agreement)

    async def decline(self, invite_id: str) -> OperationResult[StakingInvite]:
        """Decline a pending invite. Terminal."""
        async with get_session() as session:
            invite = await session.get(StakingInvite, invite_id)
            if invite is None:
                return OperationResult.fail(NotFoundError(f"Invite {invite_id} not found"))
            if invite.status != InviteStatus.PENDING:
                return OperationResult.fail(
                    AlreadyAnsweredError(f"Invite {invite_id} is already {invite.status.value}")
                )

            now = utcnow()
            claimed = await session.execute(
                update(StakingInvite)
                .where(StakingInvite.id == invite_id)
                .where(StakingInvite.status == InviteStatus.PENDING)
                .values(status=InviteStatus.DECLINED, responded_at=now, last_updated_at=now)
            )
            if claimed.rowcount == 0:
                return OperationResult.fail(
                    AlreadyAnsweredError(f"Invite {invite_id} was answered concurrently")
                )

        self.log.info("Declined staking invite", invite_id=invite_id)
        return OperationResult.ok(invite)

    # ===================
    # Session results
    # ===================

    async def attach_session_results(
        self,
        event_id: str,
        staked_player_id: str,
        buy_in: Amount,
        cashout: Amount,
        completed_at: Optional[datetime] = None,
    ) -> int:
        """
        Record session results on every pending invite for (event, player).

        Status is unchanged. Repeated calls overwrite the results.

        Returns:
            Number of invites updated
        """
        b, c = validate_results(buy_in, cashout)
        now = utcnow()

        async with get_session() as session:
            result = await session.execute(
                update(StakingInvite)
                .where(StakingInvite.event_id == event_id)
                .where(StakingInvite.staked_player_id == staked_player_id)
                .where(StakingInvite.status == InviteStatus.PENDING)
                .values(
                    session_buy_in=b,
                    session_cashout=c,
                    session_completed_at=completed_at or now,
                    last_updated_at=now,
                )
            )
            count = result.rowcount or 0

        self.log.info(
            "Attached session results to invites",
            event_id=event_id,
            staked_player_id=staked_player_id,
            count=count,
        )
        return count

    async def expire_stale(self, now: Optional[datetime] = None) -> int:
        """Expire pending invites older than the configured window. Returns count expired."""
        now = now or utcnow()
        cutoff = now - timedelta(days=self.invite_expiry_days)

        async with get_session() as session:
            result = await session.execute(
                update(StakingInvite)
                .where(StakingInvite.status == InviteStatus.PENDING)
                .where(StakingInvite.created_at < cutoff)
                .values(status=InviteStatus.EXPIRED, last_updated_at=now)
            )
            count = result.rowcount or 0

        if count:
            self.log.info("Expired stale staking invites", count=count)
        return count

    async def delete_for_event(self, event_id: str) -> int:
        """Remove all invites of a cancelled event. Agreements already created are kept."""
        async with get_session() as session:
            result = await session.execute(
                sql_delete(StakingInvite).where(StakingInvite.event_id == event_id)
            )
            count = result.rowcount or 0

        self.log.info("Deleted event invites", event_id=event_id, count=count)
        return count

    # ===================
    # Reads
    # ===================

    @with_read_retry
    async def get(self, invite_id: str) -> Optional[StakingInvite]:
        async with get_session() as session:
            return await session.get(StakingInvite, invite_id)

    @with_read_retry
    async def list_for_staker(self, staker_id: str) -> list[StakingInvite]:
        """Invites addressed to a registered user or manual directory entry, newest first."""
        async with get_session() as session:
            result = await session.execute(
                select(StakingInvite)
                .where(
                    or_(
                        StakingInvite.staker_user_id == staker_id,
                        StakingInvite.manual_staker_id == staker_id,
                    )
                )
                .order_by(StakingInvite.created_at.desc())
            )
            return list(result.scalars().all())

    @with_read_retry
    async def list_for_player(self, player_id: str) -> list[StakingInvite]:
        """Invites a player has sent, newest first."""
        async with get_session() as session:
            result = await session.execute(
                select(StakingInvite)
                .where(StakingInvite.staked_player_id == player_id)
                .order_by(StakingInvite.created_at.desc())
            )
            return list(result.scalars().all())

    @with_read_retry
    async def list_for_event(self, event_id: str) -> list[StakingInvite]:
        async with get_session() as session:
            result = await session.execute(
                select(StakingInvite)
                .where(StakingInvite.event_id == event_id)
                .order_by(StakingInvite.created_at.desc())
            )
            return list(result.scalars().all())

    @with_read_retry
    async def pending_count(self, staker_id: str) -> int:
        """Number of invites still waiting for this staker's answer."""
        async with get_session() as session:
            result = await session.execute(
                select(func.count(StakingInvite.id))
                .where(
                    or_(
                        StakingInvite.staker_user_id == staker_id,
                        StakingInvite.manual_staker_id == staker_id,
                    )
                )
                .where(StakingInvite.status == InviteStatus.PENDING)
            )
            return result.scalar() or 0


# Singleton instance
invite_coordinator = StakingInviteCoordinator()
