"""
Stake agreement store.

CRUD over persisted stake agreements keyed by (session_id, staker). Writes
for the same pair are serialized in-process and guarded by a unique index,
so repeated or concurrent upserts update one record instead of appending.

Lifecycle:
    pending_acceptance -> active -> awaiting_settlement -> settled
    pending_acceptance | active -> declined
Settled and declined are terminal.
"""

import asyncio
import weakref
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy import delete as sql_delete
from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from stakeledger.config import settings
from stakeledger.db.database import generate_id, get_session
from stakeledger.db.models import StakeAgreement, StakeStatus, can_transition, utcnow
from stakeledger.services.base import (
    InvalidStateTransition,
    ManualStaker,
    NotFoundError,
    OperationResult,
    SessionMetadata,
    StakerIdentity,
    ValidationError,
    staker_key,
)
from stakeledger.services.settlement import (
    Amount,
    compute_settlement,
    validate_results,
    validate_terms,
)
from stakeledger.utils.logging import LoggerMixin
from stakeledger.utils.retry import with_read_retry


class StakeAgreementStore(LoggerMixin):
    """Persisted stake agreements with idempotent create-or-update semantics."""

    def __init__(self, require_confirmation: Optional[bool] = None):
        # Entries vanish once no writer holds or waits on the lock
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()
        if require_confirmation is None:
            require_confirmation = settings.require_settlement_confirmation
        self.require_confirmation = require_confirmation

    def _pair_lock(self, session_id: str, key: str) -> asyncio.Lock:
        lock_key = f"{session_id}|{key}"
        lock = self._locks.get(lock_key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[lock_key] = lock
        return lock

    # ===================
    # Create / update
    # ===================

    async def upsert(
        self,
        session_id: str,
        staker: StakerIdentity,
        staked_player_id: str,
        percentage: Amount,
        markup: Amount,
        metadata: Optional[SessionMetadata] = None,
    ) -> StakeAgreement:
        """
        Create the agreement for (session_id, staker) or update its terms.

        New records start active with zeroed results. Safe to call repeatedly
        with the same arguments.
        """
        return await self._upsert(
            session_id, staker, staked_player_id, percentage, markup,
            metadata, StakeStatus.ACTIVE,
        )

    async def propose(
        self,
        session_id: str,
        staker: StakerIdentity,
        staked_player_id: str,
        percentage: Amount,
        markup: Amount,
        metadata: Optional[SessionMetadata] = None,
    ) -> StakeAgreement:
        """Like upsert, but a new record waits for the staker's acceptance."""
        return await self._upsert(
            session_id, staker, staked_player_id, percentage, markup,
            metadata, StakeStatus.PENDING_ACCEPTANCE,
        )

    async def _upsert(
        self,
        session_id: str,
        staker: StakerIdentity,
        staked_player_id: str,
        percentage: Amount,
        markup: Amount,
        metadata: Optional[SessionMetadata],
        initial_status: StakeStatus,
    ) -> StakeAgreement:
        pct, mk = validate_terms(percentage, markup)
        key = staker_key(staker)
        if not session_id:
            raise ValidationError("session_id is required")
        if not staked_player_id:
            raise ValidationError("staked_player_id is required")

        async with self._pair_lock(session_id, key):
            try:
                async with get_session() as session:
                    return await self.stage_upsert(
                        session, session_id, staker, staked_player_id, pct, mk,
                        metadata, initial_status,
                    )
            except IntegrityError:
                # Another writer created the pair first; apply ours as the update
                self.log.info("Concurrent create detected, applying as update",
                              session_id=session_id, staker_key=key)
                async with get_session() as session:
                    return await self.stage_upsert(
                        session, session_id, staker, staked_player_id, pct, mk,
                        metadata, initial_status,
                    )

    async def stage_upsert(
        self,
        session: AsyncSession,
        session_id: str,
        staker: StakerIdentity,
        staked_player_id: str,
        percentage: Decimal,
        markup: Decimal,
        metadata: Optional[SessionMetadata] = None,
        initial_status: StakeStatus = StakeStatus.ACTIVE,
        source_invite_id: Optional[str] = None,
    ) -> StakeAgreement:
        """
        Upsert inside a caller-owned session; nothing is committed here.

        Terminal records cannot be edited. Editing a record that already has
        results attached recomputes its settlement amount.
        """
        key = staker_key(staker)
        now = utcnow()

        result = await session.execute(
            select(StakeAgreement)
            .where(StakeAgreement.session_id == session_id)
            .where(StakeAgreement.staker_key == key)
        )
        agreement = result.scalar_one_or_none()

        if agreement is not None:
            if agreement.status.is_terminal:
                raise InvalidStateTransition(
                    f"Stake {agreement.id} is {agreement.status.value}; terms can no longer change"
                )
            if agreement.staked_player_id != staked_player_id:
                raise ValidationError(
                    f"Stake {agreement.id} belongs to player {agreement.staked_player_id}"
                )
            agreement.stake_percentage = percentage
            agreement.markup = markup
            if isinstance(staker, ManualStaker):
                agreement.manual_staker_name = staker.name.strip()
            if agreement.status == StakeStatus.AWAITING_SETTLEMENT:
                agreement.settlement_amount = compute_settlement(
                    agreement.total_buy_in, agreement.cashout, percentage, markup
                )
            agreement.last_updated_at = now
            self.log.info(
                "Updated stake terms",
                stake_id=agreement.id,
                session_id=session_id,
                staker_key=key,
                percentage=percentage,
                markup=markup,
            )
            return agreement

        metadata = metadata or SessionMetadata()
        agreement = StakeAgreement(
            id=generate_id(),
            session_id=session_id,
            staker_key=key,
            staked_player_id=staked_player_id,
            is_off_platform_stake=staker.is_manual,
            stake_percentage=percentage,
            markup=markup,
            total_buy_in=Decimal("0"),
            cashout=Decimal("0"),
            settlement_amount=None,
            status=initial_status,
            is_tournament=metadata.is_tournament,
            session_game_name=metadata.game_name,
            session_stakes=metadata.stakes,
            session_date=metadata.session_date,
            source_invite_id=source_invite_id,
            proposed_at=now,
            accepted_at=now if initial_status == StakeStatus.ACTIVE else None,
            last_updated_at=now,
        )
        agreement.set_staker_identity(staker)
        session.add(agreement)

        self.log.info(
            "Created stake",
            stake_id=agreement.id,
            session_id=session_id,
            staker_key=key,
            status=initial_status.value,
        )
        return agreement

    # ===================
    # Settlement
    # ===================

    def stage_settlement(
        self,
        agreement: StakeAgreement,
        buy_in: Amount,
        cashout: Amount,
        require_confirmation: bool = False,
        initiator_user_id: Optional[str] = None,
    ) -> StakeAgreement:
        """
        Attach final results to an agreement in memory.

        Re-attaching identical results to a settled agreement is a no-op.
        """
        b, c = validate_results(buy_in, cashout)
        target = StakeStatus.AWAITING_SETTLEMENT if require_confirmation else StakeStatus.SETTLED

        if agreement.status == StakeStatus.SETTLED:
            if agreement.total_buy_in == b and agreement.cashout == c:
                return agreement
            raise InvalidStateTransition(
                f"Stake {agreement.id} is already settled with different results"
            )
        # Results may be corrected while still awaiting the counterparty
        correcting = (
            agreement.status == StakeStatus.AWAITING_SETTLEMENT
            and target == StakeStatus.AWAITING_SETTLEMENT
        )
        if not correcting and not can_transition(agreement.status, target):
            raise InvalidStateTransition(
                f"Cannot attach settlement to stake {agreement.id} in status {agreement.status.value}"
            )

        now = utcnow()
        agreement.total_buy_in = b
        agreement.cashout = c
        agreement.settlement_amount = compute_settlement(b, c, agreement.stake_percentage, agreement.markup)
        agreement.status = target
        agreement.last_updated_at = now
        if target == StakeStatus.SETTLED:
            agreement.settled_at = now
        else:
            agreement.settlement_initiator_user_id = initiator_user_id or agreement.staked_player_id

        self.log.info(
            "Attached settlement",
            stake_id=agreement.id,
            session_id=agreement.session_id,
            settlement_amount=agreement.settlement_amount,
            status=target.value,
        )
        return agreement

    async def attach_settlement(
        self,
        stake_id: str,
        buy_in: Amount,
        cashout: Amount,
        require_confirmation: Optional[bool] = None,
        initiator_user_id: Optional[str] = None,
    ) -> OperationResult[StakeAgreement]:
        """
        Record final results and compute the settlement amount.

        The agreement becomes settled, or awaiting_settlement when a
        confirmation step is required. On failure nothing changes.
        """
        validate_results(buy_in, cashout)
        if require_confirmation is None:
            require_confirmation = self.require_confirmation

        async with get_session() as session:
            agreement = await session.get(StakeAgreement, stake_id)
            if agreement is None:
                return OperationResult.fail(NotFoundError(f"Stake {stake_id} not found"))
            self.stage_settlement(agreement, buy_in, cashout, require_confirmation, initiator_user_id)
        return OperationResult.ok(agreement)

    async def confirm_settlement(
        self,
        stake_id: str,
        confirming_user_id: str,
    ) -> OperationResult[StakeAgreement]:
        """Counterparty confirms a settlement awaiting confirmation."""
        async with get_session() as session:
            agreement = await session.get(StakeAgreement, stake_id)
            if agreement is None:
                return OperationResult.fail(NotFoundError(f"Stake {stake_id} not found"))

            if agreement.status == StakeStatus.SETTLED:
                if agreement.settlement_confirmer_user_id == confirming_user_id:
                    return OperationResult.ok(agreement)
                raise InvalidStateTransition(f"Stake {stake_id} is already settled")
            if agreement.status != StakeStatus.AWAITING_SETTLEMENT:
                raise InvalidStateTransition(
                    f"Stake {stake_id} is {agreement.status.value}, not awaiting settlement"
                )
            if confirming_user_id == agreement.settlement_initiator_user_id:
                raise ValidationError("Settlement must be confirmed by the other party")

            now = utcnow()
            agreement.status = StakeStatus.SETTLED
            agreement.settlement_confirmer_user_id = confirming_user_id
            agreement.settled_at = now
            agreement.last_updated_at = now

        self.log.info("Settlement confirmed", stake_id=stake_id, confirmed_by=confirming_user_id)
        return OperationResult.ok(agreement)

    async def settle_session(
        self,
        session_id: str,
        buy_in: Amount,
        cashout: Amount,
        require_confirmation: Optional[bool] = None,
    ) -> list[OperationResult[StakeAgreement]]:
        """Attach final results to every active agreement of a finalized session."""
        validate_results(buy_in, cashout)
        agreements = await self.list_by_session(session_id)
        results = []
        for agreement in agreements:
            if agreement.status != StakeStatus.ACTIVE:
                continue
            results.append(
                await self.attach_settlement(agreement.id, buy_in, cashout, require_confirmation)
            )
        self.log.info("Session settled", session_id=session_id, settled=len(results))
        return results

    # ===================
    # Status transitions
    # ===================

    async def _transition(
        self,
        stake_id: str,
        target: StakeStatus,
        stamp_field: str,
    ) -> OperationResult[StakeAgreement]:
        async with get_session() as session:
            agreement = await session.get(StakeAgreement, stake_id)
            if agreement is None:
                return OperationResult.fail(NotFoundError(f"Stake {stake_id} not found"))
            if agreement.status == target:
                return OperationResult.ok(agreement)
            if not can_transition(agreement.status, target):
                raise InvalidStateTransition(
                    f"Cannot move stake {stake_id} from {agreement.status.value} to {target.value}"
                )
            now = utcnow()
            agreement.status = target
            setattr(agreement, stamp_field, now)
            agreement.last_updated_at = now

        self.log.info("Stake status changed", stake_id=stake_id, status=target.value)
        return OperationResult.ok(agreement)

    async def accept(self, stake_id: str) -> OperationResult[StakeAgreement]:
        """Staker accepts a proposed stake."""
        return await self._transition(stake_id, StakeStatus.ACTIVE, "accepted_at")

    async def decline(self, stake_id: str) -> OperationResult[StakeAgreement]:
        """Decline a stake. Terminal."""
        return await self._transition(stake_id, StakeStatus.DECLINED, "declined_at")

    async def migrate_session(
        self,
        stake_id: str,
        new_session_id: str,
    ) -> OperationResult[StakeAgreement]:
        """Move an agreement to another session id (temporary -> permanent)."""
        if not new_session_id:
            raise ValidationError("new_session_id is required")

        async with get_session() as session:
            agreement = await session.get(StakeAgreement, stake_id)
            if agreement is None:
                return OperationResult.fail(NotFoundError(f"Stake {stake_id} not found"))
            if agreement.session_id == new_session_id:
                return OperationResult.ok(agreement)

            clash = await session.execute(
                select(StakeAgreement.id)
                .where(StakeAgreement.session_id == new_session_id)
                .where(StakeAgreement.staker_key == agreement.staker_key)
            )
            if clash.scalar_one_or_none() is not None:
                raise ValidationError(
                    f"Session {new_session_id} already has a stake for {agreement.staker_key}"
                )

            old_session_id = agreement.session_id
            agreement.session_id = new_session_id
            agreement.last_updated_at = utcnow()

        self.log.info(
            "Migrated stake to session",
            stake_id=stake_id,
            from_session=old_session_id,
            to_session=new_session_id,
        )
        return OperationResult.ok(agreement)

    # ===================
    # Delete
    # ===================

    async def delete(self, stake_id: str) -> OperationResult[bool]:
        """Discard an unsettled stake."""
        async with get_session() as session:
            agreement = await session.get(StakeAgreement, stake_id)
            if agreement is None:
                return OperationResult.fail(NotFoundError(f"Stake {stake_id} not found"))
            if agreement.status == StakeStatus.SETTLED:
                raise InvalidStateTransition(f"Stake {stake_id} is settled and cannot be deleted")
            await session.delete(agreement)

        self.log.info("Deleted stake", stake_id=stake_id)
        return OperationResult.ok(True)

    async def delete_for_session(self, session_id: str) -> int:
        """Discard every unsettled stake of a deleted session. Returns count deleted."""
        async with get_session() as session:
            result = await session.execute(
                sql_delete(StakeAgreement)
                .where(StakeAgreement.session_id == session_id)
                .where(StakeAgreement.status != StakeStatus.SETTLED)
            )
            count = result.rowcount or 0

        self.log.info("Deleted session stakes", session_id=session_id, count=count)
        return count

    # ===================
    # Reads
    # ===================

    @with_read_retry
    async def get(self, stake_id: str) -> Optional[StakeAgreement]:
        """Get an agreement by id."""
        async with get_session() as session:
            return await session.get(StakeAgreement, stake_id)

    async def list_by_session(self, session_id: str) -> list[StakeAgreement]:
        """All agreements attached to a session."""
        return await self.list_by_sessions([session_id])

    @with_read_retry
    async def list_by_sessions(self, session_ids: Iterable[str]) -> list[StakeAgreement]:
        """Agreements attached to any of the given session ids."""
        ids = [s for s in dict.fromkeys(session_ids) if s]
        if not ids:
            return []
        async with get_session() as session:
            result = await session.execute(
                select(StakeAgreement)
                .where(StakeAgreement.session_id.in_(ids))
                .order_by(StakeAgreement.proposed_at)
            )
            return list(result.scalars().all())

    @with_read_retry
    async def list_by_player(
        self,
        player_id: str,
        status: Optional[StakeStatus] = None,
    ) -> list[StakeAgreement]:
        """Agreements where the user is the staked player, newest first."""
        async with get_session() as session:
            query = select(StakeAgreement).where(StakeAgreement.staked_player_id == player_id)
            if status:
                query = query.where(StakeAgreement.status == status)
            result = await session.execute(query.order_by(StakeAgreement.proposed_at.desc()))
            return list(result.scalars().all())

    @with_read_retry
    async def list_by_staker(
        self,
        staker_id: str,
        status: Optional[StakeStatus] = None,
    ) -> list[StakeAgreement]:
        """Agreements backed by a registered user or a manual directory entry, newest first."""
        async with get_session() as session:
            query = select(StakeAgreement).where(
                or_(
                    StakeAgreement.staker_user_id == staker_id,
                    StakeAgreement.manual_staker_id == staker_id,
                )
            )
            if status:
                query = query.where(StakeAgreement.status == status)
            result = await session.execute(query.order_by(StakeAgreement.proposed_at.desc()))
            return list(result.scalars().all())


# Singleton instance
stake_store = StakeAgreementStore()
