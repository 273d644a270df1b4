"""
Configuration reconciler.

The client keeps a local draft of a session's staking configuration so a
player can configure stakers offline or before the session formally starts.
Each pass merges those drafts with the persisted agreements:

- one draft per staker; remote terms win, differing local edits are kept
  alongside and flagged as a conflict
- valid drafts with no persisted record are created
- records left under a temporary event-scoped session id are moved to the
  permanent id, or dropped when the permanent id already has one

The draft cache is owned by the reconciler and keyed by the persistent
session identity.
"""

import uuid
from decimal import Decimal
from typing import Iterable, Optional

from pydantic import BaseModel, Field, TypeAdapter

from stakeledger.db.models import StakeAgreement, StakeStatus
from stakeledger.services.agreements import StakeAgreementStore, stake_store
from stakeledger.services.base import (
    InvalidStateTransition,
    ManualStaker,
    ReconcileResult,
    RegisteredStaker,
    SessionMetadata,
    StakeEngineError,
    StakerIdentity,
    TransientIOError,
    ValidationError,
    staker_key,
)
from stakeledger.services.directory import ManualStakerDirectory
from stakeledger.services.kv_store import KeyValueStore
from stakeledger.services.settlement import normalize_terms
from stakeledger.utils.logging import LoggerMixin, log_context

DRAFT_PREFIX = "drafts"


class StakeDraft(BaseModel):
    """Client-side staking configuration for one staker."""
    draft_id: str = Field(default_factory=lambda: str(uuid.uuid4()))

    # Staker identity: a user id, or a manual name (plus directory id when known)
    staker_user_id: Optional[str] = None
    manual_staker_name: Optional[str] = None
    manual_staker_id: Optional[str] = None

    percentage: Optional[Decimal] = None
    markup: Optional[Decimal] = None

    # Set once the draft is backed by a persisted agreement
    original_stake_id: Optional[str] = None
    remote_status: Optional[StakeStatus] = None

    # Unsent local edits kept when the persisted terms differ
    has_conflict: bool = False
    local_percentage: Optional[Decimal] = None
    local_markup: Optional[Decimal] = None

    display_name: Optional[str] = None

    @property
    def staker(self) -> Optional[StakerIdentity]:
        if self.staker_user_id:
            return RegisteredStaker(user_id=self.staker_user_id)
        if self.manual_staker_name or self.manual_staker_id:
            return ManualStaker(name=self.manual_staker_name or "", directory_id=self.manual_staker_id)
        return None

    @property
    def is_persisted(self) -> bool:
        return self.original_stake_id is not None

    @property
    def key(self) -> Optional[str]:
        """Staker key, or None while the identity is incomplete."""
        staker = self.staker
        if staker is None:
            return None
        try:
            return staker_key(staker)
        except ValidationError:
            return None

    @classmethod
    def from_agreement(cls, agreement: StakeAgreement) -> "StakeDraft":
        return cls(
            staker_user_id=agreement.staker_user_id,
            manual_staker_name=agreement.manual_staker_name,
            manual_staker_id=agreement.manual_staker_id,
            percentage=agreement.stake_percentage,
            markup=agreement.markup,
            original_stake_id=agreement.id,
            remote_status=agreement.status,
        )


_drafts_adapter = TypeAdapter(list[StakeDraft])


class DraftCache:
    """Local draft storage keyed by persistent session identity."""

    def __init__(self, store: KeyValueStore):
        self._store = store

    @staticmethod
    def _key(session_id: str) -> str:
        return f"{DRAFT_PREFIX}:{session_id}"

    async def load(self, session_id: str) -> list[StakeDraft]:
        raw = await self._store.get(self._key(session_id))
        if not raw:
            return []
        return _drafts_adapter.validate_json(raw)

    async def save(self, session_id: str, drafts: list[StakeDraft]) -> None:
        await self._store.set(self._key(session_id), _drafts_adapter.dump_json(drafts).decode())

    async def clear(self, session_id: str) -> bool:
        return await self._store.delete(self._key(session_id))


class ConfigurationReconciler(LoggerMixin):
    """Merges local staking drafts with the persisted agreements of a session."""

    def __init__(
        self,
        kv_store: KeyValueStore,
        store: Optional[StakeAgreementStore] = None,
        directory: Optional[ManualStakerDirectory] = None,
    ):
        self.store = store or stake_store
        self.directory = directory
        self._cache = DraftCache(kv_store)

    # ===================
    # Draft cache
    # ===================

    async def load_drafts(self, session_id: str) -> list[StakeDraft]:
        return await self._cache.load(session_id)

    async def save_drafts(self, session_id: str, drafts: list[StakeDraft]) -> None:
        await self._cache.save(session_id, drafts)

    async def clear_drafts(self, session_id: str) -> bool:
        """Drop the cached drafts once the session is finalized."""
        return await self._cache.clear(session_id)

    # ===================
    # Reconciliation
    # ===================

    async def sync_session(
        self,
        session_id: str,
        staked_player_id: str,
        metadata: Optional[SessionMetadata] = None,
        temporary_session_ids: Iterable[str] = (),
    ) -> ReconcileResult:
        """
        Full pass for one session: load cached drafts, fetch agreements under
        the permanent and temporary ids, reconcile and cache the result.
        """
        drafts = await self.load_drafts(session_id)
        try:
            remote = await self.store.list_by_sessions([session_id, *temporary_session_ids])
        except TransientIOError as e:
            self.log.warning("Agreement store unavailable, keeping local drafts", session_id=session_id)
            return ReconcileResult(drafts=drafts, error=e)

        result = await self.reconcile(session_id, drafts, remote, staked_player_id, metadata)
        if result.success:
            await self.save_drafts(session_id, result.drafts)
        return result

    async def reconcile(
        self,
        session_id: str,
        local_drafts: list[StakeDraft],
        remote_agreements: list[StakeAgreement],
        staked_player_id: Optional[str] = None,
        metadata: Optional[SessionMetadata] = None,
    ) -> ReconcileResult:
        """
        Merge local drafts with remote agreements into one draft per staker.

        If the pass fails the local drafts are returned unchanged with the
        error attached; writes that already succeeded are picked up by the
        next pass.
        """
        result = ReconcileResult()
        with log_context(session_id=session_id):
            try:
                await self._reconcile(
                    session_id, local_drafts, remote_agreements,
                    staked_player_id, metadata, result,
                )
            except StakeEngineError as e:
                self.log.warning(
                    "Reconciliation interrupted, keeping local drafts",
                    error_code=e.code,
                    error=e.message,
                )
                return ReconcileResult(drafts=list(local_drafts), error=e)

            self.log.info(
                "Reconciled stake drafts",
                drafts=len(result.drafts),
                created=len(result.created_stake_ids),
                migrated=len(result.migrated_stake_ids),
                removed=len(result.removed_stake_ids),
                conflicts=len(result.conflicts),
            )
        return result

    async def _reconcile(
        self,
        session_id: str,
        local_drafts: list[StakeDraft],
        remote_agreements: list[StakeAgreement],
        staked_player_id: Optional[str],
        metadata: Optional[SessionMetadata],
        result: ReconcileResult,
    ) -> None:
        winners = await self._collapse_remote(session_id, remote_agreements, result)
        if staked_player_id is None and winners:
            staked_player_id = next(iter(winners.values())).staked_player_id

        merged: list[StakeDraft] = []
        seen: set[str] = set()

        for draft in self._dedupe_local(local_drafts):
            key = draft.key
            if key is not None and key in winners:
                merged.append(self._merge(draft, winners[key], result))
                seen.add(key)
                continue
            if key is not None and key in seen:
                continue
            merged.append(await self._create_missing(draft, session_id, staked_player_id, metadata, result))
            if key is not None:
                seen.add(key)

        for key, agreement in winners.items():
            if key not in seen:
                merged.append(StakeDraft.from_agreement(agreement))
                seen.add(key)

        if self.directory is not None:
            for draft in merged:
                staker = draft.staker
                if staker is not None and draft.key is not None:
                    draft.display_name = await self.directory.resolve_staker_display_name(staker)

        result.drafts = merged

    async def _collapse_remote(
        self,
        session_id: str,
        remote_agreements: list[StakeAgreement],
        result: ReconcileResult,
    ) -> dict[str, StakeAgreement]:
        """Pick one agreement per staker, migrating or dropping temporary duplicates."""
        groups: dict[str, list[StakeAgreement]] = {}
        for agreement in remote_agreements:
            groups.setdefault(agreement.staker_key, []).append(agreement)

        winners: dict[str, StakeAgreement] = {}
        for key, group in groups.items():
            permanent = [a for a in group if a.session_id == session_id]
            temporary = sorted(
                (a for a in group if a.session_id != session_id),
                key=lambda a: a.last_updated_at,
                reverse=True,
            )

            if permanent:
                winner = permanent[0]
            else:
                candidate = temporary.pop(0)
                try:
                    outcome = await self.store.migrate_session(candidate.id, session_id)
                except ValidationError:
                    # A permanent record was written after the listing; it wins
                    winner = await self._permanent_for(session_id, key)
                    if winner is None:
                        raise
                    self.log.info(
                        "Permanent stake appeared during reconciliation",
                        stake_id=winner.id,
                        temporary_stake_id=candidate.id,
                    )
                    temporary.insert(0, candidate)
                else:
                    if not outcome.success:
                        self.log.warning("Stake vanished before migration", stake_id=candidate.id)
                        continue
                    winner = outcome.value
                    result.migrated_stake_ids.append(winner.id)

            for duplicate in temporary:
                if duplicate.status == StakeStatus.SETTLED:
                    # Settled history is never deleted; report it instead
                    self.log.warning(
                        "Settled duplicate left under temporary session",
                        stake_id=duplicate.id,
                        temporary_session_id=duplicate.session_id,
                    )
                    result.conflicts.append(key)
                    continue
                outcome = await self.store.delete(duplicate.id)
                if outcome.success:
                    result.removed_stake_ids.append(duplicate.id)

            winners[key] = winner
        return winners

    async def _permanent_for(self, session_id: str, key: str) -> Optional[StakeAgreement]:
        for agreement in await self.store.list_by_session(session_id):
            if agreement.staker_key == key:
                return agreement
        return None

    @staticmethod
    def _dedupe_local(drafts: list[StakeDraft]) -> list[StakeDraft]:
        """Keep the last local draft per staker key; incomplete drafts are all kept."""
        last_index: dict[str, int] = {}
        for index, draft in enumerate(drafts):
            if draft.key is not None:
                last_index[draft.key] = index
        return [
            draft for index, draft in enumerate(drafts)
            if draft.key is None or last_index[draft.key] == index
        ]

    def _merge(self, local: StakeDraft, agreement: StakeAgreement, result: ReconcileResult) -> StakeDraft:
        merged = StakeDraft.from_agreement(agreement)
        merged.draft_id = local.draft_id

        # Edits flagged on an earlier pass stay pending until resolved
        local_pct, local_mk = normalize_terms(
            local.local_percentage if local.has_conflict else local.percentage,
            local.local_markup if local.has_conflict else local.markup,
        )
        edited = (
            (local_pct is not None and local_pct != agreement.stake_percentage)
            or (local_mk is not None and local_mk != agreement.markup)
        )
        declined_unseen = agreement.status == StakeStatus.DECLINED and not local.is_persisted
        if edited or declined_unseen:
            merged.has_conflict = True
            merged.local_percentage = local_pct
            merged.local_markup = local_mk
            result.conflicts.append(agreement.staker_key)
        return merged

    async def _create_missing(
        self,
        draft: StakeDraft,
        session_id: str,
        staked_player_id: Optional[str],
        metadata: Optional[SessionMetadata],
        result: ReconcileResult,
    ) -> StakeDraft:
        """Persist a local-only draft when it carries enough to be valid."""
        staker = draft.staker
        pending = draft.model_copy(update={"original_stake_id": None, "remote_status": None})
        if staker is None or draft.key is None or draft.percentage is None or draft.markup is None:
            return pending
        if not staked_player_id:
            return pending

        try:
            agreement = await self.store.upsert(
                session_id, staker, staked_player_id, draft.percentage, draft.markup, metadata,
            )
        except ValidationError as e:
            self.log.warning("Draft not persisted", draft_id=draft.draft_id, error=e.message)
            return pending
        except InvalidStateTransition as e:
            # A closed agreement for this staker exists outside this pass
            self.log.warning("Draft conflicts with a closed stake", draft_id=draft.draft_id, error=e.message)
            pending.has_conflict = True
            result.conflicts.append(draft.key)
            return pending

        result.created_stake_ids.append(agreement.id)
        created = StakeDraft.from_agreement(agreement)
        created.draft_id = draft.draft_id
        return created
