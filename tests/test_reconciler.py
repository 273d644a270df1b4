"""
Tests for the configuration reconciler and its draft cache.
"""

from decimal import Decimal

import pytest

from stakeledger.db.models import StakeAgreement, StakeStatus, utcnow
from stakeledger.services.agreements import StakeAgreementStore
from stakeledger.services.base import (
    ManualStaker,
    RegisteredStaker,
    SessionMetadata,
    TransientIOError,
    ValidationError,
)
from stakeledger.services.directory import ManualStakerDirectory
from stakeledger.services.invites import event_session_id
from stakeledger.services.reconciler import ConfigurationReconciler, StakeDraft

SESSION = "player-1_1709317800"
TEMP = event_session_id("e1", "player-1")


@pytest.fixture
def store() -> StakeAgreementStore:
    return StakeAgreementStore(require_confirmation=False)


@pytest.fixture
def reconciler(kv_store, store) -> ConfigurationReconciler:
    return ConfigurationReconciler(kv_store, store)


class _UnavailableStore:
    """Agreement store whose backend is unreachable."""

    async def list_by_sessions(self, session_ids):
        raise TransientIOError("Database unavailable")

    async def upsert(self, *args, **kwargs):
        raise TransientIOError("Database unavailable")


class _RejectingStore:
    """Agreement store that refuses every migration."""

    async def migrate_session(self, stake_id, new_session_id):
        raise ValidationError(f"Session {new_session_id} already has a stake")

    async def list_by_session(self, session_id):
        return []


class TestStakeDraft:
    """Test draft identity helpers."""

    def test_registered_key(self):
        assert StakeDraft(staker_user_id="u1").key == "user:u1"

    def test_manual_key(self):
        assert StakeDraft(manual_staker_name="Uncle Bob").key == "manual-name:uncle bob"

    def test_incomplete_identity(self):
        assert StakeDraft(percentage=Decimal("0.5")).key is None
        assert StakeDraft(manual_staker_name="  ").key is None


class TestDraftCache:
    """Test the draft cache."""

    @pytest.mark.asyncio
    async def test_save_load_clear(self, reconciler):
        drafts = [StakeDraft(staker_user_id="u1", percentage=Decimal("0.25"), markup=Decimal("1.1"))]
        await reconciler.save_drafts(SESSION, drafts)

        loaded = await reconciler.load_drafts(SESSION)
        assert loaded == drafts

        assert await reconciler.clear_drafts(SESSION) is True
        assert await reconciler.load_drafts(SESSION) == []


@pytest.mark.usefixtures("db")
class TestReconcile:
    """Test merging local drafts with persisted agreements."""

    @pytest.mark.asyncio
    async def test_remote_only_becomes_draft(self, reconciler, store, player_id):
        agreement = await store.upsert(SESSION, RegisteredStaker("u1"), player_id, "0.5", "1")

        result = await reconciler.reconcile(SESSION, [], [agreement])

        assert result.success
        assert len(result.drafts) == 1
        draft = result.drafts[0]
        assert draft.original_stake_id == agreement.id
        assert draft.percentage == Decimal("0.5")
        assert draft.remote_status == StakeStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_local_only_draft_is_created(self, reconciler, store, player_id):
        local = StakeDraft(manual_staker_name="Uncle Bob", percentage=Decimal("0.2"), markup=Decimal("1"))

        result = await reconciler.reconcile(
            SESSION, [local], [], player_id, SessionMetadata(game_name="NLH"),
        )

        assert len(result.created_stake_ids) == 1
        draft = result.drafts[0]
        assert draft.is_persisted
        assert draft.draft_id == local.draft_id
        stored = await store.list_by_session(SESSION)
        assert len(stored) == 1
        assert stored[0].manual_staker_name == "Uncle Bob"
        assert stored[0].session_game_name == "NLH"

    @pytest.mark.asyncio
    async def test_incomplete_draft_stays_pending(self, reconciler, store, player_id):
        local = StakeDraft(staker_user_id="u1", percentage=Decimal("0.2"))

        result = await reconciler.reconcile(SESSION, [local], [], player_id)

        assert result.created_stake_ids == []
        assert len(result.drafts) == 1
        assert not result.drafts[0].is_persisted
        assert await store.list_by_session(SESSION) == []

    @pytest.mark.asyncio
    async def test_invalid_draft_stays_pending(self, reconciler, store, player_id):
        local = StakeDraft(staker_user_id="u1", percentage=Decimal("2"), markup=Decimal("1"))

        result = await reconciler.reconcile(SESSION, [local], [], player_id)

        assert result.success
        assert not result.drafts[0].is_persisted
        assert await store.list_by_session(SESSION) == []

    @pytest.mark.asyncio
    async def test_remote_terms_win_and_local_edit_flagged(self, reconciler, store, player_id):
        agreement = await store.upsert(SESSION, RegisteredStaker("u1"), player_id, "0.5", "1")
        local = StakeDraft(
            staker_user_id="u1",
            percentage=Decimal("0.3"),
            markup=Decimal("1"),
            original_stake_id=agreement.id,
        )

        result = await reconciler.reconcile(SESSION, [local], [agreement], player_id)

        assert len(result.drafts) == 1
        draft = result.drafts[0]
        assert draft.percentage == Decimal("0.5")
        assert draft.has_conflict
        assert draft.local_percentage == Decimal("0.3")
        assert result.conflicts == ["user:u1"]
        # Remote record untouched
        assert (await store.get(agreement.id)).stake_percentage == Decimal("0.5")

    @pytest.mark.asyncio
    async def test_flagged_edit_survives_next_pass(self, reconciler, store, player_id):
        agreement = await store.upsert(SESSION, RegisteredStaker("u1"), player_id, "0.5", "1")
        local = StakeDraft(staker_user_id="u1", percentage=Decimal("0.3"), markup=Decimal("1"))

        first = await reconciler.reconcile(SESSION, [local], [agreement], player_id)
        second = await reconciler.reconcile(SESSION, first.drafts, [agreement], player_id)

        assert second.drafts[0].has_conflict
        assert second.drafts[0].local_percentage == Decimal("0.3")

    @pytest.mark.asyncio
    async def test_matching_terms_no_conflict(self, reconciler, store, player_id):
        agreement = await store.upsert(SESSION, RegisteredStaker("u1"), player_id, "0.5", "1")
        local = StakeDraft(staker_user_id="u1", percentage=Decimal("0.5"), markup=Decimal("1"))

        result = await reconciler.reconcile(SESSION, [local], [agreement], player_id)

        assert not result.drafts[0].has_conflict
        assert result.conflicts == []
        assert result.drafts[0].draft_id == local.draft_id

    @pytest.mark.asyncio
    async def test_temporary_record_is_migrated(self, reconciler, store, player_id):
        temp = await store.upsert(TEMP, RegisteredStaker("u1"), player_id, "0.5", "1")

        result = await reconciler.reconcile(SESSION, [], [temp], player_id)

        assert result.migrated_stake_ids == [temp.id]
        assert len(result.drafts) == 1
        moved = await store.get(temp.id)
        assert moved.session_id == SESSION
        assert await store.list_by_session(TEMP) == []

    @pytest.mark.asyncio
    async def test_temporary_and_permanent_duplicates_merge(self, reconciler, store, player_id):
        temp = await store.upsert(TEMP, RegisteredStaker("u1"), player_id, "0.5", "1")
        permanent = await store.upsert(SESSION, RegisteredStaker("u1"), player_id, "0.4", "1")

        result = await reconciler.reconcile(SESSION, [], [temp, permanent], player_id)

        assert len(result.drafts) == 1
        assert result.drafts[0].original_stake_id == permanent.id
        assert result.removed_stake_ids == [temp.id]
        remaining = await store.list_by_sessions([SESSION, TEMP])
        assert [a.id for a in remaining] == [permanent.id]

    @pytest.mark.asyncio
    async def test_settled_temporary_duplicate_is_kept(self, reconciler, store, player_id):
        temp = await store.upsert(TEMP, RegisteredStaker("u1"), player_id, "0.5", "1")
        await store.attach_settlement(temp.id, 100, 200)
        temp = await store.get(temp.id)
        permanent = await store.upsert(SESSION, RegisteredStaker("u1"), player_id, "0.4", "1")

        result = await reconciler.reconcile(SESSION, [], [temp, permanent], player_id)

        assert len(result.drafts) == 1
        assert result.removed_stake_ids == []
        assert result.conflicts == ["user:u1"]
        assert (await store.get(temp.id)).status == StakeStatus.SETTLED

    @pytest.mark.asyncio
    async def test_permanent_record_missing_from_listing_wins(self, reconciler, store, player_id):
        temp = await store.upsert(TEMP, RegisteredStaker("u1"), player_id, "0.5", "1")
        # Written by another device after the listing below was taken
        permanent = await store.upsert(SESSION, RegisteredStaker("u1"), player_id, "0.4", "1")
        local = StakeDraft(staker_user_id="u2", percentage=Decimal("0.2"), markup=Decimal("1"))

        result = await reconciler.reconcile(SESSION, [local], [temp], player_id)

        assert result.success
        assert result.migrated_stake_ids == []
        assert result.removed_stake_ids == [temp.id]
        assert {d.key for d in result.drafts} == {"user:u1", "user:u2"}
        kept = next(d for d in result.drafts if d.key == "user:u1")
        assert kept.original_stake_id == permanent.id
        assert await store.list_by_session(TEMP) == []

    @pytest.mark.asyncio
    async def test_extra_precision_is_not_a_conflict(self, reconciler, store, player_id):
        agreement = await store.upsert(SESSION, RegisteredStaker("u1"), player_id, "0.3333333", "1.12345")
        local = StakeDraft(
            staker_user_id="u1",
            percentage=Decimal("0.3333333"),
            markup=Decimal("1.12345"),
            original_stake_id=agreement.id,
        )
        remote = await store.list_by_session(SESSION)

        result = await reconciler.reconcile(SESSION, [local], remote, player_id)

        assert result.conflicts == []
        assert not result.drafts[0].has_conflict

    @pytest.mark.asyncio
    async def test_local_duplicates_collapse(self, reconciler, store, player_id):
        drafts = [
            StakeDraft(manual_staker_name="Uncle Bob", percentage=Decimal("0.1"), markup=Decimal("1")),
            StakeDraft(manual_staker_name="uncle  bob", percentage=Decimal("0.2"), markup=Decimal("1")),
        ]

        result = await reconciler.reconcile(SESSION, drafts, [], player_id)

        assert len(result.drafts) == 1
        stored = await store.list_by_session(SESSION)
        assert len(stored) == 1
        assert stored[0].stake_percentage == Decimal("0.2")

    @pytest.mark.asyncio
    async def test_declined_remote_flags_unsent_draft(self, reconciler, store, player_id):
        agreement = await store.upsert(SESSION, RegisteredStaker("u1"), player_id, "0.5", "1")
        await store.decline(agreement.id)
        agreement = await store.get(agreement.id)
        local = StakeDraft(staker_user_id="u1", percentage=Decimal("0.5"), markup=Decimal("1"))

        result = await reconciler.reconcile(SESSION, [local], [agreement], player_id)

        assert result.drafts[0].remote_status == StakeStatus.DECLINED
        assert result.drafts[0].has_conflict

    @pytest.mark.asyncio
    async def test_display_names_resolved(self, kv_store, store, player_id):
        directory = ManualStakerDirectory()
        profile = await directory.create(player_id, "Robert")
        reconciler = ConfigurationReconciler(kv_store, store, directory)
        agreement = await store.upsert(SESSION, ManualStaker("Bob", profile.id), player_id, "0.5", "1")

        result = await reconciler.reconcile(SESSION, [], [agreement], player_id)

        assert result.drafts[0].display_name == "Robert"


@pytest.mark.usefixtures("db")
class TestSyncSession:
    """Test the full load-reconcile-save pass."""

    @pytest.mark.asyncio
    async def test_sync_creates_and_caches(self, reconciler, store, player_id):
        await reconciler.save_drafts(SESSION, [
            StakeDraft(staker_user_id="u1", percentage=Decimal("0.5"), markup=Decimal("1")),
        ])
        temp = await store.upsert(TEMP, RegisteredStaker("u2"), player_id, "0.1", "1")

        result = await reconciler.sync_session(SESSION, player_id, temporary_session_ids=[TEMP])

        assert result.success
        assert len(result.created_stake_ids) == 1
        assert result.migrated_stake_ids == [temp.id]
        cached = await reconciler.load_drafts(SESSION)
        assert {d.key for d in cached} == {"user:u1", "user:u2"}
        assert all(d.is_persisted for d in cached)

    @pytest.mark.asyncio
    async def test_sync_is_stable(self, reconciler, store, player_id):
        await reconciler.save_drafts(SESSION, [
            StakeDraft(staker_user_id="u1", percentage=Decimal("0.5"), markup=Decimal("1")),
        ])
        await reconciler.sync_session(SESSION, player_id)
        second = await reconciler.sync_session(SESSION, player_id)

        assert second.created_stake_ids == []
        assert second.conflicts == []
        assert len(await store.list_by_session(SESSION)) == 1

    @pytest.mark.asyncio
    async def test_extra_precision_stays_in_sync(self, reconciler, store, player_id):
        await reconciler.save_drafts(SESSION, [
            StakeDraft(staker_user_id="s1", percentage=Decimal("0.3333333"), markup=Decimal("1.12345")),
        ])

        first = await reconciler.sync_session(SESSION, player_id)
        second = await reconciler.sync_session(SESSION, player_id)

        assert first.conflicts == []
        assert first.drafts[0].percentage == Decimal("0.333333")
        assert first.drafts[0].markup == Decimal("1.1235")
        assert second.conflicts == []
        assert not second.drafts[0].has_conflict
        stored = await store.list_by_session(SESSION)
        assert stored[0].stake_percentage == Decimal("0.333333")


class TestReconcileFailures:
    """Test that failures never drop local drafts."""

    @pytest.mark.asyncio
    async def test_unreachable_store_returns_local_drafts(self, kv_store):
        reconciler = ConfigurationReconciler(kv_store, _UnavailableStore())
        drafts = [StakeDraft(staker_user_id="u1", percentage=Decimal("0.5"), markup=Decimal("1"))]
        await reconciler.save_drafts(SESSION, drafts)

        result = await reconciler.sync_session(SESSION, "player-1")

        assert not result.success
        assert isinstance(result.error, TransientIOError)
        assert result.drafts == drafts
        assert await reconciler.load_drafts(SESSION) == drafts

    @pytest.mark.asyncio
    async def test_failed_upsert_returns_local_drafts(self, kv_store):
        reconciler = ConfigurationReconciler(kv_store, _UnavailableStore())
        drafts = [StakeDraft(staker_user_id="u1", percentage=Decimal("0.5"), markup=Decimal("1"))]

        result = await reconciler.reconcile(SESSION, drafts, [], "player-1")

        assert not result.success
        assert result.drafts == drafts

    @pytest.mark.asyncio
    async def test_engine_error_returns_local_drafts(self, kv_store):
        reconciler = ConfigurationReconciler(kv_store, _RejectingStore())
        drafts = [StakeDraft(staker_user_id="u2", percentage=Decimal("0.5"), markup=Decimal("1"))]
        orphan = StakeAgreement(
            id="a1",
            session_id=TEMP,
            staker_key="user:u1",
            staker_user_id="u1",
            staked_player_id="player-1",
            stake_percentage=Decimal("0.5"),
            markup=Decimal("1"),
            status=StakeStatus.ACTIVE,
            last_updated_at=utcnow(),
        )

        result = await reconciler.reconcile(SESSION, drafts, [orphan], "player-1")

        assert not result.success
        assert isinstance(result.error, ValidationError)
        assert result.drafts == drafts
