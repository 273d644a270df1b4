"""
Tests for the REST API.
"""

from decimal import Decimal

import httpx
import pytest
import pytest_asyncio

from stakeledger.api import create_api_app
from stakeledger.services.reconciler import ConfigurationReconciler, StakeDraft


@pytest_asyncio.fixture
async def client(db, kv_store):
    app = create_api_app(kv_store)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


class TestHealth:
    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert "X-Response-Time" in response.headers


class TestSessionStakes:
    """Test session stake endpoints."""

    @pytest.mark.asyncio
    async def test_upsert_list_and_settle(self, client):
        payload = {
            "staker_user_id": "staker-1",
            "staked_player_id": "player-1",
            "percentage": "0.5",
            "markup": "1.0",
            "game_name": "NLH",
        }
        first = await client.put("/api/v1/sessions/s1/stakes", json=payload)
        assert first.status_code == 200
        second = await client.put("/api/v1/sessions/s1/stakes", json={**payload, "percentage": "0.4"})
        assert second.json()["id"] == first.json()["id"]

        listed = await client.get("/api/v1/sessions/s1/stakes")
        assert len(listed.json()) == 1

        settled = await client.post("/api/v1/sessions/s1/settle", json={"buy_in": "100", "cashout": "200"})
        assert settled.status_code == 200
        body = settled.json()
        assert body["failed"] == []
        assert body["settled"][0]["status"] == "settled"
        assert body["settled"][0]["settlement_amount"] == "-40.00"
        assert body["settled"][0]["settlement_summary"] == "Player owes staker $40.00"

    @pytest.mark.asyncio
    async def test_invalid_terms_422(self, client):
        response = await client.put("/api/v1/sessions/s1/stakes", json={
            "staker_user_id": "staker-1",
            "staked_player_id": "player-1",
            "percentage": "1.5",
        })
        assert response.status_code == 422
        assert response.json()["error"] == "validation_error"

    @pytest.mark.asyncio
    async def test_missing_staker_422(self, client):
        response = await client.put("/api/v1/sessions/s1/stakes", json={
            "staked_player_id": "player-1",
            "percentage": "0.5",
        })
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_settle_drops_cached_drafts(self, client, kv_store):
        reconciler = ConfigurationReconciler(kv_store)
        await reconciler.save_drafts("s1", [
            StakeDraft(staker_user_id="staker-1", percentage=Decimal("0.5"), markup=Decimal("1")),
        ])

        response = await client.post("/api/v1/sessions/s1/settle", json={"buy_in": "100", "cashout": "50"})

        assert response.status_code == 200
        assert await reconciler.load_drafts("s1") == []


class TestStakeEndpoints:
    """Test per-stake endpoints."""

    async def _create(self, client) -> str:
        response = await client.put("/api/v1/sessions/s1/stakes", json={
            "manual_staker_name": "Uncle Bob",
            "staked_player_id": "player-1",
            "percentage": "0.5",
            "markup": "2",
        })
        return response.json()["id"]

    @pytest.mark.asyncio
    async def test_two_party_settlement(self, client):
        stake_id = await self._create(client)
        response = await client.post(f"/api/v1/stakes/{stake_id}/settlement", json={
            "buy_in": "100",
            "cashout": "0",
            "require_confirmation": True,
            "initiator_user_id": "player-1",
        })
        assert response.json()["status"] == "awaiting_settlement"
        assert response.json()["settlement_amount"] == "100.00"

        confirmed = await client.post(f"/api/v1/stakes/{stake_id}/confirm", json={"confirming_user_id": "staker-9"})
        assert confirmed.json()["status"] == "settled"

    @pytest.mark.asyncio
    async def test_unknown_stake_404(self, client):
        response = await client.post("/api/v1/stakes/missing/settlement", json={"buy_in": "1", "cashout": "1"})
        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    @pytest.mark.asyncio
    async def test_declined_stake_409(self, client):
        stake_id = await self._create(client)
        assert (await client.post(f"/api/v1/stakes/{stake_id}/decline")).status_code == 200
        response = await client.post(f"/api/v1/stakes/{stake_id}/settlement", json={"buy_in": "1", "cashout": "2"})
        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_player_and_staker_listings(self, client):
        await client.put("/api/v1/sessions/s1/stakes", json={
            "staker_user_id": "staker-1",
            "staked_player_id": "player-1",
            "percentage": "0.5",
        })
        assert len((await client.get("/api/v1/players/player-1/stakes")).json()) == 1
        assert len((await client.get("/api/v1/stakers/staker-1/stakes")).json()) == 1
        settled = await client.get("/api/v1/players/player-1/stakes", params={"status": "settled"})
        assert settled.json() == []


class TestInviteEndpoints:
    """Test event invite endpoints."""

    @pytest.mark.asyncio
    async def test_results_then_accept_settles(self, client):
        created = await client.post("/api/v1/events/e1/invites", json={
            "staked_player_id": "player-1",
            "event_name": "Main Event",
            "terms": [
                {"staker_user_id": "staker-1", "percentage": "0.5", "markup": "1"},
                {"manual_staker_name": "Uncle Bob", "percentage": "0.1", "markup": "1"},
            ],
        })
        assert created.status_code == 201
        invites = created.json()
        assert len(invites) == 2

        results = await client.post("/api/v1/events/e1/results", json={
            "staked_player_id": "player-1",
            "buy_in": "100",
            "cashout": "200",
        })
        assert results.json() == {"updated": 2}

        accepted = await client.post(f"/api/v1/invites/{invites[0]['id']}/accept")
        assert accepted.status_code == 200
        assert accepted.json()["status"] == "settled"
        assert accepted.json()["settlement_amount"] == "-50.00"
        assert accepted.json()["session_id"] == "event_e1_player-1"

        pending = await client.get("/api/v1/stakers/staker-1/invites")
        assert pending.json()[0]["status"] == "accepted"

    @pytest.mark.asyncio
    async def test_decline_then_accept_409(self, client):
        created = await client.post("/api/v1/events/e1/invites", json={
            "staked_player_id": "player-1",
            "event_name": "Main Event",
            "terms": [{"staker_user_id": "staker-1", "percentage": "0.5"}],
        })
        invite_id = created.json()[0]["id"]

        declined = await client.post(f"/api/v1/invites/{invite_id}/decline")
        assert declined.json()["status"] == "declined"

        response = await client.post(f"/api/v1/invites/{invite_id}/accept")
        assert response.status_code == 409
        assert response.json()["error"] == "already_answered"


class TestIdentityAndReconcile:
    """Test identity resolution and reconciliation endpoints."""

    @pytest.mark.asyncio
    async def test_resolve_is_stable(self, client):
        first = await client.post("/api/v1/identities/rt-1", json={"owner_id": "player-1"})
        second = await client.post("/api/v1/identities/rt-1", json={"owner_id": "player-1"})
        other = await client.post("/api/v1/identities/rt-2", json={"owner_id": "player-1"})

        assert first.json()["session_id"] == second.json()["session_id"]
        assert other.json()["session_id"] != first.json()["session_id"]
        assert first.json()["session_id"].startswith("player-1_")

        released = await client.delete("/api/v1/identities/rt-1")
        assert released.json() == {"released": True}

    @pytest.mark.asyncio
    async def test_release_drops_cached_drafts(self, client, kv_store):
        identity = (await client.post("/api/v1/identities/rt-1", json={"owner_id": "player-1"})).json()
        reconciler = ConfigurationReconciler(kv_store)
        await reconciler.save_drafts(identity["session_id"], [StakeDraft(staker_user_id="staker-1")])

        released = await client.delete("/api/v1/identities/rt-1")

        assert released.json() == {"released": True}
        assert await reconciler.load_drafts(identity["session_id"]) == []

    @pytest.mark.asyncio
    async def test_reconcile_promotes_invite_stake(self, client):
        created = await client.post("/api/v1/events/e1/invites", json={
            "staked_player_id": "player-1",
            "event_name": "Main Event",
            "terms": [{"staker_user_id": "staker-1", "percentage": "0.5"}],
        })
        await client.post(f"/api/v1/invites/{created.json()[0]['id']}/accept")
        identity = (await client.post("/api/v1/identities/rt-1", json={"owner_id": "player-1"})).json()
        session_id = identity["session_id"]

        response = await client.post(f"/api/v1/sessions/{session_id}/reconcile", json={
            "staked_player_id": "player-1",
            "temporary_session_ids": ["event_e1_player-1"],
        })

        body = response.json()
        assert response.status_code == 200
        assert body["error"] is None
        assert len(body["drafts"]) == 1
        assert len(body["migrated_stake_ids"]) == 1
        stakes = (await client.get(f"/api/v1/sessions/{session_id}/stakes")).json()
        assert len(stakes) == 1
