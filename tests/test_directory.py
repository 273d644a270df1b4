"""
Tests for the manual staker directory.
"""

import pytest

from stakeledger.services.base import ManualStaker, NotFoundError, RegisteredStaker, ValidationError
from stakeledger.services.directory import ManualStakerDirectory


@pytest.fixture
def directory() -> ManualStakerDirectory:
    return ManualStakerDirectory()


@pytest.mark.usefixtures("db")
class TestDirectoryCrud:
    """Test manual staker profile CRUD."""

    @pytest.mark.asyncio
    async def test_create_trims_fields(self, directory, player_id):
        profile = await directory.create(player_id, "  Uncle Bob ", contact_info=" bob@example.com ", notes="   ")
        assert profile.name == "Uncle Bob"
        assert profile.contact_info == "bob@example.com"
        assert profile.notes is None

    @pytest.mark.asyncio
    async def test_create_requires_name(self, directory, player_id):
        with pytest.raises(ValidationError):
            await directory.create(player_id, "   ")

    @pytest.mark.asyncio
    async def test_list_sorted_and_scoped(self, directory, player_id):
        await directory.create(player_id, "zed")
        await directory.create(player_id, "Amy")
        await directory.create("someone-else", "Bob")

        names = [p.name for p in await directory.list_for_user(player_id)]
        assert names == ["Amy", "zed"]

    @pytest.mark.asyncio
    async def test_update(self, directory, player_id):
        profile = await directory.create(player_id, "Uncle Bob")
        result = await directory.update(profile.id, name="Robert", notes="pays fast")
        assert result.success
        reloaded = await directory.get(profile.id)
        assert reloaded.name == "Robert"
        assert reloaded.notes == "pays fast"

    @pytest.mark.asyncio
    async def test_update_unknown(self, directory):
        result = await directory.update("missing", name="x")
        assert isinstance(result.error, NotFoundError)

    @pytest.mark.asyncio
    async def test_delete(self, directory, player_id):
        profile = await directory.create(player_id, "Uncle Bob")
        assert (await directory.delete(profile.id)).success
        assert await directory.get(profile.id) is None
        assert isinstance((await directory.delete(profile.id)).error, NotFoundError)


@pytest.mark.usefixtures("db")
class TestDirectorySearch:
    """Test search and duplicate checks."""

    @pytest.mark.asyncio
    async def test_search_name_and_contact(self, directory, player_id):
        await directory.create(player_id, "Uncle Bob", contact_info="bob@example.com")
        await directory.create(player_id, "Alice", contact_info="@alice_poker")
        await directory.create("someone-else", "Bobby")

        assert [p.name for p in await directory.search("BOB", player_id)] == ["Uncle Bob"]
        assert [p.name for p in await directory.search("poker", player_id)] == ["Alice"]
        assert len(await directory.search("  ", player_id)) == 2

    @pytest.mark.asyncio
    async def test_has_existing(self, directory, player_id):
        await directory.create(player_id, "Uncle Bob")
        assert await directory.has_existing("  uncle bob ", player_id)
        assert not await directory.has_existing("Uncle Bob", "someone-else")
        assert not await directory.has_existing("", player_id)


@pytest.mark.usefixtures("db")
class TestDisplayNames:
    """Test staker display name resolution."""

    @pytest.mark.asyncio
    async def test_manual_uses_directory_entry(self, directory, player_id):
        profile = await directory.create(player_id, "Robert")
        name = await directory.resolve_staker_display_name(ManualStaker("Bob", profile.id))
        assert name == "Robert"

    @pytest.mark.asyncio
    async def test_manual_falls_back_to_stored_name(self, directory):
        assert await directory.resolve_staker_display_name(ManualStaker("Bob", "gone")) == "Bob"
        assert await directory.resolve_staker_display_name(ManualStaker("Bob")) == "Bob"

    @pytest.mark.asyncio
    async def test_registered_uses_profile_lookup(self):
        async def lookup(user_id):
            return {"u1": "Daniel"}.get(user_id)

        directory = ManualStakerDirectory(profile_lookup=lookup)
        assert await directory.resolve_staker_display_name(RegisteredStaker("u1")) == "Daniel"
        assert await directory.resolve_staker_display_name(RegisteredStaker("u2")) == "u2"
