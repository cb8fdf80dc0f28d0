"""Tests for the user store."""

import pytest

from errors import AlreadyRegistered


class TestRegistration:
    @pytest.mark.asyncio
    async def test_create_user(self, users):
        user = await users.create_user("1", "puuid-1", "Alice#EUW")
        assert user.id == "1"
        assert user.riot_puuid == "puuid-1"
        assert user.points_total == 0
        assert user.best_streak_ever == 0

    @pytest.mark.asyncio
    async def test_duplicate_discord_id(self, users):
        await users.create_user("1", "puuid-1", "Alice#EUW")
        with pytest.raises(AlreadyRegistered):
            await users.create_user("1", "puuid-2", "Alice2#EUW")

    @pytest.mark.asyncio
    async def test_duplicate_puuid(self, users):
        await users.create_user("1", "puuid-1", "Alice#EUW")
        with pytest.raises(AlreadyRegistered):
            await users.create_user("2", "puuid-1", "Bob#EUW")

    @pytest.mark.asyncio
    async def test_get_by_puuid(self, users):
        await users.create_user("1", "puuid-1", "Alice#EUW")
        user = await users.get_user_by_puuid("puuid-1")
        assert user.id == "1"
        assert await users.get_user_by_puuid("unknown") is None

    @pytest.mark.asyncio
    async def test_delete_user_without_pactes(self, users):
        await users.create_user("1", "puuid-1", "Alice#EUW")
        assert await users.delete_user("1") is True
        assert await users.get_user("1") is None

    @pytest.mark.asyncio
    async def test_delete_user_with_pacte_is_refused(self, users, store):
        await users.create_user("1", "puuid-1", "Alice#EUW")
        await store.create(3, ["1"])
        assert await users.delete_user("1") is False
        assert await users.get_user("1") is not None


class TestPoints:
    @pytest.mark.asyncio
    async def test_apply_points_updates_both_counters(self, users):
        await users.create_user("1", "puuid-1", "Alice#EUW")
        await users.apply_points("1", 40)
        await users.apply_points("1", -15)
        user = await users.get_user("1")
        assert user.points_total == 25
        assert user.points_monthly == 25

    @pytest.mark.asyncio
    async def test_best_streak_never_lowers(self, users):
        await users.create_user("1", "puuid-1", "Alice#EUW")
        await users.update_best_streak("1", 4)
        await users.update_best_streak("1", 2)
        user = await users.get_user("1")
        assert user.best_streak_ever == 4

    @pytest.mark.asyncio
    async def test_reset_monthly_keeps_total(self, users):
        await users.create_user("1", "puuid-1", "Alice#EUW")
        await users.apply_points("1", 100)
        await users.reset_monthly_points()
        user = await users.get_user("1")
        assert user.points_total == 100
        assert user.points_monthly == 0


class TestLadder:
    @pytest.mark.asyncio
    async def test_ordered_by_points(self, users):
        await users.create_user("1", "puuid-1", "Alice#EUW")
        await users.create_user("2", "puuid-2", "Bob#EUW")
        await users.create_user("3", "puuid-3", "Carol#EUW")
        await users.apply_points("1", 10)
        await users.apply_points("2", 50)

        ladder = await users.get_ladder()
        assert [user.id for user in ladder] == ["2", "1"]

    @pytest.mark.asyncio
    async def test_monthly_ladder(self, users):
        await users.create_user("1", "puuid-1", "Alice#EUW")
        await users.apply_points("1", 10)
        await users.reset_monthly_points()

        assert await users.get_ladder(monthly=True) == []
        assert len(await users.get_ladder()) == 1
