"""Tests for the Riot game observer."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from bot.services.game_observer import RiotGameObserver
from bot.services.retry_policy import RetryPolicy
from errors import RiotApiError, RiotTransientError


def make_response(status=200, payload=None, headers=None):
    resp = MagicMock()
    resp.status = status
    resp.json = AsyncMock(return_value=payload)
    resp.text = AsyncMock(return_value="")
    resp.headers = headers or {}
    return resp


def make_session(*responses):
    """Mock aiohttp session whose ``get`` yields ``responses`` in order."""
    session = MagicMock()
    session.closed = False
    contexts = []
    for resp in responses:
        ctx = MagicMock()
        ctx.__aenter__ = AsyncMock(return_value=resp)
        ctx.__aexit__ = AsyncMock(return_value=False)
        contexts.append(ctx)
    session.get = MagicMock(side_effect=contexts)
    return session


def make_observer(session, sleep=None):
    policy = RetryPolicy(max_attempts=3, base_delay=0.5, max_delay=10.0, sleep=sleep or AsyncMock())
    return RiotGameObserver(
        api_key="RGAPI-test",
        platform="euw1",
        region="europe",
        session=session,
        retry_policy=policy,
        timeout_seconds=5,
        remake_threshold_seconds=300,
    )


def match_payload(match_id, puuids, win=True, duration=1500, queue_id=450, early_surrender=False, team_ids=None):
    team_ids = team_ids or [100] * len(puuids)
    return {
        "metadata": {"matchId": match_id, "participants": list(puuids)},
        "info": {
            "queueId": queue_id,
            "gameDuration": duration,
            "gameEndTimestamp": 1772366400000,
            "participants": [
                {
                    "puuid": puuid,
                    "win": win,
                    "teamId": team_id,
                    "gameEndedInEarlySurrender": early_surrender,
                }
                for puuid, team_id in zip(puuids, team_ids)
            ],
        },
    }


class TestLiveMatch:
    @pytest.mark.asyncio
    async def test_not_in_game(self):
        session = make_session(make_response(404))
        observer = make_observer(session)
        assert await observer.get_live_match("abc") is None

    @pytest.mark.asyncio
    async def test_in_aram(self):
        session = make_session(make_response(200, {"gameId": 6543210, "gameQueueConfigId": 450}))
        observer = make_observer(session)

        live = await observer.get_live_match("abc")

        assert live.match_id == "6543210"
        assert live.queue_id == 450
        url = session.get.call_args.args[0]
        assert url == "https://euw1.api.riotgames.com/lol/spectator/v5/active-games/by-summoner/abc"
        assert session.get.call_args.kwargs["headers"] == {"X-Riot-Token": "RGAPI-test"}

    @pytest.mark.asyncio
    async def test_other_queue_ignored(self):
        session = make_session(make_response(200, {"gameId": 1, "gameQueueConfigId": 420}))
        observer = make_observer(session)
        assert await observer.get_live_match("abc") is None

    @pytest.mark.asyncio
    async def test_platform_override(self):
        session = make_session(make_response(404))
        observer = make_observer(session)
        await observer.get_live_match("abc", platform="na1")
        assert session.get.call_args.args[0].startswith("https://na1.api.riotgames.com/")

    @pytest.mark.asyncio
    async def test_rate_limit_is_retried(self):
        sleep = AsyncMock()
        session = make_session(
            make_response(429, headers={"Retry-After": "2"}),
            make_response(200, {"gameId": 7, "gameQueueConfigId": 450}),
        )
        observer = make_observer(session, sleep=sleep)

        live = await observer.get_live_match("abc")

        assert live.match_id == "7"
        sleep.assert_awaited_once_with(2.0)

    @pytest.mark.asyncio
    async def test_server_errors_exhaust_retries(self):
        session = make_session(make_response(503), make_response(503), make_response(503))
        observer = make_observer(session)

        with pytest.raises(RiotTransientError):
            await observer.get_live_match("abc")
        assert session.get.call_count == 3

    @pytest.mark.asyncio
    async def test_forbidden_is_not_retried(self):
        session = make_session(make_response(403))
        observer = make_observer(session)

        with pytest.raises(RiotApiError) as exc_info:
            await observer.get_live_match("abc")
        assert exc_info.value.status == 403
        assert session.get.call_count == 1


class TestLastGroupMatch:
    @pytest.mark.asyncio
    async def test_shared_win(self):
        session = make_session(
            make_response(200, ["EUW1_2", "EUW1_1"]),
            make_response(200, match_payload("EUW1_2", ["p1", "p2", "x"], win=True)),
        )
        observer = make_observer(session)

        match = await observer.get_last_group_match(["p1", "p2"], lookback=5)

        assert match.match_id == "EUW1_2"
        assert match.win
        assert match.duration_seconds == 1500
        assert match.end_time == datetime.fromtimestamp(1772366400, tz=timezone.utc)
        ids_call = session.get.call_args_list[0]
        assert ids_call.kwargs["params"] == {"count": 5, "queue": 450}

    @pytest.mark.asyncio
    async def test_skips_remake_and_missing_players(self):
        session = make_session(
            make_response(200, ["EUW1_3", "EUW1_2", "EUW1_1"]),
            make_response(200, match_payload("EUW1_3", ["p1", "p2"], duration=200)),
            make_response(200, match_payload("EUW1_2", ["p1", "other"])),
            make_response(200, match_payload("EUW1_1", ["p1", "p2"], win=False)),
        )
        observer = make_observer(session)

        match = await observer.get_last_group_match(["p1", "p2"])

        assert match.match_id == "EUW1_1"
        assert not match.win

    @pytest.mark.asyncio
    async def test_no_match(self):
        session = make_session(make_response(200, []))
        observer = make_observer(session)
        assert await observer.get_last_group_match(["p1"]) is None

    @pytest.mark.asyncio
    async def test_no_players(self):
        session = make_session()
        observer = make_observer(session)
        assert await observer.get_last_group_match([]) is None
        session.get.assert_not_called()


class TestParseGroupMatch:
    def test_early_surrender_is_a_remake(self):
        observer = make_observer(make_session())
        payload = match_payload("EUW1_1", ["p1"], early_surrender=True)
        assert observer.parse_group_match(payload, ["p1"]) is None

    def test_players_on_different_teams(self):
        observer = make_observer(make_session())
        payload = match_payload("EUW1_1", ["p1", "p2"], team_ids=[100, 200])
        assert observer.parse_group_match(payload, ["p1", "p2"]) is None

    def test_other_queue(self):
        observer = make_observer(make_session())
        payload = match_payload("EUW1_1", ["p1"], queue_id=420)
        assert observer.parse_group_match(payload, ["p1"]) is None


class TestAccount:
    @pytest.mark.asyncio
    async def test_lookup_by_riot_id(self):
        session = make_session(make_response(200, {"puuid": "p1", "gameName": "Alice", "tagLine": "EUW"}))
        observer = make_observer(session)

        account = await observer.get_account_by_riot_id("Alice", "EUW")

        assert account["puuid"] == "p1"
        assert session.get.call_args.args[0] == (
            "https://europe.api.riotgames.com/riot/account/v1/accounts/by-riot-id/Alice/EUW"
        )
