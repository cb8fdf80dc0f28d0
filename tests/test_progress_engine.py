"""Tests for the progress engine state machine."""

from datetime import timedelta

import pytest

from bot.services.progress_engine import ProgressEngine
from conftest import T0, puuid_for
from errors import RiotTransientError
from models import (
    MarkInGame,
    MarkMatchEnded,
    MatchLost,
    MatchOutcome,
    MatchStarted,
    MatchWon,
    PacteStatus,
    PacteSucceeded,
    PacteTimedOut,
    RecordLoss,
    RecordWin,
    ResultUndetectable,
    TechnicalResetEvent,
    TimeRunningOut,
)


@pytest.fixture
def engine(db, store, ledger, users, observer, events):
    return ProgressEngine(
        db,
        store,
        ledger,
        users,
        observer,
        events,
        poll_interval_seconds=10,
        check_interval_minutes=0.5,
        result_min_delay_seconds=45,
        result_grace_seconds=600,
        result_max_empty_polls=20,
        error_reset_threshold=5,
        pacte_duration_hours=24,
        warning_window_hours=2,
        match_lookback=5,
    )


async def tick(engine, store, pacte_id, now):
    """Run one engine check on the freshly loaded pacte."""
    pacte = await store.get_pacte(pacte_id)
    await engine.check_pacte(pacte, now)
    return await store.get_pacte(pacte_id)


async def play_match(engine, store, observer, pacte_id, user_ids, game_id, win, start):
    """Drive a full match: detection, end, then result after the provider delay."""
    observer.start_match(user_ids, game_id)
    await tick(engine, store, pacte_id, start)
    observer.end_match(f"EUW1_{game_id}", win, end_time=start + timedelta(minutes=20))
    await tick(engine, store, pacte_id, start + timedelta(minutes=20))
    return await tick(engine, store, pacte_id, start + timedelta(minutes=21))


def of_type(events, event_type):
    return [event for event in events.recorded if isinstance(event, event_type)]


class TestLiveDetection:
    @pytest.mark.asyncio
    async def test_shared_match_marks_in_game(self, engine, store, observer, events, active_pacte):
        pacte_id = await active_pacte(["1", "2"])
        observer.start_match(["1", "2"], "555")

        pacte = await tick(engine, store, pacte_id, T0 + timedelta(minutes=5))

        assert pacte.in_game
        assert pacte.current_game_id == "555"
        [started] = of_type(events, MatchStarted)
        assert started.match_id == "555"
        assert started.participant_ids == ["1", "2"]
        assert started.channel_id == "999"

    @pytest.mark.asyncio
    async def test_known_match_is_a_no_op(self, engine, store, observer, events, active_pacte):
        pacte_id = await active_pacte(["1"])
        observer.start_match(["1"], "555")
        await tick(engine, store, pacte_id, T0 + timedelta(minutes=5))
        pacte = await tick(engine, store, pacte_id, T0 + timedelta(minutes=6))

        assert pacte.in_game
        assert len(of_type(events, MatchStarted)) == 1
        assert observer.result_calls == 0

    @pytest.mark.asyncio
    async def test_players_in_different_matches(self, engine, store, observer, events, active_pacte):
        pacte_id = await active_pacte(["1", "2"])
        observer.start_match(["1"], "555")
        observer.start_match(["2"], "777")

        pacte = await tick(engine, store, pacte_id, T0 + timedelta(minutes=5))

        assert not pacte.in_game
        assert events.recorded == []

    @pytest.mark.asyncio
    async def test_one_player_not_in_game(self, engine, store, observer, active_pacte):
        pacte_id = await active_pacte(["1", "2"])
        observer.start_match(["1"], "555")

        pacte = await tick(engine, store, pacte_id, T0 + timedelta(minutes=5))
        assert not pacte.in_game


class TestResultLookup:
    @pytest.mark.asyncio
    async def test_waits_for_provider_delay(self, engine, store, observer, active_pacte):
        pacte_id = await active_pacte(["1"])
        observer.start_match(["1"], "555")
        await tick(engine, store, pacte_id, T0 + timedelta(minutes=5))
        observer.end_match("EUW1_555", True, end_time=T0 + timedelta(minutes=25))

        pacte = await tick(engine, store, pacte_id, T0 + timedelta(minutes=25))
        assert pacte.in_game
        assert pacte.game_ended_at == T0 + timedelta(minutes=25)
        assert observer.result_calls == 0

        pacte = await tick(engine, store, pacte_id, T0 + timedelta(minutes=25, seconds=30))
        assert pacte.in_game
        assert observer.result_calls == 0

    @pytest.mark.asyncio
    async def test_undetectable_result_after_grace(self, engine, store, observer, events, active_pacte):
        pacte_id = await active_pacte(["1"])
        ended_at = T0 + timedelta(hours=1)
        await store.update_status(pacte_id, MarkInGame(match_id="555"))
        await store.update_status(pacte_id, MarkMatchEnded(ended_at=ended_at))

        pacte = await tick(engine, store, pacte_id, ended_at + timedelta(seconds=60))
        assert pacte.in_game
        assert pacte.empty_result_polls == 1
        assert of_type(events, ResultUndetectable) == []

        pacte = await tick(engine, store, pacte_id, ended_at + timedelta(seconds=601))
        assert not pacte.in_game
        assert pacte.current_wins == 0
        assert pacte.empty_result_polls == 0
        assert len(of_type(events, ResultUndetectable)) == 1

    @pytest.mark.asyncio
    async def test_undetectable_result_after_max_polls(self, db, store, ledger, users, observer, events, active_pacte):
        engine = ProgressEngine(
            db, store, ledger, users, observer, events,
            result_min_delay_seconds=0, result_grace_seconds=600, result_max_empty_polls=2,
        )
        pacte_id = await active_pacte(["1"])
        await store.update_status(pacte_id, MarkInGame(match_id="555"))
        await store.update_status(pacte_id, MarkMatchEnded(ended_at=T0))

        await tick(engine, store, pacte_id, T0 + timedelta(seconds=10))
        pacte = await tick(engine, store, pacte_id, T0 + timedelta(seconds=20))

        assert not pacte.in_game
        assert len(of_type(events, ResultUndetectable)) == 1

    @pytest.mark.asyncio
    async def test_already_processed_match_is_not_reapplied(
        self, engine, store, ledger, observer, events, active_pacte
    ):
        pacte_id = await active_pacte(["1"])
        await ledger.record("EUW1_555", pacte_id, MatchOutcome.WIN, now=T0 + timedelta(minutes=30))
        await store.update_status(pacte_id, RecordWin(current_wins=1, best_streak_reached=1))
        await store.update_status(pacte_id, MarkInGame(match_id="555"))
        await store.update_status(pacte_id, MarkMatchEnded(ended_at=T0 + timedelta(hours=1)))
        observer.end_match("EUW1_555", True, end_time=T0 + timedelta(minutes=25))

        pacte = await tick(engine, store, pacte_id, T0 + timedelta(hours=1, minutes=1))

        assert not pacte.in_game
        assert pacte.current_wins == 1
        assert of_type(events, MatchWon) == []

    @pytest.mark.asyncio
    async def test_stale_match_is_ignored(self, engine, store, ledger, observer, active_pacte):
        pacte_id = await active_pacte(["1"])
        await store.update_status(pacte_id, MarkInGame(match_id="555"))
        await store.update_status(pacte_id, MarkMatchEnded(ended_at=T0 + timedelta(hours=5)))
        observer.end_match("EUW1_555", True, end_time=T0 + timedelta(hours=1))

        pacte = await tick(engine, store, pacte_id, T0 + timedelta(hours=5, minutes=1))

        assert not pacte.in_game
        assert pacte.current_wins == 0
        assert not await ledger.is_processed("EUW1_555", pacte_id)

    @pytest.mark.asyncio
    async def test_match_before_pacte_start_is_not_credited(
        self, engine, store, ledger, observer, events, active_pacte
    ):
        pacte_id = await active_pacte(["1", "2"])
        observer.start_match(["1", "2"], "777")
        await tick(engine, store, pacte_id, T0 + timedelta(minutes=1))
        # Provider still reports the group's previous game as the latest one
        observer.end_match("EUW1_777", True, end_time=T0 - timedelta(minutes=30))

        await tick(engine, store, pacte_id, T0 + timedelta(minutes=20))
        pacte = await tick(engine, store, pacte_id, T0 + timedelta(minutes=21))

        assert pacte.in_game
        assert pacte.current_wins == 0
        assert pacte.empty_result_polls == 1
        assert not await ledger.is_processed("EUW1_777", pacte_id)
        assert of_type(events, MatchWon) == []

    @pytest.mark.asyncio
    async def test_other_match_waits_for_tracked_game(self, engine, store, ledger, observer, events, active_pacte):
        pacte_id = await active_pacte(["1"])
        observer.start_match(["1"], "777")
        await tick(engine, store, pacte_id, T0 + timedelta(minutes=1))
        observer.end_match("EUW1_776", True, end_time=T0 + timedelta(minutes=10))

        await tick(engine, store, pacte_id, T0 + timedelta(minutes=20))
        pacte = await tick(engine, store, pacte_id, T0 + timedelta(minutes=21))

        assert pacte.in_game
        assert pacte.current_wins == 0
        assert pacte.empty_result_polls == 1
        assert not await ledger.is_processed("EUW1_776", pacte_id)

        # Provider catches up with the tracked game
        observer.end_match("EUW1_777", True, end_time=T0 + timedelta(minutes=20))
        pacte = await tick(engine, store, pacte_id, T0 + timedelta(minutes=22))

        assert not pacte.in_game
        assert pacte.current_wins == 1
        assert await ledger.is_processed("EUW1_777", pacte_id)
        assert len(of_type(events, MatchWon)) == 1

    @pytest.mark.asyncio
    async def test_failed_mutation_rolls_back_ledger(
        self, engine, store, users, ledger, observer, events, active_pacte, monkeypatch
    ):
        pacte_id = await active_pacte(["1"])
        await store.update_status(pacte_id, MarkInGame(match_id="555"))
        await store.update_status(pacte_id, MarkMatchEnded(ended_at=T0 + timedelta(minutes=30)))
        observer.end_match("EUW1_555", True, end_time=T0 + timedelta(minutes=30))

        update_status = store.update_status

        async def failing_update(pacte_id, update, tx=None):
            if isinstance(update, RecordWin):
                raise RuntimeError("disk I/O error")
            return await update_status(pacte_id, update, tx=tx)

        monkeypatch.setattr(store, "update_status", failing_update)

        pacte = await tick(engine, store, pacte_id, T0 + timedelta(minutes=31))

        assert not await ledger.is_processed("EUW1_555", pacte_id)
        assert pacte.in_game
        assert pacte.current_wins == 0
        assert pacte.error_count == 1
        assert (await users.get_user("1")).best_streak_ever == 0
        assert of_type(events, MatchWon) == []


class TestScenarios:
    @pytest.mark.asyncio
    async def test_three_wins_fulfil_the_pacte(self, engine, store, users, ledger, observer, events, active_pacte):
        user_ids = ["1", "2", "3"]
        pacte_id = await active_pacte(user_ids, objective=3)
        assert (await store.get_pacte(pacte_id)).status == PacteStatus.ACTIVE

        pacte = await play_match(engine, store, observer, pacte_id, user_ids, "1001", True, T0 + timedelta(hours=1))
        assert pacte.current_wins == 1
        assert not pacte.in_game

        pacte = await play_match(engine, store, observer, pacte_id, user_ids, "1002", True, T0 + timedelta(hours=2))
        assert pacte.current_wins == 2

        pacte = await play_match(engine, store, observer, pacte_id, user_ids, "1003", True, T0 + timedelta(hours=3))
        assert pacte.status == PacteStatus.SUCCESS
        assert pacte.current_wins == 3
        assert pacte.completed_at is not None

        for user_id in user_ids:
            user = await users.get_user(user_id)
            assert user.points_total == 11
            assert user.best_streak_ever == 3

        won = of_type(events, MatchWon)
        assert [event.current_wins for event in won] == [1, 2]
        assert [event.match_point for event in won] == [False, True]
        [succeeded] = of_type(events, PacteSucceeded)
        assert succeeded.points == 11
        assert len(await ledger.get_pacte_history(pacte_id)) == 3

    @pytest.mark.asyncio
    async def test_loss_at_match_point_resets_streak(self, engine, store, observer, events, active_pacte):
        pacte_id = await active_pacte(["1", "2"], objective=5)
        await store.update_status(pacte_id, RecordWin(current_wins=4, best_streak_reached=4))

        pacte = await play_match(engine, store, observer, pacte_id, ["1", "2"], "1009", False, T0 + timedelta(hours=5))

        assert pacte.status == PacteStatus.ACTIVE
        assert pacte.current_wins == 0
        assert pacte.best_streak_reached == 4
        [lost] = of_type(events, MatchLost)
        assert lost.so_close
        assert lost.best_streak_reached == 4
        assert lost.hours_left == 18

    @pytest.mark.asyncio
    async def test_timeout_settles_failure(self, engine, store, users, events, active_pacte):
        started_at = T0 - timedelta(hours=25)
        pacte_id = await active_pacte(["1"], objective=4, started_at=started_at)
        await store.update_status(pacte_id, RecordWin(current_wins=2, best_streak_reached=2))
        await store.update_status(pacte_id, RecordLoss(best_streak_reached=2))

        pacte = await tick(engine, store, pacte_id, T0)

        assert pacte.status == PacteStatus.FAILED
        assert (await users.get_user("1")).points_total == -1
        [timed_out] = of_type(events, PacteTimedOut)
        assert timed_out.points == -1
        assert timed_out.reward == 19
        assert timed_out.penalty == 20

    @pytest.mark.asyncio
    async def test_no_timeout_while_tracked_game_is_live(self, engine, store, observer, events, active_pacte):
        pacte_id = await active_pacte(["1"], started_at=T0 - timedelta(hours=25))
        await store.update_status(pacte_id, MarkInGame(match_id="555"))
        observer.start_match(["1"], "555")

        pacte = await tick(engine, store, pacte_id, T0)

        assert pacte.status == PacteStatus.ACTIVE
        assert pacte.in_game
        assert of_type(events, PacteTimedOut) == []

    @pytest.mark.asyncio
    async def test_loss_after_deadline_takes_timeout_path(self, engine, store, ledger, observer, events, active_pacte):
        started_at = T0 - timedelta(hours=24, minutes=30)
        pacte_id = await active_pacte(["1"], objective=3, started_at=started_at)
        await store.update_status(pacte_id, RecordWin(current_wins=1, best_streak_reached=1))
        await store.update_status(pacte_id, MarkInGame(match_id="555"))
        await store.update_status(pacte_id, MarkMatchEnded(ended_at=T0 - timedelta(minutes=2)))
        observer.end_match("EUW1_555", False, end_time=T0 - timedelta(minutes=2))

        pacte = await tick(engine, store, pacte_id, T0)

        assert pacte.status == PacteStatus.FAILED
        assert pacte.best_streak_reached == 1
        assert of_type(events, MatchLost) == []
        [timed_out] = of_type(events, PacteTimedOut)
        assert timed_out.best_streak_reached == 1
        assert await ledger.is_processed("EUW1_555", pacte_id)


class TestWarning:
    @pytest.mark.asyncio
    async def test_warning_sent_once(self, engine, store, events, active_pacte):
        pacte_id = await active_pacte(["1"], started_at=T0 - timedelta(hours=22, minutes=30))

        pacte = await tick(engine, store, pacte_id, T0)
        assert pacte.warning_sent
        await tick(engine, store, pacte_id, T0 + timedelta(minutes=5))

        [warning] = of_type(events, TimeRunningOut)
        assert warning.hours_left == 1

    @pytest.mark.asyncio
    async def test_no_warning_early(self, engine, store, events, active_pacte):
        pacte_id = await active_pacte(["1"])
        pacte = await tick(engine, store, pacte_id, T0 + timedelta(hours=10))
        assert not pacte.warning_sent
        assert events.recorded == []


class TestErrors:
    @pytest.mark.asyncio
    async def test_errors_are_counted(self, engine, store, observer, active_pacte):
        pacte_id = await active_pacte(["1"])
        observer.error = RiotTransientError(503, "https://example")

        pacte = await tick(engine, store, pacte_id, T0 + timedelta(minutes=1))
        assert pacte.error_count == 1

        observer.error = None
        pacte = await tick(engine, store, pacte_id, T0 + timedelta(minutes=2))
        assert pacte.error_count == 0
        assert pacte.last_checked_at == T0 + timedelta(minutes=2)

    @pytest.mark.asyncio
    async def test_technical_reset_while_in_game(self, engine, store, observer, events, active_pacte):
        pacte_id = await active_pacte(["1"])
        await store.update_status(pacte_id, MarkInGame(match_id="555"))
        observer.error = RiotTransientError(503, "https://example")

        for minute in range(4):
            pacte = await tick(engine, store, pacte_id, T0 + timedelta(minutes=minute))
        assert pacte.error_count == 4
        assert pacte.in_game

        pacte = await tick(engine, store, pacte_id, T0 + timedelta(minutes=5))
        assert not pacte.in_game
        assert pacte.error_count == 0
        [reset] = of_type(events, TechnicalResetEvent)
        assert reset.error_count == 5

    @pytest.mark.asyncio
    async def test_no_reset_when_not_in_game(self, engine, store, observer, events, active_pacte):
        pacte_id = await active_pacte(["1"])
        observer.error = RiotTransientError(503, "https://example")

        for minute in range(6):
            pacte = await tick(engine, store, pacte_id, T0 + timedelta(minutes=minute))

        assert pacte.error_count == 6
        assert of_type(events, TechnicalResetEvent) == []


class TestRunCycle:
    @pytest.mark.asyncio
    async def test_cycle_checks_due_pactes(self, engine, store, observer, active_pacte):
        first = await active_pacte(["1"])
        second = await active_pacte(["2"])
        observer.start_match(["2"], "555")

        checked = await engine.run_cycle(now=T0 + timedelta(minutes=1))

        assert checked == 2
        assert not (await store.get_pacte(first)).in_game
        assert (await store.get_pacte(second)).in_game
        # Idle pacte was just checked, only the in-game one is due again
        assert await engine.run_cycle(now=T0 + timedelta(minutes=1, seconds=10)) == 1

    @pytest.mark.asyncio
    async def test_one_failing_pacte_does_not_stop_the_cycle(self, engine, store, observer, active_pacte):
        broken = await active_pacte(["1"])
        healthy = await active_pacte(["2"])

        async def flaky(puuid, platform=None):
            if puuid == puuid_for("1"):
                raise RiotTransientError(503, "https://example")
            return None

        observer.get_live_match = flaky
        await engine.run_cycle(now=T0 + timedelta(minutes=1))

        assert (await store.get_pacte(broken)).error_count == 1
        assert (await store.get_pacte(healthy)).last_checked_at == T0 + timedelta(minutes=1)

    @pytest.mark.asyncio
    async def test_start_and_stop(self, engine):
        engine.start()
        assert engine.running
        await engine.stop()
        assert not engine.running
