"""Progress engine: the polling loop that drives active pactes."""

import asyncio
import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from bot.services import points_calculator
from bot.services.event_bus import EventBus
from bot.services.game_observer import GameObserver
from config import Config
from db.database import Database, Transaction, utcnow
from db.match_ledger import MatchLedger
from db.pacte_store import PacteStore
from db.user_store import UserStore
from errors import PacteClosed
from models import (
    CheckSucceeded,
    ClearInGame,
    CompletedMatch,
    IncrementErrorCount,
    MarkInGame,
    MarkMatchEnded,
    MarkWarningSent,
    MatchLost,
    MatchStarted,
    MatchWon,
    Pacte,
    PacteEvent,
    PacteSucceeded,
    PacteTimedOut,
    RecordEmptyResultPoll,
    RecordLoss,
    RecordWin,
    ResultUndetectable,
    TechnicalReset,
    TechnicalResetEvent,
    TimeRunningOut,
    UserAccount,
)

logger = logging.getLogger(__name__)

# Log a health line every N poll cycles (5 minutes at the default interval)
HEALTH_LOG_EVERY = 30


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ProgressEngine:
    """Advances every checkable pacte once per poll tick.

    The engine holds no pacte state between ticks: everything it needs is
    re-read from the store, so a restart resumes exactly where it stopped.
    State changes are announced on the ``EventBus`` after they are
    committed.
    """

    def __init__(
        self,
        db: Database,
        store: PacteStore,
        ledger: MatchLedger,
        users: UserStore,
        observer: GameObserver,
        events: EventBus,
        clock: Optional[Callable[[], datetime]] = None,
        poll_interval_seconds: float | None = None,
        check_interval_minutes: float | None = None,
        result_min_delay_seconds: int | None = None,
        result_grace_seconds: int | None = None,
        result_max_empty_polls: int | None = None,
        error_reset_threshold: int | None = None,
        pacte_duration_hours: int | None = None,
        warning_window_hours: int | None = None,
        match_lookback: int | None = None,
    ):
        self.db = db
        self.store = store
        self.ledger = ledger
        self.users = users
        self.observer = observer
        self.events = events
        self.clock = clock or utcnow

        def pick(value, default):
            return value if value is not None else default

        self.poll_interval_seconds = pick(poll_interval_seconds, Config.POLL_INTERVAL_SECONDS)
        self.check_interval_minutes = pick(check_interval_minutes, Config.CHECK_INTERVAL_MINUTES)
        self.result_min_delay = timedelta(seconds=pick(result_min_delay_seconds, Config.RESULT_MIN_DELAY_SECONDS))
        self.result_grace = timedelta(seconds=pick(result_grace_seconds, Config.RESULT_GRACE_SECONDS))
        self.result_max_empty_polls = pick(result_max_empty_polls, Config.RESULT_MAX_EMPTY_POLLS)
        self.error_reset_threshold = pick(error_reset_threshold, Config.ERROR_RESET_THRESHOLD)
        self.pacte_duration = timedelta(hours=pick(pacte_duration_hours, Config.PACTE_DURATION_HOURS))
        self.warning_window = timedelta(hours=pick(warning_window_hours, Config.WARNING_WINDOW_HOURS))
        self.match_lookback = pick(match_lookback, Config.MATCH_LOOKBACK)

        self._task: Optional[asyncio.Task] = None
        self._cycles = 0

    # Loop lifecycle

    def start(self) -> None:
        """Start polling in the background. Calling it twice is a no-op."""
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self._run())
        logger.info(f"Progress engine started (every {self.poll_interval_seconds}s)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Progress engine stopped")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _run(self) -> None:
        while True:
            try:
                await self.run_cycle()
            except Exception:
                logger.exception("Critical error in polling loop")
            await asyncio.sleep(self.poll_interval_seconds)

    async def run_cycle(self, now: datetime | None = None) -> int:
        """Check every due pacte once, sequentially. Returns how many were checked."""
        now = now or self.clock()
        pactes = await self.store.list_checkable(self.check_interval_minutes, now=now)
        if pactes:
            logger.debug(f"Polling: checking {len(pactes)} active pacte(s)")

        for pacte in pactes:
            await self.check_pacte(pacte, now)

        self._cycles += 1
        if self._cycles % HEALTH_LOG_EVERY == 0:
            active = await self.store.count_active()
            logger.info(f"Polling health: {active} active pactes total")

        return len(pactes)

    # Per-pacte state machine

    async def check_pacte(self, pacte: Pacte, now: datetime | None = None) -> None:
        """Advance one pacte. Failures are counted on the pacte, never raised."""
        now = now or self.clock()
        try:
            await self._advance(pacte, now)
        except Exception as e:
            logger.error(f"Error checking pacte #{pacte.id}: {e}", exc_info=True)
            await self._record_failure(pacte)

    async def _advance(self, pacte: Pacte, now: datetime) -> None:
        accounts = await self.store.get_active_participants(pacte.id)
        if not accounts:
            return

        live_match_id = await self._find_shared_live_match(accounts)
        if live_match_id is not None:
            if not pacte.in_game:
                pacte = await self.store.update_status(pacte.id, MarkInGame(match_id=live_match_id))
                logger.info(f"ARAM detected for pacte #{pacte.id} - Game ID: {live_match_id}")
                await self.events.emit(
                    MatchStarted(
                        **self._event_fields(pacte, accounts),
                        match_id=live_match_id,
                        current_wins=pacte.current_wins,
                    )
                )
                await self._mark_checked(pacte, now)
                return
            if pacte.current_game_id == live_match_id:
                # Still playing
                await self._mark_checked(pacte, now)
                return
            logger.info(f"Pacte #{pacte.id} moved on to game {live_match_id}, resolving the previous one")

        if pacte.in_game:
            pacte = await self._resolve_finished_match(pacte, accounts, now)
            if pacte.is_terminal:
                return

        if self._elapsed(pacte, now) >= self.pacte_duration:
            logger.info(f"Pacte #{pacte.id} has timed out after {self.pacte_duration}")
            event = await self._settle_timeout(pacte, accounts, now)
            await self.events.emit(event)
            return

        if not pacte.warning_sent and self._elapsed(pacte, now) >= self.pacte_duration - self.warning_window:
            pacte = await self.store.update_status(pacte.id, MarkWarningSent())
            await self.events.emit(
                TimeRunningOut(
                    **self._event_fields(pacte, accounts),
                    hours_left=self._hours_left(pacte, now),
                    current_wins=pacte.current_wins,
                    best_streak_reached=pacte.best_streak_reached,
                )
            )

        await self._mark_checked(pacte, now)

    async def _find_shared_live_match(self, accounts: list[UserAccount]) -> Optional[str]:
        """Id of the live match every participant is in, or None."""
        match_id = None
        for account in accounts:
            live = await self.observer.get_live_match(account.riot_puuid)
            if live is None:
                return None
            if match_id is None:
                match_id = live.match_id
            elif match_id != live.match_id:
                return None
        return match_id

    async def _resolve_finished_match(self, pacte: Pacte, accounts: list[UserAccount], now: datetime) -> Pacte:
        """Look up the result of the match that just ended, once the provider has it."""
        if pacte.game_ended_at is None:
            pacte = await self.store.update_status(pacte.id, MarkMatchEnded(ended_at=now))

        waited = now - _as_utc(pacte.game_ended_at)
        if waited < self.result_min_delay:
            return pacte

        logger.debug(f"Checking game result for pacte #{pacte.id} ({int(waited.total_seconds())}s since game end)")
        result = await self.observer.get_last_group_match(
            [account.riot_puuid for account in accounts], self.match_lookback
        )

        if result is not None and not self._is_tracked_match(pacte, result):
            logger.info(
                f"Last group match {result.match_id} for pacte #{pacte.id} is not game {pacte.current_game_id}, "
                "waiting for the provider"
            )
            result = None

        if result is None:
            pacte = await self.store.update_status(pacte.id, RecordEmptyResultPoll())
            if pacte.empty_result_polls >= self.result_max_empty_polls or waited >= self.result_grace:
                logger.info(
                    f"No result found for pacte #{pacte.id} after {int(waited.total_seconds())}s "
                    f"and {pacte.empty_result_polls} lookups, resetting"
                )
                pacte = await self.store.update_status(pacte.id, ClearInGame())
                await self.events.emit(ResultUndetectable(**self._event_fields(pacte, accounts)))
            return pacte

        pacte, event = await self._apply_result(pacte, accounts, result, now)
        if event is not None:
            await self.events.emit(event)
        return pacte

    async def _apply_result(
        self, pacte: Pacte, accounts: list[UserAccount], result: CompletedMatch, now: datetime
    ) -> tuple[Pacte, Optional[PacteEvent]]:
        """Gate the match on the ledger and apply it, all in one transaction."""
        async with self.db.transaction() as tx:
            validation = await self.ledger.validate_for_processing(
                result.match_id, pacte.id, result.end_time, tx=tx, now=now
            )
            if not validation.valid:
                logger.info(f"Ignoring match {result.match_id} for pacte #{pacte.id}: {validation.reason}")
                pacte = await self.store.update_status(pacte.id, ClearInGame(), tx=tx)
                return pacte, None

            await self.ledger.record(result.match_id, pacte.id, result.outcome, tx=tx, now=now)

            if result.win:
                return await self._apply_win(pacte, accounts, result, tx, now)
            return await self._apply_loss(pacte, accounts, result, tx, now)

    async def _apply_win(
        self, pacte: Pacte, accounts: list[UserAccount], result: CompletedMatch, tx: Transaction, now: datetime
    ) -> tuple[Pacte, PacteEvent]:
        wins = pacte.current_wins + 1
        for account in accounts:
            await self.users.update_best_streak(account.id, wins, tx=tx)

        updated = await self.store.update_status(
            pacte.id,
            RecordWin(current_wins=wins, best_streak_reached=max(pacte.best_streak_reached, wins)),
            tx=tx,
        )

        if wins >= pacte.objective:
            points = points_calculator.settle(pacte.objective, pacte.objective, succeeded=True)
            await self.store.complete(pacte.id, True, points, tx=tx, now=now)
            logger.info(f"PACTE SUCCESS #{pacte.id}: {pacte.objective} wins achieved! +{points} points")
            completed = await self.store.get_pacte(pacte.id, tx=tx)
            return completed, PacteSucceeded(
                **self._event_fields(updated, accounts),
                points=points,
                duration_seconds=result.duration_seconds,
            )

        logger.info(f"Win for pacte #{pacte.id}: {wins}/{pacte.objective}")
        return updated, MatchWon(
            **self._event_fields(updated, accounts),
            current_wins=wins,
            duration_seconds=result.duration_seconds,
            match_point=wins == pacte.objective - 1,
        )

    async def _apply_loss(
        self, pacte: Pacte, accounts: list[UserAccount], result: CompletedMatch, tx: Transaction, now: datetime
    ) -> tuple[Pacte, PacteEvent]:
        best_streak = max(pacte.best_streak_reached, pacte.current_wins)
        so_close = pacte.current_wins == pacte.objective - 1

        updated = await self.store.update_status(pacte.id, RecordLoss(best_streak_reached=best_streak), tx=tx)

        if self._elapsed(updated, now) >= self.pacte_duration:
            event = await self._settle_timeout(updated, accounts, now, tx=tx)
            return await self.store.get_pacte(pacte.id, tx=tx), event

        logger.info(f"Loss for pacte #{pacte.id}: back to 0/{pacte.objective} (best {best_streak})")
        return updated, MatchLost(
            **self._event_fields(updated, accounts),
            best_streak_reached=best_streak,
            duration_seconds=result.duration_seconds,
            hours_left=self._hours_left(updated, now),
            so_close=so_close,
        )

    async def _settle_timeout(
        self,
        pacte: Pacte,
        accounts: list[UserAccount],
        now: datetime,
        tx: Optional[Transaction] = None,
    ) -> PacteTimedOut:
        best_streak = max(pacte.best_streak_reached, pacte.current_wins)
        points = points_calculator.settle(pacte.objective, best_streak, succeeded=False)
        reward = points_calculator.reward(pacte.objective, best_streak)
        penalty = points_calculator.penalty(pacte.objective, best_streak)

        await self.store.complete(pacte.id, False, points, tx=tx, now=now)
        logger.info(f"PACTE FAILED #{pacte.id} (timeout): best streak {best_streak}/{pacte.objective}, {points} points")
        return PacteTimedOut(
            **self._event_fields(pacte, accounts),
            best_streak_reached=best_streak,
            points=points,
            reward=reward,
            penalty=penalty,
        )

    async def _mark_checked(self, pacte: Pacte, now: datetime) -> None:
        await self.store.update_status(pacte.id, CheckSucceeded(checked_at=now))

    async def _record_failure(self, pacte: Pacte) -> None:
        """Count a failed tick and unstick the pacte once too many pile up while in game."""
        try:
            updated = await self.store.update_status(pacte.id, IncrementErrorCount())
            if updated.error_count >= self.error_reset_threshold and updated.in_game:
                logger.error(f"Resetting pacte #{pacte.id} after {updated.error_count} errors")
                await self.store.update_status(pacte.id, TechnicalReset())
                accounts = await self.store.get_active_participants(pacte.id)
                await self.events.emit(
                    TechnicalResetEvent(**self._event_fields(updated, accounts), error_count=updated.error_count)
                )
        except PacteClosed:
            logger.debug(f"Pacte #{pacte.id} closed while recording an error")
        except Exception:
            logger.exception(f"Could not record error for pacte #{pacte.id}")

    # Helpers

    def _is_tracked_match(self, pacte: Pacte, result: CompletedMatch) -> bool:
        """Whether ``result`` is the game the pacte saw live, played after the pacte started.

        match-v5 ids are the spectator game id with a platform prefix (``EUW1_<gameId>``).
        """
        if result.end_time < _as_utc(pacte.started_at or pacte.created_at):
            return False
        if pacte.current_game_id is None:
            return True
        return result.match_id.rsplit("_", 1)[-1] == pacte.current_game_id

    def _elapsed(self, pacte: Pacte, now: datetime) -> timedelta:
        return _as_utc(now) - _as_utc(pacte.started_at or pacte.created_at)

    def _hours_left(self, pacte: Pacte, now: datetime) -> int:
        remaining = self.pacte_duration - self._elapsed(pacte, now)
        return max(0, math.floor(remaining.total_seconds() / 3600))

    @staticmethod
    def _event_fields(pacte: Pacte, accounts: list[UserAccount]) -> dict:
        return {
            "pacte_id": pacte.id,
            "channel_id": pacte.channel_id,
            "participant_ids": [account.id for account in accounts],
            "objective": pacte.objective,
        }
