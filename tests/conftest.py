"""Pytest configuration and shared fixtures."""

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from bot.services.event_bus import EventBus
from bot.services.game_observer import GameObserver
from db.database import Database
from db.match_ledger import MatchLedger
from db.pacte_store import PacteStore
from db.user_store import UserStore
from models import CompletedMatch, LiveMatch

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def puuid_for(user_id: str) -> str:
    return f"puuid-{user_id}"


@pytest_asyncio.fixture
async def db():
    """Create an in-memory database for testing."""
    database = Database(":memory:")
    await database.connect()
    yield database
    await database.close()


@pytest.fixture
def users(db):
    return UserStore(db)


@pytest.fixture
def store(db, users):
    return PacteStore(db, users, max_participants=5)


@pytest.fixture
def ledger(db):
    return MatchLedger(db, max_match_age=timedelta(hours=2))


@pytest.fixture
def events():
    """Event bus that records everything emitted on it."""
    bus = EventBus()
    bus.recorded = []

    async def record(event):
        bus.recorded.append(event)

    bus.subscribe(record)
    return bus


@pytest.fixture
def register_users(users):
    """Register users with a predictable puuid."""

    async def _register(*user_ids: str):
        for user_id in user_ids:
            await users.create_user(user_id, puuid_for(user_id), f"Player{user_id}#EUW")

    return _register


@pytest.fixture
def active_pacte(store, register_users):
    """Create a pacte and have everybody sign it at ``started_at``."""

    async def _create(user_ids: list[str], objective: int = 3, started_at: datetime = T0) -> int:
        await register_users(*user_ids)
        pacte_id = await store.create(objective, user_ids, channel_id="999", now=started_at)
        for user_id in user_ids:
            await store.sign(pacte_id, user_id, now=started_at)
        return pacte_id

    return _create


class FakeObserver(GameObserver):
    """Scriptable game observer for engine tests."""

    def __init__(self):
        self.live: dict[str, LiveMatch] = {}
        self.completed: CompletedMatch | None = None
        self.error: Exception | None = None
        self.result_calls = 0

    async def get_live_match(self, puuid, platform=None):
        if self.error is not None:
            raise self.error
        return self.live.get(puuid)

    async def get_last_group_match(self, puuids, lookback=5):
        self.result_calls += 1
        return self.completed

    def start_match(self, user_ids: list[str], match_id: str):
        for user_id in user_ids:
            self.live[puuid_for(user_id)] = LiveMatch(match_id=match_id, queue_id=450)

    def end_match(self, match_id: str, win: bool, end_time: datetime, duration_seconds: int = 1200):
        self.live.clear()
        self.completed = CompletedMatch(
            match_id=match_id,
            win=win,
            end_time=end_time,
            duration_seconds=duration_seconds,
        )


@pytest.fixture
def observer():
    return FakeObserver()
