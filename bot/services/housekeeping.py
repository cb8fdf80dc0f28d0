"""Periodic maintenance: ledger pruning, unsigned pacte expiry and monthly reset."""

import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional

from bot.services.event_bus import EventBus
from config import Config
from db.database import Database, utcnow
from db.match_ledger import MatchLedger
from db.pacte_store import PacteStore
from db.user_store import UserStore
from models import PacteExpired

logger = logging.getLogger(__name__)

MONTHLY_RESET_KEY = "last_monthly_reset"


class Housekeeping:
    """Runs the maintenance tasks on a fixed interval."""

    def __init__(
        self,
        db: Database,
        store: PacteStore,
        ledger: MatchLedger,
        users: UserStore,
        events: EventBus,
        clock: Optional[Callable[[], datetime]] = None,
        interval_minutes: float | None = None,
    ):
        self.db = db
        self.store = store
        self.ledger = ledger
        self.users = users
        self.events = events
        self.clock = clock or utcnow
        self.interval_minutes = interval_minutes or Config.HOUSEKEEPING_INTERVAL_MINUTES
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self._run())
        logger.info("Scheduled tasks initialized")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _run(self) -> None:
        while True:
            try:
                await self.run_once()
            except Exception:
                logger.exception("Error in scheduled tasks")
            await asyncio.sleep(self.interval_minutes * 60)

    async def run_once(self, now: datetime | None = None) -> None:
        now = now or self.clock()
        await self.ledger.prune_older_than(now=now)
        await self.expire_unsigned(now)
        await self.check_monthly_reset(now)

    async def expire_unsigned(self, now: datetime | None = None) -> int:
        """Fail pending pactes past the signature window and announce them."""
        expired = await self.store.expire_unsigned(now=now or self.clock())
        for pacte in expired:
            participants = await self.store.get_participants(pacte.id)
            await self.events.emit(
                PacteExpired(
                    pacte_id=pacte.id,
                    channel_id=pacte.channel_id,
                    participant_ids=[p.user_id for p in participants],
                    objective=pacte.objective,
                )
            )
        return len(expired)

    async def check_monthly_reset(self, now: datetime | None = None) -> bool:
        """Reset monthly points once per calendar month. Returns True if a reset happened."""
        now = now or self.clock()
        month = now.strftime("%Y-%m")

        async with self.db.transaction() as tx:
            last_month = await tx.fetch_value("SELECT value FROM bot_state WHERE key = ?", (MONTHLY_RESET_KEY,))
            if last_month == month:
                return False
            await self.users.reset_monthly_points(tx=tx)
            await self.db.set_state(MONTHLY_RESET_KEY, month, tx=tx)

        logger.info(f"Monthly points reset completed ({month})")
        return True
