"""Ledger of matches already applied to pactes.

A row per (match_id, pacte_id) guarantees a real-world match is never
counted twice for the same pacte, even if two poll ticks overlap on a slow
result.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from config import Config
from db.database import Database, Transaction, to_db_time, utcnow
from models import LedgerStats, LedgerValidation, MatchHistoryRecord, MatchOutcome

logger = logging.getLogger(__name__)


class MatchLedger:
    """Dedup store for processed matches."""

    def __init__(self, db: Database, max_match_age: timedelta | None = None):
        self.db = db
        self.max_match_age = max_match_age or timedelta(hours=Config.MATCH_MAX_AGE_HOURS)

    async def is_processed(self, match_id: str, pacte_id: int, tx: Optional[Transaction] = None) -> bool:
        query = "SELECT 1 FROM match_history WHERE match_id = ? AND pacte_id = ?"
        if tx is not None:
            result = await tx.fetch_value(query, (match_id, pacte_id))
        else:
            result = await self.db.fetch_value(query, (match_id, pacte_id))
        return result is not None

    async def record(
        self,
        match_id: str,
        pacte_id: int,
        outcome: MatchOutcome,
        tx: Optional[Transaction] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """Record a processed match. Returns False if it was already there."""
        async with self.db.transaction(tx) as tx:
            cursor = await tx.execute(
                """
                INSERT OR IGNORE INTO match_history (match_id, pacte_id, result, processed_at)
                VALUES (?, ?, ?, ?)
                """,
                (match_id, pacte_id, MatchOutcome(outcome).value, to_db_time(now or utcnow())),
            )
            inserted = cursor.rowcount > 0

        if inserted:
            logger.info(f"Match {match_id} recorded for pacte #{pacte_id}: {MatchOutcome(outcome).value}")
        else:
            logger.debug(f"Match {match_id} already recorded for pacte #{pacte_id}")
        return inserted

    async def validate_for_processing(
        self,
        match_id: str,
        pacte_id: int,
        match_end_time: datetime,
        tx: Optional[Transaction] = None,
        now: Optional[datetime] = None,
    ) -> LedgerValidation:
        """Check a match can be applied: not seen before, not stale, not future-dated."""
        now = now or utcnow()

        if await self.is_processed(match_id, pacte_id, tx=tx):
            return LedgerValidation(valid=False, reason="Match already processed")

        if match_end_time < now - self.max_match_age:
            return LedgerValidation(valid=False, reason="Match too old")

        if match_end_time > now:
            return LedgerValidation(valid=False, reason="Match in the future")

        return LedgerValidation(valid=True)

    async def prune_older_than(self, retention_days: int | None = None, now: Optional[datetime] = None) -> int:
        """Delete ledger rows older than the retention window. Returns the number deleted."""
        if retention_days is None:
            retention_days = Config.MATCH_HISTORY_RETENTION_DAYS
        cutoff = (now or utcnow()) - timedelta(days=retention_days)

        cursor = await self.db.execute(
            "DELETE FROM match_history WHERE processed_at < ?",
            (to_db_time(cutoff),),
        )
        deleted = cursor.rowcount
        if deleted > 0:
            logger.info(f"Cleaned up {deleted} old match records")
        return deleted

    async def get_pacte_history(self, pacte_id: int) -> list[MatchHistoryRecord]:
        rows = await self.db.fetch_all(
            "SELECT * FROM match_history WHERE pacte_id = ? ORDER BY processed_at DESC",
            (pacte_id,),
        )
        return [MatchHistoryRecord(**dict(row)) for row in rows]

    async def get_stats(self) -> LedgerStats:
        row = await self.db.fetch_one("""
            SELECT
                COUNT(*) AS total_matches,
                COUNT(CASE WHEN result = 'win' THEN 1 END) AS wins,
                COUNT(CASE WHEN result = 'loss' THEN 1 END) AS losses,
                COUNT(DISTINCT pacte_id) AS unique_pactes
            FROM match_history
        """)
        stats = LedgerStats(**dict(row))
        if stats.total_matches:
            stats.win_rate = round(stats.wins / stats.total_matches * 100, 2)
        return stats
