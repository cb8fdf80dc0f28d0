"""Persistence for registered players and their point totals."""

import logging
import sqlite3
from typing import Optional

from db.database import Database, Transaction, to_db_time, utcnow
from errors import AlreadyRegistered
from models import UserAccount

logger = logging.getLogger(__name__)


class UserStore:
    """Discord users linked 1:1 to a Riot account."""

    def __init__(self, db: Database):
        self.db = db

    async def create_user(self, user_id: str, riot_puuid: str, display_name: str) -> UserAccount:
        """Register a user. Both the Discord id and the puuid must be unused."""
        try:
            await self.db.execute(
                """
                INSERT INTO users (id, riot_puuid, display_name, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (user_id, riot_puuid, display_name, to_db_time(utcnow())),
            )
        except sqlite3.IntegrityError as e:
            raise AlreadyRegistered(user_id) from e

        logger.info(f"User registered: {display_name} ({user_id})")
        return await self.get_user(user_id)

    async def get_user(self, user_id: str, tx: Optional[Transaction] = None) -> Optional[UserAccount]:
        query = "SELECT * FROM users WHERE id = ?"
        if tx is not None:
            row = await tx.fetch_one(query, (user_id,))
        else:
            row = await self.db.fetch_one(query, (user_id,))
        return UserAccount(**dict(row)) if row else None

    async def get_user_by_puuid(self, riot_puuid: str) -> Optional[UserAccount]:
        row = await self.db.fetch_one("SELECT * FROM users WHERE riot_puuid = ?", (riot_puuid,))
        return UserAccount(**dict(row)) if row else None

    async def delete_user(self, user_id: str) -> bool:
        """Unregister a user. Returns True if a row was deleted.

        Users that still appear in a pacte are kept so history stays intact.
        """
        async with self.db.transaction() as tx:
            memberships = await tx.fetch_value(
                "SELECT COUNT(*) FROM participants WHERE user_id = ?", (user_id,)
            )
            if memberships:
                return False
            cursor = await tx.execute("DELETE FROM users WHERE id = ?", (user_id,))
            return cursor.rowcount > 0

    async def apply_points(self, user_id: str, delta: int, tx: Optional[Transaction] = None) -> None:
        """Add ``delta`` (possibly negative) to the total and monthly counters."""
        async with self.db.transaction(tx) as tx:
            await tx.execute(
                """
                UPDATE users
                SET points_total = points_total + ?,
                    points_monthly = points_monthly + ?
                WHERE id = ?
                """,
                (delta, delta, user_id),
            )

    async def update_best_streak(self, user_id: str, streak: int, tx: Optional[Transaction] = None) -> None:
        """Raise ``best_streak_ever`` to ``streak`` if it is higher. Never lowers it."""
        async with self.db.transaction(tx) as tx:
            await tx.execute(
                "UPDATE users SET best_streak_ever = MAX(best_streak_ever, ?) WHERE id = ?",
                (streak, user_id),
            )

    async def reset_monthly_points(self, tx: Optional[Transaction] = None) -> None:
        async with self.db.transaction(tx) as tx:
            await tx.execute("UPDATE users SET points_monthly = 0")
        logger.info("Monthly points reset")

    async def get_ladder(self, monthly: bool = False, limit: int = 10) -> list[UserAccount]:
        """Top players by total or monthly points."""
        field = "points_monthly" if monthly else "points_total"
        rows = await self.db.fetch_all(
            f"""
            SELECT * FROM users
            WHERE {field} > 0
            ORDER BY {field} DESC, best_streak_ever DESC
            LIMIT ?
            """,
            (limit,),
        )
        return [UserAccount(**dict(row)) for row in rows]
