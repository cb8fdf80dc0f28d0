import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Optional

import aiosqlite

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_db_time(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime as the ISO-8601 UTC text stored in every timestamp column."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


class Transaction:
    """Queries issued inside an open ``BEGIN IMMEDIATE`` transaction.

    Nothing here commits; ``Database.transaction`` commits or rolls back
    the whole block.
    """

    def __init__(self, connection: aiosqlite.Connection):
        self._connection = connection

    async def execute(self, query: str, params: tuple = ()) -> aiosqlite.Cursor:
        return await self._connection.execute(query, params)

    async def fetch_one(self, query: str, params: tuple = ()) -> Optional[aiosqlite.Row]:
        cursor = await self._connection.execute(query, params)
        return await cursor.fetchone()

    async def fetch_all(self, query: str, params: tuple = ()) -> list[aiosqlite.Row]:
        cursor = await self._connection.execute(query, params)
        return await cursor.fetchall()

    async def fetch_value(self, query: str, params: tuple = ()) -> Optional[Any]:
        row = await self.fetch_one(query, params)
        return row[0] if row else None


class Database:
    """Async SQLite database wrapper."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._connection: Optional[aiosqlite.Connection] = None
        self._write_lock = asyncio.Lock()

    async def connect(self) -> None:
        """Connect to the database and run migrations."""
        # Autocommit mode: transactions are opened explicitly by ``transaction``.
        self._connection = await aiosqlite.connect(self.db_path, isolation_level=None)
        self._connection.row_factory = aiosqlite.Row
        await self._connection.execute("PRAGMA foreign_keys = ON")
        await self._run_migrations()

    async def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    async def _run_migrations(self) -> None:
        """Run all SQL migration files."""
        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS _migrations (
                name TEXT PRIMARY KEY,
                applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        migrations_dir = Path(__file__).parent / "migrations"

        for migration_file in sorted(migrations_dir.glob("*.sql")):
            cursor = await self._connection.execute(
                "SELECT 1 FROM _migrations WHERE name = ?",
                (migration_file.name,)
            )
            if await cursor.fetchone():
                logger.debug(f"Skipping already applied migration: {migration_file.name}")
                continue

            logger.info(f"Running migration: {migration_file.name}")
            sql = migration_file.read_text()
            await self._connection.executescript(sql)
            await self._connection.execute(
                "INSERT INTO _migrations (name) VALUES (?)",
                (migration_file.name,)
            )

    @asynccontextmanager
    async def transaction(self, tx: Optional[Transaction] = None) -> AsyncIterator[Transaction]:
        """Run a block of queries atomically.

        Writers are serialized on one lock so two coroutines can never
        interleave statements inside the same SQLite transaction. Passing an
        already open ``tx`` joins it instead of starting a new one, which lets
        stores compose (ledger insert + pacte update in one commit).
        """
        if tx is not None:
            yield tx
            return

        async with self._write_lock:
            await self._connection.execute("BEGIN IMMEDIATE")
            try:
                yield Transaction(self._connection)
            except BaseException:
                await self._connection.execute("ROLLBACK")
                raise
            else:
                await self._connection.execute("COMMIT")

    async def execute(
        self, query: str, params: tuple = ()
    ) -> aiosqlite.Cursor:
        """Execute a single write in its own transaction and return the cursor."""
        async with self.transaction() as tx:
            return await tx.execute(query, params)

    async def fetch_one(
        self, query: str, params: tuple = ()
    ) -> Optional[aiosqlite.Row]:
        """Fetch a single row."""
        cursor = await self._connection.execute(query, params)
        return await cursor.fetchone()

    async def fetch_all(
        self, query: str, params: tuple = ()
    ) -> list[aiosqlite.Row]:
        """Fetch all rows."""
        cursor = await self._connection.execute(query, params)
        return await cursor.fetchall()

    async def fetch_value(
        self, query: str, params: tuple = ()
    ) -> Optional[Any]:
        """Fetch a single value from the first column of the first row."""
        row = await self.fetch_one(query, params)
        return row[0] if row else None

    # Bot state methods

    async def get_state(self, key: str) -> Optional[str]:
        """Read a value from the key/value bot state table."""
        return await self.fetch_value("SELECT value FROM bot_state WHERE key = ?", (key,))

    async def set_state(self, key: str, value: str, tx: Optional[Transaction] = None) -> None:
        """Insert or overwrite a bot state value."""
        async with self.transaction(tx) as tx:
            await tx.execute(
                """
                INSERT INTO bot_state (key, value) VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value
                """,
                (key, value),
            )
