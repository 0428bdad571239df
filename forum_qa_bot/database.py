"""
Shared SQLite Database

One aiosqlite connection (and one write lock) shared by every store:
indexed messages, thread contexts, the answer cache and analytics.
"""

import os
import asyncio
import logging
from typing import Optional
from pathlib import Path

import aiosqlite

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = os.getenv("FORUM_BOT_DB", "./data/forum_bot.db")


class Database:
    """
    Owns the SQLite connection.

    Usage:
        db = Database()
        await db.initialize()

        store = MessageStore(db)
        await store.initialize()
        ...
        await db.close()
    """

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path or DEFAULT_DB_PATH
        self._conn: Optional[aiosqlite.Connection] = None
        self.lock = asyncio.Lock()

    async def initialize(self):
        """Open the connection, creating the parent directory if needed."""
        if self._conn is not None:
            return
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = await aiosqlite.connect(self.db_path)
        await self._conn.execute("PRAGMA journal_mode=WAL")
        logger.info(f"Database opened at {self.db_path}")

    @property
    def connection(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("Database not initialized; call initialize() first")
        return self._conn

    async def close(self):
        """Close the connection."""
        if self._conn:
            await self._conn.close()
            self._conn = None

    async def __aenter__(self):
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
