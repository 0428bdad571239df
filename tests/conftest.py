# tests/conftest.py
"""Shared pytest fixtures for all test modules.

Provides common fixtures for:
- Temporary database paths
- An open Database with every store initialized
- Sample forum messages
"""

import os
import tempfile
from collections.abc import AsyncGenerator, Generator
from datetime import datetime, timezone

import pytest
import pytest_asyncio

from forum_qa_bot.database import Database
from forum_qa_bot.message_store import ForumChannel, IndexedMessage, MessageStore

# Fixed reference time so recency scoring is deterministic
NOW = datetime(2025, 6, 1, 12, 0, 0, tzinfo=timezone.utc)
DAY = 86400


def ts_days_ago(days: float, offset: int = 0) -> str:
    """Slack ts for a moment `days` before NOW."""
    return f"{int(NOW.timestamp() - days * DAY)}.{offset:06d}"


@pytest.fixture
def temp_db() -> Generator[str, None, None]:
    """Create a temporary database file path.

    Yields:
        Path to temporary SQLite database file.
    """
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name

    yield db_path

    # Cleanup (WAL mode leaves side files)
    for suffix in ("", "-wal", "-shm"):
        if os.path.exists(db_path + suffix):
            os.unlink(db_path + suffix)


@pytest_asyncio.fixture
async def database(temp_db: str) -> AsyncGenerator[Database, None]:
    db = Database(temp_db)
    await db.initialize()
    yield db
    await db.close()


@pytest_asyncio.fixture
async def store(database: Database) -> MessageStore:
    store = MessageStore(database)
    await store.initialize()
    return store


IT_HELP = ForumChannel(channel_id="CIT000001", name="forum-it-help", is_member=True)
ENGINEERING = ForumChannel(channel_id="CENG00001", name="forum-engineering", is_member=True)


def make_message(
    channel: ForumChannel,
    ts: str,
    text: str,
    user_id: str = "U1",
    user_name: str = "alice",
    thread_ts: str = None,
    reply_count: int = 0,
    reaction_count: int = 0,
) -> IndexedMessage:
    return IndexedMessage(
        channel_id=channel.channel_id,
        channel_name=channel.name,
        ts=ts,
        thread_ts=thread_ts,
        text=text,
        user_id=user_id,
        user_name=user_name,
        reply_count=reply_count,
        reaction_count=reaction_count,
    )


@pytest_asyncio.fixture
async def populated_store(store: MessageStore) -> MessageStore:
    """Two forum channels with a few answered threads.

    - it-help: VPN thread (alice asks, bob and carol answer), printer thread
    - engineering: deploy thread (dave asks, bob answers)
    """
    await store.upsert_channel(IT_HELP)
    await store.upsert_channel(ENGINEERING)

    vpn_root = ts_days_ago(10)
    printer_root = ts_days_ago(5)
    deploy_root = ts_days_ago(2)

    await store.upsert_messages([
        make_message(IT_HELP, vpn_root, "How do I get VPN access on my new laptop?",
                     user_id="UALICE", user_name="alice", reply_count=2),
        make_message(IT_HELP, ts_days_ago(9.9), "File an IT ticket, then install the VPN client from self-service.",
                     user_id="UBOB", user_name="bob", thread_ts=vpn_root, reaction_count=4),
        make_message(IT_HELP, ts_days_ago(9.8), "VPN access also needs manager approval.",
                     user_id="UCAROL", user_name="carol", thread_ts=vpn_root),
        make_message(IT_HELP, printer_root, "The printer on floor 3 keeps jamming",
                     user_id="UDAVE", user_name="dave"),
        make_message(ENGINEERING, deploy_root, "Kubernetes deploy stuck in CrashLoopBackOff after upgrade",
                     user_id="UDAVE", user_name="dave", reply_count=1),
        make_message(ENGINEERING, ts_days_ago(1.9), "Check the readiness probe port, the deploy listens on 8080 now.",
                     user_id="UBOB", user_name="bob", thread_ts=deploy_root, reaction_count=2),
    ])
    return store
