"""
Thread Context Storage

SQLite-backed conversation persistence per Slack thread, so follow-ups in a
thread the bot has answered don't need a re-mention.

Features:
- Thread key format: {channel_id}:{thread_ts}
- Persists across bot restarts (shared Database)
- History trimmed to MAX_STORED_MESSAGES on save
- Auto-cleanup of old contexts (configurable TTL)
"""

import os
import json
import logging
import asyncio
from datetime import datetime, timedelta
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any

from .database import Database

logger = logging.getLogger(__name__)

# Default context TTL (24 hours)
DEFAULT_CONTEXT_TTL_SECONDS = int(os.getenv("THREAD_CONTEXT_TTL_SECONDS", str(24 * 60 * 60)))
MAX_STORED_MESSAGES = int(os.getenv("THREAD_CONTEXT_MAX_MESSAGES", "60"))


@dataclass
class Message:
    """A single message in a conversation."""
    role: str  # "user", "assistant", "system", "tool"
    content: str
    timestamp: str = ""
    user_id: Optional[str] = None
    tool_calls: Optional[List[Dict[str, Any]]] = None
    tool_call_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage."""
        d = {
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp,
        }
        if self.user_id:
            d["user_id"] = self.user_id
        if self.tool_calls:
            d["tool_calls"] = self.tool_calls
        if self.tool_call_id:
            d["tool_call_id"] = self.tool_call_id
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Message":
        """Create from dictionary."""
        return cls(
            role=d.get("role", "user"),
            content=d.get("content", ""),
            timestamp=d.get("timestamp", ""),
            user_id=d.get("user_id"),
            tool_calls=d.get("tool_calls"),
            tool_call_id=d.get("tool_call_id"),
        )


def _trim_history(messages: List[Message], max_messages: int) -> List[Message]:
    """
    Keep the newest messages without orphaning tool results.

    A window may not start with "tool" messages, or with an assistant
    message whose tool results were cut off.
    """
    recent = messages[-max_messages:] if len(messages) > max_messages else list(messages)
    while recent and (recent[0].role == "tool" or (recent[0].role == "assistant" and recent[0].tool_calls)):
        recent.pop(0)
    return recent


@dataclass
class ThreadContext:
    """Conversation context for a Slack thread."""

    channel_id: str
    thread_ts: str
    user_id: str
    messages: List[Message] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: str = ""
    updated_at: str = ""

    @property
    def thread_key(self) -> str:
        """Unique key for this thread."""
        return f"{self.channel_id}:{self.thread_ts}"

    def _append(self, msg: Message) -> Message:
        self.messages.append(msg)
        self.updated_at = datetime.utcnow().isoformat()
        return msg

    def add_user_message(self, content: str, user_id: Optional[str] = None) -> Message:
        """Add a user message to the context."""
        return self._append(Message(
            role="user",
            content=content,
            timestamp=datetime.utcnow().isoformat(),
            user_id=user_id or self.user_id,
        ))

    def add_assistant_message(
        self,
        content: Optional[str] = None,
        tool_calls: Optional[List[Dict[str, Any]]] = None,
    ) -> Message:
        """Add an assistant message to the context."""
        return self._append(Message(
            role="assistant",
            content=content or "",
            timestamp=datetime.utcnow().isoformat(),
            tool_calls=tool_calls,
        ))

    def add_tool_result(self, tool_call_id: str, content: str) -> Message:
        """Add a tool result message to the context."""
        return self._append(Message(
            role="tool",
            content=content,
            timestamp=datetime.utcnow().isoformat(),
            tool_call_id=tool_call_id,
        ))

    def get_messages_for_llm(self, max_messages: int = 20) -> List[Dict[str, Any]]:
        """Most recent messages, formatted for the chat completions API."""
        llm_messages = []
        for msg in _trim_history(self.messages, max_messages):
            m = {"role": msg.role, "content": msg.content}
            if msg.tool_calls:
                m["tool_calls"] = msg.tool_calls
            if msg.tool_call_id:
                m["tool_call_id"] = msg.tool_call_id
            llm_messages.append(m)
        return llm_messages


class ThreadContextStore:
    """
    Storage for thread contexts.

    Usage:
        store = ThreadContextStore(db)
        await store.initialize()

        context = await store.get_or_create(channel_id, thread_ts, user_id)
        context.add_user_message("Hello!")
        await store.save(context)
    """

    def __init__(self, db: Database, max_messages: int = MAX_STORED_MESSAGES):
        self.db = db
        self.max_messages = max_messages

    async def initialize(self):
        """Create tables if needed."""
        conn = self.db.connection
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS thread_contexts (
                thread_key TEXT PRIMARY KEY,
                channel_id TEXT NOT NULL,
                thread_ts TEXT NOT NULL,
                user_id TEXT NOT NULL,
                messages TEXT NOT NULL,
                metadata TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_contexts_updated_at
            ON thread_contexts(updated_at)
        """)
        await conn.commit()
        logger.info("Thread context store initialized")

    def _row_to_context(self, row) -> ThreadContext:
        return ThreadContext(
            channel_id=row[1],
            thread_ts=row[2],
            user_id=row[3],
            messages=[Message.from_dict(m) for m in json.loads(row[4])],
            metadata=json.loads(row[5]),
            created_at=row[6],
            updated_at=row[7],
        )

    async def get_or_create(
        self,
        channel_id: str,
        thread_ts: str,
        user_id: str,
    ) -> ThreadContext:
        """
        Get existing context or create a new one.

        Args:
            channel_id: Slack channel ID
            thread_ts: Thread timestamp (unique per thread)
            user_id: User who started the conversation
        """
        thread_key = f"{channel_id}:{thread_ts}"

        async with self.db.lock:
            cursor = await self.db.connection.execute(
                "SELECT * FROM thread_contexts WHERE thread_key = ?",
                (thread_key,)
            )
            row = await cursor.fetchone()
            if row:
                return self._row_to_context(row)

            now = datetime.utcnow().isoformat()
            context = ThreadContext(
                channel_id=channel_id,
                thread_ts=thread_ts,
                user_id=user_id,
                created_at=now,
                updated_at=now,
            )
            await self.db.connection.execute(
                """INSERT INTO thread_contexts
                   (thread_key, channel_id, thread_ts, user_id, messages, metadata, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    thread_key,
                    context.channel_id,
                    context.thread_ts,
                    context.user_id,
                    json.dumps([]),
                    json.dumps({}),
                    context.created_at,
                    context.updated_at,
                )
            )
            await self.db.connection.commit()

        logger.debug(f"Created new thread context: {thread_key}")
        return context

    async def get(self, channel_id: str, thread_ts: str) -> Optional[ThreadContext]:
        """Get existing context or None."""
        cursor = await self.db.connection.execute(
            "SELECT * FROM thread_contexts WHERE thread_key = ?",
            (f"{channel_id}:{thread_ts}",)
        )
        row = await cursor.fetchone()
        return self._row_to_context(row) if row else None

    async def save(self, context: ThreadContext):
        """Save a thread context, trimming old history."""
        context.messages = _trim_history(context.messages, self.max_messages)
        context.updated_at = datetime.utcnow().isoformat()

        async with self.db.lock:
            await self.db.connection.execute(
                """UPDATE thread_contexts
                   SET messages = ?, metadata = ?, updated_at = ?
                   WHERE thread_key = ?""",
                (
                    json.dumps([m.to_dict() for m in context.messages]),
                    json.dumps(context.metadata),
                    context.updated_at,
                    context.thread_key,
                )
            )
            await self.db.connection.commit()

        logger.debug(f"Saved context: {context.thread_key} ({len(context.messages)} messages)")

    async def delete(self, channel_id: str, thread_ts: str):
        """Delete a thread context."""
        thread_key = f"{channel_id}:{thread_ts}"
        async with self.db.lock:
            await self.db.connection.execute(
                "DELETE FROM thread_contexts WHERE thread_key = ?",
                (thread_key,)
            )
            await self.db.connection.commit()
        logger.debug(f"Deleted context: {thread_key}")

    async def cleanup_old_contexts(
        self,
        max_age_seconds: int = DEFAULT_CONTEXT_TTL_SECONDS,
    ) -> int:
        """
        Remove contexts not updated for max_age_seconds.

        Returns:
            Number of contexts deleted
        """
        cutoff = (datetime.utcnow() - timedelta(seconds=max_age_seconds)).isoformat()

        async with self.db.lock:
            cursor = await self.db.connection.execute(
                "DELETE FROM thread_contexts WHERE updated_at < ?",
                (cutoff,)
            )
            await self.db.connection.commit()
            deleted = cursor.rowcount

        if deleted > 0:
            logger.info(f"Cleaned up {deleted} old thread contexts")
        return deleted

    async def get_stats(self) -> Dict[str, Any]:
        """Get store statistics."""
        cursor = await self.db.connection.execute(
            "SELECT COUNT(*), MAX(updated_at), MIN(updated_at) FROM thread_contexts"
        )
        row = await cursor.fetchone()
        return {
            "total_contexts": row[0],
            "newest_update": row[1],
            "oldest_update": row[2],
        }


# =============================================================================
# Background Cleanup Task
# =============================================================================

async def run_cleanup_task(
    store: ThreadContextStore,
    interval_seconds: int = 3600,
    max_age_seconds: int = DEFAULT_CONTEXT_TTL_SECONDS,
):
    """
    Periodically delete old contexts until cancelled.

    Args:
        store: ThreadContextStore instance
        interval_seconds: How often to run cleanup (default: 1 hour)
        max_age_seconds: Max context age (default: 24 hours)
    """
    while True:
        try:
            await asyncio.sleep(interval_seconds)
            deleted = await store.cleanup_old_contexts(max_age_seconds)
            logger.debug(f"Cleanup task: removed {deleted} old contexts")
        except asyncio.CancelledError:
            break
        except Exception as e:
            logger.error(f"Cleanup task error: {e}")
