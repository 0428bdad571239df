"""
Message Database

SQLite-backed index of forum channel messages.

Features:
- Channels and messages keyed by Slack IDs / (channel_id, ts)
- Only forum-* channels may be stored (privacy boundary)
- Ranked keyword search with optional channel filter
- Thread reconstruction (root + replies in order) for citations
"""

import re
import math
import time
import logging
from datetime import datetime
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any, Iterable, Tuple

from .channels import (
    build_permalink,
    is_forum_channel,
    normalize_channel_name,
    ts_to_datetime,
    ts_to_float,
)
from .database import Database

logger = logging.getLogger(__name__)

SEARCH_MAX_LIMIT = 50
SEARCH_CANDIDATE_LIMIT = 500
RECENCY_HALF_LIFE_DAYS = 180.0

STOPWORDS = frozenset(
    """a an and are as at be but by can do does for from has have how i in is it
    its me my of on or our should so that the their there this to was we what
    when where which who why will with you your""".split()
)

_TOKEN_RE = re.compile(r"[a-z0-9]+(?:['\-.][a-z0-9]+)*")
_MENTION_RE = re.compile(r"<@([A-Z0-9]+)(?:\|[^>]*)?>")
_LINK_RE = re.compile(r"<(https?://[^|>]+)(?:\|([^>]*))?>")
_CHANNEL_REF_RE = re.compile(r"<#[A-Z0-9]+\|([^>]*)>")


def searchable_text(text: str) -> str:
    """Strip Slack markup (mentions, links, channel refs) and lowercase."""
    text = _CHANNEL_REF_RE.sub(r"#\1", text or "")
    text = _LINK_RE.sub(lambda m: m.group(2) or m.group(1), text)
    text = _MENTION_RE.sub("", text)
    return text.lower()


def tokenize(text: str) -> List[str]:
    """Split text into lowercase word tokens."""
    return _TOKEN_RE.findall(searchable_text(text))


def query_terms(query: str) -> List[str]:
    """
    Distinct search terms for a query, in order.

    Stopwords are dropped unless the query is nothing but stopwords.
    """
    tokens = tokenize(query)
    terms = [t for t in tokens if t not in STOPWORDS] or tokens
    return list(dict.fromkeys(terms))


@dataclass
class ForumChannel:
    """A forum channel known to the index."""
    channel_id: str
    name: str
    topic: str = ""
    purpose: str = ""
    is_member: bool = False
    last_indexed_ts: Optional[str] = None
    indexed_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "channel_id": self.channel_id,
            "name": self.name,
            "topic": self.topic,
            "purpose": self.purpose,
            "last_indexed_ts": self.last_indexed_ts,
        }


@dataclass
class IndexedMessage:
    """A single indexed Slack message."""
    channel_id: str
    channel_name: str
    ts: str
    text: str
    thread_ts: Optional[str] = None
    user_id: Optional[str] = None
    user_name: Optional[str] = None
    reply_count: int = 0
    reaction_count: int = 0
    permalink: str = ""
    edited: bool = False
    indexed_at: str = ""

    def __post_init__(self):
        self.channel_name = normalize_channel_name(self.channel_name)
        if not self.thread_ts:
            self.thread_ts = self.ts
        if not self.permalink:
            self.permalink = build_permalink(self.channel_id, self.ts, self.thread_ts)

    @property
    def is_thread_root(self) -> bool:
        return self.thread_ts == self.ts

    @property
    def is_reply(self) -> bool:
        return not self.is_thread_root

    @property
    def posted_at(self) -> datetime:
        return ts_to_datetime(self.ts)

    @property
    def author(self) -> str:
        return self.user_name or self.user_id or "unknown"

    def to_dict(self) -> Dict[str, Any]:
        """Compact form used in MCP tool output."""
        return {
            "channel": f"#{self.channel_name}",
            "channel_id": self.channel_id,
            "ts": self.ts,
            "thread_ts": self.thread_ts,
            "author": self.author,
            "user_id": self.user_id,
            "posted_at": self.posted_at.isoformat(),
            "text": self.text,
            "reply_count": self.reply_count,
            "reactions": self.reaction_count,
            "permalink": self.permalink,
        }


@dataclass
class SearchHit:
    """A ranked search result."""
    message: IndexedMessage
    score: float
    matched_terms: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        d = self.message.to_dict()
        d["score"] = round(self.score, 4)
        d["matched_terms"] = self.matched_terms
        return d


@dataclass
class ThreadView:
    """A reconstructed thread."""
    root: IndexedMessage
    replies: List[IndexedMessage] = field(default_factory=list)

    @property
    def participants(self) -> List[str]:
        seen = dict.fromkeys(m.author for m in [self.root, *self.replies])
        return list(seen)

    @property
    def messages(self) -> List[IndexedMessage]:
        return [self.root, *self.replies]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "channel": f"#{self.root.channel_name}",
            "thread_ts": self.root.thread_ts,
            "permalink": self.root.permalink,
            "participants": self.participants,
            "root": self.root.to_dict(),
            "replies": [r.to_dict() for r in self.replies],
        }


# =============================================================================
# Ranking
# =============================================================================

def _term_frequency(term: str, tokens: List[str]) -> int:
    """Count tokens starting with term ("deploy" matches "deployment")."""
    return sum(1 for t in tokens if t.startswith(term))


def score_message(
    message: IndexedMessage,
    terms: List[str],
    phrase: str,
    now_ts: float,
) -> Tuple[float, List[str]]:
    """
    Score a candidate message against the query terms.

    Returns:
        (score, matched_terms); score is 0.0 when no term matches
    """
    tokens = tokenize(message.text)
    matched = []
    tf_sum = 0.0
    for term in terms:
        tf = _term_frequency(term, tokens)
        if tf:
            matched.append(term)
            tf_sum += math.log1p(tf)

    if not matched:
        return 0.0, []

    score = 3.0 * len(matched) / len(terms) + tf_sum
    if phrase and len(phrase.split()) > 1 and phrase in " ".join(tokens):
        score += 1.5
    score += 0.3 * math.log1p(message.reaction_count)
    score += 0.2 * math.log1p(message.reply_count)

    age_days = max(0.0, (now_ts - ts_to_float(message.ts)) / 86400.0)
    score += 0.5 * (0.5 ** (age_days / RECENCY_HALF_LIFE_DAYS))
    return score, matched


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def validate_limit(limit: int) -> int:
    if not isinstance(limit, int) or isinstance(limit, bool):
        raise ValueError("limit must be an integer")
    if limit < 1 or limit > SEARCH_MAX_LIMIT:
        raise ValueError(f"limit must be between 1 and {SEARCH_MAX_LIMIT}")
    return limit


# =============================================================================
# Store
# =============================================================================

_MESSAGE_COLUMNS = (
    "channel_id, channel_name, ts, thread_ts, user_id, user_name, text, "
    "reply_count, reaction_count, permalink, edited, indexed_at"
)


class MessageStore:
    """
    Storage and search for forum messages.

    Usage:
        store = MessageStore(db)
        await store.initialize()

        await store.upsert_message(IndexedMessage(...))
        hits = await store.search("vpn setup", channel="forum-it")
        thread = await store.get_thread("C123", hits[0].message.thread_ts)
    """

    def __init__(self, db: Database):
        self.db = db

    async def initialize(self):
        """Create tables and indexes."""
        conn = self.db.connection
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS forum_channels (
                channel_id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                topic TEXT NOT NULL DEFAULT '',
                purpose TEXT NOT NULL DEFAULT '',
                is_member INTEGER NOT NULL DEFAULT 0,
                last_indexed_ts TEXT,
                indexed_at TEXT
            )
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS forum_messages (
                channel_id TEXT NOT NULL,
                channel_name TEXT NOT NULL,
                ts TEXT NOT NULL,
                ts_value REAL NOT NULL,
                thread_ts TEXT NOT NULL,
                user_id TEXT,
                user_name TEXT,
                text TEXT NOT NULL,
                text_search TEXT NOT NULL,
                reply_count INTEGER NOT NULL DEFAULT 0,
                reaction_count INTEGER NOT NULL DEFAULT 0,
                permalink TEXT NOT NULL,
                edited INTEGER NOT NULL DEFAULT 0,
                indexed_at TEXT NOT NULL,
                PRIMARY KEY (channel_id, ts)
            )
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_messages_thread
            ON forum_messages(channel_id, thread_ts)
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_messages_ts
            ON forum_messages(ts_value)
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_messages_user
            ON forum_messages(user_id)
        """)
        await conn.commit()
        logger.info("Message store initialized")

    # -------------------------------------------------------------------------
    # Channels
    # -------------------------------------------------------------------------

    async def upsert_channel(self, channel: ForumChannel):
        """Insert or update a forum channel."""
        name = normalize_channel_name(channel.name)
        if not is_forum_channel(name):
            raise ValueError(f"#{name} is not a forum channel")

        async with self.db.lock:
            await self.db.connection.execute(
                """INSERT INTO forum_channels
                   (channel_id, name, topic, purpose, is_member, last_indexed_ts, indexed_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(channel_id) DO UPDATE SET
                       name = excluded.name,
                       topic = excluded.topic,
                       purpose = excluded.purpose,
                       is_member = excluded.is_member""",
                (
                    channel.channel_id,
                    name,
                    channel.topic or "",
                    channel.purpose or "",
                    int(channel.is_member),
                    channel.last_indexed_ts,
                    channel.indexed_at,
                ),
            )
            await self.db.connection.commit()

    async def get_channel(self, channel: str) -> Optional[ForumChannel]:
        """Look up a channel by ID or by name."""
        cursor = await self.db.connection.execute(
            """SELECT channel_id, name, topic, purpose, is_member, last_indexed_ts, indexed_at
               FROM forum_channels WHERE channel_id = ? OR name = ?""",
            (channel, normalize_channel_name(channel)),
        )
        row = await cursor.fetchone()
        return self._row_to_channel(row) if row else None

    async def list_channels(self) -> List[ForumChannel]:
        """All known forum channels, by name."""
        cursor = await self.db.connection.execute(
            """SELECT channel_id, name, topic, purpose, is_member, last_indexed_ts, indexed_at
               FROM forum_channels ORDER BY name"""
        )
        rows = await cursor.fetchall()
        return [self._row_to_channel(r) for r in rows if is_forum_channel(r[1])]

    async def mark_indexed(self, channel_id: str, last_ts: Optional[str]):
        """Record the newest ts seen for a channel."""
        async with self.db.lock:
            await self.db.connection.execute(
                """UPDATE forum_channels
                   SET last_indexed_ts = COALESCE(?, last_indexed_ts), indexed_at = ?
                   WHERE channel_id = ?""",
                (last_ts, datetime.utcnow().isoformat(), channel_id),
            )
            await self.db.connection.commit()

    def _row_to_channel(self, row) -> ForumChannel:
        return ForumChannel(
            channel_id=row[0],
            name=row[1],
            topic=row[2],
            purpose=row[3],
            is_member=bool(row[4]),
            last_indexed_ts=row[5],
            indexed_at=row[6],
        )

    # -------------------------------------------------------------------------
    # Messages
    # -------------------------------------------------------------------------

    async def upsert_message(self, message: IndexedMessage):
        """Insert or replace one message."""
        await self.upsert_messages([message])

    async def upsert_messages(self, messages: Iterable[IndexedMessage]) -> int:
        """
        Insert or replace messages in a single transaction.

        Raises:
            ValueError: if any message belongs to a non-forum channel

        Returns:
            Number of messages written
        """
        now = datetime.utcnow().isoformat()
        rows = []
        for m in messages:
            if not is_forum_channel(m.channel_name):
                raise ValueError(f"#{m.channel_name} is not a forum channel")
            m.indexed_at = now
            rows.append((
                m.channel_id,
                m.channel_name,
                m.ts,
                ts_to_float(m.ts),
                m.thread_ts,
                m.user_id,
                m.user_name,
                m.text,
                searchable_text(m.text),
                m.reply_count,
                m.reaction_count,
                m.permalink,
                int(m.edited),
                now,
            ))

        if not rows:
            return 0

        async with self.db.lock:
            await self.db.connection.executemany(
                """INSERT INTO forum_messages
                   (channel_id, channel_name, ts, ts_value, thread_ts, user_id, user_name,
                    text, text_search, reply_count, reaction_count, permalink, edited, indexed_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(channel_id, ts) DO UPDATE SET
                       channel_name = excluded.channel_name,
                       thread_ts = excluded.thread_ts,
                       user_id = excluded.user_id,
                       user_name = excluded.user_name,
                       text = excluded.text,
                       text_search = excluded.text_search,
                       reply_count = excluded.reply_count,
                       reaction_count = excluded.reaction_count,
                       permalink = excluded.permalink,
                       edited = excluded.edited,
                       indexed_at = excluded.indexed_at""",
                rows,
            )
            await self.db.connection.commit()

        logger.debug(f"Indexed {len(rows)} messages")
        return len(rows)

    async def get_message(self, channel_id: str, ts: str) -> Optional[IndexedMessage]:
        cursor = await self.db.connection.execute(
            f"SELECT {_MESSAGE_COLUMNS} FROM forum_messages WHERE channel_id = ? AND ts = ?",
            (channel_id, ts),
        )
        row = await cursor.fetchone()
        return self._row_to_message(row) if row else None

    async def delete_message(self, channel_id: str, ts: str) -> bool:
        """Delete a message. Returns True if it existed."""
        async with self.db.lock:
            cursor = await self.db.connection.execute(
                "DELETE FROM forum_messages WHERE channel_id = ? AND ts = ?",
                (channel_id, ts),
            )
            await self.db.connection.commit()
            deleted = cursor.rowcount > 0
        if deleted:
            logger.debug(f"Deleted message {channel_id}/{ts}")
        return deleted

    async def update_text(self, channel_id: str, ts: str, text: str) -> bool:
        """Replace the text of an edited message."""
        async with self.db.lock:
            cursor = await self.db.connection.execute(
                """UPDATE forum_messages
                   SET text = ?, text_search = ?, edited = 1, indexed_at = ?
                   WHERE channel_id = ? AND ts = ?""",
                (text, searchable_text(text), datetime.utcnow().isoformat(), channel_id, ts),
            )
            await self.db.connection.commit()
            return cursor.rowcount > 0

    async def adjust_reaction_count(self, channel_id: str, ts: str, delta: int) -> bool:
        """Add delta to a message's reaction count (never below zero)."""
        async with self.db.lock:
            cursor = await self.db.connection.execute(
                """UPDATE forum_messages
                   SET reaction_count = MAX(0, reaction_count + ?)
                   WHERE channel_id = ? AND ts = ?""",
                (delta, channel_id, ts),
            )
            await self.db.connection.commit()
            return cursor.rowcount > 0

    async def increment_reply_count(self, channel_id: str, thread_ts: str, delta: int = 1) -> bool:
        """Add delta to a thread root's reply count (never below zero)."""
        async with self.db.lock:
            cursor = await self.db.connection.execute(
                """UPDATE forum_messages SET reply_count = MAX(0, reply_count + ?)
                   WHERE channel_id = ? AND ts = ?""",
                (delta, channel_id, thread_ts),
            )
            await self.db.connection.commit()
            return cursor.rowcount > 0

    async def messages_by_user(self, user_id: str, limit: int = 200) -> List[IndexedMessage]:
        """Most recent messages written by a user."""
        cursor = await self.db.connection.execute(
            f"""SELECT {_MESSAGE_COLUMNS} FROM forum_messages
                WHERE user_id = ? ORDER BY ts_value DESC LIMIT ?""",
            (user_id, limit),
        )
        rows = await cursor.fetchall()
        return [self._row_to_message(r) for r in rows]

    def _row_to_message(self, row) -> IndexedMessage:
        return IndexedMessage(
            channel_id=row[0],
            channel_name=row[1],
            ts=row[2],
            thread_ts=row[3],
            user_id=row[4],
            user_name=row[5],
            text=row[6],
            reply_count=row[7],
            reaction_count=row[8],
            permalink=row[9],
            edited=bool(row[10]),
            indexed_at=row[11],
        )

    # -------------------------------------------------------------------------
    # Search
    # -------------------------------------------------------------------------

    async def search(
        self,
        query: str,
        channel: Optional[str] = None,
        limit: int = 10,
        collapse_threads: bool = True,
        now: Optional[datetime] = None,
    ) -> List[SearchHit]:
        """
        Ranked keyword search over indexed messages.

        Args:
            query: Free-text query
            channel: Optional channel ID or name ("forum-it" or "#forum-it")
            limit: Max results (1..SEARCH_MAX_LIMIT)
            collapse_threads: Keep only the best hit per thread
            now: Reference time for recency (defaults to current time)

        Returns:
            SearchHits, best first
        """
        if not query or not query.strip():
            raise ValueError("query must not be empty")
        validate_limit(limit)

        terms = query_terms(query)
        if not terms:
            return []

        where = " OR ".join("text_search LIKE ? ESCAPE '\\'" for _ in terms)
        params: List[Any] = [f"%{_escape_like(t)}%" for t in terms]
        sql = f"SELECT {_MESSAGE_COLUMNS} FROM forum_messages WHERE ({where})"
        if channel:
            sql += " AND (channel_id = ? OR channel_name = ?)"
            params.extend([channel, normalize_channel_name(channel)])
        sql += " ORDER BY ts_value DESC LIMIT ?"
        params.append(SEARCH_CANDIDATE_LIMIT)

        cursor = await self.db.connection.execute(sql, params)
        rows = await cursor.fetchall()

        now_ts = now.timestamp() if now else time.time()
        phrase = " ".join(tokenize(query))

        hits = []
        for row in rows:
            message = self._row_to_message(row)
            score, matched = score_message(message, terms, phrase, now_ts)
            if score > 0:
                hits.append(SearchHit(message=message, score=score, matched_terms=matched))

        hits.sort(key=lambda h: (-h.score, -ts_to_float(h.message.ts)))

        if collapse_threads:
            seen = set()
            collapsed = []
            for hit in hits:
                key = (hit.message.channel_id, hit.message.thread_ts)
                if key in seen:
                    continue
                seen.add(key)
                collapsed.append(hit)
            hits = collapsed

        logger.debug(f"Search '{query[:50]}' -> {len(hits)} hits from {len(rows)} candidates")
        return hits[:limit]

    async def get_thread(self, channel: str, thread_ts: str) -> Optional[ThreadView]:
        """
        Reconstruct a thread from stored messages.

        Args:
            channel: Channel ID or name
            thread_ts: ts of the thread root

        Returns:
            ThreadView, or None if nothing is stored for the thread
        """
        channel_id = channel
        known = await self.get_channel(channel)
        if known:
            channel_id = known.channel_id

        cursor = await self.db.connection.execute(
            f"""SELECT {_MESSAGE_COLUMNS} FROM forum_messages
                WHERE channel_id = ? AND thread_ts = ?
                ORDER BY ts_value ASC""",
            (channel_id, thread_ts),
        )
        rows = await cursor.fetchall()
        if not rows:
            return None

        messages = [self._row_to_message(r) for r in rows]
        root = next((m for m in messages if m.ts == thread_ts), messages[0])
        replies = [m for m in messages if m is not root]
        return ThreadView(root=root, replies=replies)

    async def get_stats(self) -> Dict[str, Any]:
        """Index statistics."""
        cursor = await self.db.connection.execute(
            """SELECT COUNT(*), COUNT(DISTINCT channel_id),
                      COUNT(DISTINCT channel_id || ':' || thread_ts),
                      COUNT(DISTINCT user_id), MAX(ts_value)
               FROM forum_messages"""
        )
        row = await cursor.fetchone()
        cursor = await self.db.connection.execute("SELECT COUNT(*) FROM forum_channels")
        channel_count = (await cursor.fetchone())[0]

        return {
            "total_messages": row[0] or 0,
            "channels_with_messages": row[1] or 0,
            "total_threads": row[2] or 0,
            "total_authors": row[3] or 0,
            "newest_message_at": ts_to_datetime(str(row[4])).isoformat() if row[4] else None,
            "known_channels": channel_count,
        }
