"""
Answer Cache Storage

SQLite-backed cache of answers to repeated questions.

Features:
- Multi-tier matching: hash → exact → fuzzy
- Caches: response text, tools used, cited sources
- Invalidation: TTL expiry, 👎 feedback eviction, re-index cutoff
- Hit count tracking
"""

import os
import json
import hashlib
import logging
import asyncio
from datetime import datetime, timedelta
from dataclasses import dataclass
from typing import Optional, List, Dict, Any

from .database import Database

logger = logging.getLogger(__name__)

# Configuration
CACHE_ENABLED = os.getenv("CACHE_ENABLED", "true").lower() == "true"
CACHE_TTL_SECONDS = int(os.getenv("CACHE_TTL_SECONDS", str(86400 * 7)))  # 7 days
CACHE_FUZZY_THRESHOLD = float(os.getenv("CACHE_FUZZY_THRESHOLD", "0.9"))
# Auto-cache mode: if False (default), only cache when a user approves with a 📦 reaction
CACHE_AUTO_SAVE = os.getenv("CACHE_AUTO_SAVE", "false").lower() == "true"


@dataclass
class CachedResponse:
    """A cached answer to a user question."""
    id: int
    question_hash: str
    question_text: str
    question_normalized: str

    response_text: str
    tools_used: List[Dict[str, Any]]
    sources: List[Dict[str, Any]]

    hit_count: int
    created_at: str
    last_hit_at: Optional[str]

    def is_expired(self, ttl_seconds: int = CACHE_TTL_SECONDS) -> bool:
        created = datetime.fromisoformat(self.created_at)
        return datetime.utcnow() - created > timedelta(seconds=ttl_seconds)


def normalize_question(question: str) -> str:
    """
    Normalize a question for matching.

    - Lowercase
    - Strip whitespace and trailing punctuation
    - Collapse spaces
    """
    return " ".join(question.lower().strip().rstrip("?!. ").split())


def hash_question(normalized: str) -> str:
    """Create a hash of the normalized question."""
    return hashlib.md5(normalized.encode()).hexdigest()


def fuzzy_match_score(q1: str, q2: str) -> float:
    """
    Word overlap between two normalized questions.

    Returns:
        Score between 0.0 and 1.0
    """
    if not q1 or not q2:
        return 0.0

    # Short questions must match exactly
    if len(q1) < 15 or len(q2) < 15:
        return 1.0 if q1 == q2 else 0.0

    words1 = set(q1.split())
    words2 = set(q2.split())
    if not words1 or not words2:
        return 0.0

    overlap = len(words1 & words2)
    max_len = max(len(words1), len(words2))
    return overlap / max_len if max_len > 0 else 0.0


class QueryCacheStore:
    """
    Answer cache.

    Usage:
        cache = QueryCacheStore(db)
        await cache.initialize()

        cached = await cache.find_match("how do I get vpn access?")
        if cached:
            return cached.response_text

        await cache.save(
            question="how do I get vpn access?",
            response_text="File an IT ticket...",
            tools_used=[...],
            sources=[...],
        )
    """

    def __init__(
        self,
        db: Database,
        enabled: bool = CACHE_ENABLED,
        ttl_seconds: int = CACHE_TTL_SECONDS,
        fuzzy_threshold: float = CACHE_FUZZY_THRESHOLD,
    ):
        self.db = db
        self._enabled = enabled
        self.ttl_seconds = ttl_seconds
        self.fuzzy_threshold = fuzzy_threshold

    @property
    def enabled(self) -> bool:
        return self._enabled

    async def initialize(self):
        """Create the cache table."""
        conn = self.db.connection
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS answer_cache (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                question_hash TEXT NOT NULL UNIQUE,
                question_text TEXT NOT NULL,
                question_normalized TEXT NOT NULL,

                response_text TEXT NOT NULL,
                tools_used TEXT NOT NULL,
                sources TEXT NOT NULL,

                hit_count INTEGER DEFAULT 0,
                created_at TEXT NOT NULL,
                last_hit_at TEXT
            )
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_cache_normalized
            ON answer_cache(question_normalized)
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_cache_created
            ON answer_cache(created_at)
        """)
        await conn.commit()
        logger.info(f"Answer cache initialized (enabled={self._enabled})")

    _COLUMNS = (
        "id, question_hash, question_text, question_normalized, response_text, "
        "tools_used, sources, hit_count, created_at, last_hit_at"
    )

    def _row_to_cached(self, row) -> CachedResponse:
        return CachedResponse(
            id=row[0],
            question_hash=row[1],
            question_text=row[2],
            question_normalized=row[3],
            response_text=row[4],
            tools_used=json.loads(row[5]),
            sources=json.loads(row[6]),
            hit_count=row[7],
            created_at=row[8],
            last_hit_at=row[9],
        )

    async def find_match(self, question: str) -> Optional[CachedResponse]:
        """
        Find a live cached answer for the question.

        Tiers:
        1. Exact hash match (fastest)
        2. Exact normalized text match
        3. Fuzzy word-overlap match above the threshold
        """
        if not self._enabled:
            return None

        normalized = normalize_question(question)
        if not normalized:
            return None

        for tier, finder in (
            ("hash", lambda: self._find_one("question_hash = ?", hash_question(normalized))),
            ("exact", lambda: self._find_one("question_normalized = ?", normalized)),
            ("fuzzy", lambda: self._find_fuzzy(normalized)),
        ):
            cached = await finder()
            if cached and not cached.is_expired(self.ttl_seconds):
                await self._record_hit(cached.id)
                cached.hit_count += 1
                logger.info(f"Cache HIT ({tier}): '{question[:50]}' -> id={cached.id}")
                return cached

        logger.debug(f"Cache MISS: '{question[:50]}'")
        return None

    async def _find_one(self, where: str, value: str) -> Optional[CachedResponse]:
        cursor = await self.db.connection.execute(
            f"SELECT {self._COLUMNS} FROM answer_cache WHERE {where}",
            (value,)
        )
        row = await cursor.fetchone()
        return self._row_to_cached(row) if row else None

    async def _find_fuzzy(self, normalized: str) -> Optional[CachedResponse]:
        """Fuzzy match against the 100 most recently used entries."""
        cursor = await self.db.connection.execute(
            f"""SELECT {self._COLUMNS} FROM answer_cache
                ORDER BY last_hit_at DESC NULLS LAST, created_at DESC
                LIMIT 100"""
        )
        rows = await cursor.fetchall()

        best_match = None
        best_score = self.fuzzy_threshold
        for row in rows:
            cached = self._row_to_cached(row)
            score = fuzzy_match_score(normalized, cached.question_normalized)
            if score >= best_score:
                best_score = score
                best_match = cached
        return best_match

    async def _record_hit(self, cache_id: int):
        async with self.db.lock:
            await self.db.connection.execute(
                """UPDATE answer_cache
                   SET hit_count = hit_count + 1, last_hit_at = ?
                   WHERE id = ?""",
                (datetime.utcnow().isoformat(), cache_id)
            )
            await self.db.connection.commit()

    async def save(
        self,
        question: str,
        response_text: str,
        tools_used: List[Dict[str, Any]],
        sources: Optional[List[Dict[str, Any]]] = None,
    ) -> int:
        """
        Save (or replace) the cached answer for a question.

        Returns:
            Cache entry ID, or -1 when caching is disabled
        """
        if not self._enabled:
            return -1

        normalized = normalize_question(question)
        question_hash = hash_question(normalized)
        now = datetime.utcnow().isoformat()

        async with self.db.lock:
            await self.db.connection.execute(
                """INSERT INTO answer_cache
                   (question_hash, question_text, question_normalized,
                    response_text, tools_used, sources, hit_count, created_at, last_hit_at)
                   VALUES (?, ?, ?, ?, ?, ?, 0, ?, NULL)
                   ON CONFLICT(question_hash) DO UPDATE SET
                       question_text = excluded.question_text,
                       response_text = excluded.response_text,
                       tools_used = excluded.tools_used,
                       sources = excluded.sources,
                       hit_count = 0,
                       created_at = excluded.created_at,
                       last_hit_at = NULL""",
                (
                    question_hash,
                    question,
                    normalized,
                    response_text,
                    json.dumps(tools_used, default=str),
                    json.dumps(sources or [], default=str),
                    now,
                )
            )
            await self.db.connection.commit()
            cursor = await self.db.connection.execute(
                "SELECT id FROM answer_cache WHERE question_hash = ?",
                (question_hash,)
            )
            cache_id = (await cursor.fetchone())[0]

        logger.info(f"Cached answer: '{question[:50]}' -> id={cache_id}")
        return cache_id

    async def delete(self, cache_id: int):
        """Delete a cache entry by ID."""
        async with self.db.lock:
            await self.db.connection.execute("DELETE FROM answer_cache WHERE id = ?", (cache_id,))
            await self.db.connection.commit()
        logger.info(f"Deleted cache entry: id={cache_id}")

    async def delete_by_question(self, question: str) -> bool:
        """
        Delete the cached answer for a question.

        Returns:
            True if an entry was deleted
        """
        question_hash = hash_question(normalize_question(question))
        async with self.db.lock:
            cursor = await self.db.connection.execute(
                "DELETE FROM answer_cache WHERE question_hash = ?",
                (question_hash,)
            )
            await self.db.connection.commit()
            deleted = cursor.rowcount > 0

        if deleted:
            logger.info(f"Deleted cache for question: '{question[:50]}'")
        return deleted

    async def clear(self) -> int:
        """Clear all cache entries."""
        async with self.db.lock:
            cursor = await self.db.connection.execute("DELETE FROM answer_cache")
            await self.db.connection.commit()
            deleted = cursor.rowcount
        logger.info(f"Cleared {deleted} cache entries")
        return deleted

    async def invalidate_before(self, cutoff: datetime) -> int:
        """Drop entries created before cutoff (e.g. the start of a full re-index)."""
        async with self.db.lock:
            cursor = await self.db.connection.execute(
                "DELETE FROM answer_cache WHERE created_at < ?",
                (cutoff.isoformat(),)
            )
            await self.db.connection.commit()
            deleted = cursor.rowcount
        if deleted > 0:
            logger.info(f"Invalidated {deleted} cache entries older than {cutoff.isoformat()}")
        return deleted

    async def cleanup_expired(self) -> int:
        """Remove expired cache entries."""
        return await self.invalidate_before(datetime.utcnow() - timedelta(seconds=self.ttl_seconds))

    async def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        cursor = await self.db.connection.execute(
            "SELECT COUNT(*), SUM(hit_count) FROM answer_cache"
        )
        row = await cursor.fetchone()

        cursor = await self.db.connection.execute(
            """SELECT question_text, hit_count
               FROM answer_cache
               ORDER BY hit_count DESC
               LIMIT 5"""
        )
        top_hits = await cursor.fetchall()

        return {
            "enabled": self._enabled,
            "total_entries": row[0] or 0,
            "total_hits": row[1] or 0,
            "ttl_seconds": self.ttl_seconds,
            "fuzzy_threshold": self.fuzzy_threshold,
            "top_hits": [
                {"question": q[:50] + "..." if len(q) > 50 else q, "hits": h}
                for q, h in top_hits
            ],
        }


# =============================================================================
# Background Cleanup Task
# =============================================================================

async def run_cache_cleanup_task(
    cache: QueryCacheStore,
    interval_seconds: int = 3600,
):
    """Periodically remove expired cache entries until cancelled."""
    while True:
        try:
            await asyncio.sleep(interval_seconds)
            deleted = await cache.cleanup_expired()
            logger.debug(f"Cache cleanup: removed {deleted} expired entries")
        except asyncio.CancelledError:
            break
        except Exception as e:
            logger.error(f"Cache cleanup error: {e}")
