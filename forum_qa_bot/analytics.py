"""
Analytics Tracker

Records what the bot does and how people react to it.

Features:
- Event log: question, answer, cache_hit, feedback, error, index
- Answers table linking bot replies (channel, message ts) to questions
- 👍/👎 feedback, one vote per user per answer (last vote wins)
- Summary: active users, daily active users, feedback ratio
- Export to pandas / CSV

Usage:
    python -m forum_qa_bot.analytics --days 30
    python -m forum_qa_bot.analytics --export events.csv
"""

import os
import json
import asyncio
import logging
import argparse
from datetime import datetime, timedelta
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any

import pandas as pd
from dotenv import load_dotenv

from .database import Database

logger = logging.getLogger(__name__)

EVENT_TYPES = ("question", "answer", "cache_hit", "feedback", "error", "index")


@dataclass
class AnswerRecord:
    """A bot answer posted to Slack."""
    id: int
    channel_id: str
    message_ts: str
    thread_ts: str
    user_id: str
    question: str
    response_text: str
    tools_used: List[Dict[str, Any]] = field(default_factory=list)
    sources: List[Dict[str, Any]] = field(default_factory=list)
    from_cache: bool = False
    cache_id: Optional[int] = None
    created_at: str = ""


class AnalyticsStore:
    """
    Usage tracking.

    Usage:
        analytics = AnalyticsStore(db)
        await analytics.initialize()

        await analytics.record_question("U1", "C1", "171.1", "how do I ...")
        answer_id = await analytics.record_answer(...)
        await analytics.record_feedback("C1", "171.2", "U2", positive=True)
        summary = await analytics.get_summary(days=30)
    """

    def __init__(self, db: Database):
        self.db = db

    async def initialize(self):
        conn = self.db.connection
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS analytics_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                event_type TEXT NOT NULL,
                user_id TEXT,
                channel_id TEXT,
                thread_ts TEXT,
                detail TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_events_type_created
            ON analytics_events(event_type, created_at)
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS bot_answers (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                channel_id TEXT NOT NULL,
                message_ts TEXT NOT NULL,
                thread_ts TEXT NOT NULL,
                user_id TEXT NOT NULL,
                question TEXT NOT NULL,
                response_text TEXT NOT NULL,
                tools_used TEXT NOT NULL,
                sources TEXT NOT NULL,
                from_cache INTEGER NOT NULL DEFAULT 0,
                cache_id INTEGER,
                created_at TEXT NOT NULL,
                UNIQUE(channel_id, message_ts)
            )
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS answer_feedback (
                answer_id INTEGER NOT NULL,
                user_id TEXT NOT NULL,
                positive INTEGER NOT NULL,
                created_at TEXT NOT NULL,
                PRIMARY KEY (answer_id, user_id)
            )
        """)
        await conn.commit()
        logger.info("Analytics store initialized")

    # -------------------------------------------------------------------------
    # Recording
    # -------------------------------------------------------------------------

    async def record_event(
        self,
        event_type: str,
        user_id: Optional[str] = None,
        channel_id: Optional[str] = None,
        thread_ts: Optional[str] = None,
        detail: Optional[Dict[str, Any]] = None,
        created_at: Optional[datetime] = None,
    ) -> int:
        """Append an event to the log."""
        if event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown event type: {event_type}")
        when = (created_at or datetime.utcnow()).isoformat()

        async with self.db.lock:
            cursor = await self.db.connection.execute(
                """INSERT INTO analytics_events
                   (event_type, user_id, channel_id, thread_ts, detail, created_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (event_type, user_id, channel_id, thread_ts, json.dumps(detail or {}, default=str), when),
            )
            await self.db.connection.commit()
            return cursor.lastrowid

    async def record_question(
        self, user_id: str, channel_id: str, thread_ts: str, question: str,
    ) -> int:
        return await self.record_event(
            "question", user_id, channel_id, thread_ts,
            {"question": question[:500], "length": len(question)},
        )

    async def record_answer(
        self,
        channel_id: str,
        message_ts: str,
        thread_ts: str,
        user_id: str,
        question: str,
        response_text: str,
        tools_used: Optional[List[Dict[str, Any]]] = None,
        sources: Optional[List[Dict[str, Any]]] = None,
        from_cache: bool = False,
        cache_id: Optional[int] = None,
    ) -> int:
        """
        Store a posted answer and log an answer (or cache_hit) event.

        cache_id is the cache entry that served the answer, if any.

        Returns:
            Answer ID
        """
        now = datetime.utcnow().isoformat()
        async with self.db.lock:
            await self.db.connection.execute(
                """INSERT INTO bot_answers
                   (channel_id, message_ts, thread_ts, user_id, question, response_text,
                    tools_used, sources, from_cache, cache_id, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(channel_id, message_ts) DO UPDATE SET
                       question = excluded.question,
                       response_text = excluded.response_text,
                       tools_used = excluded.tools_used,
                       sources = excluded.sources,
                       from_cache = excluded.from_cache,
                       cache_id = excluded.cache_id""",
                (
                    channel_id, message_ts, thread_ts, user_id, question, response_text,
                    json.dumps(tools_used or [], default=str),
                    json.dumps(sources or [], default=str),
                    int(from_cache), cache_id, now,
                ),
            )
            await self.db.connection.commit()
            cursor = await self.db.connection.execute(
                "SELECT id FROM bot_answers WHERE channel_id = ? AND message_ts = ?",
                (channel_id, message_ts),
            )
            answer_id = (await cursor.fetchone())[0]

        await self.record_event(
            "cache_hit" if from_cache else "answer",
            user_id, channel_id, thread_ts,
            {
                "answer_id": answer_id,
                "tools": len(tools_used or []),
                "sources": len(sources or []),
            },
        )
        return answer_id

    async def get_answer(self, channel_id: str, message_ts: str) -> Optional[AnswerRecord]:
        """Find the answer posted as (channel_id, message_ts)."""
        cursor = await self.db.connection.execute(
            """SELECT id, channel_id, message_ts, thread_ts, user_id, question, response_text,
                      tools_used, sources, from_cache, cache_id, created_at
               FROM bot_answers WHERE channel_id = ? AND message_ts = ?""",
            (channel_id, message_ts),
        )
        row = await cursor.fetchone()
        if not row:
            return None
        return AnswerRecord(
            id=row[0],
            channel_id=row[1],
            message_ts=row[2],
            thread_ts=row[3],
            user_id=row[4],
            question=row[5],
            response_text=row[6],
            tools_used=json.loads(row[7]),
            sources=json.loads(row[8]),
            from_cache=bool(row[9]),
            cache_id=row[10],
            created_at=row[11],
        )

    async def record_feedback(
        self, channel_id: str, message_ts: str, user_id: str, positive: bool,
    ) -> Optional[AnswerRecord]:
        """
        Record a vote on a bot answer.

        Returns:
            The answer voted on, or None if the message is not a bot answer
        """
        answer = await self.get_answer(channel_id, message_ts)
        if answer is None:
            return None

        now = datetime.utcnow().isoformat()
        async with self.db.lock:
            await self.db.connection.execute(
                """INSERT INTO answer_feedback (answer_id, user_id, positive, created_at)
                   VALUES (?, ?, ?, ?)
                   ON CONFLICT(answer_id, user_id) DO UPDATE SET
                       positive = excluded.positive,
                       created_at = excluded.created_at""",
                (answer.id, user_id, int(positive), now),
            )
            await self.db.connection.commit()

        await self.record_event(
            "feedback", user_id, channel_id, answer.thread_ts,
            {"answer_id": answer.id, "positive": positive},
        )
        logger.info(f"Feedback {'+1' if positive else '-1'} from {user_id} on answer {answer.id}")
        return answer

    async def remove_feedback(
        self, channel_id: str, message_ts: str, user_id: str, positive: Optional[bool] = None,
    ) -> bool:
        """
        Withdraw a user's vote (reaction removed).

        With `positive` set, the vote is only withdrawn if it still has that
        polarity, so removing an older reaction keeps the newer vote.
        """
        answer = await self.get_answer(channel_id, message_ts)
        if answer is None:
            return False
        sql = "DELETE FROM answer_feedback WHERE answer_id = ? AND user_id = ?"
        params: tuple = (answer.id, user_id)
        if positive is not None:
            sql += " AND positive = ?"
            params += (int(positive),)
        async with self.db.lock:
            cursor = await self.db.connection.execute(sql, params)
            await self.db.connection.commit()
            return cursor.rowcount > 0

    # -------------------------------------------------------------------------
    # Reporting
    # -------------------------------------------------------------------------

    async def get_summary(self, days: int = 30, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Usage summary over the last `days` days.

        Returns:
            questions, answers, cache_hits, errors, active_users,
            daily_active_users ({YYYY-MM-DD: n}), positive, negative,
            feedback_ratio (None without feedback), top_askers
        """
        now = now or datetime.utcnow()
        since = (now - timedelta(days=days)).isoformat()
        conn = self.db.connection

        cursor = await conn.execute(
            """SELECT event_type, COUNT(*) FROM analytics_events
               WHERE created_at >= ? GROUP BY event_type""",
            (since,),
        )
        counts = {row[0]: row[1] for row in await cursor.fetchall()}

        cursor = await conn.execute(
            """SELECT COUNT(DISTINCT user_id) FROM analytics_events
               WHERE event_type = 'question' AND created_at >= ?""",
            (since,),
        )
        active_users = (await cursor.fetchone())[0] or 0

        cursor = await conn.execute(
            """SELECT substr(created_at, 1, 10) AS day, COUNT(DISTINCT user_id)
               FROM analytics_events
               WHERE event_type = 'question' AND created_at >= ?
               GROUP BY day ORDER BY day""",
            (since,),
        )
        daily = {row[0]: row[1] for row in await cursor.fetchall()}

        cursor = await conn.execute(
            """SELECT SUM(positive), SUM(1 - positive) FROM answer_feedback
               WHERE created_at >= ?""",
            (since,),
        )
        row = await cursor.fetchone()
        positive, negative = (row[0] or 0), (row[1] or 0)
        total_votes = positive + negative

        cursor = await conn.execute(
            """SELECT user_id, COUNT(*) AS n FROM analytics_events
               WHERE event_type = 'question' AND created_at >= ?
               GROUP BY user_id ORDER BY n DESC, user_id LIMIT 5""",
            (since,),
        )
        top_askers = [{"user_id": r[0], "questions": r[1]} for r in await cursor.fetchall()]

        return {
            "days": days,
            "questions": counts.get("question", 0),
            "answers": counts.get("answer", 0),
            "cache_hits": counts.get("cache_hit", 0),
            "errors": counts.get("error", 0),
            "active_users": active_users,
            "daily_active_users": daily,
            "positive": positive,
            "negative": negative,
            "feedback_ratio": round(positive / total_votes, 3) if total_votes else None,
            "top_askers": top_askers,
        }

    async def export_events_frame(self, days: Optional[int] = None) -> pd.DataFrame:
        """Event log as a DataFrame (detail JSON expanded into columns)."""
        sql = """SELECT id, event_type, user_id, channel_id, thread_ts, detail, created_at
                 FROM analytics_events"""
        params: tuple = ()
        if days is not None:
            sql += " WHERE created_at >= ?"
            params = ((datetime.utcnow() - timedelta(days=days)).isoformat(),)
        sql += " ORDER BY id"

        cursor = await self.db.connection.execute(sql, params)
        rows = await cursor.fetchall()
        columns = ["id", "event_type", "user_id", "channel_id", "thread_ts", "detail", "created_at"]
        frame = pd.DataFrame(rows, columns=columns)
        if frame.empty:
            return frame

        details = pd.json_normalize([json.loads(d) for d in frame["detail"]])
        details.columns = [f"detail.{c}" for c in details.columns]
        frame = pd.concat([frame.drop(columns=["detail"]), details], axis=1)
        frame["created_at"] = pd.to_datetime(frame["created_at"])
        return frame


# =============================================================================
# CLI
# =============================================================================

async def _run(args: argparse.Namespace):
    db = Database(args.db)
    await db.initialize()
    try:
        analytics = AnalyticsStore(db)
        await analytics.initialize()

        if args.export:
            frame = await analytics.export_events_frame(days=args.days)
            frame.to_csv(args.export, index=False)
            print(f"Exported {len(frame)} events to {args.export}")
            return

        summary = await analytics.get_summary(days=args.days)
        print(json.dumps(summary, indent=2))
    finally:
        await db.close()


def main(argv: Optional[List[str]] = None):
    load_dotenv()
    logging.basicConfig(
        level=getattr(logging, os.getenv("LOG_LEVEL", "INFO")),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    parser = argparse.ArgumentParser(description="Forum Q&A bot usage analytics")
    parser.add_argument("--days", type=int, default=30, help="Reporting window in days")
    parser.add_argument("--export", metavar="CSV", help="Write the event log to a CSV file")
    parser.add_argument("--db", help="Database path (defaults to FORUM_BOT_DB)")
    asyncio.run(_run(parser.parse_args(argv)))


if __name__ == "__main__":
    main()
