"""
Forum Indexer

Pulls forum channel history from Slack into the message store and keeps it
current from live events.

Features:
- Forum channel discovery (conversations.list, optional auto-join)
- Incremental or full backfill of history and thread replies
- Live updates: new messages, edits, deletes, reactions, reply counts
- Rate limiting: slack_sdk retry handler for 429s plus a delay between pages
- User name cache (users.info)

Usage:
    python -m forum_qa_bot.indexer
    python -m forum_qa_bot.indexer --channel forum-it-help --full
"""

import os
import asyncio
import logging
import argparse
from datetime import datetime
from typing import Optional, List, Dict, Any, Set

from dotenv import load_dotenv
from slack_sdk.errors import SlackApiError
from slack_sdk.http_retry.builtin_async_handlers import AsyncRateLimitErrorRetryHandler
from slack_sdk.web.async_client import AsyncWebClient

from .analytics import AnalyticsStore
from .cache_store import QueryCacheStore
from .channels import is_forum_channel, normalize_channel_name, ts_to_float
from .database import Database
from .message_store import MessageStore, ForumChannel, IndexedMessage

logger = logging.getLogger(__name__)

# Configuration
INDEX_PAGE_SIZE = int(os.getenv("INDEX_PAGE_SIZE", "200"))
INDEX_PAGE_DELAY_SECONDS = float(os.getenv("INDEX_PAGE_DELAY_SECONDS", "1.2"))
INDEX_AUTO_JOIN = os.getenv("INDEX_AUTO_JOIN", "false").lower() == "true"
RATE_LIMIT_MAX_RETRIES = int(os.getenv("SLACK_RATE_LIMIT_RETRIES", "3"))

# Message subtypes that are not forum content
SKIPPED_SUBTYPES = frozenset({
    "bot_message",
    "channel_join",
    "channel_leave",
    "channel_topic",
    "channel_purpose",
    "channel_name",
    "channel_archive",
    "channel_unarchive",
    "pinned_item",
    "unpinned_item",
    "group_join",
    "group_leave",
})


def is_indexable(message: Dict[str, Any]) -> bool:
    """True for human-written messages worth indexing."""
    if message.get("bot_id") or message.get("subtype") in SKIPPED_SUBTYPES:
        return False
    return bool(message.get("ts")) and bool((message.get("text") or "").strip())


def _next_cursor(response) -> Optional[str]:
    metadata = response.get("response_metadata") or {}
    return metadata.get("next_cursor") or None


class ForumIndexer:
    """
    Slack -> MessageStore ingestion.

    Usage:
        indexer = ForumIndexer(AsyncWebClient(token=...), store)
        await indexer.discover_forum_channels()
        summary = await indexer.backfill_all()

        # From the Bolt event handlers
        await indexer.index_event(event)
    """

    def __init__(
        self,
        client: AsyncWebClient,
        store: MessageStore,
        page_size: int = INDEX_PAGE_SIZE,
        page_delay: float = INDEX_PAGE_DELAY_SECONDS,
        auto_join: bool = INDEX_AUTO_JOIN,
    ):
        self.client = client
        self.store = store
        self.page_size = page_size
        self.page_delay = page_delay
        self.auto_join = auto_join
        self._user_names: Dict[str, Optional[str]] = {}
        self._non_forum_channels: Set[str] = set()

        retry_handlers = getattr(client, "retry_handlers", None)
        if isinstance(retry_handlers, list) and not any(
            isinstance(h, AsyncRateLimitErrorRetryHandler) for h in retry_handlers
        ):
            retry_handlers.append(AsyncRateLimitErrorRetryHandler(max_retry_count=RATE_LIMIT_MAX_RETRIES))

    async def _pause(self):
        if self.page_delay > 0:
            await asyncio.sleep(self.page_delay)

    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------

    async def user_name(self, user_id: Optional[str]) -> Optional[str]:
        """Display name for a user, cached in memory."""
        if not user_id:
            return None
        if user_id in self._user_names:
            return self._user_names[user_id]

        name = None
        try:
            response = await self.client.users_info(user=user_id)
            user = response.get("user") or {}
            profile = user.get("profile") or {}
            name = profile.get("display_name") or user.get("real_name") or user.get("name")
        except SlackApiError as e:
            logger.warning(f"users.info failed for {user_id}: {e.response.get('error')}")

        self._user_names[user_id] = name
        return name

    async def resolve_channel(self, channel_id: str) -> Optional[ForumChannel]:
        """
        Known forum channel for an ID, asking Slack for unknown ones.

        Returns:
            The forum channel, or None if the channel is not a forum channel
        """
        if channel_id in self._non_forum_channels:
            return None
        channel = await self.store.get_channel(channel_id)
        if channel:
            return channel

        try:
            response = await self.client.conversations_info(channel=channel_id)
        except SlackApiError as e:
            logger.warning(f"conversations.info failed for {channel_id}: {e.response.get('error')}")
            return None

        info = response.get("channel") or {}
        name = normalize_channel_name(info.get("name"))
        if not is_forum_channel(name):
            self._non_forum_channels.add(channel_id)
            return None

        channel = ForumChannel(
            channel_id=channel_id,
            name=name,
            topic=(info.get("topic") or {}).get("value", ""),
            purpose=(info.get("purpose") or {}).get("value", ""),
            is_member=bool(info.get("is_member")),
        )
        await self.store.upsert_channel(channel)
        logger.info(f"Discovered forum channel #{name} from event")
        return channel

    async def _to_indexed(self, channel: ForumChannel, message: Dict[str, Any]) -> IndexedMessage:
        user_id = message.get("user")
        return IndexedMessage(
            channel_id=channel.channel_id,
            channel_name=channel.name,
            ts=message["ts"],
            thread_ts=message.get("thread_ts"),
            text=message.get("text", ""),
            user_id=user_id,
            user_name=await self.user_name(user_id),
            reply_count=int(message.get("reply_count") or 0),
            reaction_count=sum(r.get("count", 0) for r in message.get("reactions") or []),
            edited=bool(message.get("edited")),
        )

    # -------------------------------------------------------------------------
    # Backfill
    # -------------------------------------------------------------------------

    async def discover_forum_channels(self) -> List[ForumChannel]:
        """Find forum channels in the workspace and store them."""
        found: List[ForumChannel] = []
        cursor = None

        while True:
            response = await self.client.conversations_list(
                types="public_channel",
                exclude_archived=True,
                limit=self.page_size,
                cursor=cursor,
            )
            for info in response.get("channels") or []:
                name = normalize_channel_name(info.get("name"))
                if not is_forum_channel(name):
                    continue

                is_member = bool(info.get("is_member"))
                if not is_member and self.auto_join:
                    try:
                        await self.client.conversations_join(channel=info["id"])
                        is_member = True
                        logger.info(f"Joined #{name}")
                    except SlackApiError as e:
                        logger.warning(f"Could not join #{name}: {e.response.get('error')}")

                channel = ForumChannel(
                    channel_id=info["id"],
                    name=name,
                    topic=(info.get("topic") or {}).get("value", ""),
                    purpose=(info.get("purpose") or {}).get("value", ""),
                    is_member=is_member,
                )
                existing = await self.store.get_channel(channel.channel_id)
                if existing:
                    channel.last_indexed_ts = existing.last_indexed_ts
                    channel.indexed_at = existing.indexed_at
                await self.store.upsert_channel(channel)
                found.append(channel)

            cursor = _next_cursor(response)
            if not cursor:
                break
            await self._pause()

        logger.info(f"Discovered {len(found)} forum channels")
        return found

    async def _thread_replies(self, channel: ForumChannel, thread_ts: str) -> List[Dict[str, Any]]:
        replies: List[Dict[str, Any]] = []
        cursor = None
        while True:
            response = await self.client.conversations_replies(
                channel=channel.channel_id,
                ts=thread_ts,
                limit=self.page_size,
                cursor=cursor,
            )
            replies.extend(m for m in response.get("messages") or [] if m.get("ts") != thread_ts)
            cursor = _next_cursor(response)
            if not cursor:
                return replies
            await self._pause()

    async def backfill_channel(self, channel: ForumChannel, full: bool = False) -> int:
        """
        Index a channel's history and thread replies.

        Args:
            channel: Forum channel to index
            full: Re-read everything instead of resuming after last_indexed_ts

        Returns:
            Number of messages indexed
        """
        if not is_forum_channel(channel.name):
            raise ValueError(f"#{channel.name} is not a forum channel")

        oldest = None if full else channel.last_indexed_ts
        newest_ts = channel.last_indexed_ts
        indexed = 0
        cursor = None

        logger.info(f"Backfilling #{channel.name} ({'full' if full else f'since {oldest or 0}'})")

        while True:
            params: Dict[str, Any] = {
                "channel": channel.channel_id,
                "limit": self.page_size,
                "cursor": cursor,
            }
            if oldest:
                params["oldest"] = oldest
            response = await self.client.conversations_history(**params)

            batch: List[IndexedMessage] = []
            for raw in response.get("messages") or []:
                if ts_to_float(raw.get("ts")) > ts_to_float(newest_ts):
                    newest_ts = raw["ts"]
                if not is_indexable(raw):
                    continue
                batch.append(await self._to_indexed(channel, raw))

                if int(raw.get("reply_count") or 0) > 0:
                    await self._pause()
                    for reply in await self._thread_replies(channel, raw["ts"]):
                        if is_indexable(reply):
                            batch.append(await self._to_indexed(channel, reply))

            indexed += await self.store.upsert_messages(batch)

            cursor = _next_cursor(response)
            if not cursor:
                break
            await self._pause()

        await self.store.mark_indexed(channel.channel_id, newest_ts)
        channel.last_indexed_ts = newest_ts
        logger.info(f"Indexed {indexed} messages from #{channel.name}")
        return indexed

    async def backfill_all(self, full: bool = False) -> Dict[str, int]:
        """Discover forum channels and backfill each. Returns {channel_name: count}."""
        summary: Dict[str, int] = {}
        for channel in await self.discover_forum_channels():
            if not channel.is_member:
                logger.info(f"Skipping #{channel.name}: bot is not a member")
                continue
            try:
                summary[channel.name] = await self.backfill_channel(channel, full=full)
            except SlackApiError as e:
                logger.error(f"Backfill of #{channel.name} failed: {e.response.get('error')}")
                summary[channel.name] = 0
        return summary

    # -------------------------------------------------------------------------
    # Live events
    # -------------------------------------------------------------------------

    async def index_event(self, event: Dict[str, Any]) -> bool:
        """
        Apply a Slack event to the index.

        Returns:
            True if the index changed
        """
        event_type = event.get("type")

        if event_type in ("reaction_added", "reaction_removed"):
            item = event.get("item") or {}
            if item.get("type") != "message":
                return False
            channel = await self.resolve_channel(item.get("channel", ""))
            if channel is None:
                return False
            delta = 1 if event_type == "reaction_added" else -1
            return await self.store.adjust_reaction_count(channel.channel_id, item.get("ts", ""), delta)

        if event_type != "message":
            return False

        channel_id = event.get("channel", "")
        subtype = event.get("subtype")

        if subtype == "message_deleted":
            if await self.resolve_channel(channel_id) is None:
                return False
            existing = await self.store.get_message(channel_id, event.get("deleted_ts", ""))
            if existing is None:
                return False
            deleted = await self.store.delete_message(channel_id, existing.ts)
            if deleted and existing.is_reply:
                await self.store.increment_reply_count(channel_id, existing.thread_ts, -1)
            return deleted

        if subtype == "message_changed":
            channel = await self.resolve_channel(channel_id)
            changed = event.get("message") or {}
            if channel is None or not is_indexable(changed):
                return False
            if await self.store.update_text(channel_id, changed["ts"], changed.get("text", "")):
                return True
            await self.store.upsert_message(await self._to_indexed(channel, changed))
            return True

        if not is_indexable(event):
            return False
        channel = await self.resolve_channel(channel_id)
        if channel is None:
            return False

        message = await self._to_indexed(channel, event)
        # Redelivered events must not count the same reply twice
        seen = await self.store.get_message(channel_id, message.ts) is not None
        await self.store.upsert_message(message)
        if message.is_reply and not seen:
            await self.store.increment_reply_count(channel_id, message.thread_ts)
        return True


# =============================================================================
# CLI
# =============================================================================

async def _run(args: argparse.Namespace) -> Dict[str, int]:
    token = os.getenv("SLACK_BOT_TOKEN")
    if not token:
        raise SystemExit("SLACK_BOT_TOKEN is not set")

    db = Database(args.db)
    await db.initialize()
    try:
        store = MessageStore(db)
        await store.initialize()
        indexer = ForumIndexer(AsyncWebClient(token=token), store)
        started = datetime.utcnow()

        if args.channel:
            await indexer.discover_forum_channels()
            channel = await store.get_channel(args.channel)
            if channel is None:
                raise SystemExit(f"#{normalize_channel_name(args.channel)} is not a known forum channel")
            summary = {channel.name: await indexer.backfill_channel(channel, full=args.full)}
        else:
            summary = await indexer.backfill_all(full=args.full)

        if args.full:
            cache = QueryCacheStore(db)
            await cache.initialize()
            await cache.invalidate_before(started)

        analytics = AnalyticsStore(db)
        await analytics.initialize()
        await analytics.record_event("index", detail={"full": args.full, "channels": summary})

        for name, count in summary.items():
            print(f"#{name}: {count} messages")
        return summary
    finally:
        await db.close()


def main(argv: Optional[List[str]] = None):
    load_dotenv()
    logging.basicConfig(
        level=getattr(logging, os.getenv("LOG_LEVEL", "INFO")),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    parser = argparse.ArgumentParser(description="Backfill forum channels into the index")
    parser.add_argument("--channel", help="Only this forum channel")
    parser.add_argument("--full", action="store_true", help="Re-index everything and drop older cache entries")
    parser.add_argument("--db", help="Database path (defaults to FORUM_BOT_DB)")
    asyncio.run(_run(parser.parse_args(argv)))


if __name__ == "__main__":
    main()
