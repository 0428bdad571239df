"""
Forum Q&A Slack Bot

Slack Bolt AsyncApp that answers questions from forum channel history via
the forum MCP server.

Features:
- @mention handling with "thinking" indicators
- Thread follow-up messages (no re-mention needed)
- Live indexing of forum channel messages, edits, deletes and reactions
- Cited answers with a Sources block
- 👍/👎 feedback tracking, 📦 to save an answer to the cache
- Answer cache for repeated questions
- LLM fallback from Claude to GPT-4o
- App Home tab with usage instructions and status

Usage:
    python -m forum_qa_bot.app
"""

import os
import re
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional, Callable, Set

from dotenv import load_dotenv

load_dotenv()

from slack_bolt.async_app import AsyncApp  # noqa: E402
from slack_bolt.adapter.socket_mode.async_handler import AsyncSocketModeHandler  # noqa: E402
from slack_sdk.web.async_client import AsyncWebClient  # noqa: E402

from .analytics import AnalyticsStore  # noqa: E402
from .cache_store import CACHE_AUTO_SAVE, QueryCacheStore, run_cache_cleanup_task  # noqa: E402
from .database import Database  # noqa: E402
from .indexer import ForumIndexer  # noqa: E402
from .llm_provider import LLMProvider, get_fallback_status  # noqa: E402
from .mcp_client import MCPClient, test_mcp_connectivity  # noqa: E402
from .message_handler import (  # noqa: E402
    process_message,
    format_response_for_slack,
    ProcessingResult,
    Source,
)
from .message_store import MessageStore  # noqa: E402
from .thread_context import ThreadContextStore, run_cleanup_task  # noqa: E402

logger = logging.getLogger(__name__)

# =============================================================================
# Configuration
# =============================================================================

SLACK_BOT_TOKEN = os.getenv("SLACK_BOT_TOKEN")
SLACK_APP_TOKEN = os.getenv("SLACK_APP_TOKEN")
SLACK_SIGNING_SECRET = os.getenv("SLACK_SIGNING_SECRET")
BACKFILL_ON_STARTUP = os.getenv("BACKFILL_ON_STARTUP", "false").lower() == "true"

POSITIVE_REACTIONS = {"+1", "thumbsup"}
NEGATIVE_REACTIONS = {"-1", "thumbsdown"}
SAVE_REACTIONS = {"package"}

USAGE_HINT = (
    "Hi! Ask me anything that's been discussed in the forum channels. For example:\n"
    "• `@bot how do I get VPN access?`\n"
    "• `@bot who knows about the airflow DAGs?`\n"
    "• `@bot how do we rotate the staging database credentials?`"
)


@dataclass
class BotServices:
    """Everything the handlers share. Filled in by startup()."""
    db: Optional[Database] = None
    store: Optional[MessageStore] = None
    indexer: Optional[ForumIndexer] = None
    context_store: Optional[ThreadContextStore] = None
    cache: Optional[QueryCacheStore] = None
    analytics: Optional[AnalyticsStore] = None
    mcp_client_factory: Callable[[], MCPClient] = MCPClient
    llm_provider_factory: Callable[[], LLMProvider] = LLMProvider
    cache_auto_save: bool = CACHE_AUTO_SAVE
    background_tasks: Set[asyncio.Task] = field(default_factory=set)

    def spawn(self, coro) -> asyncio.Task:
        """Run a coroutine in the background, keeping a reference until it finishes."""
        task = asyncio.create_task(coro)
        self.background_tasks.add(task)
        task.add_done_callback(self.background_tasks.discard)
        return task


services = BotServices()


# =============================================================================
# Startup / Shutdown
# =============================================================================

async def startup(app: AsyncApp) -> BotServices:
    """Initialize services on startup."""
    logger.info("Starting Forum Q&A Slack Bot...")

    db = Database()
    await db.initialize()

    services.db = db
    services.store = MessageStore(db)
    services.context_store = ThreadContextStore(db)
    services.cache = QueryCacheStore(db)
    services.analytics = AnalyticsStore(db)
    for component in (services.store, services.context_store, services.cache, services.analytics):
        await component.initialize()

    services.indexer = ForumIndexer(app.client, services.store)

    services.spawn(run_cleanup_task(services.context_store))
    services.spawn(run_cache_cleanup_task(services.cache))

    fallback_status = get_fallback_status()
    logger.info(f"LLM Config: primary={fallback_status['primary_model']}, "
                f"fallback={fallback_status['fallback_model']}, "
                f"fallback_enabled={fallback_status['fallback_enabled']}")

    try:
        mcp_status = await test_mcp_connectivity()
        logger.info(f"MCP Status: {mcp_status['total_tools']} tools from "
                    f"{len(mcp_status.get('tools_by_server', {}))} servers")
    except Exception as e:
        logger.warning(f"MCP connectivity check failed: {e}")

    if BACKFILL_ON_STARTUP:
        services.spawn(_backfill())

    logger.info("Slack Bot started successfully!")
    return services


async def _backfill():
    try:
        summary = await services.indexer.backfill_all()
        await services.analytics.record_event("index", detail={"full": False, "channels": summary})
    except Exception as e:
        logger.error(f"Startup backfill failed: {e}", exc_info=True)


async def shutdown():
    """Cleanup on shutdown."""
    logger.info("Shutting down Slack Bot...")

    for task in list(services.background_tasks):
        task.cancel()
    if services.background_tasks:
        await asyncio.gather(*services.background_tasks, return_exceptions=True)

    if services.db:
        await services.db.close()

    logger.info("Slack Bot shutdown complete.")


# =============================================================================
# Helper Functions
# =============================================================================

def extract_message_text(text: str, bot_user_id: str) -> str:
    """
    Extract message text, removing the bot mention.

    Args:
        text: Raw message text (may include <@BOT_ID>)
        bot_user_id: Bot's user ID

    Returns:
        Clean message text
    """
    if not bot_user_id:
        return text.strip()
    pattern = rf"<@{re.escape(bot_user_id)}>\s*"
    return re.sub(pattern, "", text).strip()


async def send_thinking_message(
    client: AsyncWebClient,
    channel: str,
    thread_ts: str,
) -> str:
    """
    Post a "thinking" message and return its timestamp.

    Returns:
        Message timestamp for later updates
    """
    result = await client.chat_postMessage(
        channel=channel,
        thread_ts=thread_ts,
        text="🤔 Thinking...",
    )
    return result["ts"]


async def update_message(
    client: AsyncWebClient,
    channel: str,
    ts: str,
    text: str,
    blocks: Optional[list] = None,
):
    """Update an existing message."""
    kwargs = {"channel": channel, "ts": ts, "text": text}
    if blocks is not None:
        kwargs["blocks"] = blocks
    await client.chat_update(**kwargs)


async def _index(event: dict):
    """Apply an event to the forum index."""
    if services.indexer is None:
        return
    try:
        await services.indexer.index_event(event)
    except Exception as e:
        logger.warning(f"Live indexing failed for {event.get('type')}: {e}")


# =============================================================================
# Event Handlers
# =============================================================================

async def handle_mention(event: dict, client: AsyncWebClient, context: dict):
    """
    Handle @mentions of the bot.

    This is the primary entry point for starting a conversation.
    """
    channel = event["channel"]
    user = event.get("user", "")
    thread_ts = event.get("thread_ts") or event["ts"]

    user_message = extract_message_text(event.get("text", ""), context.get("bot_user_id", ""))

    if not user_message:
        await client.chat_postMessage(channel=channel, thread_ts=thread_ts, text=USAGE_HINT)
        return

    # Process in background to avoid Slack timeout
    services.spawn(_process_and_respond(client, channel, thread_ts, user, user_message))


async def handle_message(event: dict, client: AsyncWebClient, context: dict):
    """
    Handle messages in channels.

    Forum channel messages are indexed. We only answer thread messages where
    we have existing context (i.e., the user already @mentioned us in this thread).
    """
    await _index(event)

    if event.get("bot_id") or event.get("subtype"):
        return

    thread_ts = event.get("thread_ts")
    if not thread_ts or services.context_store is None:
        return

    bot_user_id = context.get("bot_user_id", "")
    text = event.get("text", "")
    # Mentions are answered by handle_mention
    if bot_user_id and f"<@{bot_user_id}>" in text:
        return

    channel = event["channel"]
    if not await services.context_store.get(channel, thread_ts):
        return

    user_message = extract_message_text(text, bot_user_id)
    if not user_message:
        return

    services.spawn(_process_and_respond(client, channel, thread_ts, event.get("user", ""), user_message))


async def handle_reaction_added(event: dict, client: AsyncWebClient, context: dict):
    """Count reactions on forum messages and treat reactions on bot answers as feedback."""
    await _index(event)

    item = event.get("item") or {}
    reaction = event.get("reaction", "")
    user = event.get("user", "")
    if item.get("type") != "message" or services.analytics is None:
        return
    if user and user == context.get("bot_user_id"):
        return

    channel, ts = item.get("channel", ""), item.get("ts", "")

    if reaction in POSITIVE_REACTIONS or reaction in NEGATIVE_REACTIONS:
        positive = reaction in POSITIVE_REACTIONS
        answer = await services.analytics.record_feedback(channel, ts, user, positive)
        if answer and not positive and services.cache:
            # A thumbs-down answer is never served from the cache again
            if answer.cache_id is not None:
                await services.cache.delete(answer.cache_id)
            else:
                await services.cache.delete_by_question(answer.question)

    elif reaction in SAVE_REACTIONS and services.cache and services.cache.enabled:
        answer = await services.analytics.get_answer(channel, ts)
        if answer is None or answer.from_cache:
            return
        await services.cache.save(
            question=answer.question,
            response_text=answer.response_text,
            tools_used=answer.tools_used,
            sources=answer.sources,
        )
        try:
            await client.chat_postEphemeral(
                channel=channel,
                user=user,
                thread_ts=answer.thread_ts,
                text="📦 Saved this answer for the next time someone asks.",
            )
        except Exception as e:
            logger.warning(f"Failed to confirm cache save: {e}")


async def handle_reaction_removed(event: dict, client: AsyncWebClient, context: dict):
    """Undo reaction counts and feedback."""
    await _index(event)

    item = event.get("item") or {}
    reaction = event.get("reaction", "")
    if item.get("type") != "message" or services.analytics is None:
        return
    if reaction in POSITIVE_REACTIONS or reaction in NEGATIVE_REACTIONS:
        await services.analytics.remove_feedback(
            item.get("channel", ""), item.get("ts", ""), event.get("user", ""),
            positive=reaction in POSITIVE_REACTIONS,
        )


async def _answer_from_cache(user_message: str, thread_context) -> Optional[ProcessingResult]:
    """Cached answer for the opening question of a thread."""
    if services.cache is None or thread_context.messages:
        return None
    cached = await services.cache.find_match(user_message)
    if cached is None:
        return None

    thread_context.add_user_message(user_message)
    thread_context.add_assistant_message(cached.response_text)
    return ProcessingResult(
        response_text=cached.response_text,
        tools_used=cached.tools_used,
        sources=[Source.from_dict(s) for s in cached.sources],
        from_cache=True,
        cache_id=cached.id,
    )


async def _process_and_respond(
    client: AsyncWebClient,
    channel: str,
    thread_ts: str,
    user_id: str,
    user_message: str,
):
    """
    Process a message and respond in the thread.

    This runs as a background task to avoid Slack's 3-second acknowledgement timeout.
    """
    thinking_ts = None
    analytics = services.analytics

    try:
        thinking_ts = await send_thinking_message(client, channel, thread_ts)

        if analytics:
            await analytics.record_question(user_id, channel, thread_ts, user_message)

        thread_context = await services.context_store.get_or_create(channel, thread_ts, user_id)

        async def on_progress(progress_text: str):
            """Update the thinking message with progress."""
            try:
                await update_message(client, channel, thinking_ts, progress_text)
            except Exception as e:
                logger.warning(f"Failed to update progress: {e}")

        result = await _answer_from_cache(user_message, thread_context)
        if result is None:
            async with services.mcp_client_factory() as mcp_client:
                llm_provider = services.llm_provider_factory()
                try:
                    result = await process_message(
                        user_message=user_message,
                        context=thread_context,
                        mcp_client=mcp_client,
                        llm_provider=llm_provider,
                        on_progress=on_progress,
                    )
                finally:
                    await llm_provider.close()

        await services.context_store.save(thread_context)

        fallback_text, blocks = format_response_for_slack(result, show_metadata=True)
        await update_message(client, channel, thinking_ts, fallback_text, blocks)

        if analytics:
            if result.error:
                await analytics.record_event(
                    "error", user_id, channel, thread_ts, {"error": result.error, "stage": "llm"},
                )
            else:
                await analytics.record_answer(
                    channel_id=channel,
                    message_ts=thinking_ts,
                    thread_ts=thread_ts,
                    user_id=user_id,
                    question=user_message,
                    response_text=result.response_text,
                    tools_used=result.tools_used,
                    sources=[s.to_dict() for s in result.sources],
                    from_cache=result.from_cache,
                    cache_id=result.cache_id,
                )

        if services.cache_auto_save and services.cache and not (result.error or result.from_cache):
            await services.cache.save(
                question=user_message,
                response_text=result.response_text,
                tools_used=result.tools_used,
                sources=[s.to_dict() for s in result.sources],
            )

        logger.info(
            f"Processed message in {channel}/{thread_ts}: "
            f"{len(result.tools_used)} tools, "
            f"{result.iterations} iterations, "
            f"{len(result.sources)} sources, "
            f"cache={result.from_cache}, "
            f"fallback={result.used_fallback}"
        )

    except Exception as e:
        logger.error(f"Error processing message: {e}", exc_info=True)

        error_text = (
            f"Sorry, I encountered an error: {str(e)}\n\n"
            "Please try again or rephrase your question."
        )

        try:
            if thinking_ts:
                await update_message(client, channel, thinking_ts, error_text)
            else:
                await client.chat_postMessage(channel=channel, thread_ts=thread_ts, text=error_text)
        except Exception as post_error:
            logger.error(f"Failed to report error to Slack: {post_error}")

        if analytics:
            try:
                await analytics.record_event("error", user_id, channel, thread_ts, {"error": str(e)})
            except Exception as record_error:
                logger.error(f"Failed to record error event: {record_error}")


async def handle_app_home(event: dict, client: AsyncWebClient):
    """
    Handle App Home tab opened.

    Shows usage instructions and current status.
    """
    user_id = event["user"]
    fallback_status = get_fallback_status()

    try:
        mcp_status = await test_mcp_connectivity()
        mcp_info = f"✅ Connected to {mcp_status['total_tools']} tools"
    except Exception as e:
        mcp_info = f"⚠️ MCP connection issue: {e}"

    if services.store:
        index_stats = await services.store.get_stats()
        index_info = (
            f"🗂️ {index_stats['total_messages']} messages indexed from "
            f"{index_stats['channels_with_messages']} forum channels"
        )
    else:
        index_info = "⚠️ Message index not initialized"

    if services.context_store:
        store_stats = await services.context_store.get_stats()
        context_info = f"📊 {store_stats['total_contexts']} active conversations"
    else:
        context_info = "⚠️ Context store not initialized"

    if services.analytics:
        summary = await services.analytics.get_summary(days=30)
        ratio = summary["feedback_ratio"]
        usage_info = (
            f"📈 Last 30 days: {summary['questions']} questions from {summary['active_users']} people, "
            f"{summary['cache_hits']} cache hits, "
            f"{'no feedback yet' if ratio is None else f'{ratio:.0%} helpful'}"
        )
    else:
        usage_info = "⚠️ Analytics not initialized"

    blocks = [
        {
            "type": "header",
            "text": {
                "type": "plain_text",
                "text": "💬 Forum Q&A Bot",
                "emoji": True,
            }
        },
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": (
                    "I answer questions from what's already been discussed in the forum channels, "
                    "with links to the threads I used."
                ),
            }
        },
        {"type": "divider"},
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": "*How to Use*\n\n"
                        "1. `@ForumBot how do I get VPN access?`\n"
                        "2. `@ForumBot who knows about kubernetes deploys?`\n"
                        "3. Follow up in the thread without re-mentioning me!\n"
                        "4. React :+1: / :-1: to rate an answer, :package: to save it",
            }
        },
        {"type": "divider"},
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": (
                    "*Current Status*\n\n"
                    f"• {mcp_info}\n"
                    f"• {index_info}\n"
                    f"• 🤖 LLM: {fallback_status['primary_model']}\n"
                    f"• 🔄 Fallback: {fallback_status['fallback_model']} "
                    f"({'enabled' if fallback_status['fallback_enabled'] else 'disabled'})\n"
                    f"• {context_info}\n"
                    f"• {usage_info}"
                ),
            }
        },
    ]

    await client.views_publish(
        user_id=user_id,
        view={
            "type": "home",
            "blocks": blocks,
        }
    )


# =============================================================================
# App Factory
# =============================================================================

def register_handlers(app: AsyncApp) -> AsyncApp:
    """Attach the event handlers to a Bolt app."""
    app.event("app_mention")(handle_mention)
    app.event("message")(handle_message)
    app.event("reaction_added")(handle_reaction_added)
    app.event("reaction_removed")(handle_reaction_removed)
    app.event("app_home_opened")(handle_app_home)
    return app


def create_app() -> AsyncApp:
    if not all([SLACK_BOT_TOKEN, SLACK_APP_TOKEN]):
        logger.error("Missing Slack tokens. Set SLACK_BOT_TOKEN and SLACK_APP_TOKEN.")
    app = AsyncApp(
        token=SLACK_BOT_TOKEN,
        signing_secret=SLACK_SIGNING_SECRET,
    )
    return register_handlers(app)


# =============================================================================
# Main Entry Point
# =============================================================================

async def main():
    """Main entry point for running the bot."""
    logging.basicConfig(
        level=getattr(logging, os.getenv("LOG_LEVEL", "INFO")),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    app = create_app()
    await startup(app)

    try:
        handler = AsyncSocketModeHandler(app, SLACK_APP_TOKEN)
        logger.info("Starting Socket Mode handler...")
        await handler.start_async()
    except KeyboardInterrupt:
        logger.info("Received shutdown signal")
    finally:
        await shutdown()


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
