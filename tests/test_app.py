"""Tests for the Slack event handlers."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from forum_qa_bot import app as app_module
from forum_qa_bot.analytics import AnalyticsStore
from forum_qa_bot.app import (
    USAGE_HINT,
    BotServices,
    extract_message_text,
    handle_app_home,
    handle_mention,
    handle_message,
    handle_reaction_added,
    handle_reaction_removed,
    register_handlers,
)
from forum_qa_bot.cache_store import QueryCacheStore
from forum_qa_bot.database import Database
from forum_qa_bot.indexer import ForumIndexer
from forum_qa_bot.llm_provider import LLMResponse, TokenUsage
from forum_qa_bot.message_store import MessageStore
from forum_qa_bot.thread_context import ThreadContextStore

from .conftest import IT_HELP

BOT = {"bot_user_id": "UBOT"}
THREAD_TS = "1748000000.000100"
ANSWER_TS = "1748000001.000200"
VPN_LINK = "https://example.slack.com/archives/CIT000001/p1747136400000000"

SEARCH_RESULT = {
    "content": [{"type": "text", "text": "..."}],
    "isError": False,
    "structuredContent": {"results": [{
        "permalink": VPN_LINK, "channel": "#forum-it-help", "author": "bob",
        "text": "File an IT ticket, then install the VPN client", "thread_ts": "1747136400.000000",
    }]},
}


class FakeMCPClient:
    def __init__(self):
        self.call_tool = AsyncMock(return_value=SEARCH_RESULT)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return None

    def get_tools_for_llm(self):
        return [{"type": "function", "function": {"name": "forum__search_messages", "parameters": {}}}]


def _llm(*responses) -> MagicMock:
    llm = MagicMock()
    llm.call_with_fallback = AsyncMock(side_effect=list(responses))
    llm.close = AsyncMock()
    return llm


def _answer_flow() -> MagicMock:
    call = {"id": "call_1", "type": "function",
            "function": {"name": "forum__search_messages", "arguments": json.dumps({"query": "vpn access"})}}
    return _llm(
        LLMResponse(content=None, tool_calls=[call], tokens=TokenUsage()),
        LLMResponse(content=f"File an IT ticket (see <{VPN_LINK}|#forum-it-help>).", tool_calls=None,
                    tokens=TokenUsage()),
    )


def _slack_client() -> MagicMock:
    client = MagicMock()
    client.retry_handlers = []
    client.chat_postMessage = AsyncMock(return_value={"ok": True, "ts": ANSWER_TS})
    client.chat_update = AsyncMock(return_value={"ok": True})
    client.chat_postEphemeral = AsyncMock(return_value={"ok": True})
    client.views_publish = AsyncMock(return_value={"ok": True})
    client.users_info = AsyncMock(return_value={"user": {"name": "alice"}})
    return client


@pytest.fixture
def slack_client() -> MagicMock:
    return _slack_client()


@pytest_asyncio.fixture
async def bot(database: Database, slack_client: MagicMock, monkeypatch) -> BotServices:
    """BotServices on a temp database, with fake MCP and LLM factories."""
    store = MessageStore(database)
    services = BotServices(
        db=database,
        store=store,
        indexer=ForumIndexer(slack_client, store, page_delay=0),
        context_store=ThreadContextStore(database),
        cache=QueryCacheStore(database, enabled=True, ttl_seconds=3600),
        analytics=AnalyticsStore(database),
        mcp_client_factory=FakeMCPClient,
        llm_provider_factory=MagicMock(side_effect=lambda: _answer_flow()),
        cache_auto_save=False,
    )
    for component in (services.store, services.context_store, services.cache, services.analytics):
        await component.initialize()
    await store.upsert_channel(IT_HELP)

    monkeypatch.setattr(app_module, "services", services)
    yield services

    if services.background_tasks:
        await asyncio.gather(*services.background_tasks, return_exceptions=True)


async def _drain(services: BotServices):
    await asyncio.gather(*list(services.background_tasks))


def _mention(text: str) -> dict:
    return {"type": "app_mention", "channel": IT_HELP.channel_id, "user": "UALICE", "ts": THREAD_TS, "text": text}


def _reaction(reaction: str, user: str = "UVOTER", event_type: str = "reaction_added") -> dict:
    return {
        "type": event_type,
        "user": user,
        "reaction": reaction,
        "item": {"type": "message", "channel": IT_HELP.channel_id, "ts": ANSWER_TS},
    }


async def _posted_answer(bot: BotServices, from_cache: bool = False) -> int:
    return await bot.analytics.record_answer(
        channel_id=IT_HELP.channel_id,
        message_ts=ANSWER_TS,
        thread_ts=THREAD_TS,
        user_id="UALICE",
        question="how do I get vpn access?",
        response_text="File an IT ticket.",
        sources=[{"permalink": VPN_LINK}],
        from_cache=from_cache,
    )


class TestHelpers:
    def test_extract_message_text(self):
        assert extract_message_text("<@UBOT> how do I get vpn?", "UBOT") == "how do I get vpn?"
        assert extract_message_text("  hi  ", "") == "hi"
        assert extract_message_text("<@UOTHER> hi", "UBOT") == "<@UOTHER> hi"

    def test_register_handlers(self):
        app = MagicMock()
        register_handlers(app)
        events = [c.args[0] for c in app.event.call_args_list]
        assert events == ["app_mention", "message", "reaction_added", "reaction_removed", "app_home_opened"]


class TestMentions:
    @pytest.mark.asyncio
    async def test_empty_mention_gets_usage_hint(self, bot: BotServices, slack_client: MagicMock):
        await handle_mention(_mention("<@UBOT>"), slack_client, BOT)

        slack_client.chat_postMessage.assert_awaited_once_with(
            channel=IT_HELP.channel_id, thread_ts=THREAD_TS, text=USAGE_HINT
        )
        assert not bot.background_tasks

    @pytest.mark.asyncio
    async def test_answer_with_sources(self, bot: BotServices, slack_client: MagicMock):
        await handle_mention(_mention("<@UBOT> how do I get vpn access?"), slack_client, BOT)
        await _drain(bot)

        final = slack_client.chat_update.await_args_list[-1].kwargs
        assert final["ts"] == ANSWER_TS
        context_texts = [b["elements"][0]["text"] for b in final["blocks"] if b["type"] == "context"]
        assert any(t.startswith("📚 *Sources*") and VPN_LINK in t for t in context_texts)

        answer = await bot.analytics.get_answer(IT_HELP.channel_id, ANSWER_TS)
        assert answer.question == "how do I get vpn access?"
        assert answer.sources[0]["permalink"] == VPN_LINK

        context = await bot.context_store.get(IT_HELP.channel_id, THREAD_TS)
        assert [m.role for m in context.messages] == ["user", "assistant", "tool", "assistant"]

        summary = await bot.analytics.get_summary()
        assert summary["questions"] == 1
        assert summary["answers"] == 1
        assert await bot.cache.find_match("how do I get vpn access?") is None

    @pytest.mark.asyncio
    async def test_cached_answer_skips_llm(self, bot: BotServices, slack_client: MagicMock):
        await bot.cache.save("How do I get VPN access?", "File an IT ticket.", [], [{"permalink": VPN_LINK}])

        await handle_mention(_mention("<@UBOT> how do I get vpn access"), slack_client, BOT)
        await _drain(bot)

        bot.llm_provider_factory.assert_not_called()
        blocks = slack_client.chat_update.await_args.kwargs["blocks"]
        assert blocks[0]["elements"][0]["text"] == "📦 _Answered from a saved answer_"
        assert (await bot.analytics.get_answer(IT_HELP.channel_id, ANSWER_TS)).from_cache
        assert (await bot.analytics.get_summary())["cache_hits"] == 1

    @pytest.mark.asyncio
    async def test_auto_save(self, bot: BotServices, slack_client: MagicMock):
        bot.cache_auto_save = True
        await handle_mention(_mention("<@UBOT> how do I get vpn access?"), slack_client, BOT)
        await _drain(bot)

        cached = await bot.cache.find_match("how do I get vpn access?")
        assert cached.sources[0]["permalink"] == VPN_LINK

    @pytest.mark.asyncio
    async def test_llm_error_recorded(self, bot: BotServices, slack_client: MagicMock):
        failing = MagicMock()
        failing.call_with_fallback = AsyncMock(side_effect=RuntimeError("no provider"))
        failing.close = AsyncMock()
        bot.llm_provider_factory = MagicMock(return_value=failing)

        await handle_mention(_mention("<@UBOT> vpn?"), slack_client, BOT)
        await _drain(bot)

        summary = await bot.analytics.get_summary()
        assert summary["errors"] == 1
        assert summary["answers"] == 0
        failing.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unexpected_failure_reported_in_thread(self, bot: BotServices, slack_client: MagicMock):
        bot.mcp_client_factory = MagicMock(side_effect=RuntimeError("mcp down"))

        await handle_mention(_mention("<@UBOT> vpn?"), slack_client, BOT)
        await _drain(bot)

        text = slack_client.chat_update.await_args.kwargs["text"]
        assert text.startswith("Sorry, I encountered an error: mcp down")
        assert (await bot.analytics.get_summary())["errors"] == 1


class TestThreadMessages:
    @pytest.mark.asyncio
    async def test_follow_up_in_answered_thread(self, bot: BotServices, slack_client: MagicMock):
        context = await bot.context_store.get_or_create(IT_HELP.channel_id, THREAD_TS, "UALICE")
        context.add_user_message("how do I get vpn access?")
        context.add_assistant_message("File an IT ticket.")
        await bot.context_store.save(context)

        event = {"type": "message", "channel": IT_HELP.channel_id, "user": "UALICE",
                 "ts": "1748000100.000300", "thread_ts": THREAD_TS, "text": "and on linux?"}
        await handle_message(event, slack_client, BOT)
        await _drain(bot)

        bot.llm_provider_factory.assert_called_once()
        assert await bot.store.get_message(IT_HELP.channel_id, "1748000100.000300") is not None
        saved = await bot.context_store.get(IT_HELP.channel_id, THREAD_TS)
        assert [m.content for m in saved.messages if m.role == "user"][-1] == "and on linux?"

    @pytest.mark.asyncio
    async def test_unknown_thread_only_indexed(self, bot: BotServices, slack_client: MagicMock):
        event = {"type": "message", "channel": IT_HELP.channel_id, "user": "UBOB",
                 "ts": "1748000200.000100", "thread_ts": THREAD_TS, "text": "same problem here"}
        await handle_message(event, slack_client, BOT)

        assert not bot.background_tasks
        assert await bot.store.get_message(IT_HELP.channel_id, "1748000200.000100") is not None

    @pytest.mark.asyncio
    async def test_mentions_and_bots_ignored(self, bot: BotServices, slack_client: MagicMock):
        await bot.context_store.get_or_create(IT_HELP.channel_id, THREAD_TS, "UALICE")
        base = {"type": "message", "channel": IT_HELP.channel_id, "thread_ts": THREAD_TS}

        await handle_message({**base, "user": "UALICE", "ts": "1.1", "text": "<@UBOT> again"}, slack_client, BOT)
        await handle_message({**base, "bot_id": "B1", "ts": "1.2", "text": "beep"}, slack_client, BOT)
        await handle_message({**base, "subtype": "channel_join", "ts": "1.3", "text": "joined"}, slack_client, BOT)

        assert not bot.background_tasks


class TestReactions:
    @pytest.mark.asyncio
    async def test_thumbs_up_recorded(self, bot: BotServices, slack_client: MagicMock):
        await _posted_answer(bot)
        await handle_reaction_added(_reaction("+1"), slack_client, BOT)

        summary = await bot.analytics.get_summary()
        assert summary["positive"] == 1
        assert summary["feedback_ratio"] == 1.0

    @pytest.mark.asyncio
    async def test_thumbs_down_evicts_cached_answer(self, bot: BotServices, slack_client: MagicMock):
        await _posted_answer(bot)
        await bot.cache.save("how do I get vpn access?", "File an IT ticket.", [])

        await handle_reaction_added(_reaction("-1"), slack_client, BOT)

        assert (await bot.analytics.get_summary())["negative"] == 1
        assert await bot.cache.find_match("how do I get vpn access?") is None

    @pytest.mark.asyncio
    async def test_thumbs_down_evicts_fuzzy_cache_entry(self, bot: BotServices, slack_client: MagicMock):
        await bot.cache.save("how do i get vpn access for my laptop", "File an IT ticket.", [])

        await handle_mention(_mention("<@UBOT> for my laptop how do i get vpn access"), slack_client, BOT)
        await _drain(bot)
        answer = await bot.analytics.get_answer(IT_HELP.channel_id, ANSWER_TS)
        assert answer.from_cache
        bot.llm_provider_factory.assert_not_called()

        await handle_reaction_added(_reaction("-1"), slack_client, BOT)

        assert await bot.cache.find_match("how do i get vpn access for my laptop") is None
        assert (await bot.cache.get_stats())["total_entries"] == 0

    @pytest.mark.asyncio
    async def test_package_saves_answer(self, bot: BotServices, slack_client: MagicMock):
        await _posted_answer(bot)
        await handle_reaction_added(_reaction("package"), slack_client, BOT)

        cached = await bot.cache.find_match("How do I get VPN access")
        assert cached.response_text == "File an IT ticket."
        assert cached.sources == [{"permalink": VPN_LINK}]
        assert slack_client.chat_postEphemeral.await_args.kwargs["thread_ts"] == THREAD_TS

    @pytest.mark.asyncio
    async def test_package_ignores_cached_answers(self, bot: BotServices, slack_client: MagicMock):
        await _posted_answer(bot, from_cache=True)
        await handle_reaction_added(_reaction("package"), slack_client, BOT)

        assert (await bot.cache.get_stats())["total_entries"] == 0
        slack_client.chat_postEphemeral.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_own_reactions_ignored(self, bot: BotServices, slack_client: MagicMock):
        await _posted_answer(bot)
        await handle_reaction_added(_reaction("+1", user="UBOT"), slack_client, BOT)
        assert (await bot.analytics.get_summary())["positive"] == 0

    @pytest.mark.asyncio
    async def test_reaction_removed_withdraws_vote(self, bot: BotServices, slack_client: MagicMock):
        await _posted_answer(bot)
        await handle_reaction_added(_reaction("+1"), slack_client, BOT)
        await handle_reaction_removed(_reaction("+1", event_type="reaction_removed"), slack_client, BOT)

        assert (await bot.analytics.get_summary())["positive"] == 0

    @pytest.mark.asyncio
    async def test_removing_stale_reaction_keeps_vote(self, bot: BotServices, slack_client: MagicMock):
        await _posted_answer(bot)
        await handle_reaction_added(_reaction("+1"), slack_client, BOT)
        await handle_reaction_added(_reaction("-1"), slack_client, BOT)
        await handle_reaction_removed(_reaction("+1", event_type="reaction_removed"), slack_client, BOT)

        summary = await bot.analytics.get_summary()
        assert (summary["positive"], summary["negative"]) == (0, 1)

    @pytest.mark.asyncio
    async def test_reactions_on_forum_messages_counted(self, bot: BotServices, slack_client: MagicMock):
        ts = "1748000300.000100"
        await handle_message({"type": "message", "channel": IT_HELP.channel_id, "user": "UBOB",
                              "ts": ts, "text": "Printer is jammed again"}, slack_client, BOT)
        event = {"type": "reaction_added", "user": "UCAROL", "reaction": "eyes",
                 "item": {"type": "message", "channel": IT_HELP.channel_id, "ts": ts}}
        await handle_reaction_added(event, slack_client, BOT)

        assert (await bot.store.get_message(IT_HELP.channel_id, ts)).reaction_count == 1


class TestAppHome:
    @pytest.mark.asyncio
    async def test_publishes_status(self, bot: BotServices, slack_client: MagicMock, monkeypatch):
        monkeypatch.setattr(app_module, "test_mcp_connectivity",
                            AsyncMock(return_value={"total_tools": 4, "tools_by_server": {"forum": 4}}))

        await handle_app_home({"user": "UALICE"}, slack_client)

        view = slack_client.views_publish.await_args.kwargs["view"]
        status = view["blocks"][-1]["text"]["text"]
        assert slack_client.views_publish.await_args.kwargs["user_id"] == "UALICE"
        assert "Connected to 4 tools" in status
        assert "0 messages indexed" in status
        assert "no feedback yet" in status
