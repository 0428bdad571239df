"""Tests for the Slack forum indexer."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from slack_sdk.errors import SlackApiError
from slack_sdk.http_retry.builtin_async_handlers import AsyncRateLimitErrorRetryHandler

from forum_qa_bot.indexer import ForumIndexer, is_indexable
from forum_qa_bot.message_store import ForumChannel, MessageStore

from .conftest import IT_HELP, ts_days_ago

ROOT_TS = ts_days_ago(3)
REPLY_TS = ts_days_ago(2.9)


def _client(**responses) -> MagicMock:
    client = MagicMock()
    client.retry_handlers = []
    client.users_info = AsyncMock(side_effect=lambda user: {
        "user": {"name": user.lower(), "profile": {"display_name": f"{user.lower()}-display"}}
    })
    for method, value in responses.items():
        if isinstance(value, (list, Exception)):
            mock = AsyncMock(side_effect=value)
        else:
            mock = AsyncMock(return_value=value)
        setattr(client, method, mock)
    return client


def _slack_error(code: str) -> SlackApiError:
    return SlackApiError(code, response={"ok": False, "error": code})


def _indexer(client, store, **kwargs) -> ForumIndexer:
    return ForumIndexer(client, store, page_size=2, page_delay=0, **kwargs)


class TestIsIndexable:
    @pytest.mark.parametrize("message, expected", [
        ({"ts": "1.0", "text": "hello", "user": "U1"}, True),
        ({"ts": "1.0", "text": "hello", "bot_id": "B1"}, False),
        ({"ts": "1.0", "text": "joined", "subtype": "channel_join"}, False),
        ({"ts": "1.0", "text": "   "}, False),
        ({"text": "no ts"}, False),
    ])
    def test_filters(self, message, expected):
        assert is_indexable(message) is expected


class TestSetup:
    @pytest.mark.asyncio
    async def test_installs_rate_limit_handler_once(self, store: MessageStore):
        client = _client()
        _indexer(client, store)
        _indexer(client, store)
        handlers = [h for h in client.retry_handlers if isinstance(h, AsyncRateLimitErrorRetryHandler)]
        assert len(handlers) == 1

    @pytest.mark.asyncio
    async def test_user_name_cached(self, store: MessageStore):
        client = _client()
        indexer = _indexer(client, store)
        assert await indexer.user_name("UBOB") == "ubob-display"
        assert await indexer.user_name("UBOB") == "ubob-display"
        assert await indexer.user_name(None) is None
        client.users_info.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_user_name_error(self, store: MessageStore):
        client = _client(users_info=_slack_error("user_not_found"))
        assert await _indexer(client, store).user_name("UGONE") is None


class TestDiscovery:
    @pytest.mark.asyncio
    async def test_only_forum_channels(self, store: MessageStore):
        client = _client(conversations_list=[
            {
                "channels": [
                    {"id": "CGEN", "name": "general", "is_member": True},
                    {"id": "CIT000001", "name": "forum-it-help", "is_member": True,
                     "topic": {"value": "IT questions"}},
                ],
                "response_metadata": {"next_cursor": "page2"},
            },
            {
                "channels": [{"id": "CDATA", "name": "forum-data", "is_member": False}],
                "response_metadata": {"next_cursor": ""},
            },
        ])
        found = await _indexer(client, store).discover_forum_channels()

        assert [c.name for c in found] == ["forum-it-help", "forum-data"]
        assert (await store.get_channel("CIT000001")).topic == "IT questions"
        assert await store.get_channel("CGEN") is None
        assert client.conversations_list.await_args_list[1].kwargs["cursor"] == "page2"

    @pytest.mark.asyncio
    async def test_auto_join(self, store: MessageStore):
        client = _client(
            conversations_list={"channels": [{"id": "CDATA", "name": "forum-data", "is_member": False}]},
            conversations_join={"ok": True},
        )
        found = await _indexer(client, store, auto_join=True).discover_forum_channels()
        assert found[0].is_member
        client.conversations_join.assert_awaited_once_with(channel="CDATA")

    @pytest.mark.asyncio
    async def test_keeps_index_position(self, store: MessageStore):
        await store.upsert_channel(IT_HELP)
        await store.mark_indexed(IT_HELP.channel_id, ROOT_TS)
        client = _client(conversations_list={"channels": [{"id": IT_HELP.channel_id, "name": IT_HELP.name}]})

        found = await _indexer(client, store).discover_forum_channels()

        assert found[0].last_indexed_ts == ROOT_TS
        assert (await store.get_channel(IT_HELP.channel_id)).last_indexed_ts == ROOT_TS


class TestBackfill:
    @pytest.mark.asyncio
    async def test_history_and_replies(self, store: MessageStore):
        await store.upsert_channel(IT_HELP)
        newest = ts_days_ago(1)
        client = _client(
            conversations_history=[
                {
                    "messages": [
                        {"ts": newest, "text": "bot says hi", "bot_id": "B1"},
                        {"ts": ROOT_TS, "thread_ts": ROOT_TS, "text": "VPN broken?", "user": "UALICE",
                         "reply_count": 1, "reactions": [{"name": "eyes", "count": 2}]},
                    ],
                    "response_metadata": {"next_cursor": "next"},
                },
                {"messages": [{"ts": ts_days_ago(4), "text": "Printer jam", "user": "UDAVE"}]},
            ],
            conversations_replies={"messages": [
                {"ts": ROOT_TS, "thread_ts": ROOT_TS, "text": "VPN broken?", "user": "UALICE"},
                {"ts": REPLY_TS, "thread_ts": ROOT_TS, "text": "Restart the client", "user": "UBOB"},
            ]},
        )
        channel = await store.get_channel(IT_HELP.channel_id)

        count = await _indexer(client, store).backfill_channel(channel)

        assert count == 3
        root = await store.get_message(IT_HELP.channel_id, ROOT_TS)
        assert root.reaction_count == 2
        assert root.user_name == "ualice-display"
        reply = await store.get_message(IT_HELP.channel_id, REPLY_TS)
        assert reply.thread_ts == ROOT_TS
        assert await store.get_message(IT_HELP.channel_id, newest) is None
        # Skipped bot messages still advance the index position
        assert (await store.get_channel(IT_HELP.channel_id)).last_indexed_ts == newest
        assert "oldest" not in client.conversations_history.await_args_list[0].kwargs

    @pytest.mark.asyncio
    async def test_incremental_uses_oldest(self, store: MessageStore):
        await store.upsert_channel(IT_HELP)
        await store.mark_indexed(IT_HELP.channel_id, ROOT_TS)
        client = _client(conversations_history={"messages": []})
        indexer = _indexer(client, store)
        channel = await store.get_channel(IT_HELP.channel_id)

        assert await indexer.backfill_channel(channel) == 0
        assert client.conversations_history.await_args.kwargs["oldest"] == ROOT_TS

        await indexer.backfill_channel(channel, full=True)
        assert "oldest" not in client.conversations_history.await_args.kwargs

    @pytest.mark.asyncio
    async def test_rejects_non_forum_channel(self, store: MessageStore):
        with pytest.raises(ValueError):
            await _indexer(_client(), store).backfill_channel(ForumChannel(channel_id="CGEN", name="general"))

    @pytest.mark.asyncio
    async def test_backfill_all(self, store: MessageStore):
        client = _client(
            conversations_list={"channels": [
                {"id": "CIT000001", "name": "forum-it-help", "is_member": True},
                {"id": "CENG00001", "name": "forum-engineering", "is_member": True},
                {"id": "CDATA", "name": "forum-data", "is_member": False},
            ]},
            conversations_history=[
                {"messages": [{"ts": ROOT_TS, "text": "hello", "user": "U1"}]},
                _slack_error("ratelimited"),
            ],
        )
        summary = await _indexer(client, store).backfill_all()
        assert summary == {"forum-it-help": 1, "forum-engineering": 0}


class TestLiveEvents:
    @pytest.mark.asyncio
    async def test_new_reply_bumps_root(self, populated_store: MessageStore):
        indexer = _indexer(_client(), populated_store)
        root_ts = ts_days_ago(5)

        changed = await indexer.index_event({
            "type": "message", "channel": IT_HELP.channel_id, "user": "UBOB",
            "ts": ts_days_ago(4.5), "thread_ts": root_ts, "text": "Try the tray on the left",
        })

        assert changed
        assert (await populated_store.get_message(IT_HELP.channel_id, root_ts)).reply_count == 1

    @pytest.mark.asyncio
    async def test_redelivered_reply_counted_once(self, populated_store: MessageStore):
        indexer = _indexer(_client(), populated_store)
        root_ts = ts_days_ago(5)
        event = {
            "type": "message", "channel": IT_HELP.channel_id, "user": "UBOB",
            "ts": ts_days_ago(4.5), "thread_ts": root_ts, "text": "Try the tray on the left",
        }

        await indexer.index_event(event)
        await indexer.index_event(dict(event))

        assert (await populated_store.get_message(IT_HELP.channel_id, root_ts)).reply_count == 1

    @pytest.mark.asyncio
    async def test_deleted_reply_decrements_root(self, populated_store: MessageStore):
        indexer = _indexer(_client(), populated_store)
        root_ts, reply_ts = ts_days_ago(5), ts_days_ago(4.5)
        await indexer.index_event({
            "type": "message", "channel": IT_HELP.channel_id, "user": "UBOB",
            "ts": reply_ts, "thread_ts": root_ts, "text": "Try the tray on the left",
        })

        assert await indexer.index_event({
            "type": "message", "subtype": "message_deleted", "channel": IT_HELP.channel_id, "deleted_ts": reply_ts,
        })
        assert (await populated_store.get_message(IT_HELP.channel_id, root_ts)).reply_count == 0
        assert not await indexer.index_event({
            "type": "message", "subtype": "message_deleted", "channel": IT_HELP.channel_id, "deleted_ts": reply_ts,
        })
        assert (await populated_store.get_message(IT_HELP.channel_id, root_ts)).reply_count == 0

    @pytest.mark.asyncio
    async def test_edit_and_delete(self, populated_store: MessageStore):
        indexer = _indexer(_client(), populated_store)
        root_ts = ts_days_ago(5)

        assert await indexer.index_event({
            "type": "message", "subtype": "message_changed", "channel": IT_HELP.channel_id,
            "message": {"ts": root_ts, "text": "Printer fixed now", "user": "UDAVE"},
        })
        assert (await populated_store.get_message(IT_HELP.channel_id, root_ts)).text == "Printer fixed now"

        assert await indexer.index_event({
            "type": "message", "subtype": "message_deleted", "channel": IT_HELP.channel_id, "deleted_ts": root_ts,
        })
        assert await populated_store.get_message(IT_HELP.channel_id, root_ts) is None

    @pytest.mark.asyncio
    async def test_edit_of_unknown_message_is_stored(self, populated_store: MessageStore):
        indexer = _indexer(_client(), populated_store)
        ts = ts_days_ago(0.5)
        assert await indexer.index_event({
            "type": "message", "subtype": "message_changed", "channel": IT_HELP.channel_id,
            "message": {"ts": ts, "text": "Late edit", "user": "UBOB", "edited": {"ts": ts}},
        })
        assert (await populated_store.get_message(IT_HELP.channel_id, ts)).edited

    @pytest.mark.asyncio
    async def test_reactions(self, populated_store: MessageStore):
        indexer = _indexer(_client(), populated_store)
        reply_ts = ts_days_ago(9.9)
        item = {"type": "message", "channel": IT_HELP.channel_id, "ts": reply_ts}

        await indexer.index_event({"type": "reaction_added", "reaction": "tada", "item": item})
        await indexer.index_event({"type": "reaction_added", "reaction": "+1", "item": item})
        await indexer.index_event({"type": "reaction_removed", "reaction": "tada", "item": item})

        assert (await populated_store.get_message(IT_HELP.channel_id, reply_ts)).reaction_count == 5
        assert not await indexer.index_event({"type": "reaction_added", "item": {"type": "file"}})

    @pytest.mark.asyncio
    async def test_non_forum_channel_ignored_and_remembered(self, store: MessageStore):
        client = _client(conversations_info={"channel": {"id": "CGEN", "name": "general"}})
        indexer = _indexer(client, store)
        event = {"type": "message", "channel": "CGEN", "user": "U1", "ts": ROOT_TS, "text": "secret"}

        assert not await indexer.index_event(event)
        assert not await indexer.index_event(event)
        client.conversations_info.assert_awaited_once()
        assert (await store.get_stats())["total_messages"] == 0

    @pytest.mark.asyncio
    async def test_unknown_forum_channel_discovered(self, store: MessageStore):
        client = _client(conversations_info={"channel": {
            "id": "CDATA", "name": "forum-data", "is_member": True, "purpose": {"value": "warehouse"},
        }})
        indexer = _indexer(client, store)

        assert await indexer.index_event({
            "type": "message", "channel": "CDATA", "user": "U1", "ts": ROOT_TS, "text": "airflow dag stuck",
        })
        channel = await store.get_channel("CDATA")
        assert channel.name == "forum-data"
        assert channel.purpose == "warehouse"

    @pytest.mark.asyncio
    async def test_channel_lookup_error(self, store: MessageStore):
        client = _client(conversations_info=_slack_error("channel_not_found"))
        assert not await _indexer(client, store).index_event({
            "type": "message", "channel": "CX", "user": "U1", "ts": ROOT_TS, "text": "hi",
        })

    @pytest.mark.asyncio
    async def test_bot_messages_skipped(self, populated_store: MessageStore):
        indexer = _indexer(_client(), populated_store)
        assert not await indexer.index_event({
            "type": "message", "channel": IT_HELP.channel_id, "bot_id": "B1", "ts": ROOT_TS, "text": "answer",
        })
