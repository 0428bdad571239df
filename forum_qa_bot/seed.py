#!/usr/bin/env python3
"""
Demo Forum Data Generator

Fills the message store with realistic forum threads so the bot can be
tried without a Slack backfill.

Usage:
    python -m forum_qa_bot.seed
    python -m forum_qa_bot.seed --threads 40 --seed 7
"""

import os
import random
import asyncio
import logging
import argparse
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from dotenv import load_dotenv
from faker import Faker

from .channels import FORUM_CHANNEL_PREFIX
from .database import Database
from .message_store import MessageStore, ForumChannel, IndexedMessage

logger = logging.getLogger(__name__)

# Per-channel question and answer material: (question, [answers])
TOPICS: Dict[str, List[Tuple[str, List[str]]]] = {
    "engineering": [
        (
            "How do I rotate the staging database credentials?",
            [
                "Run the rotate-creds job in the deploy pipeline, it updates the vault entry and restarts the pods.",
                "After rotating, remember to bump the secret version in the helm values.",
            ],
        ),
        (
            "Is there a recommended way to run the integration tests locally?",
            [
                "Use docker compose up test-deps and then make integration, it spins up postgres and redis.",
                "The integration suite needs the TEST_DATABASE_URL env var pointing at the compose postgres.",
            ],
        ),
        (
            "Our kubernetes deploy is stuck on CrashLoopBackOff after the upgrade",
            [
                "Check the readiness probe, the new image listens on 8080 instead of 8000.",
                "kubectl describe pod shows the probe failing, bumping initialDelaySeconds fixed it for us.",
            ],
        ),
    ],
    "it-help": [
        (
            "How do I get VPN access on a new laptop?",
            [
                "File an IT ticket with the laptop serial number, then install the VPN client from the self-service portal.",
                "VPN access needs manager approval first, the ticket template has a field for it.",
            ],
        ),
        (
            "Printer on floor 3 keeps jamming, who handles that?",
            [
                "Facilities owns the printers, ping them in the printer queue and they usually fix it same day.",
            ],
        ),
        (
            "What is the process for requesting a second monitor?",
            [
                "Request it through the hardware catalogue, standard monitors ship within a week.",
            ],
        ),
    ],
    "data": [
        (
            "Which table has the daily revenue numbers for the finance dashboard?",
            [
                "Use analytics.daily_revenue, it is rebuilt every night by the dbt job.",
                "Avoid the raw orders table for revenue, refunds are only netted out in daily_revenue.",
            ],
        ),
        (
            "The airflow DAG for customer exports failed last night",
            [
                "The warehouse credentials expired, I restarted the DAG after rotating them.",
                "We added an alert for that DAG so failures page the data on-call now.",
            ],
        ),
    ],
}

DEFAULT_CHANNELS = [f"{FORUM_CHANNEL_PREFIX}{name}" for name in TOPICS]


def _channel_topics(channel_name: str) -> List[Tuple[str, List[str]]]:
    suffix = channel_name[len(FORUM_CHANNEL_PREFIX):] if channel_name.startswith(FORUM_CHANNEL_PREFIX) else channel_name
    if suffix in TOPICS:
        return TOPICS[suffix]
    return [item for items in TOPICS.values() for item in items]


def _format_ts(moment: datetime, offset: int) -> str:
    """Slack-style ts, unique per offset."""
    seconds = int(moment.timestamp())
    return f"{seconds}.{offset:06d}"


def generate_forum_messages(
    channels: Optional[List[str]] = None,
    threads_per_channel: int = 10,
    seed: int = 42,
    now: Optional[datetime] = None,
    users: int = 12,
) -> Tuple[List[ForumChannel], List[IndexedMessage]]:
    """
    Build forum channels and threads.

    The same seed (and now) always produces the same data.

    Returns:
        (channels, messages)
    """
    fake = Faker()
    fake.seed_instance(seed)
    rng = random.Random(seed)
    now = now or datetime.utcnow()

    people = [
        (f"U{fake.unique.bothify(text='########').upper()}", fake.user_name())
        for _ in range(users)
    ]

    forum_channels: List[ForumChannel] = []
    messages: List[IndexedMessage] = []
    offset = 0

    for channel_name in channels or DEFAULT_CHANNELS:
        channel_id = f"C{fake.unique.bothify(text='#?#?#?#?').upper()}"
        forum_channels.append(ForumChannel(
            channel_id=channel_id,
            name=channel_name,
            topic=fake.catch_phrase(),
            purpose=f"Questions and answers about {channel_name[len(FORUM_CHANNEL_PREFIX):] or channel_name}",
            is_member=True,
        ))

        topics = _channel_topics(channel_name)
        for _ in range(threads_per_channel):
            question, answers = rng.choice(topics)
            asker_id, asker_name = rng.choice(people)
            started = now - timedelta(days=rng.randint(0, 400), minutes=rng.randint(0, 1439))

            offset += 1
            root_ts = _format_ts(started, offset)
            replies: List[IndexedMessage] = []
            reply_time = started

            for answer in answers:
                reply_time += timedelta(minutes=rng.randint(2, 240))
                user_id, user_name = rng.choice([p for p in people if p[0] != asker_id])
                offset += 1
                replies.append(IndexedMessage(
                    channel_id=channel_id,
                    channel_name=channel_name,
                    ts=_format_ts(reply_time, offset),
                    thread_ts=root_ts,
                    text=answer,
                    user_id=user_id,
                    user_name=user_name,
                    reaction_count=rng.randint(0, 6),
                ))

            if rng.random() < 0.3:
                reply_time += timedelta(minutes=rng.randint(1, 60))
                offset += 1
                replies.append(IndexedMessage(
                    channel_id=channel_id,
                    channel_name=channel_name,
                    ts=_format_ts(reply_time, offset),
                    thread_ts=root_ts,
                    text=f"Thanks, that worked! {fake.sentence(nb_words=6)}",
                    user_id=asker_id,
                    user_name=asker_name,
                ))

            messages.append(IndexedMessage(
                channel_id=channel_id,
                channel_name=channel_name,
                ts=root_ts,
                text=f"{question} {fake.sentence(nb_words=8)}",
                user_id=asker_id,
                user_name=asker_name,
                reply_count=len(replies),
                reaction_count=rng.randint(0, 3),
            ))
            messages.extend(replies)

    return forum_channels, messages


async def seed_store(
    store: MessageStore,
    channels: Optional[List[str]] = None,
    threads_per_channel: int = 10,
    seed: int = 42,
    now: Optional[datetime] = None,
) -> int:
    """
    Write generated channels and messages to the store.

    Returns:
        Number of messages written
    """
    forum_channels, messages = generate_forum_messages(
        channels=channels,
        threads_per_channel=threads_per_channel,
        seed=seed,
        now=now,
    )
    for channel in forum_channels:
        await store.upsert_channel(channel)
    written = await store.upsert_messages(messages)
    for channel in forum_channels:
        latest = max(
            (m.ts for m in messages if m.channel_id == channel.channel_id),
            key=float,
            default=None,
        )
        await store.mark_indexed(channel.channel_id, latest)

    logger.info(f"Seeded {written} messages across {len(forum_channels)} channels")
    return written


async def _run(args: argparse.Namespace):
    db = Database(args.db)
    await db.initialize()
    try:
        store = MessageStore(db)
        await store.initialize()
        written = await seed_store(
            store,
            channels=args.channel or None,
            threads_per_channel=args.threads,
            seed=args.seed,
        )
        print(f"✅ Seeded {written} messages into {db.db_path}")
    finally:
        await db.close()


def main(argv: Optional[List[str]] = None):
    load_dotenv()
    logging.basicConfig(
        level=getattr(logging, os.getenv("LOG_LEVEL", "INFO")),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    parser = argparse.ArgumentParser(description="Seed the forum index with demo threads")
    parser.add_argument("--channel", action="append", help="Forum channel name (repeatable)")
    parser.add_argument("--threads", type=int, default=10, help="Threads per channel")
    parser.add_argument("--seed", type=int, default=42, help="Random seed")
    parser.add_argument("--db", help="Database path (defaults to FORUM_BOT_DB)")
    asyncio.run(_run(parser.parse_args(argv)))


if __name__ == "__main__":
    main()
