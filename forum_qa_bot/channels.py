"""
Forum Channel Helpers

The bot only reads channels whose name starts with the forum prefix
("forum-" by default). Everything that touches Slack history goes through
is_forum_channel() first.

Also holds Slack timestamp helpers and local permalink construction.
"""

import os
from datetime import datetime, timezone
from typing import Optional

FORUM_CHANNEL_PREFIX = os.getenv("FORUM_CHANNEL_PREFIX", "forum-")
SLACK_WORKSPACE_URL = os.getenv("SLACK_WORKSPACE_URL", "https://slack.com")


def normalize_channel_name(name: Optional[str]) -> str:
    """Lowercase a channel name and drop a leading '#'."""
    if not name:
        return ""
    return name.strip().lstrip("#").lower()


def is_forum_channel(name: Optional[str], prefix: Optional[str] = None) -> bool:
    """
    Check whether a channel name is inside the forum privacy boundary.

    Args:
        name: Channel name, with or without a leading '#'
        prefix: Override for FORUM_CHANNEL_PREFIX

    Returns:
        True for forum channels only
    """
    normalized = normalize_channel_name(name)
    prefix = (prefix or FORUM_CHANNEL_PREFIX).lower()
    return bool(normalized) and normalized.startswith(prefix) and normalized != prefix


def ts_to_float(ts: Optional[str]) -> float:
    """Convert a Slack ts ("1700000000.000100") to a float."""
    if not ts:
        return 0.0
    try:
        return float(ts)
    except (TypeError, ValueError):
        raise ValueError(f"Invalid Slack timestamp: {ts!r}") from None


def ts_to_datetime(ts: Optional[str]) -> datetime:
    """Convert a Slack ts to an aware UTC datetime."""
    return datetime.fromtimestamp(ts_to_float(ts), tz=timezone.utc)


def build_permalink(
    channel_id: str,
    ts: str,
    thread_ts: Optional[str] = None,
    workspace_url: Optional[str] = None,
) -> str:
    """
    Build a Slack permalink without calling chat.getPermalink.

    Replies carry thread_ts/cid query parameters so Slack opens the thread.

    Example:
        build_permalink("C123", "1700000000.000100")
        -> "https://slack.com/archives/C123/p1700000000000100"
    """
    base = (workspace_url or SLACK_WORKSPACE_URL).rstrip("/")
    link = f"{base}/archives/{channel_id}/p{ts.replace('.', '')}"
    if thread_ts and thread_ts != ts:
        link += f"?thread_ts={thread_ts}&cid={channel_id}"
    return link
