"""
Expert Discovery Engine

Finds the people who answer questions about a topic in forum channels.

Scoring:
- Each matching message credits its author with its search relevance,
  scaled by the author's role in the thread:
    answering someone else's thread   1.0
    replying in their own thread      0.7
    starting the thread (asking)      0.4
- Reactions on the message add 0.5 * log1p(reactions)
- The credit decays with age (half-life, default 90 days)
"""

import math
import time
import logging
from datetime import datetime
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any, Iterable

from .channels import ts_to_float
from .message_store import IndexedMessage, MessageStore, SEARCH_MAX_LIMIT, validate_limit

logger = logging.getLogger(__name__)

ANSWER_FACTOR = 1.0
OWN_THREAD_FACTOR = 0.7
ASKER_FACTOR = 0.4
MAX_EVIDENCE = 3


@dataclass
class ExpertScore:
    """Aggregated expertise of one user for a topic."""
    user_id: str
    user_name: str
    score: float = 0.0
    message_count: int = 0
    answer_count: int = 0
    channels: List[str] = field(default_factory=list)
    evidence: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "author": self.user_name,
            "mention": f"<@{self.user_id}>",
            "score": self.score,
            "message_count": self.message_count,
            "answer_count": self.answer_count,
            "channels": self.channels,
            "evidence": self.evidence,
        }


class ExpertFinder:
    """
    Ranks users by topic expertise.

    Usage:
        finder = ExpertFinder(store)
        experts = await finder.find_experts("kubernetes ingress", limit=3)
    """

    def __init__(
        self,
        store: MessageStore,
        half_life_days: float = 90.0,
        candidate_limit: int = 200,
    ):
        self.store = store
        self.half_life_days = half_life_days
        self.candidate_limit = candidate_limit

    def _role_factor(self, message: IndexedMessage, thread_owners: Dict[tuple, Optional[str]]) -> float:
        if message.is_thread_root:
            return ASKER_FACTOR
        owner = thread_owners.get((message.channel_id, message.thread_ts))
        if owner and owner == message.user_id:
            return OWN_THREAD_FACTOR
        return ANSWER_FACTOR

    def _decay(self, message: IndexedMessage, now_ts: float) -> float:
        age_days = max(0.0, (now_ts - ts_to_float(message.ts)) / 86400.0)
        return 0.5 ** (age_days / self.half_life_days)

    async def _thread_owners(self, messages: Iterable[IndexedMessage]) -> Dict[tuple, Optional[str]]:
        """Map (channel_id, thread_ts) -> user_id of the thread root."""
        owners: Dict[tuple, Optional[str]] = {}
        for m in messages:
            key = (m.channel_id, m.thread_ts)
            if key in owners:
                continue
            if m.is_thread_root:
                owners[key] = m.user_id
                continue
            root = await self.store.get_message(m.channel_id, m.thread_ts)
            owners[key] = root.user_id if root else None
        return owners

    async def find_experts(
        self,
        topic: str,
        channel: Optional[str] = None,
        limit: int = 5,
        exclude_users: Iterable[str] = (),
        now: Optional[datetime] = None,
    ) -> List[ExpertScore]:
        """
        Find the top experts for a topic.

        Args:
            topic: Free-text topic
            channel: Optional channel ID or name
            limit: Max experts (1..SEARCH_MAX_LIMIT)
            exclude_users: User IDs to leave out (e.g. the asker)
            now: Reference time for decay

        Returns:
            ExpertScores, best first
        """
        validate_limit(limit)
        hits = await self.store.search(
            topic,
            channel=channel,
            limit=SEARCH_MAX_LIMIT,
            collapse_threads=False,
            now=now,
        )
        # search() caps at SEARCH_MAX_LIMIT; widen when the topic is busy
        if len(hits) == SEARCH_MAX_LIMIT and self.candidate_limit > SEARCH_MAX_LIMIT:
            hits = await self._wide_search(topic, channel, now)

        excluded = set(exclude_users)
        now_ts = now.timestamp() if now else time.time()
        owners = await self._thread_owners(h.message for h in hits)

        experts: Dict[str, ExpertScore] = {}
        evidence: Dict[str, List[tuple]] = {}

        for hit in hits:
            m = hit.message
            if not m.user_id or m.user_id in excluded:
                continue

            factor = self._role_factor(m, owners)
            credit = hit.score * factor + 0.5 * math.log1p(m.reaction_count)
            credit *= self._decay(m, now_ts)

            expert = experts.get(m.user_id)
            if expert is None:
                expert = ExpertScore(user_id=m.user_id, user_name=m.author)
                experts[m.user_id] = expert
                evidence[m.user_id] = []

            expert.score += credit
            expert.message_count += 1
            if factor == ANSWER_FACTOR:
                expert.answer_count += 1
            channel_name = f"#{m.channel_name}"
            if channel_name not in expert.channels:
                expert.channels.append(channel_name)
            evidence[m.user_id].append((credit, m.permalink))

        for user_id, expert in experts.items():
            expert.score = round(expert.score, 3)
            ranked = sorted(evidence[user_id], key=lambda e: -e[0])
            expert.evidence = [link for _, link in ranked[:MAX_EVIDENCE]]

        result = sorted(experts.values(), key=lambda e: (-e.score, e.user_id))
        logger.info(f"Expert search '{topic[:50]}': {len(result)} candidates from {len(hits)} messages")
        return result[:limit]

    async def _wide_search(self, topic: str, channel: Optional[str], now: Optional[datetime]):
        """Collect hits beyond the per-call search cap, one channel at a time."""
        if channel:
            return await self.store.search(
                topic, channel=channel, limit=SEARCH_MAX_LIMIT, collapse_threads=False, now=now
            )
        hits = []
        for forum in await self.store.list_channels():
            hits.extend(await self.store.search(
                topic, channel=forum.channel_id, limit=SEARCH_MAX_LIMIT,
                collapse_threads=False, now=now,
            ))
            if len(hits) >= self.candidate_limit:
                break
        hits.sort(key=lambda h: -h.score)
        return hits[:self.candidate_limit]

    async def engagement_score(self, user_id: str, now: Optional[datetime] = None) -> float:
        """
        Overall contribution of a user, independent of topic.

        Each message counts 1.0 before role, reaction and decay adjustments.
        """
        messages = await self.store.messages_by_user(user_id)
        if not messages:
            return 0.0
        now_ts = now.timestamp() if now else time.time()
        owners = await self._thread_owners(messages)

        total = 0.0
        for m in messages:
            credit = self._role_factor(m, owners) + 0.5 * math.log1p(m.reaction_count)
            total += credit * self._decay(m, now_ts)
        return round(total, 3)
