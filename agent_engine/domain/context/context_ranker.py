from typing import List, Optional, Protocol, Tuple
from datetime import datetime
import re

from agent_engine.domain.models.agent_state import utcnow
from agent_engine.domain.models.memory import MemoryEntry


class MemoryRanker(Protocol):
    def rank(self, query: str, entries: List[MemoryEntry], now: Optional[datetime] = None) -> List[Tuple[MemoryEntry, float]]: ...


def calculate_relevance(query: str, content: str) -> float:
    """Calculate relevance score between query and content"""

    query_lower = query.lower()
    content_lower = content.lower()

    query_words = set(re.findall(r'\w+', query_lower))
    content_words = set(re.findall(r'\w+', content_lower))

    if not query_words:
        return 0.0

    overlap = len(query_words.intersection(content_words))
    score = overlap / len(query_words)

    # Boost score if query appears as substring
    if query_lower in content_lower:
        score += 0.3

    return min(score, 1.0)


class RecencyWeightedRanker:
    """Keyword overlap weighted by age. Ties go to the most recent entry."""

    def __init__(self, relevance_weight: float = 0.7, half_life_days: float = 30.0):
        self.relevance_weight = relevance_weight
        self.half_life_days = half_life_days

    def recency(self, entry: MemoryEntry, now: datetime) -> float:
        age_days = max((now - entry.created_at).total_seconds(), 0.0) / 86400
        return 0.5 ** (age_days / self.half_life_days)

    def rank(self, query: str, entries: List[MemoryEntry], now: Optional[datetime] = None) -> List[Tuple[MemoryEntry, float]]:
        now = now or utcnow()

        scored = []
        for entry in entries:
            relevance = calculate_relevance(query, entry.content)
            score = self.relevance_weight * relevance + (1 - self.relevance_weight) * self.recency(entry, now)
            scored.append((entry, round(score, 6)))

        # Stable sort: newest first, then by score
        scored.sort(key=lambda pair: pair[0].created_at, reverse=True)
        scored.sort(key=lambda pair: pair[1], reverse=True)
        return scored
