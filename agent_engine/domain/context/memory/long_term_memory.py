from typing import List, Optional, Tuple
from datetime import datetime, timedelta
import hashlib

import structlog

from agent_engine.domain.context.context_ranker import MemoryRanker, RecencyWeightedRanker
from agent_engine.domain.models.agent_state import utcnow
from agent_engine.domain.models.memory import MemoryEntry, MemoryKind, MemoryTier
from agent_engine.infrastructure.persistence.store import EngineStore

logger = structlog.get_logger(__name__)


def content_key(agent_id: str, kind: MemoryKind, content: str) -> str:
    normalized = " ".join(content.lower().split())
    digest = hashlib.sha256(normalized.encode("utf-8")).hexdigest()[:32]
    return f"{kind.value}:{agent_id}:{digest}"


class LongTermMemoryStore:
    """Agent-scoped facts, preferences and outcomes that outlive an execution"""

    def __init__(self, store: EngineStore, ranker: Optional[MemoryRanker] = None):
        self.store = store
        self.ranker = ranker or RecencyWeightedRanker()

    async def add(
        self,
        agent_id: str,
        content: str,
        kind: MemoryKind = MemoryKind.FACT,
        importance: int = 5,
        tags: Optional[List[str]] = None,
        source_execution_id: Optional[str] = None,
        retention_days: Optional[int] = None,
        dedupe_key: Optional[str] = None,
    ) -> Tuple[MemoryEntry, bool]:
        """Append a memory; identical content for the same agent is stored once"""

        expires_at = None
        if retention_days is not None:
            expires_at = utcnow() + timedelta(days=retention_days)

        entry, created = await self.store.append_memory(
            MemoryEntry(
                agent_id=agent_id,
                tier=MemoryTier.LONG_TERM,
                kind=kind,
                content=content,
                score=min(max(importance, 1), 10) / 10,
                source_execution_id=source_execution_id,
                tags=tags or [],
                expires_at=expires_at,
                dedupe_key=dedupe_key or content_key(agent_id, kind, content),
            )
        )

        if created:
            logger.info("Long-term memory stored", agent_id=agent_id, memory_id=entry.id, kind=kind.value)
        return entry, created

    async def search(
        self,
        agent_id: str,
        query: str,
        limit: int,
        now: Optional[datetime] = None,
    ) -> List[Tuple[MemoryEntry, float]]:
        """Search for relevant, non-expired memories"""

        now = now or utcnow()
        entries = await self.store.list_memory(agent_id, MemoryTier.LONG_TERM)
        live = [entry for entry in entries if not entry.is_expired(now)]
        return self.ranker.rank(query, live, now)[:limit]

    async def prune_expired(self, agent_id: str, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        entries = await self.store.list_memory(agent_id, MemoryTier.LONG_TERM)
        expired = [entry.id for entry in entries if entry.is_expired(now)]
        if not expired:
            return 0

        removed = await self.store.delete_memory(expired)
        logger.info("Pruned expired memories", agent_id=agent_id, removed=removed)
        return removed


class EpisodicMemoryStore:
    """One compact summary per finished execution"""

    def __init__(self, store: EngineStore):
        self.store = store

    async def record_episode(
        self,
        agent_id: str,
        execution_id: str,
        content: str,
        outcome: str,
    ) -> Tuple[MemoryEntry, bool]:
        return await self.store.append_memory(
            MemoryEntry(
                agent_id=agent_id,
                tier=MemoryTier.EPISODIC,
                kind=MemoryKind.EPISODE,
                content=content,
                source_execution_id=execution_id,
                tags=[outcome],
                metadata={"outcome": outcome},
                dedupe_key=f"episode:{execution_id}",
            )
        )

    async def recent(self, agent_id: str, limit: int, exclude_execution: Optional[str] = None) -> List[MemoryEntry]:
        entries = await self.store.list_memory(agent_id, MemoryTier.EPISODIC)
        entries = [entry for entry in entries if entry.source_execution_id != exclude_execution]
        entries.sort(key=lambda e: e.created_at, reverse=True)
        return entries[:limit]
