from typing import Dict, Any, List, Optional
from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime
from enum import Enum

from langchain_core.messages import BaseMessage

from agent_engine.domain.models.agent_state import TokenUsage, new_id, utcnow


class MemoryTier(str, Enum):
    SHORT_TERM = "short_term"
    LONG_TERM = "long_term"
    EPISODIC = "episodic"


class MemoryKind(str, Enum):
    FACT = "fact"
    PREFERENCE = "preference"
    PATTERN = "pattern"
    RELATIONSHIP = "relationship"
    OUTCOME = "outcome"
    STEP = "step"
    EPISODE = "episode"


class MemoryEntry(BaseModel):
    """A single memory record in one of the three tiers"""
    id: str = Field(default_factory=new_id)
    agent_id: str
    tier: MemoryTier
    kind: MemoryKind = MemoryKind.FACT
    content: str
    score: float = Field(default=0.5, description="Importance or relevance, 0..1")
    source_execution_id: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: Optional[datetime] = None
    dedupe_key: Optional[str] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at is not None and self.expires_at <= (now or utcnow())


class ContextWindow(BaseModel):
    """Assembled prompt context handed to the model gateway"""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    messages: List[BaseMessage] = Field(default_factory=list)
    estimated_tokens: int = 0
    long_term_ids: List[str] = Field(default_factory=list)
    episodic_ids: List[str] = Field(default_factory=list)
    included_steps: List[int] = Field(default_factory=list)
    digested_steps: List[int] = Field(default_factory=list)
    summary_used: bool = False
    summary_usage: Optional[TokenUsage] = None
    summary_cost: float = 0.0
