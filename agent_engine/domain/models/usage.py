from pydantic import BaseModel, Field
from datetime import datetime

from agent_engine.domain.models.agent_state import utcnow


class UsageRecord(BaseModel):
    """Per-execution usage totals"""
    execution_id: str
    agent_id: str
    quota_key: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    model_calls: int = 0
    tool_calls: int = 0
    estimated_cost: float = 0.0
    overage_tokens: int = 0
    overage_cost: float = 0.0
    billable_overage: bool = False
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens
