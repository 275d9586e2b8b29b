from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime
from enum import Enum

from agent_engine.domain.models.agent_state import (
    ModelResponse,
    RiskLevel,
    ToolCall,
    new_id,
    utcnow,
)


class ApprovalResolution(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    EXPIRED = "expired"


class RiskAssessment(BaseModel):
    model_config = ConfigDict(frozen=True)

    level: RiskLevel
    reasons: List[str] = Field(default_factory=list)


class PendingApproval(BaseModel):
    """A gated tool call waiting for a human decision"""
    id: str = Field(default_factory=new_id)
    execution_id: str
    agent_id: str
    tool_call: ToolCall
    response: ModelResponse
    step_index: int
    response_cost: float = 0.0
    risk: RiskAssessment
    requested_at: datetime = Field(default_factory=utcnow)
    expires_at: Optional[datetime] = None
    resolution: ApprovalResolution = ApprovalResolution.PENDING
    resolved_by: Optional[str] = None
    notes: Optional[str] = None
    resolved_at: Optional[datetime] = None
    consumed: bool = False

    @property
    def is_pending(self) -> bool:
        return self.resolution == ApprovalResolution.PENDING

    def is_overdue(self, now: Optional[datetime] = None) -> bool:
        return self.is_pending and self.expires_at is not None and self.expires_at <= (now or utcnow())
