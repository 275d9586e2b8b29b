from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from agent_engine.domain.models.agent_state import AgentConfig, Execution, Step


class ExecutionCreate(BaseModel):
    agent_id: str
    input: Dict[str, Any] = Field(default_factory=dict)


class ExecutionAccepted(BaseModel):
    execution_id: str
    status: str


class ExecutionView(Execution):
    """Execution as served over HTTP, without the config snapshot"""

    agent_config: Optional[AgentConfig] = Field(None, exclude=True)

    @classmethod
    def of(cls, execution: Execution) -> "ExecutionView":
        return cls.model_validate(execution.model_dump(exclude={"agent_config"}))


class ExecutionDetail(BaseModel):
    execution: ExecutionView
    steps: List[Step]


class ApproveRequest(BaseModel):
    notes: Optional[str] = None


class DenyRequest(BaseModel):
    reason: str = Field(min_length=1)


class ApprovalView(BaseModel):
    id: str
    execution_id: str
    agent_id: str
    tool: str
    arguments: Dict[str, Any]
    risk_level: str
    reasons: List[str]
    resolution: str
    requested_at: datetime
    expires_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    notes: Optional[str] = None


class EventRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    event_type: str = Field(alias="eventType")
    payload: Dict[str, Any] = Field(default_factory=dict)
    agent_bindings: List[str] = Field(default_factory=list, alias="agentBindings")


class TriggeredExecutions(BaseModel):
    execution_ids: List[str]
