from typing import Dict, Any, List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator
from datetime import datetime, timezone
from enum import Enum
import json
import uuid

from agent_engine.domain.errors import AgentEngineError, InvalidTransitionError
from agent_engine.infrastructure.config.settings import get_settings


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class RiskLevel(str, Enum):
    """Ordered risk levels for tool actions"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _RISK_ORDER[self]

    def at_least(self, other: "RiskLevel") -> bool:
        return self.rank >= other.rank

    @classmethod
    def highest(cls, *levels: "RiskLevel") -> "RiskLevel":
        return max(levels, key=lambda level: level.rank)


_RISK_ORDER = {RiskLevel.LOW: 0, RiskLevel.MEDIUM: 1, RiskLevel.HIGH: 2, RiskLevel.CRITICAL: 3}


class ExecutionStatus(str, Enum):
    """Execution lifecycle status"""
    QUEUED = "queued"
    RUNNING = "running"
    AWAITING_APPROVAL = "awaiting_approval"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED}

ALLOWED_TRANSITIONS = {
    ExecutionStatus.QUEUED: {ExecutionStatus.RUNNING, ExecutionStatus.CANCELLED},
    ExecutionStatus.RUNNING: {
        ExecutionStatus.AWAITING_APPROVAL,
        ExecutionStatus.COMPLETED,
        ExecutionStatus.FAILED,
        ExecutionStatus.CANCELLED,
    },
    ExecutionStatus.AWAITING_APPROVAL: {ExecutionStatus.RUNNING, ExecutionStatus.CANCELLED},
}


class FailureReason(str, Enum):
    STEP_BUDGET_EXCEEDED = "step_budget_exceeded"
    TIMEOUT = "timeout"
    QUOTA_EXCEEDED = "quota_exceeded"
    MODEL_ERROR = "model_error"
    MODEL_UNAVAILABLE = "model_unavailable"
    PERSISTENCE_ERROR = "persistence_error"
    INTERNAL_ERROR = "internal_error"


class TriggerType(str, Enum):
    EVENT = "event"
    SCHEDULE = "schedule"
    MANUAL = "manual"
    WEBHOOK = "webhook"


class ModelSettings(BaseModel):
    """Model choice and sampling parameters for an agent"""
    model_config = ConfigDict(frozen=True, protected_namespaces=())

    provider: str = "openai"
    model: str = "gpt-4o"
    temperature: float = 0.7
    max_tokens: int = 4096
    context_window: int = 128_000


class MemoryPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    short_term_enabled: bool = True
    long_term_enabled: bool = True
    episodic_enabled: bool = True
    short_term_token_budget: int = Field(default_factory=lambda: get_settings().short_term_token_budget)
    long_term_limit: int = Field(default_factory=lambda: get_settings().long_term_limit)
    episodic_limit: int = Field(default_factory=lambda: get_settings().episodic_limit)
    promote_facts: bool = False
    long_term_retention_days: Optional[int] = None


class RiskPolicy(BaseModel):
    """Approval thresholds. A threshold of None disables gating at that level."""
    model_config = ConfigDict(frozen=True)

    default_threshold: Optional[RiskLevel] = RiskLevel.HIGH
    tool_thresholds: Dict[str, Optional[RiskLevel]] = Field(default_factory=dict)
    category_thresholds: Dict[str, Optional[RiskLevel]] = Field(default_factory=dict)
    approval_ttl_seconds: Optional[float] = None

    def threshold_for(self, tool_name: str, category: Optional[str]) -> Optional[RiskLevel]:
        if tool_name in self.tool_thresholds:
            return self.tool_thresholds[tool_name]
        if category is not None and category in self.category_thresholds:
            return self.category_thresholds[category]
        return self.default_threshold


# Operators accepted in event filters, as {"$op": value}
FILTER_OPERATORS = frozenset({"$eq", "$ne", "$gt", "$gte", "$lt", "$lte", "$contains", "$in", "$nin", "$exists"})


class TriggerBinding(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: TriggerType
    event_pattern: Optional[str] = None
    filters: Dict[str, Any] = Field(default_factory=dict)
    schedule: Optional[str] = None
    webhook_secret: Optional[str] = None
    enabled: bool = True

    @field_validator("filters")
    @classmethod
    def check_filter_operators(cls, filters: Dict[str, Any]) -> Dict[str, Any]:
        for key, expected in filters.items():
            if isinstance(expected, dict) and len(expected) == 1:
                op = next(iter(expected))
                if op.startswith("$") and op not in FILTER_OPERATORS:
                    raise ValueError(f"Unsupported filter operator {op} on {key}")
        return filters


class AgentConfig(BaseModel):
    """Immutable agent configuration used for the lifetime of an execution"""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    name: str
    account_id: Optional[str] = Field(None, description="Quota scope; defaults to the agent id")
    system_instructions: str = ""
    goals: List[str] = Field(default_factory=list)
    constraints: List[str] = Field(default_factory=list)
    model: ModelSettings = Field(default_factory=ModelSettings)
    allowed_tools: List[str] = Field(default_factory=list)
    denied_tools: List[str] = Field(default_factory=list)
    memory_policy: MemoryPolicy = Field(default_factory=MemoryPolicy)
    risk_policy: RiskPolicy = Field(default_factory=RiskPolicy)
    triggers: List[TriggerBinding] = Field(default_factory=list)
    max_steps: int = Field(default_factory=lambda: get_settings().default_max_steps, ge=1)
    timeout_seconds: float = Field(default_factory=lambda: get_settings().default_timeout_seconds, gt=0)
    max_runs_per_hour: int = 60
    max_runs_per_day: int = 500
    is_active: bool = True

    @property
    def quota_key(self) -> str:
        return self.account_id or self.id

    def allows_tool(self, tool_name: str) -> bool:
        """Deny list wins over allow list"""
        if tool_name in self.denied_tools:
            return False
        return tool_name in self.allowed_tools


class ToolCall(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: f"call_{uuid.uuid4().hex[:12]}")
    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)


class TokenUsage(BaseModel):
    model_config = ConfigDict(frozen=True)

    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
        )


class ModelResponse(BaseModel):
    """Normalized model output: either a tool call or a final answer"""
    model_config = ConfigDict(frozen=True)

    content: str = ""
    tool_call: Optional[ToolCall] = None
    usage: TokenUsage = Field(default_factory=TokenUsage)
    model: Optional[str] = None
    attempts: int = 1
    reasoning: Optional[str] = None

    @property
    def is_final(self) -> bool:
        return self.tool_call is None


class StepAction(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: str = Field(description="final_answer or tool_call")
    tool_call: Optional[ToolCall] = None
    answer: Optional[str] = None

    @classmethod
    def final(cls, answer: str) -> "StepAction":
        return cls(kind="final_answer", answer=answer)

    @classmethod
    def call(cls, tool_call: ToolCall) -> "StepAction":
        return cls(kind="tool_call", tool_call=tool_call)


class Observation(BaseModel):
    """Result of acting on a step. Tool failures live here, not in exceptions."""
    model_config = ConfigDict(frozen=True)

    success: bool = True
    output: Any = None
    error: Optional[str] = None
    error_type: Optional[str] = Field(
        None, description="validation, execution, timeout, rejected, denied or unknown_tool"
    )
    facts: List[str] = Field(default_factory=list)
    duration_ms: Optional[float] = None

    @classmethod
    def failure(cls, error_type: str, error: str, duration_ms: Optional[float] = None) -> "Observation":
        return cls(success=False, error=error, error_type=error_type, duration_ms=duration_ms)

    @classmethod
    def from_error(cls, error: AgentEngineError) -> "Observation":
        """Observation for a recoverable tool, validation or approval error"""
        return cls.failure(error.error_type, str(error), getattr(error, "duration_ms", None))

    def to_text(self) -> str:
        if not self.success:
            return f"Error ({self.error_type}): {self.error}"
        if isinstance(self.output, str):
            return self.output
        try:
            return json.dumps(self.output, default=str)
        except (TypeError, ValueError):
            return str(self.output)


class Step(BaseModel):
    """One reason-act-observe iteration. Immutable once recorded."""
    model_config = ConfigDict(frozen=True)

    index: int
    response: ModelResponse
    action: StepAction
    observation: Optional[Observation] = None
    usage: TokenUsage = Field(default_factory=TokenUsage)
    cost: float = 0.0
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime = Field(default_factory=utcnow)

    @property
    def is_final(self) -> bool:
        return self.action.kind == "final_answer"


class TriggerInfo(BaseModel):
    type: TriggerType = TriggerType.MANUAL
    event_type: Optional[str] = None
    event_id: Optional[str] = None


class Execution(BaseModel):
    """A single run of an agent against one input"""
    id: str = Field(default_factory=new_id)
    agent_id: str
    status: ExecutionStatus = ExecutionStatus.QUEUED
    input: Dict[str, Any] = Field(default_factory=dict)
    trigger: TriggerInfo = Field(default_factory=TriggerInfo)
    output: Optional[str] = None
    failure_reason: Optional[FailureReason] = None
    failure_detail: Optional[str] = None
    step_count: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_cost: float = 0.0
    active_seconds: float = 0.0
    duration_seconds: Optional[float] = None
    summary: Optional[str] = None
    summarized_through: int = -1
    summary_attempted: bool = False
    pending_approval_id: Optional[str] = None
    agent_config: Optional[AgentConfig] = Field(None, description="Config snapshot taken at creation")
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def transition(self, target: ExecutionStatus) -> None:
        if target not in ALLOWED_TRANSITIONS.get(self.status, set()):
            raise InvalidTransitionError(self.id, self.status.value, target.value)
        if target == ExecutionStatus.RUNNING and self.started_at is None:
            self.started_at = utcnow()
        self.status = target

    def _close(self) -> None:
        self.ended_at = utcnow()
        if self.started_at is not None:
            self.duration_seconds = (self.ended_at - self.started_at).total_seconds()
        else:
            self.duration_seconds = 0.0

    def complete(self, output: str) -> None:
        self.transition(ExecutionStatus.COMPLETED)
        self.output = output
        self._close()

    def fail(self, reason: FailureReason, detail: Optional[str] = None) -> None:
        self.transition(ExecutionStatus.FAILED)
        self.failure_reason = reason
        self.failure_detail = detail
        self._close()

    def cancel(self) -> None:
        self.transition(ExecutionStatus.CANCELLED)
        self.pending_approval_id = None
        self._close()

    def add_usage(self, usage: TokenUsage, cost: float) -> None:
        self.prompt_tokens += usage.prompt_tokens
        self.completion_tokens += usage.completion_tokens
        self.total_cost += cost


class ExecutionResult(BaseModel):
    execution_id: str
    agent_id: str
    status: ExecutionStatus
    output: Optional[str] = None
    failure_reason: Optional[FailureReason] = None
    failure_detail: Optional[str] = None
    step_count: int = 0
    steps: List[Step] = Field(default_factory=list)
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_cost: float = 0.0
    pending_approval_id: Optional[str] = None

    @classmethod
    def from_execution(cls, execution: Execution, steps: List[Step]) -> "ExecutionResult":
        return cls(
            execution_id=execution.id,
            agent_id=execution.agent_id,
            status=execution.status,
            output=execution.output,
            failure_reason=execution.failure_reason,
            failure_detail=execution.failure_detail,
            step_count=execution.step_count,
            steps=list(steps),
            prompt_tokens=execution.prompt_tokens,
            completion_tokens=execution.completion_tokens,
            total_cost=execution.total_cost,
            pending_approval_id=execution.pending_approval_id,
        )
