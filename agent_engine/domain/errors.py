"""Error taxonomy for the agent execution engine.

Recoverable faults (bad tool arguments, tool failures, denied approvals) are
absorbed by the ReAct loop as observations. Provider, quota and persistence
faults are raised and decide whether an execution terminates.
"""

from typing import List, Optional


class AgentEngineError(Exception):
    """Base class for all engine errors"""


# Tool errors

class ToolValidationError(AgentEngineError):
    """Arguments do not match the tool's parameter schema"""

    error_type = "validation"

    def __init__(self, tool: str, errors: List[str]):
        self.tool = tool
        self.errors = errors
        super().__init__("invalid arguments: " + "; ".join(errors))


class ToolExecutionError(AgentEngineError):
    """The tool handler raised or ran past its timeout"""

    def __init__(self, tool: str, message: str, timed_out: bool = False, duration_ms: Optional[float] = None):
        self.tool = tool
        self.timed_out = timed_out
        self.duration_ms = duration_ms
        self.error_type = "timeout" if timed_out else "execution"
        super().__init__(message)


class ApprovalDenied(AgentEngineError):
    """A reviewer denied the call or the approval expired; the model sees it as an observation"""

    error_type = "denied"

    def __init__(self, tool: str, reason: str):
        self.tool = tool
        self.reason = reason
        super().__init__(f"tool call denied: {reason}")


class ToolRegistrationError(AgentEngineError):
    """A tool definition could not be registered"""


class RegistryFrozenError(ToolRegistrationError):
    """The registry no longer accepts registrations"""


# Provider errors

class ProviderError(AgentEngineError):
    """Base class for model provider failures"""

    def __init__(self, message: str, status_code: Optional[int] = None, provider: Optional[str] = None):
        self.status_code = status_code
        self.provider = provider
        # Token usage spent on failed attempts, filled in by the gateway
        self.usage = None
        super().__init__(message)


class RetryableProviderError(ProviderError):
    """Transient failure: rate limit, timeout, overloaded upstream"""


class ResponseParseError(RetryableProviderError):
    """The model answered with something that is neither a tool call nor an answer"""

    def __init__(self, message: str, raw_content: str = ""):
        self.raw_content = raw_content
        super().__init__(message)


class FatalProviderError(ProviderError):
    """Non-retryable failure: bad credentials, malformed request"""


# Quota

class QuotaExceededError(AgentEngineError):
    """The usage meter refused a model call"""

    def __init__(self, quota_key: str, requested: int, remaining: int):
        self.quota_key = quota_key
        self.requested = requested
        self.remaining = remaining
        super().__init__(
            f"Quota exhausted for {quota_key}: requested {requested} tokens, {remaining} remaining"
        )


# Approvals

class ApprovalAlreadyResolvedError(AgentEngineError):
    """The approval has already been resolved"""

    def __init__(self, approval_id: str, resolution: str):
        self.approval_id = approval_id
        self.resolution = resolution
        super().__init__(f"Approval {approval_id} already {resolution}")


# Persistence and lookups

class PersistenceError(AgentEngineError):
    """The backing store failed"""


class ConcurrentModificationError(PersistenceError):
    """A version-checked update lost the race"""

    def __init__(self, record_type: str, record_id: str, expected: int, actual: int):
        self.record_type = record_type
        self.record_id = record_id
        super().__init__(
            f"{record_type} {record_id} was modified concurrently "
            f"(expected version {expected}, found {actual})"
        )


class DuplicateStepError(PersistenceError):
    """Steps are append-only; an index can be written once"""

    def __init__(self, execution_id: str, index: int):
        self.execution_id = execution_id
        self.index = index
        super().__init__(f"Step {index} already recorded for execution {execution_id}")


class NotFoundError(AgentEngineError):
    """A requested record does not exist"""

    record_type = "record"

    def __init__(self, record_id: str):
        self.record_id = record_id
        super().__init__(f"{self.record_type} not found: {record_id}")


class AgentNotFoundError(NotFoundError):
    record_type = "Agent"


class ExecutionNotFoundError(NotFoundError):
    record_type = "Execution"


class ApprovalNotFoundError(NotFoundError):
    record_type = "Approval"


class InvalidTransitionError(AgentEngineError):
    """An execution status change that the lifecycle does not allow"""

    def __init__(self, execution_id: str, current: str, target: str):
        self.execution_id = execution_id
        self.current = current
        self.target = target
        super().__init__(f"Execution {execution_id} cannot move from {current} to {target}")


# Triggers

class AgentInactiveError(AgentEngineError):
    """The agent is disabled and cannot be run"""

    def __init__(self, agent_id: str):
        self.agent_id = agent_id
        super().__init__(f"Agent is not active: {agent_id}")


class RateLimitExceededError(AgentEngineError):
    """The agent reached its hourly or daily run limit"""

    def __init__(self, agent_id: str, window: str, limit: int):
        self.agent_id = agent_id
        self.window = window
        self.limit = limit
        super().__init__(f"Agent {agent_id} reached its {window} run limit of {limit}")


class WebhookAuthError(AgentEngineError):
    """Webhook secret missing or wrong"""

