from typing import Any, Dict, List, Optional

from agent_engine.domain.models.memory import MemoryKind
from agent_engine.domain.tool.tool_executor import ToolContext
from agent_engine.domain.tool.tool_registry import ToolDefinition, ToolRegistry


async def remember_fact(
    content: str,
    kind: str = MemoryKind.FACT.value,
    importance: int = 5,
    tags: Optional[List[str]] = None,
    context: Optional[ToolContext] = None,
) -> Dict[str, Any]:
    """Store a durable fact in the agent's long-term memory"""
    if context is None or context.memory is None:
        raise RuntimeError("long-term memory is not available to this execution")

    entry, created = await context.memory.remember(
        agent_id=context.agent_id,
        content=content,
        kind=MemoryKind(kind),
        importance=importance,
        tags=tags or [],
        source_execution_id=context.execution_id,
    )
    return {"memory_id": entry.id, "stored": created}


REMEMBER_FACT = ToolDefinition(
    name="remember_fact",
    description="Store a durable fact, preference or pattern so future runs can recall it.",
    handler=remember_fact,
    category="memory",
    accepts_context=True,
    parameters={
        "type": "object",
        "properties": {
            "content": {"type": "string", "minLength": 1},
            "kind": {
                "type": "string",
                "enum": ["fact", "preference", "pattern", "relationship", "outcome"],
            },
            "importance": {"type": "integer", "minimum": 1, "maximum": 10},
            "tags": {"type": "array", "items": {"type": "string"}},
        },
        "required": ["content"],
        "additionalProperties": False,
    },
)


def register_builtin_tools(registry: ToolRegistry) -> None:
    registry.register(REMEMBER_FACT)
