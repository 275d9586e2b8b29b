from typing import Any, Callable, Dict, List, Optional
import asyncio

import structlog
from pydantic import BaseModel, ConfigDict, Field

from agent_engine.domain.errors import RegistryFrozenError, ToolRegistrationError
from agent_engine.domain.models.agent_state import RiskLevel

logger = structlog.get_logger(__name__)


class ArgumentRiskRule(BaseModel):
    """Raise a call's risk level when an argument meets a condition.

    Exactly one of ``above``, ``equals`` or ``matches`` is expected.
    """
    model_config = ConfigDict(frozen=True)

    argument: str
    level: RiskLevel
    above: Optional[float] = None
    equals: Any = None
    matches: Optional[str] = None
    reason: Optional[str] = None


class ToolDefinition(BaseModel):
    """A named, schema-validated action and its handler"""
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name: str
    description: str
    handler: Callable[..., Any]
    parameters: Dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}},
        description="JSON Schema for the arguments object",
    )
    category: str = "general"
    risk_level: RiskLevel = RiskLevel.LOW
    side_effect: bool = False
    timeout_seconds: Optional[float] = None
    argument_rules: List[ArgumentRiskRule] = Field(default_factory=list)
    accepts_context: bool = False

    @property
    def is_async(self) -> bool:
        return asyncio.iscoroutinefunction(self.handler)

    def to_function_schema(self) -> Dict[str, Any]:
        """OpenAI-style function description handed to the model"""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


class ToolRegistry:
    """Registry for managing available tools"""

    def __init__(self):
        self.tools: Dict[str, ToolDefinition] = {}
        self.tool_categories: Dict[str, List[str]] = {}
        self._frozen = False

    @property
    def frozen(self) -> bool:
        return self._frozen

    def register(self, definition: ToolDefinition) -> ToolDefinition:
        """Register a new tool"""

        if self._frozen:
            raise RegistryFrozenError(f"Cannot register {definition.name}: registry is frozen")
        if definition.name in self.tools:
            raise ToolRegistrationError(f"Tool already registered: {definition.name}")
        if definition.parameters.get("type", "object") != "object":
            raise ToolRegistrationError(f"Tool {definition.name} parameters must be an object schema")

        self.tools[definition.name] = definition
        self.tool_categories.setdefault(definition.category, []).append(definition.name)

        logger.debug("Tool registered", tool=definition.name, category=definition.category)
        return definition

    def tool(
        self,
        name: Optional[str] = None,
        description: Optional[str] = None,
        parameters: Optional[Dict[str, Any]] = None,
        **options: Any,
    ) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Decorator form of ``register``"""

        def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
            definition_kwargs: Dict[str, Any] = {
                "name": name or func.__name__,
                "description": description or (func.__doc__ or "").strip(),
                "handler": func,
                **options,
            }
            if parameters is not None:
                definition_kwargs["parameters"] = parameters
            self.register(ToolDefinition(**definition_kwargs))
            return func

        return decorator

    def freeze(self) -> None:
        self._frozen = True
        logger.info("Tool registry frozen", tool_count=len(self.tools))

    def get(self, name: str) -> Optional[ToolDefinition]:
        return self.tools.get(name)

    def list(self) -> List[ToolDefinition]:
        return list(self.tools.values())

    def by_category(self, category: str) -> List[ToolDefinition]:
        """Get tools by category"""

        tool_names = self.tool_categories.get(category, [])
        return [self.tools[tool_name] for tool_name in tool_names if tool_name in self.tools]

    def search_tools(self, query: str) -> List[ToolDefinition]:
        """Search tools by name or description"""

        query_lower = query.lower()
        return [
            tool for tool in self.tools.values()
            if query_lower in tool.name.lower() or query_lower in tool.description.lower()
        ]

    def describe_for_model(self, tool_names: List[str]) -> List[Dict[str, Any]]:
        """Function schemas for the named tools, skipping unknown names"""

        return [self.tools[name].to_function_schema() for name in tool_names if name in self.tools]
