from typing import Any, Dict, List, Optional, Protocol
import re

from agent_engine.domain.models.agent_state import RiskLevel, ToolCall
from agent_engine.domain.models.approval import RiskAssessment
from agent_engine.domain.tool.tool_registry import ArgumentRiskRule, ToolDefinition


class RiskClassifier(Protocol):
    def classify(self, tool: ToolDefinition, call: ToolCall) -> RiskAssessment: ...


def _lookup(arguments: Dict[str, Any], path: str) -> Any:
    value: Any = arguments
    for part in path.split("."):
        if not isinstance(value, dict) or part not in value:
            return None
        value = value[part]
    return value


def _rule_matches(rule: ArgumentRiskRule, value: Any) -> bool:
    if value is None:
        return False
    if rule.above is not None:
        try:
            return float(value) > rule.above
        except (TypeError, ValueError):
            return False
    if rule.matches is not None:
        return re.search(rule.matches, str(value)) is not None
    return value == rule.equals


class RuleBasedRiskClassifier:
    """Tool-intrinsic risk, raised for side effects and by argument rules"""

    def __init__(self, extra_rules: Optional[Dict[str, List[ArgumentRiskRule]]] = None):
        self.extra_rules = extra_rules or {}

    def classify(self, tool: ToolDefinition, call: ToolCall) -> RiskAssessment:
        level = tool.risk_level
        reasons = [f"tool risk level is {tool.risk_level.value}"]

        if tool.side_effect and not level.at_least(RiskLevel.MEDIUM):
            level = RiskLevel.MEDIUM
            reasons.append("tool has side effects")

        for rule in list(tool.argument_rules) + self.extra_rules.get(tool.name, []):
            if _rule_matches(rule, _lookup(call.arguments, rule.argument)):
                if rule.level.rank > level.rank:
                    level = rule.level
                reasons.append(rule.reason or f"argument {rule.argument} raised risk to {rule.level.value}")

        return RiskAssessment(level=level, reasons=reasons)
