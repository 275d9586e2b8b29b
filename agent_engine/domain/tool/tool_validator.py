from typing import Any, Dict, List

from jsonschema import Draft202012Validator
from pydantic import BaseModel, Field

from agent_engine.domain.tool.tool_registry import ToolDefinition


class ValidationResult(BaseModel):
    is_valid: bool
    errors: List[str] = Field(default_factory=list)


class ToolParameterValidator:
    """Validate tool arguments against the tool's JSON Schema"""

    def __init__(self):
        self._validators: Dict[str, Draft202012Validator] = {}

    def _validator_for(self, tool: ToolDefinition) -> Draft202012Validator:
        validator = self._validators.get(tool.name)
        if validator is None:
            Draft202012Validator.check_schema(tool.parameters)
            validator = Draft202012Validator(tool.parameters)
            self._validators[tool.name] = validator
        return validator

    def validate_tool_call(self, tool: ToolDefinition, arguments: Dict[str, Any]) -> ValidationResult:
        validator = self._validator_for(tool)

        errors = []
        for error in sorted(validator.iter_errors(arguments), key=lambda e: list(e.absolute_path)):
            location = "/".join(str(part) for part in error.absolute_path) or "<root>"
            errors.append(f"{location}: {error.message}")

        return ValidationResult(is_valid=not errors, errors=errors)
