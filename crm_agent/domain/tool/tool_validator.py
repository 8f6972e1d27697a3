from typing import Dict, List, Any, Optional

import pydantic
from pydantic import BaseModel, Field

from crm_agent.domain.tool.tool_registry import BaseTool, ToolInput


# Identity is always injected by the executor
RESERVED_ARGUMENTS = frozenset({"organizationid", "userid", "_context", "context"})


class ValidationResult(BaseModel):
    is_valid: bool
    errors: List[str] = Field(default_factory=list)
    params: Optional[Any] = None


class ToolParameterValidator:
    """Parameter and security validation for tool calls"""

    @staticmethod
    def validate_tool_call(tool: BaseTool, parameters: Dict[str, Any]) -> ValidationResult:
        if not isinstance(parameters, dict):
            return ValidationResult(is_valid=False, errors=["Tool arguments must be a JSON object"])

        # Security validation
        smuggled = [key for key in parameters if key.lower().replace("_", "") in RESERVED_ARGUMENTS]
        if smuggled:
            return ValidationResult(
                is_valid=False,
                errors=[f"Argument '{key}' is not allowed; caller identity is injected" for key in smuggled]
            )

        try:
            params: ToolInput = tool.input_model.model_validate(parameters)
        except pydantic.ValidationError as e:
            return ValidationResult(is_valid=False, errors=[_format_error(error) for error in e.errors()])

        return ValidationResult(is_valid=True, params=params)


def _format_error(error: Dict[str, Any]) -> str:
    location = ".".join(str(part) for part in error.get("loc", ())) or "arguments"
    return f"{location}: {error.get('msg', 'invalid value')}"
