"""Tool outcomes: exactly one per tool call, discriminated on ``type``."""

from typing import Annotated, Dict, Any, Optional, Literal, Union
from pydantic import BaseModel, Field, TypeAdapter


class DataOutcome(BaseModel):
    """Data returned directly to the model"""
    type: Literal["data"] = "data"
    payload: Any
    meta: Optional[Dict[str, Any]] = None


class ApprovalRequiredOutcome(BaseModel):
    """A mutation staged as a pending approval"""
    type: Literal["approval_required"] = "approval_required"
    action: str
    draft: Dict[str, Any]
    approval_id: str
    summary: str
    diff: Optional[Dict[str, Any]] = None


class ErrorOutcome(BaseModel):
    """A structured failure the model can adapt to"""
    type: Literal["error"] = "error"
    message: str
    code: Optional[str] = None
    suggestion: Optional[str] = None


ToolOutcome = Annotated[
    Union[DataOutcome, ApprovalRequiredOutcome, ErrorOutcome],
    Field(discriminator="type")
]

tool_outcome_adapter: TypeAdapter = TypeAdapter(ToolOutcome)


def outcome_to_tool_message(outcome: ToolOutcome) -> Dict[str, Any]:
    """Shape an outcome as the JSON body of a tool result message"""

    if isinstance(outcome, DataOutcome):
        body: Dict[str, Any] = {"data": outcome.payload}
        if outcome.meta:
            body["_meta"] = outcome.meta
        return body
    elif isinstance(outcome, ApprovalRequiredOutcome):
        body = {
            "type": "approval_required",
            "action": outcome.action,
            "approvalId": outcome.approval_id,
            "summary": outcome.summary,
            "draft": outcome.draft,
        }
        if outcome.diff:
            body["diff"] = outcome.diff
        return body
    elif isinstance(outcome, ErrorOutcome):
        body = {"error": outcome.message}
        if outcome.code:
            body["code"] = outcome.code
        if outcome.suggestion:
            body["suggestion"] = outcome.suggestion
        return body
    raise TypeError(f"Unknown tool outcome: {type(outcome).__name__}")
