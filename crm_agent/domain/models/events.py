"""Events flowing from the model provider through the runner to callers."""

from typing import Dict, Any, Optional, Literal
from pydantic import BaseModel, Field

from .tool_outcome import ToolOutcome


class UsageSummary(BaseModel):
    """Token usage for a stream, summed across provider turns"""
    model_id: str
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    estimated_cost: float = 0.0

    def add(self, other: "UsageSummary") -> "UsageSummary":
        return UsageSummary(
            model_id=self.model_id,
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
            estimated_cost=round(self.estimated_cost + other.estimated_cost, 6),
        )


class TextDelta(BaseModel):
    type: Literal["text_delta"] = "text_delta"
    text: str


class ToolCallEvent(BaseModel):
    type: Literal["tool_call"] = "tool_call"
    id: str
    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)


class ToolProgressEvent(BaseModel):
    """Intermediate stage reported by a long-running tool call"""
    type: Literal["tool_progress"] = "tool_progress"
    id: str
    name: str
    stage: str
    message: str = ""


class ToolResultEvent(BaseModel):
    type: Literal["tool_result"] = "tool_result"
    id: str
    name: str
    outcome: ToolOutcome


class ProviderFinish(BaseModel):
    """Terminal event of one provider call"""
    type: Literal["finish"] = "finish"
    usage: UsageSummary
    finish_reason: Optional[str] = None
