from typing import Dict, List, Any, Optional, Literal, Union, AsyncIterator, Protocol
import asyncio

from pydantic import BaseModel, Field

from crm_agent.domain.models.events import ProviderFinish, TextDelta, ToolCallEvent
from crm_agent.domain.models.memory import ConversationMessage


ProviderEvent = Union[TextDelta, ToolCallEvent, ProviderFinish]


class ToolChoice(BaseModel):
    """How the model may use the attached tools"""
    mode: Literal["auto", "none", "forced"] = "auto"
    name: Optional[str] = None

    @classmethod
    def auto(cls) -> "ToolChoice":
        return cls(mode="auto")

    @classmethod
    def none(cls) -> "ToolChoice":
        return cls(mode="none")

    @classmethod
    def forced(cls, name: str) -> "ToolChoice":
        return cls(mode="forced", name=name)


class ToolSpec(BaseModel):
    """Tool definition handed to the model"""
    name: str
    description: str
    parameters: Dict[str, Any] = Field(default_factory=dict, description="JSON schema of the arguments")

    def as_function(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters
            }
        }


class ModelRequest(BaseModel):
    """A single provider call"""
    model_id: str
    system_prompt: str
    messages: List[ConversationMessage]
    tools: List[ToolSpec] = Field(default_factory=list)
    tool_choice: ToolChoice = Field(default_factory=ToolChoice.auto)
    temperature: float = 0.3
    max_tokens: int = 2048


class ModelProvider(Protocol):
    """Streams provider events for a request; the last event is always ProviderFinish"""

    def stream(self, request: ModelRequest, cancel_event: Optional[asyncio.Event] = None) -> AsyncIterator[ProviderEvent]:
        ...
