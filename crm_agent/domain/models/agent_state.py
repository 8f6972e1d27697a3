from typing import Optional
from pydantic import BaseModel, ConfigDict, Field
from enum import Enum


class TargetAgent(str, Enum):
    """Specialist agents the triage router can hand off to"""
    CUSTOMER = "customer"
    ORDER = "order"
    ANALYTICS = "analytics"
    QUOTE = "quote"


TRIAGE_AGENT_NAME = "triage"


class WorkingMemoryScope(str, Enum):
    """Key space for working memory"""
    USER = "user"
    CONVERSATION = "conversation"


DEFAULT_WORKING_MEMORY_TEMPLATE = (
    "## Working Memory\n"
    "- Current page: {current_page}\n"
    "- Active entity: {active_entity}\n"
    "- Recent actions: {recent_actions}\n"
    "- Pending approvals: {pending_approvals}\n"
    "- Draft in progress: {draft_in_progress}"
)


class MemoryPolicy(BaseModel):
    """Memory behaviour for an agent"""
    model_config = ConfigDict(frozen=True)

    history_enabled: bool = True
    history_limit: int = Field(default=5, ge=0, le=5)
    working_memory_enabled: bool = True
    working_memory_scope: WorkingMemoryScope = WorkingMemoryScope.USER
    working_memory_template: str = DEFAULT_WORKING_MEMORY_TEMPLATE


class AgentDescriptor(BaseModel):
    """Immutable configuration for a named agent"""
    model_config = ConfigDict(frozen=True)

    name: str
    system_prompt: str
    model_id: str
    temperature: float
    max_turns: int
    max_tokens: int
    memory_policy: MemoryPolicy = Field(default_factory=MemoryPolicy)


class HandoffDecision(BaseModel):
    """Result of a single triage classification"""
    model_config = ConfigDict(frozen=True)

    target_agent: TargetAgent
    reason: str = Field(max_length=500)
    preserve_context: bool = True
    is_fallback: bool = Field(default=False, description="Set when the forced tool call was not honoured")


class UserContext(BaseModel):
    """Resolved caller identity plus the UI context of the request"""
    user_id: str
    organization_id: str
    role: str = "member"
    current_page: Optional[str] = None
    active_entity_id: Optional[str] = None
    active_entity_type: Optional[str] = None

    def context_block(self) -> str:
        """Render the current-context block injected into system prompts"""

        lines = ["## Current Context", f"- Role: {self.role}"]
        if self.current_page:
            lines.append(f"- Current page: {self.current_page}")
        if self.active_entity_id:
            entity_type = self.active_entity_type or "entity"
            lines.append(f"- Viewing {entity_type}: {self.active_entity_id}")
        return "\n".join(lines)


class ToolExecutionContext(BaseModel):
    """Caller scope injected into every tool call; never read from tool arguments"""
    model_config = ConfigDict(frozen=True)

    user_id: str
    organization_id: str
    conversation_id: Optional[str] = None
    agent_name: str
