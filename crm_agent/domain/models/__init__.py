"""Agent domain models."""

from crm_agent.domain.models.agent_state import (
    AgentDescriptor,
    HandoffDecision,
    MemoryPolicy,
    TargetAgent,
    ToolExecutionContext,
    UserContext,
    WorkingMemoryScope,
)
from crm_agent.domain.models.approval import ApprovalRecord, ApprovalStatus
from crm_agent.domain.models.events import (
    ProviderFinish,
    TextDelta,
    ToolCallEvent,
    ToolResultEvent,
    UsageSummary,
)
from crm_agent.domain.models.memory import (
    ConversationMessage,
    ConversationRecord,
    MemoryContext,
    MessageRole,
    ToolCall,
    WorkingMemory,
)
from crm_agent.domain.models.tool_outcome import (
    ApprovalRequiredOutcome,
    DataOutcome,
    ErrorOutcome,
    ToolOutcome,
)

__all__ = [
    "AgentDescriptor",
    "ApprovalRecord",
    "ApprovalRequiredOutcome",
    "ApprovalStatus",
    "ConversationMessage",
    "ConversationRecord",
    "DataOutcome",
    "ErrorOutcome",
    "HandoffDecision",
    "MemoryContext",
    "MemoryPolicy",
    "MessageRole",
    "ProviderFinish",
    "TargetAgent",
    "TextDelta",
    "ToolCall",
    "ToolCallEvent",
    "ToolExecutionContext",
    "ToolOutcome",
    "ToolResultEvent",
    "UsageSummary",
    "UserContext",
    "WorkingMemory",
    "WorkingMemoryScope",
]
