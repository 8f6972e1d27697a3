from typing import Dict, List, Any, Optional
from pydantic import BaseModel, Field
from datetime import datetime
from enum import Enum


MAX_RECENT_ACTIONS = 10


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"


class ToolCall(BaseModel):
    """A tool invocation requested by the model"""
    id: str
    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)


class ConversationMessage(BaseModel):
    """A single message in a conversation transcript"""
    role: MessageRole
    content: str = ""
    agent: Optional[str] = None
    tool_calls: List[ToolCall] = Field(default_factory=list)
    tool_call_id: Optional[str] = None
    name: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)


class WorkingMemory(BaseModel):
    """Short-lived per-user or per-conversation context"""
    user_id: str
    organization_id: str
    current_page: Optional[str] = None
    active_entity_id: Optional[str] = None
    active_entity_type: Optional[str] = None
    recent_actions: List[str] = Field(default_factory=list)
    pending_approval_ids: List[str] = Field(default_factory=list)
    draft_in_progress: Optional[Dict[str, Any]] = None
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @classmethod
    def empty(cls, organization_id: str, user_id: str) -> "WorkingMemory":
        return cls(user_id=user_id, organization_id=organization_id)

    def is_empty(self) -> bool:
        return not (
            self.current_page
            or self.active_entity_id
            or self.recent_actions
            or self.pending_approval_ids
            or self.draft_in_progress
        )

    def add_action(self, action: str):
        """Append an action, keeping only the most recent ones"""
        self.recent_actions.append(action)
        if len(self.recent_actions) > MAX_RECENT_ACTIONS:
            self.recent_actions = self.recent_actions[-MAX_RECENT_ACTIONS:]
        self.updated_at = datetime.utcnow()


class ConversationRecord(BaseModel):
    """Durable conversation transcript and routing history"""
    id: str
    user_id: str
    organization_id: str
    messages: List[ConversationMessage] = Field(default_factory=list)
    active_agent: Optional[str] = None
    agent_history: List[Dict[str, Any]] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class MemoryContext(BaseModel):
    """Assembled memory for one agent turn"""
    organization_id: str
    user_id: str
    conversation_id: Optional[str] = None
    working_memory: WorkingMemory
    recent_messages: List[ConversationMessage] = Field(default_factory=list)
    topic_summary: str = ""

    def has_conversation_context(self) -> bool:
        return bool(self.recent_messages)

    def is_empty(self) -> bool:
        return self.working_memory.is_empty() and not self.has_conversation_context()
