from typing import Dict, Any, Optional, Literal, Union
from pydantic import BaseModel, Field
from datetime import datetime
from enum import Enum


class EventType(str, Enum):
    """WebSocket event types"""
    MARKDOWN = "markdown"
    COMPONENT = "component"
    ERROR = "error"
    CONNECTION = "connection"
    USER_MESSAGE = "user_message"


class ComponentType(str, Enum):
    """UI component types"""
    PROGRESS = "progress"
    HANDOFF = "handoff"
    TOOL_RESULT = "tool_result"
    APPROVAL_REQUEST = "approval_request"
    APPROVAL_ACTION = "approval_action"
    APPROVAL_UPDATE = "approval_update"
    CANCEL = "cancel"


class BaseEvent(BaseModel):
    """Base event model for all WebSocket messages"""
    type: EventType
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    session_id: Optional[str] = None


class MarkdownEvent(BaseEvent):
    """Markdown content event for chat messages"""
    type: Literal[EventType.MARKDOWN] = EventType.MARKDOWN
    payload: str


class ProgressData(BaseModel):
    """Progress component data"""
    status: str
    agent: Optional[str] = None
    tool: Optional[str] = None


class HandoffData(BaseModel):
    target_agent: str
    reason: str
    is_fallback: bool = False


class ApprovalRequestData(BaseModel):
    """A drafted mutation awaiting review"""
    approval_id: str
    action: str
    summary: str
    draft: Dict[str, Any]
    diff: Optional[Dict[str, Any]] = None


class ApprovalActionData(BaseModel):
    """Review decision sent by the UI"""
    approval_id: str
    action: Literal["approve", "reject", "apply", "cancel"]
    note: Optional[str] = None
    force: bool = False


class ComponentPayload(BaseModel):
    """Component event payload"""
    component: ComponentType
    data: Union[ProgressData, HandoffData, ApprovalRequestData, ApprovalActionData, Dict[str, Any]]


class ComponentEvent(BaseEvent):
    """Component event for UI interactions"""
    type: Literal[EventType.COMPONENT] = EventType.COMPONENT
    payload: ComponentPayload


class ErrorEvent(BaseEvent):
    """Error event"""
    type: Literal[EventType.ERROR] = EventType.ERROR
    payload: Dict[str, Any]
    error_code: Optional[str] = None


class ConnectionEvent(BaseEvent):
    """Connection status event"""
    type: Literal[EventType.CONNECTION] = EventType.CONNECTION
    status: Literal["connected", "disconnected", "reconnecting"]


class UserMessage(BaseEvent):
    """User message event"""
    type: Literal[EventType.USER_MESSAGE] = EventType.USER_MESSAGE
    content: str
    target_agent: Optional[str] = None
    current_page: Optional[str] = None
    active_entity_id: Optional[str] = None
    active_entity_type: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


def component(component_type: ComponentType, data: Any, session_id: Optional[str] = None) -> ComponentEvent:
    """Build a component event"""
    return ComponentEvent(
        payload=ComponentPayload(component=component_type, data=data),
        session_id=session_id
    )


def progress(status: str, agent: Optional[str] = None, tool: Optional[str] = None,
             session_id: Optional[str] = None) -> ComponentEvent:
    return component(ComponentType.PROGRESS, ProgressData(status=status, agent=agent, tool=tool), session_id)


WORKFLOW_FINISH = "_workflow_finish"
