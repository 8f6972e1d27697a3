from typing import Dict, Any, Optional
from datetime import datetime
import structlog

from crm_agent.application.websocket.connection_manager import ConnectionManager
from crm_agent.application.websocket.schema.events import (
    ApprovalRequestData,
    ComponentType,
    HandoffData,
    MarkdownEvent,
    WORKFLOW_FINISH,
    component,
    progress,
)
from crm_agent.domain.models.agent_state import HandoffDecision
from crm_agent.domain.models.events import TextDelta, ToolCallEvent, ToolProgressEvent, ToolResultEvent
from crm_agent.domain.models.tool_outcome import ApprovalRequiredOutcome, ErrorOutcome
from crm_agent.domain.streaming.token_stream import StreamResult, TokenStream

logger = structlog.get_logger(__name__)


FLUSH_INTERVAL_SECONDS = 0.1
FLUSH_CHARS = 50


class StreamingHandler:
    """Relays agent token streams to WebSocket clients"""

    def __init__(self, connection_manager: Optional[ConnectionManager] = None):
        self.connection_manager = connection_manager or ConnectionManager()
        self.streaming_sessions: Dict[str, Dict[str, Any]] = {}

    async def relay(self, session_id: str, stream: TokenStream) -> StreamResult:
        """Forward every event of a stream, then signal completion"""

        if stream.handoff is not None:
            await self.send_handoff(session_id, stream.handoff)

        async with stream:
            async for event in stream:
                if isinstance(event, TextDelta):
                    await self.stream_token(session_id, event.text)
                elif isinstance(event, ToolCallEvent):
                    await self.flush_stream(session_id)
                    await self.send_progress(session_id, f"Running {event.name}", agent=stream.agent, tool=event.name)
                elif isinstance(event, ToolProgressEvent):
                    await self.send_progress(session_id, event.message or event.stage, agent=stream.agent, tool=event.name)
                elif isinstance(event, ToolResultEvent):
                    await self._handle_tool_result(session_id, event)

        await self.flush_stream(session_id)
        await self.send_workflow_complete(session_id)
        return stream.result()

    async def _handle_tool_result(self, session_id: str, event: ToolResultEvent):
        outcome = event.outcome
        if isinstance(outcome, ApprovalRequiredOutcome):
            await self.connection_manager.send_event(
                session_id,
                component(ComponentType.APPROVAL_REQUEST, ApprovalRequestData(
                    approval_id=outcome.approval_id,
                    action=outcome.action,
                    summary=outcome.summary,
                    draft=outcome.draft,
                    diff=outcome.diff
                ), session_id)
            )
        else:
            data = {"tool": event.name, "type": outcome.type}
            if isinstance(outcome, ErrorOutcome):
                data["error"] = outcome.message
            await self.connection_manager.send_event(session_id, component(ComponentType.TOOL_RESULT, data, session_id))

    async def send_handoff(self, session_id: str, decision: HandoffDecision):
        await self.connection_manager.send_event(
            session_id,
            component(ComponentType.HANDOFF, HandoffData(
                target_agent=decision.target_agent.value,
                reason=decision.reason,
                is_fallback=decision.is_fallback
            ), session_id)
        )

    async def send_progress(
        self,
        session_id: str,
        status: str,
        agent: Optional[str] = None,
        tool: Optional[str] = None
    ):
        """Send progress update to client"""

        await self.connection_manager.send_event(session_id, progress(status, agent, tool, session_id))

    async def send_markdown(self, session_id: str, content: str):
        """Send markdown content to client"""

        await self.connection_manager.send_event(
            session_id,
            MarkdownEvent(payload=content, session_id=session_id)
        )

    async def send_workflow_complete(self, session_id: str):
        """Send workflow completion signal"""

        await self.send_progress(session_id, WORKFLOW_FINISH)

    async def stream_token(self, session_id: str, token: str):
        """Buffer a token, sending when the buffer is old or long enough"""

        if session_id not in self.streaming_sessions:
            self.streaming_sessions[session_id] = {
                "buffer": "",
                "last_send": datetime.utcnow()
            }

        session_data = self.streaming_sessions[session_id]
        session_data["buffer"] += token

        now = datetime.utcnow()
        time_diff = (now - session_data["last_send"]).total_seconds()

        if time_diff > FLUSH_INTERVAL_SECONDS or len(session_data["buffer"]) > FLUSH_CHARS:
            await self.send_markdown(session_id, session_data["buffer"])
            session_data["buffer"] = ""
            session_data["last_send"] = now

    async def flush_stream(self, session_id: str):
        """Flush any remaining buffered content"""

        if session_id in self.streaming_sessions:
            session_data = self.streaming_sessions.pop(session_id)
            if session_data["buffer"]:
                await self.send_markdown(session_id, session_data["buffer"])
