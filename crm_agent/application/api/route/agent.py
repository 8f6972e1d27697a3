from typing import Any, AsyncIterator, Dict, List, Literal, Optional
import json

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
import structlog

from crm_agent.application.api.auth import get_services, get_user_context
from crm_agent.application.dependencies import AgentServices
from crm_agent.domain.errors import AgentError
from crm_agent.domain.models.agent_state import UserContext
from crm_agent.domain.models.memory import ConversationMessage, MessageRole
from crm_agent.domain.streaming.token_stream import TokenStream, event_to_dict

logger = structlog.get_logger(__name__)

router = APIRouter()


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ChatMessageIn(CamelModel):
    role: Literal["user", "assistant"] = "user"
    content: str


class ChatRequest(CamelModel):
    messages: List[ChatMessageIn] = Field(min_length=1)
    conversation_id: Optional[str] = None
    target_agent: Optional[str] = None
    current_page: Optional[str] = None
    active_entity_id: Optional[str] = None
    active_entity_type: Optional[str] = None

    def to_messages(self) -> List[ConversationMessage]:
        return [ConversationMessage(role=MessageRole(m.role), content=m.content) for m in self.messages]

    def with_ui_context(self, user_context: UserContext) -> UserContext:
        update = {
            key: value
            for key, value in {
                "current_page": self.current_page,
                "active_entity_id": self.active_entity_id,
                "active_entity_type": self.active_entity_type,
            }.items()
            if value is not None
        }
        return user_context.model_copy(update=update) if update else user_context


class ChatCompleteResponse(CamelModel):
    text: str
    agent: Optional[str] = None
    status: str
    usage: Dict[str, Any]
    approval_ids: List[str] = Field(default_factory=list)


class WorkingMemoryUpdate(CamelModel):
    current_page: Optional[str] = None
    active_entity_id: Optional[str] = None
    active_entity_type: Optional[str] = None


def _line(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, default=str) + "\n"


async def ndjson_events(stream: TokenStream) -> AsyncIterator[str]:
    """One JSON object per line; the last line is always a finish or error record"""

    async with stream:
        if stream.handoff is not None:
            yield _line({
                "type": "handoff",
                "targetAgent": stream.handoff.target_agent.value,
                "reason": stream.handoff.reason,
                "isFallback": stream.handoff.is_fallback
            })
        try:
            async for event in stream:
                yield _line(event_to_dict(event))
        except AgentError as e:
            logger.error("Chat stream failed", agent=stream.agent, error_code=e.code, error=e.message)
            body = {"type": "error", **e.to_dict()}
            partial_output = getattr(e, "partial_output", None)
            if partial_output:
                body["partialOutput"] = partial_output
            yield _line(body)
            return

    usage = await stream.summary
    result = stream.result()
    yield _line({
        "type": "finish",
        "status": result.status,
        "agent": result.agent,
        "usage": usage.model_dump(),
        "approvalIds": result.approval_ids
    })


@router.post("/chat")
async def chat_endpoint(
    request: ChatRequest,
    user_context: UserContext = Depends(get_user_context),
    services: AgentServices = Depends(get_services)
):
    """Streamed turn as NDJSON"""

    stream = await services.orchestrator.route_and_run(
        request.to_messages(),
        request.with_ui_context(user_context),
        conversation_id=request.conversation_id,
        target_agent=request.target_agent
    )
    return StreamingResponse(ndjson_events(stream), media_type="application/x-ndjson")


@router.post("/chat/complete", response_model=ChatCompleteResponse, response_model_by_alias=True)
async def chat_complete_endpoint(
    request: ChatRequest,
    user_context: UserContext = Depends(get_user_context),
    services: AgentServices = Depends(get_services)
):
    """Batch turn: the full reply in one response"""

    result = await services.orchestrator.run_batch(
        request.to_messages(),
        request.with_ui_context(user_context),
        conversation_id=request.conversation_id,
        target_agent=request.target_agent
    )
    return ChatCompleteResponse(
        text=result.text,
        agent=result.agent,
        status=result.status,
        usage=result.usage.model_dump(),
        approval_ids=result.approval_ids
    )


@router.put("/working-memory")
async def update_working_memory(
    update: WorkingMemoryUpdate,
    user_context: UserContext = Depends(get_user_context),
    services: AgentServices = Depends(get_services)
):
    """UI navigation events"""

    memory = await services.working_memory.update_ui_context(
        user_context.organization_id,
        user_context.user_id,
        current_page=update.current_page,
        active_entity_id=update.active_entity_id,
        active_entity_type=update.active_entity_type
    )
    return memory.model_dump(mode="json")


@router.get("/tools")
async def list_tools(
    user_context: UserContext = Depends(get_user_context),
    services: AgentServices = Depends(get_services)
):
    return {
        name: services.tools.get_tool_set(name).names()
        for name in services.agents.names()
    }
