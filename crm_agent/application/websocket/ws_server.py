from typing import Any, Dict, Optional
import asyncio

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError as PydanticValidationError
import structlog

from crm_agent.application.dependencies import AgentServices
from crm_agent.domain.errors import AgentError, AuthError
from crm_agent.domain.models.agent_state import UserContext
from crm_agent.domain.models.memory import ConversationMessage, MessageRole
from crm_agent.infrastructure.security.session_resolver import SESSION_COOKIE, Credentials

from .schema.events import (
    ApprovalActionData,
    ComponentType,
    EventType,
    UserMessage,
    component,
)

logger = structlog.get_logger(__name__)

router = APIRouter()


def websocket_credentials(websocket: WebSocket) -> Credentials:
    """Browsers cannot set headers on sockets, so a token query parameter is accepted too"""

    authorization = websocket.headers.get("Authorization")
    token = websocket.query_params.get("token")
    if not authorization and token:
        authorization = f"Bearer {token}"
    return Credentials(cookie=websocket.cookies.get(SESSION_COOKIE), authorization=authorization)


@router.websocket("/ws/agent/{session_id}")
async def agent_websocket(websocket: WebSocket, session_id: str):
    """Main WebSocket endpoint for agent interaction"""

    services: AgentServices = websocket.app.state.services
    manager = services.connection_manager

    try:
        user_context = await services.sessions.resolve(websocket_credentials(websocket))
    except AuthError as e:
        await websocket.close(code=1008, reason=e.message)
        return

    await manager.connect(websocket, session_id, user_context)
    turn: Optional[asyncio.Task] = None

    try:
        while True:
            data = await websocket.receive_json()
            event_type = data.get("type")

            try:
                if event_type == EventType.USER_MESSAGE:
                    if turn is not None and not turn.done():
                        await manager.send_error(session_id, "A reply is still streaming", error_code="TURN_IN_PROGRESS")
                        continue
                    message = UserMessage(**data)
                    turn = asyncio.create_task(process_user_message(services, session_id, user_context, message))

                elif event_type == EventType.COMPONENT:
                    await handle_component_interaction(services, session_id, user_context, data)

                else:
                    await manager.send_error(session_id, f"Unsupported event type: {event_type}", error_code="VALIDATION_ERROR")

            except PydanticValidationError as e:
                await manager.send_error(session_id, "Malformed event", error_code="VALIDATION_ERROR",
                                         details={"errors": e.error_count()})

    except WebSocketDisconnect:
        logger.info("Client disconnected", session_id=session_id)
    except Exception as e:
        logger.error("WebSocket error", error=str(e), session_id=session_id)
    finally:
        await manager.disconnect(session_id)
        if turn is not None and not turn.done():
            turn.cancel()


async def process_user_message(
    services: AgentServices,
    session_id: str,
    user_context: UserContext,
    message: UserMessage
):
    """Run one turn and relay it to the socket"""

    manager = services.connection_manager
    cancel_event = manager.begin_turn(session_id)
    turn_context = user_context.model_copy(update={
        "current_page": message.current_page or user_context.current_page,
        "active_entity_id": message.active_entity_id or user_context.active_entity_id,
        "active_entity_type": message.active_entity_type or user_context.active_entity_type,
    })

    try:
        await services.streaming_handler.send_progress(session_id, "Processing your request...")
        stream = await services.orchestrator.route_and_run(
            [ConversationMessage(role=MessageRole.USER, content=message.content)],
            turn_context,
            conversation_id=session_id,
            cancel_event=cancel_event,
            target_agent=message.target_agent
        )
        await services.streaming_handler.relay(session_id, stream)

    except AgentError as e:
        logger.error("Error in agent processing", error=e.message, error_code=e.code, session_id=session_id)
        await services.streaming_handler.flush_stream(session_id)
        await manager.send_error(session_id, e.message, error_code=e.code, details=e.details or None)
    finally:
        manager.end_turn(session_id)


async def handle_component_interaction(
    services: AgentServices,
    session_id: str,
    user_context: UserContext,
    data: Dict[str, Any]
):
    """Handle UI component interactions"""

    payload = data.get("payload", {})
    component_type = payload.get("component")

    if component_type == ComponentType.CANCEL:
        cancel_event = services.connection_manager.cancel_events.get(session_id)
        if cancel_event is not None:
            cancel_event.set()

    elif component_type == ComponentType.APPROVAL_ACTION:
        action = ApprovalActionData(**payload.get("data", {}))
        await process_approval_action(services, session_id, user_context, action)

    else:
        await services.connection_manager.send_error(
            session_id, f"Unsupported component: {component_type}", error_code="VALIDATION_ERROR"
        )


async def process_approval_action(
    services: AgentServices,
    session_id: str,
    user_context: UserContext,
    action: ApprovalActionData
):
    workflow = services.workflow
    try:
        if action.action == "approve":
            record = await workflow.approve(action.approval_id, user_context, note=action.note)
        elif action.action == "reject":
            record = await workflow.reject(action.approval_id, user_context, note=action.note)
        elif action.action == "apply":
            record = await workflow.apply(action.approval_id, user_context, force=action.force)
        else:
            record = await workflow.cancel(action.approval_id, user_context)
    except AgentError as e:
        await services.connection_manager.send_error(session_id, e.message, error_code=e.code, details=e.details or None)
        return

    await services.connection_manager.send_event(
        session_id,
        component(ComponentType.APPROVAL_UPDATE, {
            "approval_id": record.id,
            "status": record.status.value,
            "result": record.result
        }, session_id)
    )
