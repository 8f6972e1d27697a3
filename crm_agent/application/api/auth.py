from typing import Optional

from fastapi import Depends, Request

from crm_agent.application.dependencies import AgentServices
from crm_agent.domain.models.agent_state import UserContext
from crm_agent.infrastructure.security.session_resolver import SESSION_COOKIE, Credentials


def get_services(request: Request) -> AgentServices:
    return request.app.state.services


def request_credentials(request: Request) -> Credentials:
    return Credentials(
        cookie=request.cookies.get(SESSION_COOKIE),
        authorization=request.headers.get("Authorization")
    )


async def get_user_context(
    request: Request,
    services: AgentServices = Depends(get_services)
) -> UserContext:
    """Resolve the caller; UI context travels in optional headers"""

    return await services.sessions.resolve(
        request_credentials(request),
        current_page=_header(request, "X-Current-Page"),
        active_entity_id=_header(request, "X-Active-Entity-Id"),
        active_entity_type=_header(request, "X-Active-Entity-Type")
    )


def _header(request: Request, name: str) -> Optional[str]:
    value = request.headers.get(name)
    return value.strip() if value and value.strip() else None
