from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from crm_agent.application.api.auth import get_services, get_user_context
from crm_agent.application.dependencies import AgentServices
from crm_agent.domain.models.agent_state import UserContext

router = APIRouter()


class ReviewRequest(BaseModel):
    note: Optional[str] = None


class ApplyRequest(BaseModel):
    force: bool = False


@router.get("")
async def list_pending_approvals(
    mine: bool = False,
    user_context: UserContext = Depends(get_user_context),
    services: AgentServices = Depends(get_services)
):
    records = await services.workflow.list_pending(user_context, mine_only=mine)
    return {"approvals": [record.model_dump(mode="json") for record in records]}


@router.get("/{approval_id}")
async def get_approval(
    approval_id: str,
    user_context: UserContext = Depends(get_user_context),
    services: AgentServices = Depends(get_services)
):
    return services.approvals.get(approval_id, user_context.organization_id).model_dump(mode="json")


@router.post("/{approval_id}/approve")
async def approve(
    approval_id: str,
    body: Optional[ReviewRequest] = None,
    user_context: UserContext = Depends(get_user_context),
    services: AgentServices = Depends(get_services)
):
    record = await services.workflow.approve(approval_id, user_context, note=body.note if body else None)
    return record.model_dump(mode="json")


@router.post("/{approval_id}/reject")
async def reject(
    approval_id: str,
    body: Optional[ReviewRequest] = None,
    user_context: UserContext = Depends(get_user_context),
    services: AgentServices = Depends(get_services)
):
    record = await services.workflow.reject(approval_id, user_context, note=body.note if body else None)
    return record.model_dump(mode="json")


@router.post("/{approval_id}/apply")
async def apply(
    approval_id: str,
    body: Optional[ApplyRequest] = None,
    user_context: UserContext = Depends(get_user_context),
    services: AgentServices = Depends(get_services)
):
    record = await services.workflow.apply(approval_id, user_context, force=body.force if body else False)
    return record.model_dump(mode="json")


@router.post("/{approval_id}/cancel")
async def cancel(
    approval_id: str,
    user_context: UserContext = Depends(get_user_context),
    services: AgentServices = Depends(get_services)
):
    record = await services.workflow.cancel(approval_id, user_context)
    return record.model_dump(mode="json")
