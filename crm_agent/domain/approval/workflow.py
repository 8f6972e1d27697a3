"""
Draft-approval state machine.

    pending --approve--> approved --apply--> applied
    pending --reject---> rejected
    pending|approved --cancel--> cancelled

Every transition re-reads the record inside a transaction so concurrent
reviewers cannot both win. ``apply`` runs the action handler in that same
transaction; any failure leaves both the domain data and the approval
untouched.
"""

from typing import Callable, Dict, FrozenSet, List, Optional
from datetime import datetime

import structlog

from crm_agent.domain.approval.handlers import ApplyHandlers
from crm_agent.domain.context.memory.working_memory import WorkingMemoryStore
from crm_agent.domain.errors import InvalidTransitionError, ValidationError
from crm_agent.domain.models.agent_state import UserContext, WorkingMemoryScope
from crm_agent.domain.models.approval import ApprovalRecord, ApprovalStatus
from crm_agent.infrastructure.observability.logging import AgentLogger, agent_logger as default_agent_logger
from crm_agent.infrastructure.persistence.approval_store import ApprovalStore
from crm_agent.infrastructure.persistence.database import Database

logger = structlog.get_logger(__name__)


ALLOWED_FROM: Dict[str, FrozenSet[ApprovalStatus]] = {
    "approve": frozenset({ApprovalStatus.PENDING}),
    "reject": frozenset({ApprovalStatus.PENDING}),
    "apply": frozenset({ApprovalStatus.APPROVED}),
    "cancel": frozenset({ApprovalStatus.PENDING, ApprovalStatus.APPROVED}),
}

# Expired drafts may still be closed out, never acted on
BLOCKED_WHEN_EXPIRED = frozenset({"approve", "apply"})


class ApprovalWorkflow:
    """Approve, reject, apply and cancel staged mutations"""

    def __init__(
        self,
        db: Database,
        approvals: ApprovalStore,
        handlers: ApplyHandlers,
        working_memory: Optional[WorkingMemoryStore] = None,
        agent_logger: Optional[AgentLogger] = None,
        clock: Callable[[], datetime] = datetime.utcnow
    ):
        self.db = db
        self.approvals = approvals
        self.handlers = handlers
        self.working_memory = working_memory
        self.agent_logger = agent_logger or default_agent_logger
        self.clock = clock

    def _check_transition(self, record: ApprovalRecord, action: str, now: datetime) -> None:
        if record.status not in ALLOWED_FROM[action]:
            raise InvalidTransitionError(record.id, action, record.status.value)
        if action in BLOCKED_WHEN_EXPIRED and record.is_expired(now):
            raise ValidationError(
                f"Cannot {action} approval {record.id}: it expired at {record.expires_at.isoformat()} "
                f"(status '{record.status.value}')",
                suggestion="Ask the agent to create a new draft",
                details={
                    "approvalId": record.id,
                    "currentStatus": record.status.value,
                    "expiresAt": record.expires_at.isoformat(),
                    "attemptedAction": action
                },
                code="APPROVAL_EXPIRED"
            )

    async def approve(self, approval_id: str, identity: UserContext, note: Optional[str] = None) -> ApprovalRecord:
        return await self._review(approval_id, identity, "approve", ApprovalStatus.APPROVED, note)

    async def reject(self, approval_id: str, identity: UserContext, note: Optional[str] = None) -> ApprovalRecord:
        return await self._review(approval_id, identity, "reject", ApprovalStatus.REJECTED, note)

    async def cancel(self, approval_id: str, identity: UserContext) -> ApprovalRecord:
        return await self._review(approval_id, identity, "cancel", ApprovalStatus.CANCELLED, None)

    async def _review(
        self,
        approval_id: str,
        identity: UserContext,
        action: str,
        target: ApprovalStatus,
        note: Optional[str]
    ) -> ApprovalRecord:
        now = self.clock()
        with self.db.transaction():
            record = self.approvals.get(approval_id, identity.organization_id)
            previous = record.status
            self._check_transition(record, action, now)
            record = record.model_copy(update={
                "status": target,
                "reviewed_by": identity.user_id,
                "reviewed_at": now,
                "review_note": note
            })
            self.approvals.save(record)

        self.agent_logger.log_approval_transition(approval_id, action, previous.value, target.value, identity.user_id)
        await self._release(record)
        return record

    async def apply(self, approval_id: str, identity: UserContext, force: bool = False) -> ApprovalRecord:
        """Perform the drafted mutation atomically"""

        now = self.clock()
        with self.db.transaction() as conn:
            record = self.approvals.get(approval_id, identity.organization_id)
            self._check_transition(record, "apply", now)
            handler = self.handlers.get(record.action)
            result = handler(conn, record.organization_id, record.draft, force)
            record = record.model_copy(update={
                "status": ApprovalStatus.APPLIED,
                "applied_by": identity.user_id,
                "applied_at": now,
                "result": result
            })
            self.approvals.save(record)

        self.agent_logger.log_approval_transition(
            approval_id, "apply", ApprovalStatus.APPROVED.value, ApprovalStatus.APPLIED.value, identity.user_id
        )
        if force:
            logger.warning("Approval applied with version guard overridden", approval_id=approval_id, user_id=identity.user_id)
        await self._release(record)
        return record

    async def list_pending(self, identity: UserContext, mine_only: bool = False) -> List[ApprovalRecord]:
        return self.approvals.list_pending(identity.organization_id, identity.user_id if mine_only else None)

    async def _release(self, record: ApprovalRecord) -> None:
        """Terminal records leave the owner's pending list in both working-memory scopes"""

        if self.working_memory is None or not record.is_terminal():
            return
        try:
            await self.working_memory.remove_pending_approval(record.organization_id, record.user_id, record.id)
            if record.conversation_id:
                await self.working_memory.remove_pending_approval(
                    record.organization_id,
                    record.user_id,
                    record.id,
                    scope=WorkingMemoryScope.CONVERSATION,
                    conversation_id=record.conversation_id
                )
        except Exception as e:
            logger.warning("Failed to update working memory after transition", approval_id=record.id, error=str(e))
