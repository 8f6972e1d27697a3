from typing import Dict, Any, Optional, Callable
from datetime import date
import sqlite3

from crm_agent.domain.models.agent_state import ToolExecutionContext
from crm_agent.domain.models.tool_outcome import ApprovalRequiredOutcome
from crm_agent.domain.tool.tool_registry import BaseTool
from crm_agent.infrastructure.persistence.approval_store import ApprovalStore
from crm_agent.infrastructure.persistence.database import Database
from crm_agent.infrastructure.persistence.domain_store import DomainStore


class ToolDependencies:
    """Stores and settings shared by the built-in tools"""

    def __init__(
        self,
        db: Database,
        store: DomainStore,
        approvals: ApprovalStore,
        tax_rate: float = 0.10,
        today: Optional[Callable[[], date]] = None
    ):
        self.db = db
        self.store = store
        self.approvals = approvals
        self.tax_rate = tax_rate
        self.today = today or date.today


class DomainTool(BaseTool):
    """Built-in tool with access to the domain stores"""

    def __init__(self, deps: ToolDependencies):
        self.deps = deps

    @property
    def store(self) -> DomainStore:
        return self.deps.store


class DraftTool(DomainTool):
    """Write tool that stages a pending approval instead of mutating data"""

    mutates = True
    action: str = ""

    def stage(
        self,
        context: ToolExecutionContext,
        build: Callable[[sqlite3.Connection], Dict[str, Any]]
    ) -> ApprovalRequiredOutcome:
        """Verify, build the draft and insert the approval in one transaction

        ``build`` returns a dict with ``draft``, ``summary`` and optional ``diff``.
        """

        with self.deps.db.transaction() as conn:
            staged = build(conn)
            record = self.deps.approvals.create_pending(
                organization_id=context.organization_id,
                user_id=context.user_id,
                action=self.action,
                agent=context.agent_name,
                draft=staged["draft"],
                summary=staged["summary"],
                diff=staged.get("diff"),
                conversation_id=context.conversation_id
            )

        return ApprovalRequiredOutcome(
            action=self.action,
            draft=record.draft,
            approval_id=record.id,
            summary=record.summary,
            diff=record.diff
        )
