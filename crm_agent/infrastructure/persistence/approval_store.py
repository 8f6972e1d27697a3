from typing import Dict, List, Any, Optional
from datetime import datetime, timedelta
import uuid

import structlog

from crm_agent.domain.errors import NotFoundError
from crm_agent.domain.models.approval import (
    ApprovalRecord,
    ApprovalStatus,
    DEFAULT_APPROVAL_LIFETIME,
)
from crm_agent.infrastructure.persistence.database import Database

logger = structlog.get_logger(__name__)


class ApprovalStore:
    """Persistence for draft approvals, scoped by organization"""

    def __init__(self, db: Database, lifetime: timedelta = DEFAULT_APPROVAL_LIFETIME):
        self.db = db
        self.lifetime = lifetime

    def create_pending(
        self,
        organization_id: str,
        user_id: str,
        action: str,
        agent: str,
        draft: Dict[str, Any],
        summary: str = "",
        diff: Optional[Dict[str, Any]] = None,
        conversation_id: Optional[str] = None
    ) -> ApprovalRecord:
        """Insert a pending approval; joins the caller's transaction when one is open"""

        created_at = datetime.utcnow()
        record = ApprovalRecord(
            id=str(uuid.uuid4()),
            user_id=user_id,
            organization_id=organization_id,
            conversation_id=conversation_id,
            action=action,
            agent=agent,
            draft=draft,
            diff=diff,
            summary=summary,
            status=ApprovalStatus.PENDING,
            created_at=created_at,
            expires_at=created_at + self.lifetime
        )

        with self.db.transaction() as conn:
            conn.execute(
                "INSERT INTO ai_approvals (id, organization_id, user_id, conversation_id, action, agent, status, "
                "record_json, created_at, expires_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    record.id, organization_id, user_id, conversation_id, action, agent,
                    record.status.value, record.model_dump_json(),
                    record.created_at.isoformat(), record.expires_at.isoformat()
                )
            )

        logger.info("Approval created", approval_id=record.id, action=action, organization_id=organization_id)
        return record

    def get(self, approval_id: str, organization_id: str) -> ApprovalRecord:
        row = self.db.fetch_one(
            "SELECT record_json FROM ai_approvals WHERE id = ? AND organization_id = ?",
            (approval_id, organization_id)
        )
        if row is None:
            raise NotFoundError(
                f"Approval {approval_id} not found",
                suggestion="Check the approval id; it may belong to another organization"
            )
        return ApprovalRecord.model_validate_json(row["record_json"])

    def save(self, record: ApprovalRecord) -> ApprovalRecord:
        """Persist a status change; joins the caller's transaction when one is open"""

        with self.db.transaction() as conn:
            cursor = conn.execute(
                "UPDATE ai_approvals SET status = ?, record_json = ? WHERE id = ? AND organization_id = ?",
                (record.status.value, record.model_dump_json(), record.id, record.organization_id)
            )
            if cursor.rowcount == 0:
                raise NotFoundError(f"Approval {record.id} not found")
        return record

    def list_pending(self, organization_id: str, user_id: Optional[str] = None) -> List[ApprovalRecord]:
        sql = "SELECT record_json FROM ai_approvals WHERE organization_id = ? AND status = ?"
        params: List[Any] = [organization_id, ApprovalStatus.PENDING.value]
        if user_id:
            sql += " AND user_id = ?"
            params.append(user_id)
        sql += " ORDER BY created_at DESC"
        return [ApprovalRecord.model_validate_json(row["record_json"]) for row in self.db.fetch_all(sql, params)]
