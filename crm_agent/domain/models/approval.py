from typing import Dict, Any, Optional
from pydantic import BaseModel
from datetime import datetime, timedelta
from enum import Enum


DEFAULT_APPROVAL_LIFETIME = timedelta(hours=24)


class ApprovalStatus(str, Enum):
    """Draft-approval lifecycle states"""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    APPLIED = "applied"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({
    ApprovalStatus.APPLIED,
    ApprovalStatus.REJECTED,
    ApprovalStatus.CANCELLED,
})


class ApprovalRecord(BaseModel):
    """A staged mutation awaiting human review"""
    id: str
    user_id: str
    organization_id: str
    conversation_id: Optional[str] = None
    action: str
    agent: str
    draft: Dict[str, Any]
    diff: Optional[Dict[str, Any]] = None
    summary: str = ""
    status: ApprovalStatus = ApprovalStatus.PENDING
    created_at: datetime
    expires_at: datetime
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    review_note: Optional[str] = None
    applied_by: Optional[str] = None
    applied_at: Optional[datetime] = None
    result: Optional[Dict[str, Any]] = None

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or datetime.utcnow()) > self.expires_at
