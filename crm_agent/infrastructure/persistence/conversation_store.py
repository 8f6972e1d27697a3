from typing import List, Any, Optional
from datetime import datetime
import json

import structlog

from crm_agent.domain.errors import NotFoundError
from crm_agent.domain.models.agent_state import HandoffDecision
from crm_agent.domain.models.memory import ConversationMessage, ConversationRecord
from crm_agent.infrastructure.persistence.database import Database

logger = structlog.get_logger(__name__)


class ConversationStore:
    """Durable conversation transcripts, scoped by organization"""

    def __init__(self, db: Database):
        self.db = db

    async def get(self, conversation_id: str, organization_id: str, include_messages: bool = True) -> Optional[ConversationRecord]:
        row = await self.db.read_one(
            "SELECT * FROM conversations WHERE id = ? AND organization_id = ?",
            (conversation_id, organization_id)
        )
        if row is None:
            return None

        messages: List[ConversationMessage] = []
        if include_messages:
            messages = await self._load_messages(conversation_id, organization_id)
        return self._to_record(row, messages)

    async def get_or_create(self, conversation_id: str, organization_id: str, user_id: str) -> ConversationRecord:
        """Create the conversation on first turn"""

        existing = await self.get(conversation_id, organization_id)
        if existing:
            if existing.user_id != user_id:
                logger.warning("Conversation owned by another user", conversation_id=conversation_id, user_id=user_id)
                raise NotFoundError(f"Conversation {conversation_id} not found")
            return existing

        # The id may already exist under another organization
        with self.db.transaction() as conn:
            taken = conn.execute("SELECT 1 FROM conversations WHERE id = ?", (conversation_id,)).fetchone()
            if taken:
                raise NotFoundError(f"Conversation {conversation_id} not found")
            now = datetime.utcnow().isoformat()
            conn.execute(
                "INSERT INTO conversations (id, organization_id, user_id, created_at, updated_at) VALUES (?, ?, ?, ?, ?)",
                (conversation_id, organization_id, user_id, now, now)
            )

        logger.info("Conversation created", conversation_id=conversation_id, organization_id=organization_id)
        return await self.get(conversation_id, organization_id)

    async def append_messages(self, conversation_id: str, organization_id: str, messages: List[ConversationMessage]) -> None:
        if not messages:
            return

        with self.db.transaction() as conn:
            for message in messages:
                conn.execute(
                    "INSERT INTO conversation_messages (conversation_id, organization_id, message_json, created_at) VALUES (?, ?, ?, ?)",
                    (conversation_id, organization_id, message.model_dump_json(), message.created_at.isoformat())
                )
            conn.execute(
                "UPDATE conversations SET updated_at = ? WHERE id = ? AND organization_id = ?",
                (datetime.utcnow().isoformat(), conversation_id, organization_id)
            )

    async def get_recent_messages(self, conversation_id: str, organization_id: str, limit: int = 5) -> List[ConversationMessage]:
        """Last ``limit`` messages in chronological order"""

        if limit <= 0:
            return []
        rows = await self.db.read_all(
            "SELECT message_json FROM conversation_messages WHERE conversation_id = ? AND organization_id = ? "
            "ORDER BY id DESC LIMIT ?",
            (conversation_id, organization_id, limit)
        )
        return [ConversationMessage.model_validate_json(row["message_json"]) for row in reversed(rows)]

    async def record_handoff(self, conversation_id: str, organization_id: str, decision: HandoffDecision) -> None:
        """Store the routing decision in metadata and agent history"""

        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT agent_history, metadata FROM conversations WHERE id = ? AND organization_id = ?",
                (conversation_id, organization_id)
            ).fetchone()
            if row is None:
                raise NotFoundError(f"Conversation {conversation_id} not found")

            now = datetime.utcnow().isoformat()
            history = json.loads(row["agent_history"])
            history.append({
                "agent": decision.target_agent.value,
                "reason": decision.reason,
                "isFallback": decision.is_fallback,
                "at": now
            })
            metadata = json.loads(row["metadata"])
            metadata["lastHandoff"] = {
                "targetAgent": decision.target_agent.value,
                "reason": decision.reason,
                "preserveContext": decision.preserve_context,
                "isFallback": decision.is_fallback,
                "at": now
            }
            conn.execute(
                "UPDATE conversations SET active_agent = ?, agent_history = ?, metadata = ?, updated_at = ? "
                "WHERE id = ? AND organization_id = ?",
                (decision.target_agent.value, json.dumps(history), json.dumps(metadata), now, conversation_id, organization_id)
            )

    async def _load_messages(self, conversation_id: str, organization_id: str) -> List[ConversationMessage]:
        rows = await self.db.read_all(
            "SELECT message_json FROM conversation_messages WHERE conversation_id = ? AND organization_id = ? ORDER BY id",
            (conversation_id, organization_id)
        )
        return [ConversationMessage.model_validate_json(row["message_json"]) for row in rows]

    @staticmethod
    def _to_record(row: Any, messages: List[ConversationMessage]) -> ConversationRecord:
        return ConversationRecord(
            id=row["id"],
            user_id=row["user_id"],
            organization_id=row["organization_id"],
            messages=messages,
            active_agent=row["active_agent"],
            agent_history=json.loads(row["agent_history"]),
            metadata=json.loads(row["metadata"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"])
        )
