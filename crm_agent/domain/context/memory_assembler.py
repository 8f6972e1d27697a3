from typing import List, Optional
import asyncio

import structlog

from crm_agent.domain.context.memory.working_memory import WorkingMemoryStore
from crm_agent.domain.context.topic_ranker import TopicRanker
from crm_agent.domain.models.agent_state import WorkingMemoryScope, DEFAULT_WORKING_MEMORY_TEMPLATE
from crm_agent.domain.models.memory import ConversationMessage, MemoryContext, WorkingMemory
from crm_agent.infrastructure.persistence.conversation_store import ConversationStore

logger = structlog.get_logger(__name__)


MAX_HISTORY_MESSAGES = 5
MAX_MESSAGE_CHARS = 200
MAX_CONTEXT_CHARS = 2000
MEMORY_OPEN_TAG = "<memory_context>"
MEMORY_CLOSE_TAG = "</memory_context>"


def _clip(text: str, limit: int) -> str:
    text = " ".join((text or "").split())
    return text if len(text) <= limit else text[:limit - 3] + "..."


class MemoryAssembler:
    """Assembles working and session memory for an agent turn"""

    def __init__(
        self,
        working_memory: WorkingMemoryStore,
        conversations: ConversationStore,
        topic_ranker: Optional[TopicRanker] = None
    ):
        self.working_memory = working_memory
        self.conversations = conversations
        self.topic_ranker = topic_ranker or TopicRanker()

    async def assemble(
        self,
        organization_id: str,
        user_id: str,
        conversation_id: Optional[str] = None,
        scope: WorkingMemoryScope = WorkingMemoryScope.USER,
        history_limit: int = MAX_HISTORY_MESSAGES
    ) -> MemoryContext:
        """Fetch working memory and recent history concurrently"""

        history_limit = max(0, min(history_limit, MAX_HISTORY_MESSAGES))

        working, recent = await asyncio.gather(
            self.load_working_memory(organization_id, user_id, scope, conversation_id),
            self._load_recent_messages(organization_id, conversation_id, history_limit)
        )

        topic_summary = self.topic_ranker.summarize(message.content for message in recent)

        logger.debug(
            "Memory assembled",
            organization_id=organization_id,
            conversation_id=conversation_id,
            messages=len(recent),
            working_memory_empty=working.is_empty()
        )

        return MemoryContext(
            organization_id=organization_id,
            user_id=user_id,
            conversation_id=conversation_id,
            working_memory=working,
            recent_messages=recent,
            topic_summary=topic_summary
        )

    async def load_working_memory(
        self,
        organization_id: str,
        user_id: str,
        scope: WorkingMemoryScope,
        conversation_id: Optional[str]
    ) -> WorkingMemory:
        try:
            return await self.working_memory.get(organization_id, user_id, scope, conversation_id)
        except Exception as e:
            logger.warning("Working memory unavailable", organization_id=organization_id, user_id=user_id, error=str(e))
            return WorkingMemory.empty(organization_id, user_id)

    async def _load_recent_messages(
        self,
        organization_id: str,
        conversation_id: Optional[str],
        limit: int
    ) -> List[ConversationMessage]:
        if not conversation_id or limit == 0:
            return []
        try:
            return await self.conversations.get_recent_messages(conversation_id, organization_id, limit)
        except Exception as e:
            logger.warning("Conversation history unavailable", conversation_id=conversation_id, error=str(e))
            return []

    def format(self, context: MemoryContext, template: Optional[str] = None) -> str:
        return format_memory_context(context, template)


def format_memory_context(context: MemoryContext, template: Optional[str] = None) -> str:
    """Render the bounded memory block, or an empty string when there is nothing to say"""

    if context.is_empty():
        return ""

    sections: List[str] = []
    working = context.working_memory
    if not working.is_empty():
        active_entity = "none"
        if working.active_entity_id:
            active_entity = f"{working.active_entity_type or 'entity'} {working.active_entity_id}"
        draft = "none"
        if working.draft_in_progress:
            draft = _clip(", ".join(f"{k}={v}" for k, v in working.draft_in_progress.items()), MAX_MESSAGE_CHARS)
        sections.append((template or DEFAULT_WORKING_MEMORY_TEMPLATE).format(
            current_page=working.current_page or "unknown",
            active_entity=active_entity,
            recent_actions="; ".join(working.recent_actions[-5:]) or "none",
            pending_approvals=", ".join(working.pending_approval_ids) or "none",
            draft_in_progress=draft
        ))

    if context.has_conversation_context():
        lines = ["## Recent Conversation"]
        if context.topic_summary:
            lines.append(f"Topics: {context.topic_summary}")
        for message in context.recent_messages:
            lines.append(f"- {message.role.value}: {_clip(message.content, MAX_MESSAGE_CHARS)}")
        sections.append("\n".join(lines))

    body = "\n\n".join(sections)
    budget = MAX_CONTEXT_CHARS - len(MEMORY_OPEN_TAG) - len(MEMORY_CLOSE_TAG) - 2
    if len(body) > budget:
        body = body[:budget - 3] + "..."
    return f"{MEMORY_OPEN_TAG}\n{body}\n{MEMORY_CLOSE_TAG}"
