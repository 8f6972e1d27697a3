from typing import Dict, Any, Optional
from datetime import datetime
import asyncio

import structlog

from crm_agent.domain.context.memory.cache_memory_store import CacheMemoryStore
from crm_agent.domain.models.agent_state import WorkingMemoryScope
from crm_agent.domain.models.memory import WorkingMemory

logger = structlog.get_logger(__name__)


def working_memory_key(
    organization_id: str,
    user_id: str,
    scope: WorkingMemoryScope = WorkingMemoryScope.USER,
    conversation_id: Optional[str] = None
) -> str:
    """Cache key for a working-memory entry"""

    if scope == WorkingMemoryScope.CONVERSATION and conversation_id:
        return f"wm:conversation:{conversation_id}"
    return f"wm:{organization_id}:{user_id}"


class WorkingMemoryStore:
    """TTL-bound working memory on top of the in-process cache"""

    def __init__(self, cache: Optional[CacheMemoryStore] = None, ttl_seconds: int = 3600):
        self.cache = cache or CacheMemoryStore(default_ttl=ttl_seconds)
        self.ttl_seconds = ttl_seconds

    async def get(
        self,
        organization_id: str,
        user_id: str,
        scope: WorkingMemoryScope = WorkingMemoryScope.USER,
        conversation_id: Optional[str] = None
    ) -> WorkingMemory:
        """Fetch working memory; absence means empty"""

        key = working_memory_key(organization_id, user_id, scope, conversation_id)
        data = await self.cache.get(key)
        if data is None:
            return WorkingMemory.empty(organization_id, user_id)

        memory = WorkingMemory.model_validate(data)
        # Entries keyed by conversation id must still belong to the caller's organization
        if memory.organization_id != organization_id:
            return WorkingMemory.empty(organization_id, user_id)
        return memory

    async def set(
        self,
        memory: WorkingMemory,
        scope: WorkingMemoryScope = WorkingMemoryScope.USER,
        conversation_id: Optional[str] = None
    ) -> None:
        memory.updated_at = datetime.utcnow()
        key = working_memory_key(memory.organization_id, memory.user_id, scope, conversation_id)
        await self.cache.set(key, memory.model_dump(mode="json"), ttl=self.ttl_seconds)

    async def delete(
        self,
        organization_id: str,
        user_id: str,
        scope: WorkingMemoryScope = WorkingMemoryScope.USER,
        conversation_id: Optional[str] = None
    ) -> bool:
        key = working_memory_key(organization_id, user_id, scope, conversation_id)
        return await self.cache.delete(key)

    async def record_action(
        self,
        organization_id: str,
        user_id: str,
        action: str,
        scope: WorkingMemoryScope = WorkingMemoryScope.USER,
        conversation_id: Optional[str] = None
    ) -> WorkingMemory:
        """Append to recent actions, keeping the newest ten"""

        memory = await self.get(organization_id, user_id, scope, conversation_id)
        memory.add_action(action)
        await self.set(memory, scope, conversation_id)
        return memory

    async def add_pending_approval(
        self,
        organization_id: str,
        user_id: str,
        approval_id: str,
        scope: WorkingMemoryScope = WorkingMemoryScope.USER,
        conversation_id: Optional[str] = None
    ) -> WorkingMemory:
        memory = await self.get(organization_id, user_id, scope, conversation_id)
        if approval_id not in memory.pending_approval_ids:
            memory.pending_approval_ids.append(approval_id)
        await self.set(memory, scope, conversation_id)
        return memory

    async def remove_pending_approval(
        self,
        organization_id: str,
        user_id: str,
        approval_id: str,
        scope: WorkingMemoryScope = WorkingMemoryScope.USER,
        conversation_id: Optional[str] = None
    ) -> WorkingMemory:
        memory = await self.get(organization_id, user_id, scope, conversation_id)
        if approval_id in memory.pending_approval_ids:
            memory.pending_approval_ids.remove(approval_id)
            await self.set(memory, scope, conversation_id)
        return memory

    async def set_draft(
        self,
        organization_id: str,
        user_id: str,
        draft: Optional[Dict[str, Any]],
        scope: WorkingMemoryScope = WorkingMemoryScope.USER,
        conversation_id: Optional[str] = None
    ) -> WorkingMemory:
        memory = await self.get(organization_id, user_id, scope, conversation_id)
        memory.draft_in_progress = draft
        await self.set(memory, scope, conversation_id)
        return memory

    async def update_ui_context(
        self,
        organization_id: str,
        user_id: str,
        current_page: Optional[str] = None,
        active_entity_id: Optional[str] = None,
        active_entity_type: Optional[str] = None,
        scope: WorkingMemoryScope = WorkingMemoryScope.USER,
        conversation_id: Optional[str] = None
    ) -> WorkingMemory:
        """Apply a UI navigation event"""

        memory = await self.get(organization_id, user_id, scope, conversation_id)
        if current_page is not None:
            memory.current_page = current_page
        if active_entity_id is not None:
            memory.active_entity_id = active_entity_id or None
            memory.active_entity_type = active_entity_type if active_entity_id else None
        await self.set(memory, scope, conversation_id)

        logger.debug(
            "Working memory UI context updated",
            organization_id=organization_id,
            user_id=user_id,
            current_page=memory.current_page,
            active_entity_type=memory.active_entity_type
        )
        return memory

    async def purge_expired(self) -> int:
        return await self.cache.clear_expired()

    async def stats(self) -> Dict[str, Any]:
        return await self.cache.get_stats()

    async def sweep(self, interval_seconds: float = 60):
        """Periodically drop expired entries until cancelled"""
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                removed = await self.purge_expired()
                if removed:
                    logger.debug("Working memory swept", removed=removed)
            except Exception as e:
                logger.error("Working memory sweep error", error=str(e))
