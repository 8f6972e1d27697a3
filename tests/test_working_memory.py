import asyncio

import pytest

from crm_agent.domain.context.memory.cache_memory_store import CacheMemoryStore
from crm_agent.domain.context.memory.working_memory import WorkingMemoryStore, working_memory_key
from crm_agent.domain.models.agent_state import WorkingMemoryScope
from crm_agent.domain.models.memory import MAX_RECENT_ACTIONS, WorkingMemory


class TestCacheMemoryStore:

    async def test_entries_expire(self):
        cache = CacheMemoryStore(default_ttl=60)
        await cache.set("short", {"v": 1}, ttl=0.01)
        await cache.set("long", {"v": 2})

        await asyncio.sleep(0.02)

        assert await cache.get("short") is None
        assert await cache.get("long") == {"v": 2}

    async def test_entry_cap_evicts_oldest(self):
        cache = CacheMemoryStore(max_entries=2)
        await cache.set("a", 1)
        await cache.set("b", 2)
        await cache.set("a", 3)
        await cache.set("c", 4)

        assert await cache.get("b") is None
        assert await cache.get("a") == 3
        assert (await cache.get_stats())["total_keys"] == 2

    async def test_clear_expired(self):
        cache = CacheMemoryStore()
        await cache.set("gone", 1, ttl=0)
        await asyncio.sleep(0.001)
        assert await cache.clear_expired() == 1
        assert await cache.delete("gone") is False


class TestWorkingMemoryStore:

    async def test_absent_memory_is_empty(self, working_memory):
        memory = await working_memory.get("org_1", "user_1")

        assert memory.is_empty()
        assert memory.organization_id == "org_1"

    async def test_memory_expires_after_ttl(self):
        store = WorkingMemoryStore(ttl_seconds=0)
        await store.record_action("org_1", "user_1", "viewed customer")
        await asyncio.sleep(0.001)

        assert (await store.get("org_1", "user_1")).is_empty()

    async def test_recent_actions_keep_newest_ten(self, working_memory):
        for index in range(MAX_RECENT_ACTIONS + 3):
            await working_memory.record_action("org_1", "user_1", f"action {index}")

        memory = await working_memory.get("org_1", "user_1")
        assert len(memory.recent_actions) == MAX_RECENT_ACTIONS
        assert memory.recent_actions[0] == "action 3"
        assert memory.recent_actions[-1] == "action 12"

    async def test_pending_approvals_are_unique(self, working_memory):
        await working_memory.add_pending_approval("org_1", "user_1", "appr_1")
        await working_memory.add_pending_approval("org_1", "user_1", "appr_1")
        await working_memory.add_pending_approval("org_1", "user_1", "appr_2")
        await working_memory.remove_pending_approval("org_1", "user_1", "appr_1")

        memory = await working_memory.get("org_1", "user_1")
        assert memory.pending_approval_ids == ["appr_2"]

    async def test_ui_context_update(self, working_memory):
        await working_memory.update_ui_context("org_1", "user_1", current_page="/customers/c1",
                                               active_entity_id="c1", active_entity_type="customer")
        memory = await working_memory.update_ui_context("org_1", "user_1", current_page="/orders")

        assert memory.current_page == "/orders"
        assert memory.active_entity_id == "c1"

        cleared = await working_memory.update_ui_context("org_1", "user_1", active_entity_id="")
        assert cleared.active_entity_id is None
        assert cleared.active_entity_type is None

    async def test_users_are_isolated(self, working_memory):
        await working_memory.set_draft("org_1", "user_1", {"customerId": "c1"})

        assert (await working_memory.get("org_1", "user_2")).is_empty()
        assert (await working_memory.get("org_2", "user_1")).is_empty()

    async def test_conversation_scope_checks_organization(self, working_memory):
        memory = WorkingMemory(user_id="user_1", organization_id="org_1", current_page="/quotes")
        await working_memory.set(memory, WorkingMemoryScope.CONVERSATION, conversation_id="conv_1")

        same = await working_memory.get("org_1", "user_1", WorkingMemoryScope.CONVERSATION, "conv_1")
        foreign = await working_memory.get("org_2", "user_9", WorkingMemoryScope.CONVERSATION, "conv_1")

        assert same.current_page == "/quotes"
        assert foreign.is_empty()

    def test_keys_by_scope(self):
        assert working_memory_key("org_1", "user_1") == "wm:org_1:user_1"
        assert working_memory_key("org_1", "user_1", WorkingMemoryScope.CONVERSATION, "conv_1") == "wm:conversation:conv_1"
        assert working_memory_key("org_1", "user_1", WorkingMemoryScope.CONVERSATION) == "wm:org_1:user_1"

    async def test_conversation_scope_round_trip(self, working_memory):
        conversation = {"scope": WorkingMemoryScope.CONVERSATION, "conversation_id": "conv_1"}
        await working_memory.record_action("org_1", "user_1", "used get_orders", **conversation)
        await working_memory.add_pending_approval("org_1", "user_1", "appr_1", **conversation)
        await working_memory.add_pending_approval("org_1", "user_1", "appr_2", **conversation)
        await working_memory.remove_pending_approval("org_1", "user_1", "appr_1", **conversation)
        await working_memory.set_draft("org_1", "user_1", {"orderId": "ord_1"}, **conversation)
        await working_memory.update_ui_context("org_1", "user_1", current_page="/orders", **conversation)

        scoped = await working_memory.get("org_1", "user_1", **conversation)
        assert scoped.recent_actions == ["used get_orders"]
        assert scoped.pending_approval_ids == ["appr_2"]
        assert scoped.draft_in_progress == {"orderId": "ord_1"}
        assert scoped.current_page == "/orders"
        assert (await working_memory.get("org_1", "user_1")).is_empty()
        assert (await working_memory.get("org_1", "user_1", WorkingMemoryScope.CONVERSATION, "conv_2")).is_empty()

    async def test_purge_expired_drops_stale_entries(self):
        store = WorkingMemoryStore(CacheMemoryStore(default_ttl=0, max_entries=10), ttl_seconds=0)
        await store.record_action("org_1", "user_1", "viewed customer")
        await store.record_action("org_1", "user_2", "viewed order")
        await asyncio.sleep(0.001)

        assert await store.purge_expired() == 2
        assert (await store.stats())["total_keys"] == 0

    async def test_sweep_runs_until_cancelled(self):
        store = WorkingMemoryStore(CacheMemoryStore(default_ttl=0), ttl_seconds=0)
        await store.record_action("org_1", "user_1", "viewed customer")

        task = asyncio.create_task(store.sweep(interval_seconds=0.01))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert (await store.stats())["total_keys"] == 0
