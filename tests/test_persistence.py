import asyncio
import threading
import time

import pytest

from crm_agent.domain.errors import NotFoundError
from crm_agent.domain.models.memory import ConversationMessage, MessageRole
from crm_agent.infrastructure.persistence.demo_seed import DEMO_ORGANIZATION_ID, DEMO_USER_ID


class TestDatabaseReads:

    async def test_reads_run_off_the_event_loop_thread(self, db, store, seeded, monkeypatch):
        threads = []
        fetch_one = db.fetch_one

        def recording_fetch_one(sql, params=()):
            threads.append(threading.get_ident())
            return fetch_one(sql, params)

        monkeypatch.setattr(db, "fetch_one", recording_fetch_one)

        customer = await store.get_customer(DEMO_ORGANIZATION_ID, "cust_acme")

        assert customer["name"] == "Acme Builders"
        assert threads and threading.get_ident() not in threads

    async def test_gathered_reads_overlap(self, db, monkeypatch):
        fetch_all = db.fetch_all

        def slow_fetch_all(sql, params=()):
            time.sleep(0.2)
            return fetch_all(sql, params)

        monkeypatch.setattr(db, "fetch_all", slow_fetch_all)

        started = time.perf_counter()
        await asyncio.gather(*(db.read_all("SELECT 1") for _ in range(3)))

        assert time.perf_counter() - started < 0.35

    async def test_loop_stays_responsive_during_a_read(self, db, monkeypatch):
        fetch_one = db.fetch_one
        ticks = []

        def slow_fetch_one(sql, params=()):
            time.sleep(0.1)
            return fetch_one(sql, params)

        async def ticker():
            for _ in range(5):
                ticks.append(time.perf_counter())
                await asyncio.sleep(0.01)

        async def read():
            await db.read_one("SELECT 1")
            finished.append(time.perf_counter())

        finished = []
        monkeypatch.setattr(db, "fetch_one", slow_fetch_one)

        await asyncio.gather(read(), ticker())

        assert sum(1 for tick in ticks if tick < finished[0]) >= 3


class TestConversationOwnership:

    async def test_owner_gets_existing_conversation(self, conversations):
        created = await conversations.get_or_create("conv_1", DEMO_ORGANIZATION_ID, DEMO_USER_ID)
        again = await conversations.get_or_create("conv_1", DEMO_ORGANIZATION_ID, DEMO_USER_ID)

        assert again.id == created.id
        assert again.user_id == DEMO_USER_ID

    async def test_colleague_cannot_open_conversation(self, conversations):
        await conversations.get_or_create("conv_1", DEMO_ORGANIZATION_ID, DEMO_USER_ID)
        await conversations.append_messages(
            "conv_1", DEMO_ORGANIZATION_ID, [ConversationMessage(role=MessageRole.USER, content="private note")]
        )

        with pytest.raises(NotFoundError):
            await conversations.get_or_create("conv_1", DEMO_ORGANIZATION_ID, "user_colleague")

        record = await conversations.get("conv_1", DEMO_ORGANIZATION_ID)
        assert [m.content for m in record.messages] == ["private note"]
