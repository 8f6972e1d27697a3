import pytest

from crm_agent.domain.context.memory_assembler import (
    MAX_CONTEXT_CHARS,
    MAX_MESSAGE_CHARS,
    MemoryAssembler,
    format_memory_context,
)
from crm_agent.domain.context.topic_ranker import TopicRanker
from crm_agent.domain.models.memory import ConversationMessage, MemoryContext, MessageRole, WorkingMemory


class BrokenWorkingMemory:
    async def get(self, *args, **kwargs):
        raise ConnectionError("cache unavailable")


class BrokenConversations:
    async def get_recent_messages(self, *args, **kwargs):
        raise ConnectionError("database unavailable")


def message(role: MessageRole, content: str) -> ConversationMessage:
    return ConversationMessage(role=role, content=content)


@pytest.fixture
def assembler(working_memory, conversations):
    return MemoryAssembler(working_memory, conversations)


@pytest.fixture
async def conversation(conversations):
    await conversations.get_or_create("conv_1", "org_1", "user_1")
    await conversations.append_messages("conv_1", "org_1", [
        message(MessageRole.USER if index % 2 == 0 else MessageRole.ASSISTANT, f"message {index} about orders")
        for index in range(8)
    ])
    return "conv_1"


class TestAssemble:

    async def test_nothing_known_formats_to_empty_string(self, assembler):
        context = await assembler.assemble("org_1", "user_1")

        assert context.is_empty()
        assert assembler.format(context) == ""

    async def test_history_is_last_five_in_order(self, assembler, conversation):
        context = await assembler.assemble("org_1", "user_1", conversation_id=conversation)

        assert [m.content for m in context.recent_messages] == [f"message {i} about orders" for i in range(3, 8)]
        assert context.topic_summary == "orders"

    async def test_history_limit_is_capped_at_five(self, assembler, conversation):
        context = await assembler.assemble("org_1", "user_1", conversation_id=conversation, history_limit=50)
        assert len(context.recent_messages) == 5

    async def test_history_disabled_with_zero_limit(self, assembler, conversation):
        context = await assembler.assemble("org_1", "user_1", conversation_id=conversation, history_limit=0)
        assert context.recent_messages == []

    async def test_other_organization_sees_no_history(self, assembler, conversation):
        context = await assembler.assemble("org_2", "user_1", conversation_id=conversation)
        assert context.recent_messages == []

    async def test_working_memory_failure_degrades_to_empty(self, conversations, conversation):
        assembler = MemoryAssembler(BrokenWorkingMemory(), conversations)

        context = await assembler.assemble("org_1", "user_1", conversation_id=conversation)

        assert context.working_memory.is_empty()
        assert len(context.recent_messages) == 5

    async def test_history_failure_degrades_to_empty(self, working_memory):
        await working_memory.record_action("org_1", "user_1", "used get_customer")
        assembler = MemoryAssembler(working_memory, BrokenConversations())

        context = await assembler.assemble("org_1", "user_1", conversation_id="conv_1")

        assert context.recent_messages == []
        assert context.working_memory.recent_actions == ["used get_customer"]


class TestFormat:

    def test_working_memory_section(self):
        working = WorkingMemory(
            user_id="user_1",
            organization_id="org_1",
            current_page="/customers/cust_acme",
            active_entity_id="cust_acme",
            active_entity_type="customer",
            pending_approval_ids=["appr_1"],
        )
        text = format_memory_context(MemoryContext(organization_id="org_1", user_id="user_1", working_memory=working))

        assert text.startswith("<memory_context>\n## Working Memory")
        assert text.endswith("</memory_context>")
        assert "- Active entity: customer cust_acme" in text
        assert "- Pending approvals: appr_1" in text
        assert "Recent Conversation" not in text

    def test_custom_template(self):
        working = WorkingMemory(user_id="user_1", organization_id="org_1", current_page="/orders")
        context = MemoryContext(organization_id="org_1", user_id="user_1", working_memory=working)

        assert format_memory_context(context, "Page: {current_page}") == "<memory_context>\nPage: /orders\n</memory_context>"

    def test_messages_are_clipped(self):
        context = MemoryContext(
            organization_id="org_1",
            user_id="user_1",
            working_memory=WorkingMemory.empty("org_1", "user_1"),
            recent_messages=[message(MessageRole.USER, "x" * 1000)],
        )

        line = next(line for line in format_memory_context(context).splitlines() if line.startswith("- user:"))
        assert len(line) == len("- user: ") + MAX_MESSAGE_CHARS
        assert line.endswith("...")

    def test_whole_block_is_bounded(self):
        working = WorkingMemory(
            user_id="user_1",
            organization_id="org_1",
            current_page="/" + "p" * 3000,
            recent_actions=["a" * 500] * 5,
        )
        context = MemoryContext(
            organization_id="org_1",
            user_id="user_1",
            working_memory=working,
            recent_messages=[message(MessageRole.USER, "y" * 300)] * 5,
        )

        text = format_memory_context(context)

        assert len(text) <= MAX_CONTEXT_CHARS
        assert text.endswith("...\n</memory_context>")


class TestTopicRanker:

    def test_ranks_by_keyword_hits(self):
        ranker = TopicRanker()
        summary = ranker.summarize([
            "show me revenue trends for the quarter",
            "and the revenue report by customer",
        ])
        assert summary == "analytics, customers"

    def test_no_matches(self):
        assert TopicRanker().summarize(["hello there"]) == ""
