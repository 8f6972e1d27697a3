import pytest

from crm_agent.domain.errors import AuthError, ConflictError
from crm_agent.domain.models.agent_state import WorkingMemoryScope
from crm_agent.domain.models.tool_outcome import ApprovalRequiredOutcome, DataOutcome, ErrorOutcome
from crm_agent.domain.tool.progress import ProgressChannel, ProgressStage
from crm_agent.domain.tool.tool_executor import ToolExecutor
from crm_agent.domain.tool.tool_registry import BaseTool, ToolInput, ToolSet
from crm_agent.infrastructure.persistence.demo_seed import DEMO_ORGANIZATION_ID, DEMO_USER_ID

from tests.support import OTHER_CUSTOMER_ID


class RaisingTool(BaseTool):
    name = "raising_tool"
    description = "Raises the configured error"
    input_model = ToolInput

    def __init__(self, error: Exception):
        self.error = error

    async def execute(self, params, context):
        raise self.error


@pytest.fixture
def customer_tools(registry):
    return registry.get_tool_set("customer")


@pytest.fixture
def executor(customer_tools, working_memory, metrics):
    return ToolExecutor(customer_tools, working_memory, metrics=metrics)


class TestValidation:

    async def test_unknown_tool_lists_available_tools(self, executor, tool_context):
        outcome = await executor.execute("delete_everything", {}, tool_context)

        assert isinstance(outcome, ErrorOutcome)
        assert outcome.code == "UNKNOWN_TOOL"
        assert "get_customer" in outcome.suggestion

    async def test_missing_required_argument(self, executor, tool_context):
        outcome = await executor.execute("get_customer", {}, tool_context)

        assert outcome.code == "VALIDATION_ERROR"
        assert "customerId" in outcome.message

    async def test_unknown_argument_rejected(self, executor, tool_context):
        outcome = await executor.execute("get_customer", {"customerId": "cust_acme", "includeAll": True}, tool_context)
        assert outcome.code == "VALIDATION_ERROR"

    @pytest.mark.parametrize("key", ["organizationId", "organization_id", "userId", "_context"])
    async def test_identity_arguments_are_refused(self, executor, tool_context, key):
        outcome = await executor.execute("get_customer", {"customerId": "cust_acme", key: "org_other"}, tool_context)

        assert outcome.code == "VALIDATION_ERROR"
        assert "caller identity is injected" in outcome.message

    async def test_non_object_arguments(self, executor, tool_context):
        outcome = await executor.execute("get_customer", ["cust_acme"], tool_context)
        assert outcome.code == "VALIDATION_ERROR"


class TestOutcomes:

    async def test_data_outcome_is_sanitized(self, executor, tool_context):
        outcome = await executor.execute("get_customer", {"customerId": "cust_acme"}, tool_context)

        assert isinstance(outcome, DataOutcome)
        customer = outcome.payload["customer"]
        assert customer["name"] == "Acme Builders"
        assert "email" not in customer
        assert "phone" not in customer
        assert "taxId" not in customer

    async def test_domain_error_becomes_error_outcome(self, executor, tool_context):
        outcome = await executor.execute("get_customer", {"customerId": "cust_missing"}, tool_context)

        assert outcome.code == "NOT_FOUND"
        assert outcome.message == "Customer not found"
        assert outcome.suggestion

    async def test_other_organization_is_not_found(self, executor, tool_context):
        outcome = await executor.execute("get_customer", {"customerId": OTHER_CUSTOMER_ID}, tool_context)
        assert outcome.code == "NOT_FOUND"

    async def test_unexpected_exception_is_contained(self, working_memory, metrics, tool_context):
        executor = ToolExecutor(ToolSet("customer", [RaisingTool(KeyError("line_total"))]), working_memory, metrics=metrics)

        outcome = await executor.execute("raising_tool", {}, tool_context)

        assert outcome.code == "INTERNAL_ERROR"
        assert "raising_tool failed" in outcome.message
        assert metrics.get_counter("tool.error") == 1

    async def test_conflict_keeps_its_code(self, tool_context):
        executor = ToolExecutor(ToolSet("customer", [RaisingTool(ConflictError("Version changed"))]))
        outcome = await executor.execute("raising_tool", {}, tool_context)
        assert outcome.code == "CONFLICT"

    async def test_auth_error_ends_the_turn(self, tool_context):
        executor = ToolExecutor(ToolSet("customer", [RaisingTool(AuthError("Session expired"))]))

        with pytest.raises(AuthError):
            await executor.execute("raising_tool", {}, tool_context)


class TestSideEffects:

    async def test_successful_call_is_recorded_as_recent_action(self, executor, working_memory, tool_context):
        await executor.execute("search_customers", {"query": "Acme"}, tool_context)

        memory = await working_memory.get(DEMO_ORGANIZATION_ID, DEMO_USER_ID)
        assert memory.recent_actions == ["used search_customers"]

    async def test_draft_tracks_pending_approval(self, executor, working_memory, tool_context):
        outcome = await executor.execute(
            "update_customer_notes", {"customerId": "cust_acme", "notes": "Call on Tuesdays"}, tool_context
        )

        assert isinstance(outcome, ApprovalRequiredOutcome)
        memory = await working_memory.get(DEMO_ORGANIZATION_ID, DEMO_USER_ID)
        assert memory.pending_approval_ids == [outcome.approval_id]
        assert memory.recent_actions == ["drafted update_customer_notes"]

    async def test_errors_leave_working_memory_alone(self, executor, working_memory, tool_context):
        await executor.execute("get_customer", {"customerId": "cust_missing"}, tool_context)

        memory = await working_memory.get(DEMO_ORGANIZATION_ID, DEMO_USER_ID)
        assert memory.is_empty()

    async def test_conversation_scoped_side_effects(self, customer_tools, working_memory, metrics, tool_context):
        executor = ToolExecutor(customer_tools, working_memory, metrics=metrics, scope=WorkingMemoryScope.CONVERSATION)

        outcome = await executor.execute(
            "update_customer_notes", {"customerId": "cust_acme", "notes": "Call on Tuesdays"}, tool_context
        )

        scoped = await working_memory.get(DEMO_ORGANIZATION_ID, DEMO_USER_ID, WorkingMemoryScope.CONVERSATION, "conv_1")
        assert scoped.pending_approval_ids == [outcome.approval_id]
        assert scoped.recent_actions == ["drafted update_customer_notes"]
        assert (await working_memory.get(DEMO_ORGANIZATION_ID, DEMO_USER_ID)).is_empty()

    async def test_latency_recorded_per_tool(self, executor, metrics, tool_context):
        await executor.execute("get_customer", {"customerId": "cust_acme"}, tool_context)
        assert metrics.get_metrics_summary()["latency.tool.get_customer"]["count"] == 1


class TestProgress:

    async def test_progressive_tool_publishes_to_caller_channel(self, registry, working_memory, metrics, tool_context):
        executor = ToolExecutor(registry.get_tool_set("analytics"), working_memory, metrics=metrics)
        channel = ProgressChannel(maxsize=32)

        outcome = await executor.execute(
            "run_report", {"reportType": "orders_by_status", "period": "rolling90"}, tool_context, channel
        )

        assert isinstance(outcome, DataOutcome)
        stages = [update.stage async for update in channel.updates()]
        assert stages[0] == ProgressStage.LOADING
        assert stages[-1] == ProgressStage.COMPLETE

    async def test_plain_tool_ignores_channel(self, executor, tool_context):
        channel = ProgressChannel()

        await executor.execute("get_customer", {"customerId": "cust_acme"}, tool_context, channel)

        assert channel.last is None
