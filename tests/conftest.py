import pytest

from crm_agent.domain.approval.handlers import ApplyHandlers
from crm_agent.domain.approval.workflow import ApprovalWorkflow
from crm_agent.domain.context.memory.working_memory import WorkingMemoryStore
from crm_agent.domain.models.agent_state import ToolExecutionContext, UserContext
from crm_agent.domain.tool.builtin import ToolDependencies, build_tool_registry
from crm_agent.infrastructure.observability.logging import MetricsCollector
from crm_agent.infrastructure.persistence.approval_store import ApprovalStore
from crm_agent.infrastructure.persistence.conversation_store import ConversationStore
from crm_agent.infrastructure.persistence.database import Database
from crm_agent.infrastructure.persistence.demo_seed import DEMO_ORGANIZATION_ID, DEMO_USER_ID, seed_demo_data
from crm_agent.infrastructure.persistence.domain_store import DomainStore

from tests.support import FIXED_TODAY, OTHER_CUSTOMER_ID, OTHER_ORGANIZATION_ID


@pytest.fixture
def db():
    database = Database(":memory:")
    yield database
    database.close()


@pytest.fixture
def store(db):
    return DomainStore(db)


@pytest.fixture
def approvals(db):
    return ApprovalStore(db)


@pytest.fixture
def conversations(db):
    return ConversationStore(db)


@pytest.fixture
def working_memory():
    return WorkingMemoryStore()


@pytest.fixture
def metrics():
    return MetricsCollector()


@pytest.fixture
def seeded(store):
    """Demo organisation plus one customer in a second organisation"""

    customers = seed_demo_data(store, tax_rate=0.10, today=FIXED_TODAY)
    store.insert_customer(
        OTHER_ORGANIZATION_ID, "Other Org Pty Ltd",
        customer_id=OTHER_CUSTOMER_ID, email="hidden@other.example"
    )
    return customers


@pytest.fixture
def deps(db, store, approvals, seeded):
    return ToolDependencies(db, store, approvals, tax_rate=0.10, today=lambda: FIXED_TODAY)


@pytest.fixture
def registry(deps):
    return build_tool_registry(deps)


@pytest.fixture
def identity():
    return UserContext(user_id=DEMO_USER_ID, organization_id=DEMO_ORGANIZATION_ID, role="admin")


@pytest.fixture
def reviewer():
    return UserContext(user_id="user_reviewer", organization_id=DEMO_ORGANIZATION_ID, role="admin")


@pytest.fixture
def outsider():
    return UserContext(user_id="user_outsider", organization_id=OTHER_ORGANIZATION_ID)


@pytest.fixture
def tool_context():
    return ToolExecutionContext(
        user_id=DEMO_USER_ID,
        organization_id=DEMO_ORGANIZATION_ID,
        conversation_id="conv_1",
        agent_name="customer"
    )


@pytest.fixture
def workflow(db, store, approvals, working_memory):
    return ApprovalWorkflow(db, approvals, ApplyHandlers(store, tax_rate=0.10), working_memory=working_memory)
