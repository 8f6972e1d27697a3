from typing import Optional
from datetime import timedelta

import structlog

from crm_agent.application.websocket.connection_manager import ConnectionManager
from crm_agent.config import AgentSettings
from crm_agent.domain.approval.handlers import ApplyHandlers
from crm_agent.domain.approval.workflow import ApprovalWorkflow
from crm_agent.domain.context.memory.cache_memory_store import CacheMemoryStore
from crm_agent.domain.context.memory.working_memory import WorkingMemoryStore
from crm_agent.domain.context.memory_assembler import MemoryAssembler
from crm_agent.domain.orchestration.agent_registry import AgentRegistry, build_default_agents
from crm_agent.domain.orchestration.core.main_agent import AgentOrchestrator
from crm_agent.domain.orchestration.subagent.specialist_runner import SpecialistRunner
from crm_agent.domain.orchestration.triage import TriageRouter
from crm_agent.domain.provider.base import ModelProvider
from crm_agent.domain.provider.langchain_provider import LangChainModelProvider
from crm_agent.domain.streaming.streaming_handler import StreamingHandler
from crm_agent.domain.tool.builtin import ToolDependencies, build_tool_registry
from crm_agent.domain.tool.tool_registry import ToolRegistry
from crm_agent.infrastructure.observability.logging import AgentLogger, MetricsCollector, agent_logger, metrics
from crm_agent.infrastructure.persistence.approval_store import ApprovalStore
from crm_agent.infrastructure.persistence.conversation_store import ConversationStore
from crm_agent.infrastructure.persistence.database import Database
from crm_agent.infrastructure.persistence.demo_seed import DEMO_ORGANIZATION_ID, DEMO_USER_ID, seed_demo_data
from crm_agent.infrastructure.persistence.domain_store import DomainStore
from crm_agent.infrastructure.security.session_resolver import (
    SessionBackend,
    SessionCache,
    SessionIdentity,
    SessionResolver,
    StaticSessionBackend,
)

logger = structlog.get_logger(__name__)


class AgentServices:
    """Everything the HTTP and WebSocket surfaces need, wired once per process"""

    def __init__(
        self,
        settings: AgentSettings,
        db: Database,
        domain_store: DomainStore,
        conversations: ConversationStore,
        approvals: ApprovalStore,
        working_memory: WorkingMemoryStore,
        tools: ToolRegistry,
        agents: AgentRegistry,
        orchestrator: AgentOrchestrator,
        workflow: ApprovalWorkflow,
        sessions: SessionResolver,
        connection_manager: ConnectionManager,
        streaming_handler: StreamingHandler,
        agent_logger: AgentLogger,
        metrics: MetricsCollector
    ):
        self.settings = settings
        self.db = db
        self.domain_store = domain_store
        self.conversations = conversations
        self.approvals = approvals
        self.working_memory = working_memory
        self.tools = tools
        self.agents = agents
        self.orchestrator = orchestrator
        self.workflow = workflow
        self.sessions = sessions
        self.connection_manager = connection_manager
        self.streaming_handler = streaming_handler
        self.agent_logger = agent_logger
        self.metrics = metrics

    def close(self):
        self.db.close()


def build_services(
    settings: Optional[AgentSettings] = None,
    provider: Optional[ModelProvider] = None,
    session_backend: Optional[SessionBackend] = None,
    db: Optional[Database] = None,
    tool_dependencies: Optional[ToolDependencies] = None
) -> AgentServices:
    """Construct the service graph; collaborators can be swapped for tests"""

    settings = settings or AgentSettings.from_env()
    db = db or Database(settings.database_path)
    domain_store = DomainStore(db)
    conversations = ConversationStore(db)
    approvals = ApprovalStore(db, lifetime=timedelta(hours=settings.approval_lifetime_hours))
    working_memory = WorkingMemoryStore(
        CacheMemoryStore(
            default_ttl=settings.working_memory_ttl_seconds,
            max_entries=settings.working_memory_max_entries
        ),
        ttl_seconds=settings.working_memory_ttl_seconds
    )

    deps = tool_dependencies or ToolDependencies(db, domain_store, approvals, tax_rate=settings.tax_rate)
    tools = build_tool_registry(deps)
    agents = build_default_agents(settings)

    provider = provider or LangChainModelProvider(
        model_provider=settings.model_provider,
        pricing_for=settings.pricing_for
    )
    orchestrator = AgentOrchestrator(
        agents=agents,
        tools=tools,
        triage=TriageRouter(provider, agents.triage, agent_logger, metrics),
        runner=SpecialistRunner(provider, working_memory, agent_logger, metrics),
        assembler=MemoryAssembler(working_memory, conversations),
        conversations=conversations
    )
    workflow = ApprovalWorkflow(
        db,
        approvals,
        ApplyHandlers(domain_store, tax_rate=settings.tax_rate),
        working_memory=working_memory,
        agent_logger=agent_logger
    )

    if session_backend is None:
        session_backend = StaticSessionBackend()
    sessions = SessionResolver(
        session_backend,
        SessionCache(ttl_seconds=settings.session_cache_ttl_seconds, max_entries=settings.session_cache_max_entries)
    )

    if settings.seed_demo_data:
        seed_demo_data(domain_store, tax_rate=settings.tax_rate)
        if settings.dev_session_token and isinstance(session_backend, StaticSessionBackend):
            session_backend.add_session(
                settings.dev_session_token,
                SessionIdentity(user_id=DEMO_USER_ID, organization_id=DEMO_ORGANIZATION_ID, role="admin")
            )

    connection_manager = ConnectionManager()
    logger.info(
        "Services initialised",
        environment=settings.environment,
        database_path=settings.database_path,
        tools=len(tools.get_available_tools())
    )

    return AgentServices(
        settings=settings,
        db=db,
        domain_store=domain_store,
        conversations=conversations,
        approvals=approvals,
        working_memory=working_memory,
        tools=tools,
        agents=agents,
        orchestrator=orchestrator,
        workflow=workflow,
        sessions=sessions,
        connection_manager=connection_manager,
        streaming_handler=StreamingHandler(connection_manager),
        agent_logger=agent_logger,
        metrics=metrics
    )
