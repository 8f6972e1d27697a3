from typing import TypedDict, List, Dict, Any, Optional, Literal
import asyncio

from langgraph.graph import StateGraph, END
import structlog

from crm_agent.domain.context.memory_assembler import MemoryAssembler
from crm_agent.domain.errors import ValidationError
from crm_agent.domain.models.agent_state import (
    HandoffDecision,
    MemoryPolicy,
    TargetAgent,
    UserContext,
)
from crm_agent.domain.models.memory import ConversationMessage, MemoryContext, MessageRole, WorkingMemory
from crm_agent.domain.orchestration.agent_registry import AgentRegistry
from crm_agent.domain.orchestration.subagent.specialist_runner import SpecialistRunner
from crm_agent.domain.orchestration.triage import TriageRouter
from crm_agent.domain.streaming.token_stream import StreamResult, TokenStream
from crm_agent.domain.tool.tool_registry import ToolRegistry
from crm_agent.infrastructure.persistence.conversation_store import ConversationStore

logger = structlog.get_logger(__name__)


class TurnState(TypedDict):
    """State for the per-turn routing graph"""
    messages: List[ConversationMessage]
    user_context: UserContext
    conversation_id: Optional[str]
    cancel_event: Optional[asyncio.Event]
    requested_agent: Optional[str]
    memory_context: Optional[MemoryContext]
    decision: Optional[HandoffDecision]
    agent_trace: List[str]


class AgentOrchestrator:
    """Memory assembly, triage and specialist selection for one turn, run as a LangGraph pipeline"""

    def __init__(
        self,
        agents: AgentRegistry,
        tools: ToolRegistry,
        triage: TriageRouter,
        runner: SpecialistRunner,
        assembler: Optional[MemoryAssembler] = None,
        conversations: Optional[ConversationStore] = None,
        memory_policy: Optional[MemoryPolicy] = None
    ):
        self.agents = agents
        self.tools = tools
        self.triage = triage
        self.runner = runner
        self.assembler = assembler
        self.conversations = conversations
        self.memory_policy = memory_policy or MemoryPolicy()
        self.workflow = self._create_workflow()

    def _create_workflow(self):
        """Create the routing graph"""

        workflow = StateGraph(TurnState)

        workflow.add_node("memory_loader", self.memory_node)
        workflow.add_node("triage", self.triage_node)
        workflow.add_node("direct_handoff", self.direct_handoff_node)

        workflow.set_entry_point("memory_loader")
        workflow.add_conditional_edges(
            "memory_loader",
            self.route_after_memory,
            {
                "triage": "triage",
                "direct": "direct_handoff"
            }
        )
        workflow.add_edge("triage", END)
        workflow.add_edge("direct_handoff", END)

        return workflow.compile()

    async def memory_node(self, state: TurnState) -> Dict[str, Any]:
        """Assemble working memory and recent history"""

        user_context = state["user_context"]
        memory_context = None
        if self.assembler is not None:
            memory_context = await self.assembler.assemble(
                user_context.organization_id,
                user_context.user_id,
                conversation_id=state["conversation_id"],
                scope=self.memory_policy.working_memory_scope,
                history_limit=self.memory_policy.history_limit
            )
        return {"memory_context": memory_context, "agent_trace": state["agent_trace"] + ["memory_loader"]}

    async def triage_node(self, state: TurnState) -> Dict[str, Any]:
        """Classify the turn into a specialist"""

        decision = await self.triage.route(
            state["messages"],
            state["user_context"],
            conversation_id=state["conversation_id"],
            cancel_event=state["cancel_event"]
        )
        return {"decision": decision, "agent_trace": state["agent_trace"] + ["triage"]}

    async def direct_handoff_node(self, state: TurnState) -> Dict[str, Any]:
        """Caller named the specialist; skip classification"""

        decision = HandoffDecision(
            target_agent=TargetAgent(state["requested_agent"]),
            reason="Agent selected by caller"
        )
        return {"decision": decision, "agent_trace": state["agent_trace"] + ["direct_handoff"]}

    def route_after_memory(self, state: TurnState) -> Literal["triage", "direct"]:
        return "direct" if state.get("requested_agent") else "triage"

    async def route_and_run(
        self,
        messages: List[ConversationMessage],
        user_context: UserContext,
        conversation_id: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
        target_agent: Optional[str] = None
    ) -> TokenStream:
        """Route the latest user message and return the specialist's stream"""

        if not messages or messages[-1].role != MessageRole.USER:
            raise ValidationError("The last message must be a user message")
        if not messages[-1].content.strip():
            raise ValidationError("Empty message content")
        if target_agent is not None and target_agent not in self.agents.names():
            raise ValidationError(
                f"Unknown agent: {target_agent}",
                suggestion=f"Use one of: {', '.join(self.agents.names())}"
            )

        cancel_event = cancel_event or asyncio.Event()
        if conversation_id and self.conversations is not None:
            await self.conversations.get_or_create(conversation_id, user_context.organization_id, user_context.user_id)

        logger.info(
            "Routing turn",
            conversation_id=conversation_id,
            organization_id=user_context.organization_id,
            requested_agent=target_agent
        )

        initial_state: TurnState = {
            "messages": list(messages),
            "user_context": user_context,
            "conversation_id": conversation_id,
            "cancel_event": cancel_event,
            "requested_agent": target_agent,
            "memory_context": None,
            "decision": None,
            "agent_trace": []
        }
        state = await self.workflow.ainvoke(initial_state)
        decision: HandoffDecision = state["decision"]

        if conversation_id and self.conversations is not None:
            await self.conversations.append_messages(conversation_id, user_context.organization_id, [messages[-1]])
            await self.conversations.record_handoff(conversation_id, user_context.organization_id, decision)

        descriptor = self.agents.get(decision.target_agent.value)
        specialist_messages = list(messages) if decision.preserve_context else [messages[-1]]
        memory_context = await self._scoped_memory(state.get("memory_context"), descriptor.memory_policy, conversation_id)
        memory_context = self._apply_policy(memory_context, descriptor.memory_policy)

        stream = self.runner.run(
            descriptor,
            self.tools.get_tool_set(descriptor.name),
            specialist_messages,
            user_context,
            conversation_id=conversation_id,
            cancel_event=cancel_event,
            memory_context=memory_context
        )
        stream.handoff = decision
        if conversation_id and self.conversations is not None:
            stream.on_complete = self._persist_reply(conversation_id, user_context.organization_id)
        return stream

    async def _scoped_memory(
        self,
        context: Optional[MemoryContext],
        policy: MemoryPolicy,
        conversation_id: Optional[str]
    ) -> Optional[MemoryContext]:
        """Reload working memory when the specialist keys it differently from the turn default"""

        if context is None or self.assembler is None:
            return context
        if policy.working_memory_scope == self.memory_policy.working_memory_scope:
            return context
        working = await self.assembler.load_working_memory(
            context.organization_id,
            context.user_id,
            policy.working_memory_scope,
            conversation_id
        )
        return context.model_copy(update={"working_memory": working})

    def _apply_policy(self, context: Optional[MemoryContext], policy: MemoryPolicy) -> Optional[MemoryContext]:
        if context is None:
            return None
        update: Dict[str, Any] = {}
        if not policy.working_memory_enabled:
            update["working_memory"] = WorkingMemory.empty(context.organization_id, context.user_id)
        if not policy.history_enabled:
            update["recent_messages"] = []
            update["topic_summary"] = ""
        elif len(context.recent_messages) > policy.history_limit:
            update["recent_messages"] = context.recent_messages[-policy.history_limit:] if policy.history_limit else []
        return context.model_copy(update=update) if update else context

    def _persist_reply(self, conversation_id: str, organization_id: str):
        async def persist(result: StreamResult) -> None:
            if not result.text:
                return
            reply = ConversationMessage(role=MessageRole.ASSISTANT, content=result.text, agent=result.agent)
            await self.conversations.append_messages(conversation_id, organization_id, [reply])

        return persist

    async def run_batch(
        self,
        messages: List[ConversationMessage],
        user_context: UserContext,
        conversation_id: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
        target_agent: Optional[str] = None
    ) -> StreamResult:
        """Non-streaming turn"""

        stream = await self.route_and_run(messages, user_context, conversation_id, cancel_event, target_agent)
        async with stream:
            return await stream.collect()
