from typing import AsyncIterator, List, Optional
import asyncio
import json
import time

import structlog

from crm_agent.domain.context.memory.working_memory import WorkingMemoryStore
from crm_agent.domain.context.memory_assembler import format_memory_context
from crm_agent.domain.models.agent_state import AgentDescriptor, ToolExecutionContext, UserContext
from crm_agent.domain.models.events import ProviderFinish, TextDelta, ToolCallEvent, ToolProgressEvent, ToolResultEvent
from crm_agent.domain.models.memory import ConversationMessage, MemoryContext, MessageRole, ToolCall
from crm_agent.domain.models.tool_outcome import outcome_to_tool_message
from crm_agent.domain.orchestration.prompts import COMMON_RULES, SECURITY_INSTRUCTIONS
from crm_agent.domain.provider.base import ModelProvider, ModelRequest, ToolChoice
from crm_agent.domain.streaming.token_stream import StreamEvent, TokenStream
from crm_agent.domain.tool.progress import ProgressChannel
from crm_agent.domain.tool.tool_executor import ToolExecutor
from crm_agent.domain.tool.tool_registry import ToolSet
from crm_agent.infrastructure.observability.logging import (
    AgentLogger,
    MetricsCollector,
    agent_logger as default_agent_logger,
    metrics as default_metrics,
)

logger = structlog.get_logger(__name__)


def build_system_prompt(
    descriptor: AgentDescriptor,
    user_context: UserContext,
    memory_block: str = ""
) -> str:
    """Memory first, then the domain prompt with current context, then the shared rules"""

    sections = []
    if memory_block:
        sections.append(memory_block)
    sections.append(f"{descriptor.system_prompt}\n\n{user_context.context_block()}")
    sections.append(COMMON_RULES)
    sections.append(SECURITY_INSTRUCTIONS)
    return "\n\n".join(sections)


class SpecialistRunner:
    """Runs one specialist agent: provider turns interleaved with tool execution"""

    def __init__(
        self,
        provider: ModelProvider,
        working_memory: Optional[WorkingMemoryStore] = None,
        agent_logger: Optional[AgentLogger] = None,
        metrics: Optional[MetricsCollector] = None
    ):
        self.provider = provider
        self.working_memory = working_memory
        self.agent_logger = agent_logger or default_agent_logger
        self.metrics = metrics or default_metrics

    def run(
        self,
        descriptor: AgentDescriptor,
        tool_set: ToolSet,
        messages: List[ConversationMessage],
        user_context: UserContext,
        conversation_id: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
        memory_context: Optional[MemoryContext] = None
    ) -> TokenStream:
        """Start the agent lazily; nothing is sent to the provider until the stream is consumed"""

        memory_block = ""
        if memory_context is not None:
            template = descriptor.memory_policy.working_memory_template
            memory_block = format_memory_context(memory_context, template)

        system_prompt = build_system_prompt(descriptor, user_context, memory_block)
        executor = ToolExecutor(
            tool_set,
            self.working_memory,
            self.agent_logger,
            self.metrics,
            scope=descriptor.memory_policy.working_memory_scope
        )
        tool_context = ToolExecutionContext(
            user_id=user_context.user_id,
            organization_id=user_context.organization_id,
            conversation_id=conversation_id,
            agent_name=descriptor.name
        )

        def producer(stream: TokenStream) -> AsyncIterator[StreamEvent]:
            return self._loop(stream, descriptor, tool_set, executor, tool_context, system_prompt, list(messages))

        return TokenStream(producer, descriptor.model_id, agent=descriptor.name, cancel_event=cancel_event)

    async def _loop(
        self,
        stream: TokenStream,
        descriptor: AgentDescriptor,
        tool_set: ToolSet,
        executor: ToolExecutor,
        tool_context: ToolExecutionContext,
        system_prompt: str,
        messages: List[ConversationMessage]
    ) -> AsyncIterator[StreamEvent]:
        started = time.perf_counter()
        turns = 0
        self.agent_logger.log_agent_event(
            "specialist_started",
            descriptor.name,
            tool_context.conversation_id,
            {"model_id": descriptor.model_id, "tools": tool_set.names()}
        )

        try:
            while turns < descriptor.max_turns:
                turns += 1
                request = ModelRequest(
                    model_id=descriptor.model_id,
                    system_prompt=system_prompt,
                    messages=messages,
                    tools=tool_set.specs(),
                    tool_choice=ToolChoice.auto() if len(tool_set) else ToolChoice.none(),
                    temperature=descriptor.temperature,
                    max_tokens=descriptor.max_tokens
                )

                text_parts: List[str] = []
                calls: List[ToolCallEvent] = []
                provider_stream = self.provider.stream(request, stream.cancel_event)
                try:
                    async for event in provider_stream:
                        if isinstance(event, TextDelta):
                            text_parts.append(event.text)
                            yield event
                        elif isinstance(event, ToolCallEvent):
                            calls.append(event)
                            yield event
                        elif isinstance(event, ProviderFinish):
                            stream.add_usage(event.usage)
                        else:
                            raise TypeError(f"Unknown provider event: {type(event).__name__}")
                finally:
                    await provider_stream.aclose()

                if stream.cancelled or not calls:
                    return

                messages.append(ConversationMessage(
                    role=MessageRole.ASSISTANT,
                    content="".join(text_parts),
                    agent=descriptor.name,
                    tool_calls=[ToolCall(id=call.id, name=call.name, arguments=call.arguments) for call in calls]
                ))

                for call in calls:
                    if stream.cancelled:
                        return
                    progress = ProgressChannel()
                    task = asyncio.ensure_future(executor.execute(call.name, call.arguments, tool_context, progress))
                    try:
                        async for update in progress.follow(task):
                            yield ToolProgressEvent(
                                id=call.id,
                                name=call.name,
                                stage=update.stage.value,
                                message=update.message
                            )
                        outcome = await task
                    finally:
                        if not task.done():
                            task.cancel()
                    yield ToolResultEvent(id=call.id, name=call.name, outcome=outcome)
                    messages.append(ConversationMessage(
                        role=MessageRole.TOOL,
                        content=json.dumps(outcome_to_tool_message(outcome), default=str),
                        tool_call_id=call.id,
                        name=call.name
                    ))

            logger.warning(
                "Specialist reached max turns",
                agent=descriptor.name,
                conversation_id=tool_context.conversation_id,
                max_turns=descriptor.max_turns
            )
        finally:
            self.metrics.record_latency(f"agent.{descriptor.name}", (time.perf_counter() - started) * 1000)
            self.agent_logger.log_agent_event(
                "specialist_finished",
                descriptor.name,
                tool_context.conversation_id,
                {"turns": turns, "cancelled": stream.cancelled}
            )
