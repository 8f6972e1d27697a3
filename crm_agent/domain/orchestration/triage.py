from typing import Any, Dict, List, Optional
import asyncio

from pydantic import ValidationError as PydanticValidationError
import structlog

from crm_agent.domain.models.agent_state import AgentDescriptor, HandoffDecision, TargetAgent, UserContext
from crm_agent.domain.models.events import ToolCallEvent
from crm_agent.domain.models.memory import ConversationMessage
from crm_agent.domain.orchestration.prompts import HANDOFF_TOOL_NAME
from crm_agent.domain.provider.base import ModelProvider, ModelRequest, ToolChoice, ToolSpec
from crm_agent.domain.tool.tool_registry import ToolInput
from crm_agent.infrastructure.observability.logging import (
    AgentLogger,
    MetricsCollector,
    agent_logger as default_agent_logger,
    metrics as default_metrics,
)

logger = structlog.get_logger(__name__)


MAX_REASON_CHARS = 500
MISSING_CALL_REASON = "Default routing due to missing tool call"
INVALID_ARGUMENTS_REASON = "Default routing due to invalid handoff arguments"


class HandoffArguments(ToolInput):
    target_agent: TargetAgent
    reason: str
    preserve_context: bool = True


HANDOFF_TOOL = ToolSpec(
    name=HANDOFF_TOOL_NAME,
    description="Hand the conversation to the specialist agent best suited to answer it",
    parameters={
        "type": "object",
        "properties": {
            "targetAgent": {
                "type": "string",
                "enum": [agent.value for agent in TargetAgent],
                "description": "Specialist to hand off to"
            },
            "reason": {
                "type": "string",
                "maxLength": MAX_REASON_CHARS,
                "description": "Short explanation of the routing choice"
            },
            "preserveContext": {
                "type": "boolean",
                "default": True,
                "description": "Whether the specialist should see the prior conversation"
            }
        },
        "required": ["targetAgent", "reason"]
    }
)


def fallback_decision(reason: str = MISSING_CALL_REASON) -> HandoffDecision:
    return HandoffDecision(
        target_agent=TargetAgent.CUSTOMER,
        reason=reason,
        preserve_context=True,
        is_fallback=True
    )


class TriageRouter:
    """Classifies a conversation into one specialist with a single forced tool call"""

    def __init__(
        self,
        provider: ModelProvider,
        descriptor: AgentDescriptor,
        agent_logger: Optional[AgentLogger] = None,
        metrics: Optional[MetricsCollector] = None
    ):
        self.provider = provider
        self.descriptor = descriptor
        self.agent_logger = agent_logger or default_agent_logger
        self.metrics = metrics or default_metrics

    def _request(self, messages: List[ConversationMessage], user_context: UserContext) -> ModelRequest:
        system_prompt = f"{self.descriptor.system_prompt}\n\n{user_context.context_block()}"
        return ModelRequest(
            model_id=self.descriptor.model_id,
            system_prompt=system_prompt,
            messages=messages,
            tools=[HANDOFF_TOOL],
            tool_choice=ToolChoice.forced(HANDOFF_TOOL_NAME),
            temperature=self.descriptor.temperature,
            max_tokens=self.descriptor.max_tokens
        )

    async def route(
        self,
        messages: List[ConversationMessage],
        user_context: UserContext,
        conversation_id: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None
    ) -> HandoffDecision:
        """Pick the specialist for the latest message"""

        request = self._request(messages, user_context)
        call = await self._first_handoff_call(request, cancel_event)

        if call is None:
            decision = fallback_decision(MISSING_CALL_REASON)
        else:
            decision = self._parse(call.arguments)

        if decision.is_fallback:
            self.metrics.increment_counter("triage.fallback", tags={"reason": decision.reason})
        self.agent_logger.log_handoff(
            conversation_id=conversation_id,
            target_agent=decision.target_agent.value,
            reason=decision.reason,
            is_fallback=decision.is_fallback
        )
        return decision

    async def _first_handoff_call(
        self,
        request: ModelRequest,
        cancel_event: Optional[asyncio.Event]
    ) -> Optional[ToolCallEvent]:
        stream = self.provider.stream(request, cancel_event)
        try:
            async for event in stream:
                if isinstance(event, ToolCallEvent) and event.name == HANDOFF_TOOL_NAME:
                    return event
        finally:
            # Remaining provider output is irrelevant once a handoff is known
            await stream.aclose()
        return None

    def _parse(self, arguments: Dict[str, Any]) -> HandoffDecision:
        try:
            args = HandoffArguments.model_validate(arguments or {})
        except PydanticValidationError as e:
            logger.warning("Invalid handoff arguments", arguments=arguments, errors=e.error_count())
            return fallback_decision(INVALID_ARGUMENTS_REASON)

        reason = args.reason.strip()[:MAX_REASON_CHARS] or "No reason given"
        return HandoffDecision(
            target_agent=args.target_agent,
            reason=reason,
            preserve_context=args.preserve_context
        )
