from typing import Dict, Any, Optional
import time

import structlog

from crm_agent.domain.context.memory.working_memory import WorkingMemoryStore
from crm_agent.domain.errors import AgentError, AuthError
from crm_agent.domain.models.agent_state import ToolExecutionContext, WorkingMemoryScope
from crm_agent.domain.models.tool_outcome import (
    ApprovalRequiredOutcome,
    DataOutcome,
    ErrorOutcome,
    ToolOutcome,
)
from crm_agent.domain.tool.sanitizer import strip_sensitive
from crm_agent.domain.tool.progress import ProgressChannel
from crm_agent.domain.tool.tool_registry import ProgressiveTool, ToolSet
from crm_agent.domain.tool.tool_validator import ToolParameterValidator
from crm_agent.infrastructure.observability.logging import (
    AgentLogger,
    MetricsCollector,
    agent_logger as default_agent_logger,
    metrics as default_metrics,
)

logger = structlog.get_logger(__name__)


class ToolExecutor:
    """Boundary between the model and tool implementations"""

    def __init__(
        self,
        tool_set: ToolSet,
        working_memory: Optional[WorkingMemoryStore] = None,
        agent_logger: Optional[AgentLogger] = None,
        metrics: Optional[MetricsCollector] = None,
        scope: WorkingMemoryScope = WorkingMemoryScope.USER
    ):
        self.tool_set = tool_set
        self.working_memory = working_memory
        self.scope = scope
        self.agent_logger = agent_logger or default_agent_logger
        self.metrics = metrics or default_metrics

    async def execute(
        self,
        name: str,
        arguments: Dict[str, Any],
        context: ToolExecutionContext,
        progress: Optional[ProgressChannel] = None
    ) -> ToolOutcome:
        """Validate, run and sanitize one tool call; always returns exactly one outcome

        Progressive tools publish their stages to `progress` when one is given.
        """

        started = time.perf_counter()
        outcome = await self._run(name, arguments, context, progress)
        outcome = self._sanitize(outcome)
        duration_ms = (time.perf_counter() - started) * 1000

        is_error = isinstance(outcome, ErrorOutcome)
        if is_error:
            self.metrics.increment_counter("tool.error", tags={"tool": name, "code": outcome.code or "UNKNOWN"})
        self.metrics.record_latency(f"tool.{name}", duration_ms)
        self.agent_logger.log_tool_execution(
            tool_name=name,
            conversation_id=context.conversation_id,
            outcome_type=outcome.type,
            duration_ms=round(duration_ms, 2),
            success=not is_error,
            error=outcome.message if is_error else None
        )

        await self._record_side_effects(name, outcome, context)
        return outcome

    async def _run(
        self,
        name: str,
        arguments: Dict[str, Any],
        context: ToolExecutionContext,
        progress: Optional[ProgressChannel] = None
    ) -> ToolOutcome:
        tool = self.tool_set.get(name)
        if tool is None:
            return ErrorOutcome(
                message=f"Unknown tool: {name}",
                code="UNKNOWN_TOOL",
                suggestion=f"Available tools: {', '.join(self.tool_set.names()) or 'none'}"
            )

        validation = ToolParameterValidator.validate_tool_call(tool, arguments or {})
        if not validation.is_valid:
            return ErrorOutcome(
                message="Invalid arguments: " + "; ".join(validation.errors),
                code="VALIDATION_ERROR",
                suggestion="Check the tool's input schema and retry"
            )

        try:
            if progress is not None and isinstance(tool, ProgressiveTool):
                return await tool.execute(validation.params, context, progress)
            return await tool.execute(validation.params, context)
        except AuthError:
            raise
        except AgentError as e:
            return ErrorOutcome(message=e.message, code=e.code, suggestion=e.suggestion)
        except Exception as e:
            logger.exception("Tool execution failed", tool_name=name, conversation_id=context.conversation_id)
            return ErrorOutcome(
                message=f"{name} failed: {e}",
                code="INTERNAL_ERROR",
                suggestion="Try again or narrow the request"
            )

    def _sanitize(self, outcome: ToolOutcome) -> ToolOutcome:
        """Strip deny-listed fields from everything the model will see"""

        if isinstance(outcome, DataOutcome):
            return outcome.model_copy(update={
                "payload": strip_sensitive(outcome.payload),
                "meta": strip_sensitive(outcome.meta) if outcome.meta else outcome.meta
            })
        elif isinstance(outcome, ApprovalRequiredOutcome):
            return outcome.model_copy(update={
                "draft": strip_sensitive(outcome.draft),
                "diff": strip_sensitive(outcome.diff) if outcome.diff else outcome.diff
            })
        elif isinstance(outcome, ErrorOutcome):
            return outcome
        raise TypeError(f"Unknown tool outcome: {type(outcome).__name__}")

    async def _record_side_effects(self, name: str, outcome: ToolOutcome, context: ToolExecutionContext) -> None:
        if self.working_memory is None or isinstance(outcome, ErrorOutcome):
            return

        org, user = context.organization_id, context.user_id
        where = {"scope": self.scope, "conversation_id": context.conversation_id}
        try:
            if isinstance(outcome, ApprovalRequiredOutcome):
                await self.working_memory.add_pending_approval(org, user, outcome.approval_id, **where)
                await self.working_memory.record_action(org, user, f"drafted {outcome.action}", **where)
            else:
                await self.working_memory.record_action(org, user, f"used {name}", **where)
        except Exception as e:
            logger.warning("Working memory side effect failed", tool_name=name, error=str(e))
