from typing import Callable, List, Any, Optional, AsyncIterator
import asyncio
import contextlib
import json
import uuid

import structlog
from langchain.chat_models import init_chat_model
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import (
    AIMessage,
    AIMessageChunk,
    BaseMessage,
    HumanMessage,
    SystemMessage,
    ToolMessage,
)

from crm_agent.config import ModelPricing
from crm_agent.domain.errors import ProviderError
from crm_agent.domain.models.events import ProviderFinish, TextDelta, ToolCallEvent, UsageSummary
from crm_agent.domain.models.memory import MessageRole
from crm_agent.domain.provider.base import ModelRequest, ProviderEvent

logger = structlog.get_logger(__name__)


ModelFactory = Callable[[ModelRequest], BaseChatModel]


def to_langchain_messages(request: ModelRequest) -> List[BaseMessage]:
    """Convert the request transcript into LangChain messages"""

    messages: List[BaseMessage] = [SystemMessage(content=request.system_prompt)]
    for message in request.messages:
        if message.role == MessageRole.USER:
            messages.append(HumanMessage(content=message.content))
        elif message.role == MessageRole.ASSISTANT:
            messages.append(AIMessage(
                content=message.content,
                tool_calls=[
                    {"id": call.id, "name": call.name, "args": call.arguments}
                    for call in message.tool_calls
                ]
            ))
        elif message.role == MessageRole.TOOL:
            messages.append(ToolMessage(content=message.content, tool_call_id=message.tool_call_id or ""))
        elif message.role == MessageRole.SYSTEM:
            messages.append(SystemMessage(content=message.content))
    return messages


def chunk_text(chunk: AIMessageChunk) -> str:
    """Text carried by a streamed chunk; content may be a string or content blocks"""

    content = chunk.content
    if isinstance(content, str):
        return content
    parts = []
    for block in content:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
    return "".join(parts)


async def next_chunk(chunks: AsyncIterator[AIMessageChunk], cancel_event: Optional[asyncio.Event]) -> Optional[AIMessageChunk]:
    """Next chunk from a model stream; None when the stream ends or the cancel event fires first"""

    if cancel_event is None:
        try:
            return await chunks.__anext__()
        except StopAsyncIteration:
            return None
    if cancel_event.is_set():
        return None

    pending = asyncio.ensure_future(chunks.__anext__())
    cancelled = asyncio.ensure_future(cancel_event.wait())
    try:
        await asyncio.wait({pending, cancelled}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        cancelled.cancel()
        if not pending.done():
            pending.cancel()
            await asyncio.wait({pending})

    if pending.cancelled():
        return None
    try:
        return pending.result()
    except StopAsyncIteration:
        return None


class LangChainModelProvider:
    """ModelProvider backed by a LangChain chat model"""

    def __init__(
        self,
        model_provider: str = "anthropic",
        model_factory: Optional[ModelFactory] = None,
        pricing_for: Optional[Callable[[str], ModelPricing]] = None
    ):
        self.model_provider = model_provider
        self.model_factory = model_factory
        self.pricing_for = pricing_for or (lambda model_id: ModelPricing())

    def _build_model(self, request: ModelRequest) -> Any:
        if self.model_factory:
            model = self.model_factory(request)
        else:
            model = init_chat_model(
                request.model_id,
                model_provider=self.model_provider,
                temperature=request.temperature,
                max_tokens=request.max_tokens
            )

        if not request.tools or request.tool_choice.mode == "none":
            return model

        tools = [spec.as_function() for spec in request.tools]
        if request.tool_choice.mode == "forced":
            return model.bind_tools(tools, tool_choice=request.tool_choice.name)
        return model.bind_tools(tools)

    def _usage(self, model_id: str, aggregate: Optional[AIMessageChunk]) -> UsageSummary:
        usage = getattr(aggregate, "usage_metadata", None) or {}
        input_tokens = usage.get("input_tokens", 0)
        output_tokens = usage.get("output_tokens", 0)
        pricing = self.pricing_for(model_id)
        cost = (input_tokens * pricing.input_per_million + output_tokens * pricing.output_per_million) / 1_000_000
        return UsageSummary(
            model_id=model_id,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=usage.get("total_tokens", input_tokens + output_tokens),
            estimated_cost=round(cost, 6)
        )

    def _completed_calls(self, aggregate: Optional[AIMessageChunk], start: int, final: bool) -> List[dict]:
        """tool_call_chunks blocks from `start` whose arguments are complete

        A block is complete once the model moves on to the next index, or when the stream ends.
        """

        blocks = list(getattr(aggregate, "tool_call_chunks", None) or [])
        if not final:
            blocks = blocks[:-1]
        return blocks[start:]

    def _tool_call_event(self, block: dict) -> Optional[ToolCallEvent]:
        name = block.get("name")
        try:
            arguments = json.loads(block.get("args") or "{}")
        except json.JSONDecodeError as e:
            logger.warning("Dropping tool call with malformed arguments", tool_name=name, error=str(e))
            return None
        if not name or not isinstance(arguments, dict):
            logger.warning("Dropping incomplete tool call", tool_name=name)
            return None
        return ToolCallEvent(
            id=block.get("id") or f"call_{uuid.uuid4().hex[:12]}",
            name=name,
            arguments=arguments
        )

    async def stream(self, request: ModelRequest, cancel_event: Optional[asyncio.Event] = None) -> AsyncIterator[ProviderEvent]:
        """Stream text deltas and each tool call as soon as it is complete, then a finish event"""

        model = self._build_model(request)
        messages = to_langchain_messages(request)
        aggregate: Optional[AIMessageChunk] = None
        finish_reason = "stop"
        emitted: List[str] = []
        blocks_seen = 0
        calls_sent = 0

        try:
            async with contextlib.aclosing(model.astream(messages)) as chunks:
                while True:
                    chunk = await next_chunk(chunks, cancel_event)
                    if cancel_event is not None and cancel_event.is_set():
                        finish_reason = "cancelled"
                        break
                    if chunk is None:
                        break
                    aggregate = chunk if aggregate is None else aggregate + chunk
                    text = chunk_text(chunk)
                    if text:
                        emitted.append(text)
                        yield TextDelta(text=text)
                    for block in self._completed_calls(aggregate, blocks_seen, final=False):
                        blocks_seen += 1
                        event = self._tool_call_event(block)
                        if event is not None:
                            calls_sent += 1
                            yield event
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Model provider stream failed", model_id=request.model_id, error=str(e))
            raise ProviderError(
                f"Model provider failed: {e}",
                partial_output="".join(emitted),
                suggestion="Retry the request"
            ) from e

        if finish_reason != "cancelled":
            for block in self._completed_calls(aggregate, blocks_seen, final=True):
                event = self._tool_call_event(block)
                if event is not None:
                    calls_sent += 1
                    yield event
            if calls_sent:
                finish_reason = "tool_use"

        yield ProviderFinish(usage=self._usage(request.model_id, aggregate), finish_reason=finish_reason)
