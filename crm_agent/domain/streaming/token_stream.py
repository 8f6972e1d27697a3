from typing import Any, AsyncIterator, Awaitable, Callable, List, Optional, Union
import asyncio

from pydantic import BaseModel, Field
import structlog

from crm_agent.domain.errors import ProviderError
from crm_agent.domain.models.agent_state import HandoffDecision
from crm_agent.domain.models.events import TextDelta, ToolCallEvent, ToolProgressEvent, ToolResultEvent, UsageSummary
from crm_agent.domain.models.tool_outcome import ApprovalRequiredOutcome

logger = structlog.get_logger(__name__)


StreamEvent = Union[TextDelta, ToolCallEvent, ToolProgressEvent, ToolResultEvent]


class StreamResult(BaseModel):
    """Everything a fully consumed stream produced"""
    text: str = ""
    agent: Optional[str] = None
    status: str = "completed"
    usage: UsageSummary
    tool_calls: List[ToolCallEvent] = Field(default_factory=list)
    approval_ids: List[str] = Field(default_factory=list)


Producer = Callable[["TokenStream"], AsyncIterator[StreamEvent]]
CompletionHook = Callable[[StreamResult], Awaitable[None]]


class TokenStream:
    """
    Single-consumer stream of text deltas, tool calls and tool results.

    ``summary`` resolves with the accumulated usage once the stream ends,
    whether it completed, was cancelled or failed.
    """

    def __init__(
        self,
        producer: Producer,
        model_id: str,
        agent: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
        on_complete: Optional[CompletionHook] = None,
        handoff: Optional[HandoffDecision] = None
    ):
        self._producer = producer
        self.agent = agent
        self.handoff = handoff
        self.cancel_event = cancel_event or asyncio.Event()
        self.usage = UsageSummary(model_id=model_id)
        self.on_complete = on_complete

        self._text_parts: List[str] = []
        self._tool_calls: List[ToolCallEvent] = []
        self._approval_ids: List[str] = []
        self._iterator: Optional[AsyncIterator[StreamEvent]] = None
        self._summary: Optional[asyncio.Future] = None
        self._finished = False
        self.status = "pending"

    @property
    def summary(self) -> asyncio.Future:
        if self._summary is None:
            self._summary = asyncio.get_running_loop().create_future()
        return self._summary

    @property
    def text(self) -> str:
        return "".join(self._text_parts)

    def add_usage(self, usage: UsageSummary) -> None:
        self.usage = self.usage.add(usage)

    def cancel(self) -> None:
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def __aiter__(self) -> AsyncIterator[StreamEvent]:
        if self._iterator is not None:
            raise RuntimeError("TokenStream supports a single consumer")
        self._iterator = self._iterate()
        return self._iterator

    async def __aenter__(self) -> "TokenStream":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def _iterate(self) -> AsyncIterator[StreamEvent]:
        self.status = "streaming"
        source = self._producer(self)
        try:
            async for event in source:
                self._record(event)
                yield event
                if self.cancelled:
                    break
            self.status = "cancelled" if self.cancelled else "completed"
        except ProviderError as e:
            self.status = "failed"
            if len(self.text) > len(e.partial_output or ""):
                e.partial_output = self.text
            raise
        except BaseException:
            self.status = "cancelled" if self.cancelled else "failed"
            raise
        finally:
            await source.aclose()
            await self._finish()

    def _record(self, event: StreamEvent) -> None:
        if isinstance(event, TextDelta):
            self._text_parts.append(event.text)
        elif isinstance(event, ToolCallEvent):
            self._tool_calls.append(event)
        elif isinstance(event, ToolResultEvent) and isinstance(event.outcome, ApprovalRequiredOutcome):
            self._approval_ids.append(event.outcome.approval_id)

    def result(self) -> StreamResult:
        return StreamResult(
            text=self.text,
            agent=self.agent,
            status=self.status,
            usage=self.usage,
            tool_calls=list(self._tool_calls),
            approval_ids=list(self._approval_ids)
        )

    async def _finish(self) -> None:
        if self._finished:
            return
        self._finished = True

        result = self.result()
        if self.on_complete is not None:
            try:
                await self.on_complete(result)
            except Exception as e:
                logger.error("Stream completion hook failed", agent=self.agent, error=str(e))
        if not self.summary.done():
            self.summary.set_result(self.usage)

    async def aclose(self) -> None:
        """Stop the stream and release the provider; safe to call more than once"""

        if self._finished:
            return
        self.cancel_event.set()
        if self._iterator is None:
            if self.status == "pending":
                self.status = "cancelled"
            await self._finish()
            return
        await self._iterator.aclose()
        if self.status in ("pending", "streaming"):
            self.status = "cancelled"
        await self._finish()

    async def text_deltas(self) -> AsyncIterator[str]:
        async for event in self:
            if isinstance(event, TextDelta):
                yield event.text

    async def collect(self) -> StreamResult:
        """Drain the stream and return its result"""

        async for _ in self:
            pass
        return self.result()


def event_to_dict(event: Any) -> dict:
    return event.model_dump(mode="json", by_alias=True)
