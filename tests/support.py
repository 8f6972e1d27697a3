from typing import Any, List, Optional
from datetime import date
import asyncio

from crm_agent.domain.models.events import ProviderFinish, TextDelta, ToolCallEvent, UsageSummary
from crm_agent.domain.orchestration.prompts import HANDOFF_TOOL_NAME
from crm_agent.domain.provider.base import ModelRequest


FIXED_TODAY = date(2025, 9, 15)
OTHER_ORGANIZATION_ID = "org_other"
OTHER_CUSTOMER_ID = "cust_other"


def usage(model_id: str = "test-model", input_tokens: int = 10, output_tokens: int = 5) -> UsageSummary:
    return UsageSummary(
        model_id=model_id,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        total_tokens=input_tokens + output_tokens,
        estimated_cost=0.0001
    )


def text_turn(*chunks: str) -> List[Any]:
    return [TextDelta(text=chunk) for chunk in chunks] + [ProviderFinish(usage=usage(), finish_reason="stop")]


def tool_turn(name: str, arguments: dict, call_id: str = "call_1", text: str = "") -> List[Any]:
    events: List[Any] = [TextDelta(text=text)] if text else []
    events.append(ToolCallEvent(id=call_id, name=name, arguments=arguments))
    events.append(ProviderFinish(usage=usage(), finish_reason="tool_use"))
    return events


def handoff_turn(target: str, reason: str = "Best match", preserve_context: bool = True) -> List[Any]:
    return tool_turn(
        HANDOFF_TOOL_NAME,
        {"targetAgent": target, "reason": reason, "preserveContext": preserve_context},
        call_id="call_handoff"
    )


class ScriptedProvider:
    """
    ModelProvider that replays scripted turns in order.

    A turn is a list of provider events; an exception instance in the list
    is raised at that point. Every request is recorded, and ``closed``
    counts provider streams that were released.
    """

    def __init__(self, turns: Optional[List[List[Any]]] = None, delay: float = 0.0):
        self.turns = list(turns or [])
        self.delay = delay
        self.requests: List[ModelRequest] = []
        self.closed = 0

    def add(self, *turns: List[Any]) -> "ScriptedProvider":
        self.turns.extend(turns)
        return self

    def stream(self, request: ModelRequest, cancel_event: Optional[asyncio.Event] = None):
        self.requests.append(request)
        script = self.turns.pop(0) if self.turns else text_turn()
        return self._replay(script, cancel_event)

    async def _replay(self, script: List[Any], cancel_event: Optional[asyncio.Event]):
        try:
            for event in script:
                if cancel_event is not None and cancel_event.is_set():
                    return
                if isinstance(event, Exception):
                    raise event
                yield event
                await asyncio.sleep(self.delay)
        finally:
            self.closed += 1
