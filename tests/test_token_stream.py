import asyncio

import pytest

from crm_agent.domain.errors import ProviderError
from crm_agent.domain.models.events import TextDelta, ToolCallEvent, ToolResultEvent
from crm_agent.domain.models.tool_outcome import ApprovalRequiredOutcome
from crm_agent.domain.streaming.token_stream import TokenStream, event_to_dict

from tests.support import usage


def scripted(*events, fail_with=None, pause: float = 0.0):
    closed = []

    async def producer(stream: TokenStream):
        try:
            for event in events:
                yield event
                await asyncio.sleep(pause)
            stream.add_usage(usage())
            if fail_with is not None:
                raise fail_with
        finally:
            closed.append(True)

    return producer, closed


class TestTokenStream:

    async def test_collect_accumulates_text_and_usage(self):
        producer, closed = scripted(TextDelta(text="Hello "), TextDelta(text="world"))
        stream = TokenStream(producer, "test-model", agent="customer")

        result = await stream.collect()

        assert result.text == "Hello world"
        assert result.status == "completed"
        assert result.agent == "customer"
        assert (await stream.summary).total_tokens == 15
        assert closed == [True]

    async def test_single_consumer(self):
        producer, _ = scripted(TextDelta(text="a"))
        stream = TokenStream(producer, "test-model")
        stream.__aiter__()

        with pytest.raises(RuntimeError):
            stream.__aiter__()

    async def test_text_deltas_only(self):
        producer, _ = scripted(
            TextDelta(text="Looking up"),
            ToolCallEvent(id="call_1", name="get_customer", arguments={"customerId": "c1"}),
            TextDelta(text=" done"),
        )
        stream = TokenStream(producer, "test-model")

        assert [text async for text in stream.text_deltas()] == ["Looking up", " done"]
        assert [call.name for call in stream.result().tool_calls] == ["get_customer"]

    async def test_approval_ids_are_collected(self):
        outcome = ApprovalRequiredOutcome(action="create_order", draft={}, approval_id="appr_1", summary="Create order")
        producer, _ = scripted(ToolResultEvent(id="call_1", name="create_order_draft", outcome=outcome))

        result = await TokenStream(producer, "test-model").collect()

        assert result.approval_ids == ["appr_1"]

    async def test_cancel_stops_after_current_event(self):
        producer, closed = scripted(*(TextDelta(text=str(i)) for i in range(10)))
        stream = TokenStream(producer, "test-model")

        seen = []
        async for event in stream:
            seen.append(event.text)
            if len(seen) == 3:
                stream.cancel()

        assert seen == ["0", "1", "2"]
        assert stream.status == "cancelled"
        assert closed == [True]
        assert (await stream.summary).model_id == "test-model"

    async def test_aclose_mid_stream_releases_producer(self):
        producer, closed = scripted(*(TextDelta(text=str(i)) for i in range(10)))
        stream = TokenStream(producer, "test-model")

        async for _ in stream:
            break
        await stream.aclose()

        assert stream.status == "cancelled"
        assert stream.cancelled
        assert closed == [True]
        assert stream.summary.done()

    async def test_aclose_before_consumption(self):
        producer, closed = scripted(TextDelta(text="never"))
        stream = TokenStream(producer, "test-model")

        await stream.aclose()
        await stream.aclose()

        assert stream.status == "cancelled"
        assert closed == []
        assert stream.summary.done()

    async def test_aclose_after_completion_keeps_status(self):
        cancel_event = asyncio.Event()
        producer, _ = scripted(TextDelta(text="done"))
        stream = TokenStream(producer, "test-model", cancel_event=cancel_event)

        async with stream:
            await stream.collect()

        assert stream.status == "completed"
        assert not cancel_event.is_set()

    async def test_provider_failure_carries_partial_output(self):
        producer, closed = scripted(
            TextDelta(text="Revenue was "),
            TextDelta(text="up"),
            fail_with=ProviderError("overloaded"),
        )
        stream = TokenStream(producer, "test-model")

        with pytest.raises(ProviderError) as excinfo:
            await stream.collect()

        assert excinfo.value.partial_output == "Revenue was up"
        assert stream.status == "failed"
        assert closed == [True]
        assert (await stream.summary).total_tokens == 15

    async def test_completion_hook_runs_once(self):
        results = []

        async def on_complete(result):
            results.append(result)

        producer, _ = scripted(TextDelta(text="hi"))
        stream = TokenStream(producer, "test-model", on_complete=on_complete)

        await stream.collect()
        await stream.aclose()

        assert [r.text for r in results] == ["hi"]

    async def test_failing_hook_does_not_break_the_stream(self):
        async def on_complete(result):
            raise RuntimeError("store down")

        producer, _ = scripted(TextDelta(text="hi"))
        stream = TokenStream(producer, "test-model", on_complete=on_complete)

        assert (await stream.collect()).text == "hi"
        assert stream.summary.done()

    def test_event_to_dict(self):
        assert event_to_dict(TextDelta(text="x")) == {"type": "text_delta", "text": "x"}
