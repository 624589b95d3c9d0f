"""
Unit tests for the StreamSession state machine.
"""

import asyncio

import pytest

from src.perplex.models import StreamFinished, TextDelta, ToolCallDelta, ToolCallDone
from src.perplex.streaming.event_sink import CollectingEventSink
from src.perplex.streaming.stream_session import InvalidTransition, SessionState, StreamSession


async def events(*items):
    for item in items:
        yield item


class TestStreamSession:
    """Test pass handling, fragment merging and transitions."""

    @pytest.fixture
    def sink(self):
        return CollectingEventSink()

    @pytest.fixture
    def session(self, sink):
        return StreamSession("sess-1", "user-1", sink)

    async def test_text_pass_goes_to_done(self, session, sink):
        reason = await session.stream_pass(events(
            TextDelta(text="Hello"),
            TextDelta(text=", world"),
            StreamFinished(finish_reason="stop"),
        ))

        assert reason == "stop"
        assert session.state is SessionState.DONE
        assert session.text == "Hello, world"
        assert session.output_length() == 12
        assert [e.content for e in sink.events] == ["Hello", ", world"]

    async def test_empty_deltas_not_emitted(self, session, sink):
        await session.stream_pass(events(TextDelta(text=""), TextDelta(text="x"), StreamFinished()))

        assert len(sink.events) == 1

    async def test_tool_fragments_merged_by_index(self, session):
        reason = await session.stream_pass(events(
            ToolCallDelta(index=1, id="call_b", name="generate_image", arguments='{"prompt"'),
            ToolCallDelta(index=0, id="call_a", name="web_search", arguments='{"query": '),
            ToolCallDelta(index=1, arguments=': "a fox"}'),
            ToolCallDelta(index=0, arguments='"rain"}'),
            ToolCallDone(index=0),
            ToolCallDone(index=1),
            StreamFinished(finish_reason="tool_calls"),
        ))

        assert reason == "tool_calls"
        assert session.state is SessionState.TOOLS_PENDING
        assert session.needs_tool_round

        calls = session.tool_calls
        assert [c.index for c in calls] == [0, 1]
        assert calls[0].parsed_arguments() == {"query": "rain"}
        assert calls[1].parsed_arguments() == {"prompt": "a fox"}
        assert all(c.done for c in calls)

    async def test_fragments_frozen_after_tool_calls(self, session):
        await session.stream_pass(events(
            ToolCallDelta(index=0, id="call_a", name="web_search", arguments="{}"),
            StreamFinished(finish_reason="tool_calls"),
        ))

        session.merge_tool_call(ToolCallDelta(index=0, arguments="garbage"))

        assert session.tool_calls[0].arguments == "{}"

    async def test_secondary_pass_appends_to_same_buffer(self, session, sink):
        await session.stream_pass(events(
            TextDelta(text="Checking. "),
            ToolCallDelta(index=0, id="call_a", name="web_search", arguments="{}"),
            StreamFinished(finish_reason="tool_calls"),
        ))
        reason = await session.stream_pass(events(TextDelta(text="It will rain."), StreamFinished()))

        assert reason == "stop"
        assert session.state is SessionState.DONE
        assert session.text == "Checking. It will rain."

    async def test_secondary_tool_calls_are_ignored(self, session):
        await session.stream_pass(events(
            ToolCallDelta(index=0, id="call_a", name="web_search", arguments="{}"),
            StreamFinished(finish_reason="tool_calls"),
        ))
        reason = await session.stream_pass(events(StreamFinished(finish_reason="tool_calls")))

        assert reason == "stop"
        assert session.state is SessionState.DONE

    async def test_tool_calls_reason_without_fragments_is_done(self, session):
        await session.stream_pass(events(TextDelta(text="Hi"), StreamFinished(finish_reason="tool_calls")))

        assert session.state is SessionState.DONE

    async def test_stream_ending_without_finish(self, session):
        reason = await session.stream_pass(events(TextDelta(text="Hi")))

        assert reason == "stop"
        assert session.state is SessionState.DONE

    async def test_cancellation_observed_at_next_chunk(self, session, sink):
        async def stream():
            yield TextDelta(text="one")
            session.handle.cancel()
            yield TextDelta(text="two")
            yield StreamFinished()

        reason = await session.stream_pass(stream())

        assert reason == "stopped"
        assert session.state is SessionState.ABORTED
        assert session.finish_reason == "stopped"
        assert session.text == "one"
        assert [e.content for e in sink.events] == ["one"]

    async def test_cancelled_stream_is_closed(self, session):
        closed = []

        async def stream():
            try:
                yield TextDelta(text="one")
                yield TextDelta(text="two")
            finally:
                closed.append(True)

        session.handle.cancel()
        await session.stream_pass(stream())

        assert closed == [True]

    async def test_done_event(self, session):
        await session.stream_pass(events(TextDelta(text="Hi"), StreamFinished()))

        done = session.done_event()

        assert done.payload() == {"type": "done", "finishReason": "stop", "fullResponse": "Hi"}

    def test_invalid_transition(self, session):
        with pytest.raises(InvalidTransition):
            session.transition(SessionState.TOOLS_PENDING)

    def test_terminal_state_is_final(self, session):
        session.abort()

        assert session.state is SessionState.ABORTED
        with pytest.raises(InvalidTransition):
            session.transition(SessionState.STREAMING_PRIMARY)

    def test_fail_from_connecting(self, session):
        session.fail()

        assert session.state is SessionState.FAILED
        assert session.finish_reason == "error"
        assert session.handle.closed

    async def test_done_session_refuses_cancel(self, session):
        await session.stream_pass(events(TextDelta(text="Hi"), StreamFinished()))

        assert session.handle.closed
        assert session.handle.cancel() is False
        assert not session.cancelled
        assert session.done_event().finish_reason == "stop"

    async def test_tools_pending_keeps_handle_open(self, session):
        await session.stream_pass(events(
            ToolCallDelta(index=0, id="call_a", name="web_search", arguments="{}"),
            StreamFinished(finish_reason="tool_calls"),
        ))

        assert session.state is SessionState.TOOLS_PENDING
        assert not session.handle.closed
        assert session.handle.cancel() is True

    async def test_keepalive_torn_down_on_exit(self, session, sink):
        async with session.keepalive(0.01):
            await asyncio.sleep(0.05)

        beats = sink.keepalives
        await asyncio.sleep(0.05)

        assert beats >= 1
        assert sink.keepalives == beats
        assert not sink.closed
