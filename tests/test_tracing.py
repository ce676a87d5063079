"""Trace recorder ordering, idempotent completion and late writes; observer silence after cancellation."""
from __future__ import annotations

from mimir.core.events import EventEmitter
from mimir.core.models import SpanStatus, SpanType, TraceStatus, WorkState
from mimir.core.status_feed import StatusFeed
from mimir.orchestration.observer import RunObserver
from mimir.orchestration.tracing import TraceRecorder


def test_steps_keep_insertion_order() -> None:
    recorder = TraceRecorder()
    trace_id = recorder.start_trace("Agent query", {"chatId": "c1"})

    recorder.add_step(trace_id, SpanType.THOUGHT, "thinking")
    recorder.add_step(trace_id, SpanType.ACTION, "calling web_search", agent_name="Research Agent")
    recorder.add_step(trace_id, SpanType.OBSERVATION, "3 results")

    trace = recorder.get_trace(trace_id)
    assert [s.type for s in trace.spans] == [SpanType.THOUGHT, SpanType.ACTION, SpanType.OBSERVATION]
    assert trace.spans[1].agent_name == "Research Agent"
    assert trace.to_dict()["steps"][0]["traceId"] == trace_id


def test_complete_is_idempotent_and_closes_pending_steps() -> None:
    recorder = TraceRecorder()
    trace_id = recorder.start_trace("Agent query")
    step_id = recorder.start_streaming_step(trace_id, SpanType.OBSERVATION)
    recorder.append_step(trace_id, step_id, "partial ")

    assert recorder.complete_trace(trace_id, success=True, summary="done") is True
    assert recorder.complete_trace(trace_id, success=False, summary="again") is False

    trace = recorder.get_trace(trace_id)
    assert trace.status is TraceStatus.COMPLETED
    assert trace.summary == "done"
    assert trace.spans[0].status is SpanStatus.COMPLETED
    assert trace.spans[0].message == "partial "


def test_writes_after_completion_are_dropped() -> None:
    recorder = TraceRecorder()
    trace_id = recorder.start_trace("Agent query")
    step_id = recorder.start_streaming_step(trace_id, SpanType.OBSERVATION)
    recorder.complete_trace(trace_id)

    assert recorder.add_step(trace_id, SpanType.THOUGHT, "too late") is None
    assert recorder.append_step(trace_id, step_id, "more") is False
    assert recorder.close_step(trace_id, step_id, "final") is False
    assert recorder.abort_trace(trace_id) is False
    assert len(recorder.get_trace(trace_id).spans) == 1


def test_abort_marks_pending_steps() -> None:
    recorder = TraceRecorder()
    trace_id = recorder.start_trace("Agent query")
    recorder.start_streaming_step(trace_id, SpanType.OBSERVATION)

    assert recorder.abort_trace(trace_id, "Client disconnected") is True
    assert recorder.complete_trace(trace_id) is False

    trace = recorder.get_trace(trace_id)
    assert trace.status is TraceStatus.ABORTED
    assert trace.summary == "Client disconnected"
    assert trace.spans[0].status is SpanStatus.ABORTED


def test_unknown_trace_writes_are_ignored() -> None:
    recorder = TraceRecorder()
    assert recorder.add_step("missing", SpanType.THOUGHT, "hello") is None
    assert recorder.complete_trace("missing") is False


def test_listing_is_newest_first_and_bounded() -> None:
    recorder = TraceRecorder(max_traces=3)
    ids = [recorder.start_trace(f"t{i}", {"chatId": "a" if i % 2 else "b"}) for i in range(4)]

    assert recorder.get_trace(ids[0]) is None
    assert [t.id for t in recorder.list_traces()] == [ids[3], ids[2], ids[1]]
    assert [t.id for t in recorder.list_traces(chat_id="a")] == [ids[3], ids[1]]
    assert [t.id for t in recorder.list_traces(limit=1)] == [ids[3]]


def test_disabled_recorder_stores_nothing() -> None:
    recorder = TraceRecorder(enabled=False)
    trace_id = recorder.start_trace("Agent query")

    assert trace_id
    assert recorder.add_step(trace_id, SpanType.THOUGHT, "ignored") is None
    assert recorder.get_trace(trace_id) is None


def test_observer_is_silent_after_cancellation(registry) -> None:
    feed = StatusFeed()
    emitter = EventEmitter("s")
    observer = RunObserver(emitter=emitter, status_feed=feed)
    research = registry.definition("research")
    observer.agent_started(research, "EV prices")

    emitter.cancel()
    observer.agent_finished(research)
    observer.token("late")

    (status,) = feed.snapshot()
    assert status.status is WorkState.WORKING
    assert status.progress == 0
    assert emitter.drain() == []
