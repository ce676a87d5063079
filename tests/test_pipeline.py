"""Classify-then-research/report pipeline behind ``agent_type=pipeline``."""
from __future__ import annotations

from typing import List

import pytest

from mimir.core.events import StreamEvent
from mimir.core.models import SpanType
from mimir.orchestration.orchestrator import QueryRequest

from fakes import calls, reply, tool_call

NOTES = "EV notes: https://ev.example/a and [2]"
REPORT = "# Family EVs\n\nThe Kia EV9 leads the field [2]."


def classified(task_type: str, **extra) -> object:
    arguments = {"taskType": task_type, "confidence": 0.9, "reasoning": "Needs work", **extra}
    return calls(tool_call("classify_query", arguments))


async def collect(service, request: QueryRequest) -> List[StreamEvent]:
    return [event async for event in service.stream(request)]


def tokens(events: List[StreamEvent]) -> str:
    return "".join(e.data["token"] for e in events if e.event == "token")


@pytest.mark.anyio
async def test_combined_task_chains_research_into_report(service, llm) -> None:
    llm.script(classified("combined"), reply(NOTES), reply(REPORT))

    events = await collect(service, QueryRequest("Research family EVs and write a report", agent_type="pipeline"))

    assert [e.event for e in events] == [
        "start",
        "triage_complete",
        "research_start",
        "research_complete",
        "report_start",
        "token",
        "report_complete",
        "complete",
    ]
    assert events[2].data == {"message": "Starting research phase"}
    assert events[3].data == {"sources": 2, "researchDataLength": len(NOTES)}
    assert events[4].data == {"message": "Starting report generation"}
    assert tokens(events) == events[-1].data["content"] == REPORT
    assert events[-1].data["metadata"]["agent"]["id"] == "report"
    report_prompt = llm.requests[2]["messages"][-1]["content"]
    assert report_prompt.startswith('User asked: "Research family EVs and write a report"')
    assert "Research Notes:\n" + NOTES in report_prompt


@pytest.mark.anyio
async def test_unknown_task_type_runs_both_phases(service, llm) -> None:
    llm.script(classified("unknown"), reply(NOTES), reply(REPORT))

    outcome = await service.handle(QueryRequest("Tell me things", agent_type="pipeline"))

    assert outcome.content == REPORT
    assert outcome.metadata["taskType"] == "unknown"
    assert outcome.metadata["researchDataLength"] == len(NOTES)
    assert llm.remaining == 0


@pytest.mark.anyio
async def test_research_task_streams_research_answer(service, llm) -> None:
    llm.script(classified("research", modifiedQuery="best family EVs 2024"), reply(NOTES))

    events = await collect(service, QueryRequest("good cars for families?", agent_type="pipeline"))

    assert [e.event for e in events] == [
        "start",
        "triage_complete",
        "research_start",
        "token",
        "research_complete",
        "complete",
    ]
    assert tokens(events) == NOTES
    assert events[-1].data["metadata"]["processedQuery"] == "best family EVs 2024"
    assert llm.requests[1]["messages"][-1] == {"role": "user", "content": "best family EVs 2024"}


@pytest.mark.anyio
async def test_report_task_skips_research(service, llm, recorder) -> None:
    llm.script(classified("report"), reply(REPORT))

    outcome = await service.handle(QueryRequest("Summarize these notes: ...", agent_type="pipeline"))

    assert outcome.agent.identity == "report"
    assert outcome.metadata["taskType"] == "report"
    assert "researchDataLength" not in outcome.metadata
    assert recorder.get_trace(outcome.trace_id).spans[0].type is SpanType.DECISION


@pytest.mark.anyio
async def test_research_failure_ends_stream_with_error(service, llm) -> None:
    llm.script(classified("combined"), RuntimeError("search backend down"))

    events = await collect(service, QueryRequest("Research and report on EVs", agent_type="pipeline"))

    assert [e.event for e in events] == ["start", "triage_complete", "research_start", "error"]
    assert "search backend down" in events[-1].data["message"]
