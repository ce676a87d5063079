"""Delegation policy paths and model-driven query classification."""
from __future__ import annotations

import pytest

from mimir.agents.catalog import build_catalog
from mimir.agents.registry import AgentRegistry
from mimir.agents.triage import DelegationPolicy, TaskType, count_citations
from mimir.core.events import EventEmitter
from mimir.core.models import ConversationContext
from mimir.orchestration.observer import RunObserver

from fakes import FAST_MODEL, Streamed, calls, reply, tool_call

COMPLEX_QUERY = "Can you research the best electric cars to buy in 2024 for a family of five?"


@pytest.mark.parametrize(
    "prompt, simple",
    [
        ("Hi there", True),
        ("", True),
        ("   ", True),
        ("What's your name?", True),
        ("Can you write an essay?", False),
        ("Should I buy a car?", False),
        ("one two three four five six seven eight nine ten", False),
    ],
)
def test_simple_query_heuristic(policy: DelegationPolicy, prompt: str, simple: bool) -> None:
    assert policy.is_simple_query(prompt) is simple


@pytest.mark.anyio
async def test_direct_path_uses_fast_model_without_tools(policy, llm) -> None:
    llm.script(reply("Hello! How can I help?", model=FAST_MODEL))

    decision = await policy.decide("Hi there")

    assert decision.path == "direct"
    assert decision.confidence == 0.6
    assert decision.result.content == "Hello! How can I help?"
    assert decision.result.agent_id == "orchestrator"
    assert llm.requests[0]["model"] == FAST_MODEL
    assert "tools" not in llm.requests[0]


@pytest.mark.anyio
async def test_blank_prompt_takes_direct_path(policy, llm) -> None:
    llm.script(reply("Could you tell me more?"))

    decision = await policy.decide("   ")

    assert decision.path == "direct"
    assert len(llm.requests) == 1


@pytest.mark.anyio
async def test_delegate_path_runs_chosen_specialist(policy, llm) -> None:
    llm.script(
        calls(tool_call("research_task", {"query": "best electric family cars 2024"})),
        reply("The Research Agent can gather current reviews.", model=FAST_MODEL),
        reply("Top picks: https://a.example and https://b.example"),
    )
    emitter = EventEmitter("s")

    decision = await policy.decide(COMPLEX_QUERY, observer=RunObserver(emitter=emitter))

    assert decision.path == "delegate"
    assert decision.task_type == "research"
    assert decision.tool_name == "research_task"
    assert decision.confidence == 1.0
    assert decision.result.agent_id == "research"
    assert decision.result.metadata["delegationReasoning"] == "The Research Agent can gather current reviews."
    delegate_request = llm.requests[0]
    assert {t["function"]["name"] for t in delegate_request["tools"]} == {
        "research_task",
        "coding_task",
        "data_analysis_task",
        "writing_task",
    }
    assert delegate_request["tool_choice"] == "auto"
    assert llm.requests[2]["messages"][-1] == {"role": "user", "content": "best electric family cars 2024"}

    events = emitter.drain()
    assert [e.event for e in events] == ["triage_complete", "research_start", "research_complete"]
    assert events[2].data == {"sources": 2, "researchDataLength": len(decision.result.content)}


@pytest.mark.anyio
async def test_delegate_path_may_answer_directly(policy, llm) -> None:
    llm.script(reply("Paris is the capital of France."))

    decision = await policy.decide("Can you compare the capital of France to other capitals?")

    assert decision.path == "delegate"
    assert decision.tool_name is None
    assert decision.result.content == "Paris is the capital of France."
    assert len(llm.requests) == 1


@pytest.mark.anyio
async def test_only_first_delegation_is_honoured(policy, llm) -> None:
    llm.script(
        calls(
            tool_call("coding_task", {"query": "write a parser"}, call_id="c1"),
            tool_call("writing_task", {"query": "document it"}, call_id="c2"),
        ),
        reply("Coding is the primary need."),
        reply("def parse(): ..."),
    )

    decision = await policy.decide(COMPLEX_QUERY)

    assert decision.result.agent_id == "coding"
    assert llm.remaining == 0


@pytest.mark.anyio
async def test_failed_specialist_is_recovered_by_orchestrator(policy, llm) -> None:
    llm.script(
        calls(tool_call("research_task", {"query": "ev prices"}, call_id="r1")),
        reply("Research fits."),
        RuntimeError("upstream unavailable"),
        reply("I could not research that right now, but here is what I know."),
    )

    decision = await policy.decide(COMPLEX_QUERY)

    assert decision.result.agent_id == "orchestrator"
    assert decision.result.content.startswith("I could not research that")
    recovery = llm.requests[3]
    assert "tools" not in recovery
    tool_turn = recovery["messages"][-1]
    assert tool_turn["role"] == "tool" and tool_turn["tool_call_id"] == "r1"
    assert tool_turn["content"].startswith("Error executing Research Agent:")


@pytest.mark.anyio
async def test_rationale_failure_is_not_fatal(policy, llm) -> None:
    llm.script(
        calls(tool_call("coding_task", {"query": "sort a list"})),
        RuntimeError("rate limited"),
        reply("sorted(items)"),
    )

    decision = await policy.decide(COMPLEX_QUERY)

    assert decision.reasoning == "Delegated to the Coding Agent."
    assert decision.result.content == "sorted(items)"


@pytest.mark.anyio
async def test_backend_failure_falls_back_to_plain_run(policy, llm) -> None:
    llm.script(RuntimeError("service unavailable"), reply("Fallback answer."))

    decision = await policy.decide(COMPLEX_QUERY, ConversationContext())

    assert decision.path == "fallback"
    assert decision.confidence == 0.0
    assert decision.result.content == "Fallback answer."
    assert "tools" not in llm.requests[1]


@pytest.mark.anyio
async def test_classify_parses_forced_function_call(policy, llm) -> None:
    llm.script(
        calls(
            tool_call(
                "classify_query",
                {"taskType": "research", "confidence": 0.9, "reasoning": "Needs current data"},
            )
        )
    )

    result = await policy.classify("Latest EV sales figures")

    assert result.task_type is TaskType.RESEARCH
    assert result.confidence == 0.9
    assert llm.requests[0]["tool_choice"] == {"type": "function", "function": {"name": "classify_query"}}


@pytest.mark.anyio
async def test_classify_falls_back_to_combined(policy, llm) -> None:
    llm.script(calls(tool_call("classify_query", "definitely not json")))

    result = await policy.classify("Summarize and research EVs")

    assert result.task_type is TaskType.COMBINED
    assert result.confidence == 0.5
    assert "Defaulting to combined" in result.reasoning


@pytest.mark.anyio
async def test_fallback_after_partial_stream_keeps_tokens_and_content_equal(policy, llm) -> None:
    llm.script(
        Streamed("Partial ", fail=RuntimeError("connection reset")),
        Streamed("Hello ", "there"),
    )
    tokens = []

    decision = await policy.decide("Hi there", on_token=tokens.append)

    assert decision.path == "fallback"
    assert tokens == ["Partial ", "\n\n", "Hello ", "there"]
    assert decision.result.content == "".join(tokens) == "Partial \n\nHello there"
    assert decision.result.metadata["interrupted"] is True


@pytest.mark.anyio
async def test_fallback_without_partial_stream_is_not_marked(policy, llm) -> None:
    llm.script(RuntimeError("service unavailable"), Streamed("Hello"))
    tokens = []

    decision = await policy.decide("Hi there", on_token=tokens.append)

    assert tokens == ["Hello"]
    assert decision.result.content == "Hello"
    assert "interrupted" not in decision.result.metadata


@pytest.mark.anyio
async def test_specialist_failing_mid_stream_is_recovered(backend, test_config, llm) -> None:
    registry = AgentRegistry(backend, build_catalog(test_config), max_tool_turns=1)
    policy = DelegationPolicy(registry, backend, fast_model=FAST_MODEL)
    llm.script(
        calls(tool_call("research_task", {"query": "ev prices"}, call_id="r1")),
        reply("Research fits."),
        calls(tool_call("web_search", {"query": "ev prices"}, call_id="w1")),
        Streamed("Prices start ", fail=RuntimeError("connection reset")),
        Streamed("I could not finish the research."),
    )
    tokens = []

    decision = await policy.decide(COMPLEX_QUERY, on_token=tokens.append)

    assert decision.result.agent_id == "orchestrator"
    assert decision.result.content == "".join(tokens)
    assert decision.result.content == "Prices start \n\nI could not finish the research."
    assert llm.remaining == 0


@pytest.mark.parametrize(
    "text, expected",
    [
        ("See https://a.example and https://a.example again", 1),
        ("Sources: [1], [2] and https://b.example/x", 3),
        ("No references at all", 1),
    ],
)
def test_count_citations(text: str, expected: int) -> None:
    assert count_citations(text) == expected
