"""HTTP surface: query endpoint (JSON and SSE), rate limiting, traces and agents."""
from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from mimir.api.agents import agent_status_stream
from mimir.client import parse_events
from mimir.config import Config
from mimir.main import app
from mimir.runtime import (
    get_agent_registry,
    get_config,
    get_orchestration_service,
    get_rate_limiter,
    get_status_feed,
    get_trace_recorder,
)
from mimir.core.models import AgentStatus
from mimir.core.status_feed import StatusFeed
from mimir.services.rate_limit import RateLimiter

from fakes import FAST_MODEL, Streamed, reply


@pytest.fixture
def limiter() -> RateLimiter:
    return RateLimiter(limit=100, window_seconds=60)


@pytest.fixture
def client(service, registry, recorder, limiter):
    app.dependency_overrides[get_config] = lambda: Config(heartbeat_seconds=0.05)
    app.dependency_overrides[get_orchestration_service] = lambda: service
    app.dependency_overrides[get_agent_registry] = lambda: registry
    app.dependency_overrides[get_trace_recorder] = lambda: recorder
    app.dependency_overrides[get_status_feed] = lambda: service.status_feed
    app.dependency_overrides[get_rate_limiter] = lambda: limiter
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_health(client) -> None:
    assert client.get("/health").json() == {"status": "ok"}


def test_json_query(client, llm) -> None:
    llm.script(reply("Hello!", model=FAST_MODEL))

    response = client.post("/agent-query", json={"query": "Hi there", "chatId": "chat-1"})

    assert response.status_code == 200
    body = response.json()
    assert body["response"] == "Hello!"
    assert body["agent"]["name"] == "Mimir"
    assert body["handoffId"]


def test_previous_messages_are_forwarded(client, llm) -> None:
    llm.script(reply("You said your name is Ada.", model=FAST_MODEL))

    client.post(
        "/agent-query",
        json={
            "query": "What's my name?",
            "previousMessages": [
                {"role": "user", "content": "My name is Ada"},
                {"role": "assistant", "content": "Nice to meet you, Ada."},
            ],
        },
    )

    messages = llm.requests[0]["messages"]
    assert [m["role"] for m in messages] == ["system", "user", "assistant", "user"]


def test_blank_query_is_rejected_before_backend(client, llm) -> None:
    response = client.post("/agent-query", json={"query": "  "})

    assert response.status_code == 400
    assert response.json()["detail"] == "Missing or invalid query parameter"
    assert llm.requests == []


def test_unknown_agent_type_is_routed_to_orchestrator(client, llm) -> None:
    llm.script(reply("Hello!", model=FAST_MODEL))

    response = client.post("/agent-query", json={"query": "hello", "agentType": "astrologer"})

    assert response.status_code == 200
    assert response.json()["agent"]["id"] == "orchestrator"


def test_backend_failure_maps_to_502(client, llm) -> None:
    llm.script(RuntimeError("upstream down"), RuntimeError("upstream down"))

    response = client.post("/agent-query", json={"query": "Hi there"})

    assert response.status_code == 502


def test_streaming_query(client, llm) -> None:
    llm.script(Streamed("Hi", " there"))

    with client.stream("POST", "/agent-query", json={"query": "Hello", "stream": True}) as response:
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        body = "".join(response.iter_text())

    events = parse_events(body)
    assert events[0].event == "start"
    assert events[-1].event == "complete"
    assert "".join(e.data["token"] for e in events if e.event == "token") == events[-1].data["content"]


def test_last_event_id_replays_finished_stream(client, llm) -> None:
    llm.script(Streamed("one", "two"))
    first = parse_events(client.post("/agent-query", json={"query": "Hello", "stream": True}).text)

    resumed = parse_events(
        client.post(
            "/agent-query",
            json={"query": "Hello", "stream": True},
            headers={"Last-Event-ID": first[2].id},
        ).text
    )

    assert resumed == first[3:]
    assert llm.remaining == 0


def test_rate_limit(client, limiter) -> None:
    limiter.limit = 2

    statuses = [client.post("/agent-query", json={"query": ""}).status_code for _ in range(3)]

    assert statuses == [400, 400, 429]
    last = client.post("/agent-query", json={"query": ""})
    assert last.json()["detail"].startswith("Rate limit exceeded. Try again in ")
    assert "Retry-After" in last.headers


def test_traces_endpoints(client, llm) -> None:
    llm.script(reply("Hello!", model=FAST_MODEL))
    trace_id = client.post("/agent-query", json={"query": "Hi there", "chatId": "chat-9"}).json()["handoffId"]

    listed = client.get("/agent-traces", params={"chatId": "chat-9"}).json()["traces"]
    detail = client.get(f"/agent-traces/{trace_id}").json()["trace"]

    assert [t["id"] for t in listed] == [trace_id]
    assert "steps" not in listed[0]
    assert detail["status"] == "completed"
    assert [s["type"] for s in detail["steps"]][0] == "decision"
    assert client.get("/agent-traces/does-not-exist").status_code == 404
    assert client.get("/agent-traces", params={"chatId": "other"}).json() == {"traces": []}


def test_agents_listing(client) -> None:
    agents = client.get("/agents").json()

    assert [a["id"] for a in agents] == ["orchestrator", "research", "coding", "data_analysis", "writing", "report"]
    assert agents[0]["role"] == "orchestrator"
    assert {a["role"] for a in agents[1:]} == {"specialist"}


def test_agent_status_snapshot(client, llm) -> None:
    llm.script(reply("Hello!", model=FAST_MODEL))
    client.post("/agent-query", json={"query": "Hi there"})

    agents = client.get("/agent-status").json()["agents"]

    assert agents[0]["id"] == "orchestrator"
    assert agents[0]["status"] == "completed"
    assert agents[0]["progress"] == 100


def test_forwarded_header_is_ignored_from_untrusted_peers(client, limiter) -> None:
    limiter.limit = 1

    first = client.post("/agent-query", json={"query": ""}, headers={"X-Forwarded-For": "10.0.0.1"})
    second = client.post("/agent-query", json={"query": ""}, headers={"X-Forwarded-For": "10.0.0.2"})

    assert (first.status_code, second.status_code) == (400, 429)


def test_forwarded_header_is_used_behind_trusted_proxy(client, limiter) -> None:
    limiter.limit = 1
    app.dependency_overrides[get_config] = lambda: Config(trusted_proxies=("testclient",))

    first = client.post("/agent-query", json={"query": ""}, headers={"X-Forwarded-For": "10.0.0.1"})
    second = client.post("/agent-query", json={"query": ""}, headers={"X-Forwarded-For": "10.0.0.2"})
    spoofed = client.post(
        "/agent-query", json={"query": ""}, headers={"X-Forwarded-For": "10.0.0.9, 10.0.0.1"}
    )

    assert (first.status_code, second.status_code) == (400, 400)
    assert spoofed.status_code == 429


class PollingRequest:
    """Stands in for a client that disconnects after *polls* checks."""

    def __init__(self, polls: int) -> None:
        self.polls = polls

    async def is_disconnected(self) -> bool:
        self.polls -= 1
        return self.polls < 0


@pytest.mark.anyio
async def test_status_stream_uses_configured_heartbeat() -> None:
    feed = StatusFeed()
    feed.publish(AgentStatus(id="research", name="Research Agent", type="research", task="EVs"))

    response = await agent_status_stream(PollingRequest(1), feed, Config(heartbeat_seconds=0.01))
    frames = [frame async for frame in response.body_iterator]

    assert frames[0].startswith("event: status\ndata: ")
    assert '"id": "research"' in frames[0]
    assert frames[1:] == [": heartbeat\n\n"]
