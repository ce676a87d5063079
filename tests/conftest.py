"""Shared fixtures: a scripted OpenAI-shaped client wired through the real pool and backend."""
from __future__ import annotations

import pytest

from mimir.agents.catalog import build_catalog
from mimir.agents.registry import AgentRegistry
from mimir.agents.triage import DelegationPolicy
from mimir.config import Config
from mimir.core.status_feed import StatusFeed
from mimir.orchestration.orchestrator import OrchestrationService
from mimir.orchestration.tasks import InMemoryTaskStore, TaskTracker
from mimir.orchestration.tracing import TraceRecorder
from mimir.services.completions import CompletionBackend
from mimir.services.llm_pool import LLMPool
from mimir.tools import builtin

from fakes import DEFAULT_MODEL, FAST_MODEL, FakeOpenAI


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def instant_tools(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(builtin, "SIMULATED_LATENCY", 0)


@pytest.fixture
def llm() -> FakeOpenAI:
    return FakeOpenAI()


@pytest.fixture
def test_config() -> Config:
    return Config(default_model=DEFAULT_MODEL, fast_model=FAST_MODEL)


@pytest.fixture
def backend(llm: FakeOpenAI) -> CompletionBackend:
    pool = LLMPool()
    pool.register_many((DEFAULT_MODEL, FAST_MODEL), llm)
    return CompletionBackend(pool)


@pytest.fixture
def registry(backend: CompletionBackend, test_config: Config) -> AgentRegistry:
    return AgentRegistry(backend, build_catalog(test_config))


@pytest.fixture
def policy(registry: AgentRegistry, backend: CompletionBackend) -> DelegationPolicy:
    return DelegationPolicy(registry, backend, fast_model=FAST_MODEL)


@pytest.fixture
def recorder() -> TraceRecorder:
    return TraceRecorder()


@pytest.fixture
def task_store() -> InMemoryTaskStore:
    return InMemoryTaskStore()


@pytest.fixture
def service(
    registry: AgentRegistry,
    policy: DelegationPolicy,
    recorder: TraceRecorder,
    task_store: InMemoryTaskStore,
) -> OrchestrationService:
    return OrchestrationService(
        registry=registry,
        policy=policy,
        recorder=recorder,
        status_feed=StatusFeed(),
        tasks=TaskTracker(task_store),
        heartbeat_seconds=5.0,
        request_timeout_seconds=5.0,
    )
