"""Application runtime composition helpers."""
from __future__ import annotations

from functools import lru_cache

from mimir.agents.catalog import build_catalog
from mimir.agents.registry import AgentRegistry
from mimir.agents.triage import DelegationPolicy
from mimir.config import Config, config
from mimir.core.status_feed import StatusFeed
from mimir.orchestration.orchestrator import OrchestrationService
from mimir.orchestration.tasks import InMemoryTaskStore, TaskTracker
from mimir.orchestration.tracing import TraceRecorder
from mimir.services.completions import CompletionBackend
from mimir.services.llm_pool import LLMPool
from mimir.services.rate_limit import RateLimiter


def get_config() -> Config:
    return config


@lru_cache
def get_llm_pool() -> LLMPool:
    pool = LLMPool()

    # Azure takes precedence when both backends are configured
    if config.azure_openai:
        pool.register_many(config.models, config.azure_openai)
    elif config.openai:
        pool.register_many(config.models, config.openai)

    return pool


@lru_cache
def get_backend() -> CompletionBackend:
    return CompletionBackend(get_llm_pool())


@lru_cache
def get_status_feed() -> StatusFeed:
    return StatusFeed()


@lru_cache
def get_trace_recorder() -> TraceRecorder:
    return TraceRecorder(enabled=not config.tracing_disabled, max_traces=config.max_traces)


@lru_cache
def get_task_store() -> InMemoryTaskStore:
    return InMemoryTaskStore()


@lru_cache
def get_agent_registry() -> AgentRegistry:
    return AgentRegistry(
        get_backend(),
        build_catalog(config),
        max_tool_turns=config.max_tool_turns,
    )


@lru_cache
def get_orchestration_service() -> OrchestrationService:
    registry = get_agent_registry()
    policy = DelegationPolicy(
        registry,
        get_backend(),
        fast_model=config.fast_model,
        simple_query_words=config.simple_query_words,
    )
    return OrchestrationService(
        registry=registry,
        policy=policy,
        recorder=get_trace_recorder(),
        status_feed=get_status_feed(),
        tasks=TaskTracker(get_task_store()),
        heartbeat_seconds=config.heartbeat_seconds,
        request_timeout_seconds=config.request_timeout_seconds,
    )


@lru_cache
def get_rate_limiter() -> RateLimiter:
    return RateLimiter(config.rate_limit, config.rate_window_seconds)
