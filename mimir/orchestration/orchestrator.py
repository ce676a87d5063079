"""Orchestration service: routes queries, records traces and streams progress."""
from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional

from mimir.agents.agent import TokenCallback, emit_text
from mimir.agents.registry import AgentRegistry
from mimir.agents.triage import DelegationPolicy, phase_payload
from mimir.core.errors import (
    EmptyQueryError,
    RequestTimeoutError,
    is_authentication_error,
)
from mimir.core.events import EventEmitter, StreamEvent
from mimir.core.models import AgentDefinition, ConversationContext, TaskStatus
from mimir.core.status_feed import StatusFeed
from mimir.orchestration.observer import RunObserver
from mimir.orchestration.pipeline import ResearchReportPipeline
from mimir.orchestration.tasks import TaskTracker
from mimir.orchestration.tracing import TraceRecorder

logger = logging.getLogger(__name__)

REFUSAL = (
    "I'm sorry, as a {name}, I don't have the expertise to handle this query. "
    "Please try asking a different agent or rephrase your question."
)

# Agent types handled by the orchestrator itself rather than a named agent
ROUTED_TYPES = ("auto", "orchestrator", "triage", "pipeline")


@dataclass
class QueryRequest:
    """One inbound query, independent of the transport it arrived on."""

    query: str
    agent_type: str = "auto"
    chat_id: Optional[str] = None
    user_id: Optional[str] = None
    previous_messages: List[Dict[str, Any]] = field(default_factory=list)
    parent_task_id: Optional[str] = None


@dataclass
class QueryOutcome:
    content: str
    agent: AgentDefinition
    trace_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    failed: bool = False

    def agent_info(self) -> Dict[str, str]:
        return {
            "id": self.agent.identity,
            "name": self.agent.name,
            "type": self.agent.agent_type,
            "icon": self.agent.icon,
        }

    def to_response(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"response": self.content, "agent": self.agent_info()}
        if self.trace_id is not None:
            payload["handoffId"] = self.trace_id
        return payload


class OrchestrationService:
    """Owns the registry, delegation policy, tracing and task tracking for all requests."""

    def __init__(
        self,
        *,
        registry: AgentRegistry,
        policy: DelegationPolicy,
        recorder: TraceRecorder,
        status_feed: StatusFeed,
        tasks: TaskTracker,
        heartbeat_seconds: float = 15.0,
        request_timeout_seconds: float = 60.0,
        journal_size: int = 100,
        pipeline: Optional[ResearchReportPipeline] = None,
    ) -> None:
        self.registry = registry
        self.policy = policy
        self.pipeline = pipeline or ResearchReportPipeline(registry, policy)
        self.recorder = recorder
        self.status_feed = status_feed
        self.tasks = tasks
        self.heartbeat_seconds = heartbeat_seconds
        self.request_timeout_seconds = request_timeout_seconds
        self.journal_size = journal_size
        self._journals: "OrderedDict[str, List[StreamEvent]]" = OrderedDict()

    # Entry points ---------------------------------------------------------

    def validate(self, request: QueryRequest) -> None:
        """Reject blank queries before any work starts."""
        if not request.query or not request.query.strip():
            raise EmptyQueryError("Missing or invalid query parameter")

    def _start(self, request: QueryRequest, emitter: Optional[EventEmitter] = None) -> RunObserver:
        trace_id = self.recorder.start_trace(
            "Agent query",
            {"query": request.query, "agentType": request.agent_type, "chatId": request.chat_id},
        )
        return RunObserver(
            recorder=self.recorder,
            trace_id=trace_id,
            emitter=emitter,
            status_feed=self.status_feed,
        )

    async def handle(self, request: QueryRequest) -> QueryOutcome:
        """Run *request* to completion and return the final answer."""
        self.validate(request)
        observer = self._start(request)
        try:
            return await asyncio.wait_for(
                self._execute(request, observer, on_token=None),
                timeout=self.request_timeout_seconds,
            )
        except asyncio.TimeoutError:
            self.recorder.abort_trace(observer.trace_id, "Request timed out")
            raise RequestTimeoutError(
                f"Request did not complete within {self.request_timeout_seconds:g} seconds"
            ) from None

    async def stream(self, request: QueryRequest, *, stream_id: Optional[str] = None) -> AsyncIterator[StreamEvent]:
        """
        Yield the events of *request* in causal order, ending with ``complete`` or ``error``.

        Heartbeats are emitted whenever nothing else happened for ``heartbeat_seconds``.
        If the consumer goes away (cancellation or ``aclose``) the trace is aborted and
        nothing further is emitted.
        """
        self.validate(request)
        emitter = EventEmitter(stream_id)
        observer = self._start(request, emitter)
        journal = self._open_journal(emitter.stream_id)
        emitter.start()

        async def worker() -> None:
            try:
                outcome = await self._execute(request, observer, on_token=observer.token)
            except Exception as exc:  # noqa: BLE001
                emitter.error(str(exc) or type(exc).__name__, authentication=is_authentication_error(exc))
                return
            metadata = dict(outcome.metadata)
            metadata["agent"] = outcome.agent_info()
            metadata["traceId"] = outcome.trace_id
            emitter.complete(outcome.content, metadata)

        task = asyncio.create_task(worker())
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.request_timeout_seconds
        try:
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0 and not emitter.closed:
                    logger.warning("Stream %s timed out", emitter.stream_id)
                    task.cancel()
                    self.recorder.abort_trace(observer.trace_id, "Request timed out")
                    emitter.error(f"Request did not complete within {self.request_timeout_seconds:g} seconds")
                wait = min(self.heartbeat_seconds, remaining) if remaining > 0 else None
                try:
                    event = await emitter.next(timeout=wait)
                except asyncio.TimeoutError:
                    emitter.heartbeat()
                    continue
                journal.append(event)
                yield event
                if event.is_terminal:
                    break
        except (asyncio.CancelledError, GeneratorExit):
            logger.info("Stream %s cancelled by the client", emitter.stream_id)
            emitter.cancel()
            self.recorder.abort_trace(observer.trace_id, "Client disconnected")
            raise
        finally:
            if not task.done():
                task.cancel()

    # Resumption -------------------------------------------------------------

    def _open_journal(self, stream_id: str) -> List[StreamEvent]:
        journal: List[StreamEvent] = []
        self._journals[stream_id] = journal
        while len(self._journals) > self.journal_size:
            self._journals.popitem(last=False)
        return journal

    def replay(self, last_event_id: str) -> Optional[List[StreamEvent]]:
        """
        Events of a finished stream after *last_event_id*.

        Returns ``None`` when the stream is unknown or never reached a terminal event;
        the caller should then start a fresh stream.
        """
        stream_id, _, seq = last_event_id.rpartition("-")
        journal = self._journals.get(stream_id)
        if journal is None or not seq.isdigit() or not journal or not journal[-1].is_terminal:
            return None
        position = int(seq)
        return [event for event in journal if int(event.id.rpartition("-")[2]) > position]

    # Routing ----------------------------------------------------------------

    async def _execute(
        self,
        request: QueryRequest,
        observer: RunObserver,
        on_token: Optional[TokenCallback],
    ) -> QueryOutcome:
        context = ConversationContext.from_messages(
            request.previous_messages,
            user_id=request.user_id,
            chat_id=request.chat_id,
            parent_task_id=request.parent_task_id,
        )
        task_id = await self.tasks.start(
            description=request.query,
            agent=request.agent_type,
            user_id=request.user_id,
            parent_task_id=request.parent_task_id,
        )
        if task_id is not None:
            context.parent_task_id = task_id

        try:
            outcome = await self._route(request, context, observer, on_token)
        except asyncio.CancelledError:
            self.recorder.abort_trace(observer.trace_id, "Request cancelled")
            await self.tasks.finish(task_id, TaskStatus.ERROR, {"error": "cancelled"})
            raise
        except Exception as exc:
            logger.error("Query failed: %s", exc)
            observer.error(str(exc) or type(exc).__name__, metadata={"errorType": type(exc).__name__})
            self.recorder.complete_trace(observer.trace_id, success=False, summary=str(exc))
            await self.tasks.finish(task_id, TaskStatus.ERROR, {"error": str(exc)})
            raise

        outcome.trace_id = observer.trace_id
        self.recorder.complete_trace(observer.trace_id, success=not outcome.failed, summary=outcome.content[:200])
        await self.tasks.finish(
            task_id,
            TaskStatus.ERROR if outcome.failed else TaskStatus.COMPLETED,
            {"content": outcome.content, "agent": outcome.agent.name},
        )
        return outcome

    async def _route(
        self,
        request: QueryRequest,
        context: ConversationContext,
        observer: RunObserver,
        on_token: Optional[TokenCallback],
    ) -> QueryOutcome:
        agent_type = (request.agent_type or "auto").strip()
        if agent_type in ROUTED_TYPES:
            if agent_type == "triage":
                return await self._classify(request.query, context, observer, on_token)
            if agent_type == "pipeline":
                return await self._pipeline(request.query, context, observer, on_token)
            return await self._delegate(request.query, context, observer, on_token)

        definition = self.registry.find(agent_type)
        if definition is None:
            logger.warning("Unknown agent type '%s', routing to the orchestrator", agent_type)
            return await self._delegate(request.query, context, observer, on_token)
        if definition.is_orchestrator:
            return await self._delegate(request.query, context, observer, on_token)
        return await self._explicit(definition, request.query, context, observer, on_token)

    def _definition_for(self, agent_id: str) -> AgentDefinition:
        if agent_id:
            definition = self.registry.find(agent_id)
            if definition is not None:
                return definition
        return self.registry.orchestrator()

    async def _delegate(
        self,
        query: str,
        context: ConversationContext,
        observer: RunObserver,
        on_token: Optional[TokenCallback],
    ) -> QueryOutcome:
        orchestrator = self.registry.orchestrator()
        observer.agent_started(orchestrator, query)
        try:
            decision = await self.policy.decide(query, context, observer=observer, on_token=on_token)
        except Exception:
            observer.agent_finished(orchestrator, success=False)
            raise
        observer.agent_finished(orchestrator)
        result = decision.result
        metadata = dict(result.metadata)
        metadata.update(
            {
                "path": decision.path,
                "taskType": decision.task_type,
                "confidence": decision.confidence,
                "reasoning": decision.reasoning,
                "toolName": decision.tool_name,
                "model": result.model,
            }
        )
        return QueryOutcome(content=result.content, agent=self._definition_for(result.agent_id), metadata=metadata)

    async def _classify(
        self,
        query: str,
        context: ConversationContext,
        observer: RunObserver,
        on_token: Optional[TokenCallback],
    ) -> QueryOutcome:
        orchestrator = self.registry.orchestrator()
        observer.agent_started(orchestrator, "Classifying query")
        triage = await self.policy.classify(query, context)
        observer.decision(
            f"Classified as {triage.task_type.value}",
            agent=orchestrator,
            metadata=triage.model_dump(by_alias=True, mode="json"),
        )
        observer.triage_complete(triage.task_type.value, triage.confidence, triage.reasoning)
        content = triage.summary(query)
        await emit_text(on_token, content)
        observer.agent_finished(orchestrator)
        return QueryOutcome(
            content=content,
            agent=orchestrator,
            metadata={
                "taskType": triage.task_type.value,
                "triageResult": triage.model_dump(by_alias=True, mode="json"),
            },
        )

    async def _pipeline(
        self,
        query: str,
        context: ConversationContext,
        observer: RunObserver,
        on_token: Optional[TokenCallback],
    ) -> QueryOutcome:
        orchestrator = self.registry.orchestrator()
        observer.agent_started(orchestrator, "Running the research and report pipeline")
        try:
            result = await self.pipeline.run(query, context, observer, on_token)
        except Exception:
            observer.agent_finished(orchestrator, success=False)
            raise
        observer.agent_finished(orchestrator)
        metadata = dict(result.metadata)
        metadata["triageResult"] = result.triage.model_dump(by_alias=True, mode="json")
        return QueryOutcome(content=result.content, agent=result.agent, metadata=metadata)

    async def _explicit(
        self,
        definition: AgentDefinition,
        query: str,
        context: ConversationContext,
        observer: RunObserver,
        on_token: Optional[TokenCallback],
    ) -> QueryOutcome:
        agent = self.registry.get_or_create(definition.identity)
        observer.agent_started(definition, query)
        if not await agent.can_handle(query):
            content = REFUSAL.format(name=definition.name)
            observer.decision(f"{definition.name} declined the query", agent=definition)
            observer.agent_finished(definition, success=False)
            await emit_text(on_token, content)
            return QueryOutcome(content=content, agent=definition, metadata={"declined": True}, failed=True)

        observer.phase_start(definition.identity, agent=definition.name)
        try:
            result = await agent.run(query, context, observer=observer, on_token=on_token)
        except Exception:
            observer.agent_finished(definition, success=False)
            raise
        observer.phase_complete(definition.identity, **phase_payload(definition.identity, result.content))
        observer.agent_finished(definition)
        metadata = dict(result.metadata)
        metadata.update({"taskType": definition.agent_type, "model": result.model})
        return QueryOutcome(content=result.content, agent=self._definition_for(result.agent_id), metadata=metadata)

