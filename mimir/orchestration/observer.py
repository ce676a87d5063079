"""Per-request fan-out of progress to the trace recorder, event stream and status feed."""
from __future__ import annotations

import dataclasses
from typing import Any, Dict, Optional

from mimir.core.events import EventEmitter
from mimir.core.models import (
    AgentDefinition,
    AgentStatus,
    SpanStatus,
    SpanType,
    WorkState,
    utcnow,
)
from mimir.core.status_feed import StatusFeed
from mimir.orchestration.tracing import TraceRecorder


class RunObserver:
    """
    Progress sink handed down through one orchestration run.

    Every collaborator is optional; ``RunObserver()`` records nothing. Once the
    request is cancelled no further steps, tokens or statuses are emitted.
    """

    def __init__(
        self,
        *,
        recorder: Optional[TraceRecorder] = None,
        trace_id: Optional[str] = None,
        emitter: Optional[EventEmitter] = None,
        status_feed: Optional[StatusFeed] = None,
    ) -> None:
        self.recorder = recorder
        self.trace_id = trace_id
        self.emitter = emitter
        self.status_feed = status_feed
        self._statuses: Dict[str, AgentStatus] = {}

    @property
    def cancelled(self) -> bool:
        return self.emitter is not None and self.emitter.cancelled

    @property
    def streaming(self) -> bool:
        return self.emitter is not None

    # Trace steps --------------------------------------------------------

    def step(
        self,
        type: SpanType,
        message: str,
        *,
        agent: Optional[AgentDefinition] = None,
        metadata: Optional[Dict[str, Any]] = None,
        status: SpanStatus = SpanStatus.COMPLETED,
        parent_id: Optional[str] = None,
    ) -> Optional[str]:
        if self.cancelled:
            return None
        step_id = None
        if self.recorder is not None and self.trace_id is not None:
            step_id = self.recorder.add_step(
                self.trace_id,
                type,
                message,
                metadata,
                status,
                parent_id=parent_id,
                agent_name=agent.name if agent else None,
            )
        if agent is not None:
            self._advance(agent, message)
        return step_id

    def action(self, message: str, **kwargs: Any) -> Optional[str]:
        return self.step(SpanType.ACTION, message, **kwargs)

    def observation(self, message: str, **kwargs: Any) -> Optional[str]:
        return self.step(SpanType.OBSERVATION, message, **kwargs)

    def decision(self, message: str, **kwargs: Any) -> Optional[str]:
        return self.step(SpanType.DECISION, message, **kwargs)

    def error(self, message: str, **kwargs: Any) -> Optional[str]:
        kwargs.setdefault("status", SpanStatus.ERROR)
        return self.step(SpanType.ERROR, message, **kwargs)

    def open_stream_step(self, agent: AgentDefinition, message: str = "") -> Optional[str]:
        if self.cancelled or self.recorder is None or self.trace_id is None:
            return None
        return self.recorder.start_streaming_step(
            self.trace_id, SpanType.OBSERVATION, message, agent_name=agent.name
        )

    def close_stream_step(self, step_id: Optional[str], content: str, *, failed: bool = False) -> None:
        if step_id is None or self.cancelled or self.recorder is None or self.trace_id is None:
            return
        status = SpanStatus.ERROR if failed else SpanStatus.COMPLETED
        self.recorder.close_step(self.trace_id, step_id, content, status=status)

    def append_stream_step(self, step_id: Optional[str], text: str) -> None:
        if step_id is None or self.cancelled or self.recorder is None or self.trace_id is None:
            return
        self.recorder.append_step(self.trace_id, step_id, text)

    # Stream events ------------------------------------------------------

    def token(self, text: str) -> None:
        if self.emitter is not None and not self.cancelled:
            self.emitter.token(text)

    def handoff(self, source: AgentDefinition, target: AgentDefinition, reason: str) -> None:
        if self.cancelled:
            return
        self.step(
            SpanType.HANDOFF,
            f"Handing off from {source.name} to {target.name}",
            agent=source,
            metadata={"from": source.name, "to": target.name, "reason": reason},
        )
        if self.emitter is not None:
            self.emitter.handoff(source.name, target.name, reason)

    def phase_start(self, domain: str, **payload: Any) -> None:
        if self.emitter is not None and not self.cancelled:
            self.emitter.phase_start(domain, **payload)

    def phase_complete(self, domain: str, **payload: Any) -> None:
        if self.emitter is not None and not self.cancelled:
            self.emitter.phase_complete(domain, **payload)

    def triage_complete(self, task_type: str, confidence: float, reasoning: str) -> None:
        if self.emitter is not None and not self.cancelled:
            self.emitter.triage_complete(task_type, confidence, reasoning)

    # Agent status -------------------------------------------------------

    def _publish(self, status: AgentStatus) -> None:
        if self.status_feed is not None:
            self.status_feed.publish(dataclasses.replace(status))

    def agent_started(self, agent: AgentDefinition, task: str) -> None:
        if self.cancelled:
            return
        status = AgentStatus(id=agent.identity, name=agent.name, type=agent.agent_type, task=task)
        self._statuses[agent.identity] = status
        self._publish(status)

    def _advance(self, agent: AgentDefinition, task: str) -> None:
        status = self._statuses.get(agent.identity)
        if status is None or status.status is not WorkState.WORKING:
            return
        status.task = task
        status.progress = min(90, status.progress + 10)
        status.last_update_time = utcnow()
        self._publish(status)

    def agent_finished(self, agent: AgentDefinition, success: bool = True) -> None:
        if self.cancelled:
            return
        status = self._statuses.get(agent.identity)
        if status is None:
            return
        status.status = WorkState.COMPLETED if success else WorkState.FAILED
        status.progress = 100
        status.last_update_time = utcnow()
        self._publish(status)
