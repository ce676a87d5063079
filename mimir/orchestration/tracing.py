"""Trace/span recorder for orchestration runs."""
from __future__ import annotations

import logging
import uuid
from collections import OrderedDict
from typing import Any, Dict, List, Optional

from mimir.core.models import SpanStatus, SpanType, Trace, TraceSpan, TraceStatus, utcnow

logger = logging.getLogger(__name__)


class TraceRecorder:
    """
    Records ordered, typed steps for each orchestration run.

    Traces are kept in memory, oldest evicted first once ``max_traces`` is
    exceeded. After a trace has been completed or aborted every further write
    is dropped with a warning. With ``enabled=False`` the recorder hands out
    trace ids but stores nothing.
    """

    def __init__(self, *, enabled: bool = True, max_traces: int = 500) -> None:
        self.enabled = enabled
        self.max_traces = max_traces
        self._traces: "OrderedDict[str, Trace]" = OrderedDict()

    def start_trace(self, name: str, metadata: Optional[Dict[str, Any]] = None) -> str:
        trace_id = str(uuid.uuid4())
        if not self.enabled:
            return trace_id
        self._traces[trace_id] = Trace(id=trace_id, name=name, metadata=dict(metadata or {}))
        while len(self._traces) > self.max_traces:
            evicted, _ = self._traces.popitem(last=False)
            logger.debug("Evicted trace %s", evicted)
        return trace_id

    def _open_trace(self, trace_id: str, action: str) -> Optional[Trace]:
        if not self.enabled:
            return None
        trace = self._traces.get(trace_id)
        if trace is None:
            logger.warning("Dropping %s for unknown trace %s", action, trace_id)
            return None
        if not trace.is_open:
            logger.warning("Dropping %s for %s trace %s", action, trace.status.value, trace_id)
            return None
        return trace

    def add_step(
        self,
        trace_id: str,
        type: SpanType,
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
        status: SpanStatus = SpanStatus.COMPLETED,
        *,
        parent_id: Optional[str] = None,
        agent_name: Optional[str] = None,
    ) -> Optional[str]:
        """Append a step; returns its id, or ``None`` when the write was dropped."""
        trace = self._open_trace(trace_id, f"{type.value} step")
        if trace is None:
            return None
        span = TraceSpan(
            id=str(uuid.uuid4()),
            trace_id=trace_id,
            type=type,
            message=message,
            parent_id=parent_id,
            metadata=dict(metadata or {}),
            status=status,
            agent_name=agent_name,
        )
        if status is not SpanStatus.PENDING:
            span.closed_at = span.created_at
        trace.spans.append(span)
        return span.id

    def start_streaming_step(
        self,
        trace_id: str,
        type: SpanType,
        message: str = "",
        metadata: Optional[Dict[str, Any]] = None,
        *,
        parent_id: Optional[str] = None,
        agent_name: Optional[str] = None,
    ) -> Optional[str]:
        """Open a pending step whose message grows through :meth:`append_step`."""
        return self.add_step(
            trace_id,
            type,
            message,
            metadata,
            SpanStatus.PENDING,
            parent_id=parent_id,
            agent_name=agent_name,
        )

    def _pending_span(self, trace_id: str, step_id: str, action: str) -> Optional[TraceSpan]:
        trace = self._open_trace(trace_id, action)
        if trace is None:
            return None
        for span in reversed(trace.spans):
            if span.id == step_id:
                if span.status is not SpanStatus.PENDING:
                    logger.warning("Dropping %s for closed step %s", action, step_id)
                    return None
                return span
        logger.warning("Dropping %s for unknown step %s", action, step_id)
        return None

    def append_step(self, trace_id: str, step_id: str, content: str) -> bool:
        span = self._pending_span(trace_id, step_id, "append")
        if span is None:
            return False
        span.message += content
        return True

    def close_step(
        self,
        trace_id: str,
        step_id: str,
        content: Optional[str] = None,
        *,
        status: SpanStatus = SpanStatus.COMPLETED,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        span = self._pending_span(trace_id, step_id, "close")
        if span is None:
            return False
        if content is not None:
            span.message = content
        if metadata:
            span.metadata.update(metadata)
        span.status = status
        span.closed_at = utcnow()
        return True

    def _finish(self, trace: Trace, status: TraceStatus, span_status: SpanStatus, summary: Optional[str]) -> None:
        now = utcnow()
        for span in trace.spans:
            if span.status is SpanStatus.PENDING:
                span.status = span_status
                span.closed_at = now
        trace.status = status
        trace.summary = summary
        trace.ended_at = now

    def complete_trace(self, trace_id: str, success: bool = True, summary: Optional[str] = None) -> bool:
        """Close the trace. Idempotent: returns ``False`` if it was already closed."""
        if not self.enabled:
            return False
        trace = self._traces.get(trace_id)
        if trace is None or not trace.is_open:
            return False
        if success:
            self._finish(trace, TraceStatus.COMPLETED, SpanStatus.COMPLETED, summary)
        else:
            self._finish(trace, TraceStatus.ERROR, SpanStatus.ERROR, summary)
        return True

    def abort_trace(self, trace_id: str, reason: str = "Request cancelled") -> bool:
        """Mark an open trace and its pending steps as aborted."""
        if not self.enabled:
            return False
        trace = self._traces.get(trace_id)
        if trace is None or not trace.is_open:
            return False
        self._finish(trace, TraceStatus.ABORTED, SpanStatus.ABORTED, reason)
        logger.info("Aborted trace %s: %s", trace_id, reason)
        return True

    def get_trace(self, trace_id: str) -> Optional[Trace]:
        return self._traces.get(trace_id)

    def list_traces(self, chat_id: Optional[str] = None, limit: Optional[int] = 20) -> List[Trace]:
        """Newest first; all traces for *chat_id*, else the latest ``limit``."""
        traces = list(reversed(self._traces.values()))
        if chat_id is not None:
            return [trace for trace in traces if trace.metadata.get("chatId") == chat_id]
        return traces[:limit] if limit is not None else traces

    def reset(self) -> None:
        self._traces.clear()
