"""Read-only access to recorded traces."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from mimir.orchestration.tracing import TraceRecorder
from mimir.runtime import get_trace_recorder

router = APIRouter(prefix="/agent-traces", tags=["traces"])


@router.get("")
async def list_traces(
    chat_id: Optional[str] = Query(default=None, alias="chatId"),
    limit: int = Query(default=20, ge=1, le=100),
    recorder: TraceRecorder = Depends(get_trace_recorder),
) -> dict:
    traces = recorder.list_traces(chat_id=chat_id, limit=limit)
    return {"traces": [trace.to_dict(include_steps=False) for trace in traces]}


@router.get("/{trace_id}")
async def get_trace(trace_id: str, recorder: TraceRecorder = Depends(get_trace_recorder)) -> dict:
    trace = recorder.get_trace(trace_id)
    if trace is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Trace not found")
    return {"trace": trace.to_dict()}
