"""Agent catalog listing and the live status feed."""
from __future__ import annotations

import asyncio
import json
from typing import AsyncIterator, List

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from mimir.agents.registry import AgentRegistry
from mimir.config import Config
from mimir.core.status_feed import StatusFeed
from mimir.runtime import get_agent_registry, get_config, get_status_feed

router = APIRouter(tags=["agents"])


class AgentDescription(BaseModel):
    id: str
    name: str
    type: str
    icon: str
    role: str


@router.get("/agents", response_model=List[AgentDescription])
async def list_agents(registry: AgentRegistry = Depends(get_agent_registry)) -> List[AgentDescription]:
    return [AgentDescription(**definition.describe()) for definition in registry.list_definitions()]


@router.get("/agent-status")
async def agent_status(feed: StatusFeed = Depends(get_status_feed)) -> dict:
    return {"agents": [status.to_dict() for status in feed.snapshot()]}


def _status_frame(payload: dict) -> str:
    return f"event: status\ndata: {json.dumps(payload)}\n\n"


@router.get("/agent-status/stream")
async def agent_status_stream(
    request: Request,
    feed: StatusFeed = Depends(get_status_feed),
    settings: Config = Depends(get_config),
) -> StreamingResponse:
    """Stream every status update as SSE, starting with the current snapshot."""

    async def event_stream() -> AsyncIterator[str]:
        async with feed.subscribe() as updates:
            for status in feed.snapshot():
                yield _status_frame(status.to_dict())
            while not await request.is_disconnected():
                try:
                    status = await asyncio.wait_for(updates.get(), timeout=settings.heartbeat_seconds)
                except asyncio.TimeoutError:
                    yield ": heartbeat\n\n"
                    continue
                yield _status_frame(status.to_dict())

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
