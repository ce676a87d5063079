"""In-memory feed of AgentStatus updates for status UIs."""
from __future__ import annotations

import asyncio
import uuid
from collections import OrderedDict
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List

from .models import AgentStatus


class StatusFeed:
    """Keeps the latest status per agent and fans updates out to subscribers."""

    def __init__(self) -> None:
        self._latest: "OrderedDict[str, AgentStatus]" = OrderedDict()
        self._subscribers: Dict[str, asyncio.Queue[AgentStatus]] = {}
        self._lock = asyncio.Lock()

    def publish(self, status: AgentStatus) -> None:
        """Record a status and deliver it to every subscriber, in publish order."""
        self._latest.pop(status.id, None)
        self._latest[status.id] = status
        for queue in list(self._subscribers.values()):
            queue.put_nowait(status)

    def snapshot(self) -> List[AgentStatus]:
        return list(self._latest.values())

    def clear(self) -> None:
        self._latest.clear()

    @asynccontextmanager
    async def subscribe(self) -> AsyncIterator[asyncio.Queue[AgentStatus]]:
        """Context manager yielding a queue that receives every later update."""
        subscriber_id = uuid.uuid4().hex
        async with self._lock:
            self._subscribers[subscriber_id] = asyncio.Queue()
        try:
            yield self._subscribers[subscriber_id]
        finally:
            async with self._lock:
                self._subscribers.pop(subscriber_id, None)
