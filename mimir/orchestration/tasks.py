"""AgentTask records: the store contract and a tracker that tolerates store outages."""
from __future__ import annotations

import asyncio
import dataclasses
import logging
import uuid
from typing import Any, Dict, List, Optional, Protocol

from mimir.core.errors import InvalidTaskTransition
from mimir.core.models import AgentTask, TaskStatus, utcnow

logger = logging.getLogger(__name__)


class TaskStore(Protocol):
    """External collaborator persisting AgentTask records."""

    async def create(self, task: AgentTask) -> str:
        ...

    async def update(self, task_id: str, patch: Dict[str, Any]) -> None:
        ...


class InMemoryTaskStore:
    """Process-local TaskStore; rejects backwards status transitions."""

    def __init__(self) -> None:
        self._tasks: Dict[str, AgentTask] = {}
        self._lock = asyncio.Lock()

    async def create(self, task: AgentTask) -> str:
        async with self._lock:
            self._tasks[task.id] = task
        return task.id

    async def update(self, task_id: str, patch: Dict[str, Any]) -> None:
        async with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                raise KeyError(f"Unknown task '{task_id}'")
            status = patch.get("status")
            if status is not None:
                status = TaskStatus(status)
                if status is not task.status and not task.status.can_become(status):
                    raise InvalidTaskTransition(
                        f"Task {task_id} cannot move from {task.status.value} to {status.value}"
                    )
            changes = {key: value for key, value in patch.items() if key != "status"}
            if status is not None:
                changes["status"] = status
            self._tasks[task_id] = dataclasses.replace(task, updated_at=utcnow(), **changes)

    def get(self, task_id: str) -> Optional[AgentTask]:
        return self._tasks.get(task_id)

    def list_for_user(self, user_id: str) -> List[AgentTask]:
        return [task for task in self._tasks.values() if task.user_id == user_id]


class TaskTracker:
    """
    Records one AgentTask per request when a user identity is known.

    Store failures are logged and swallowed so the request still completes unpersisted.
    """

    def __init__(self, store: Optional[TaskStore]) -> None:
        self.store = store

    async def start(
        self,
        *,
        description: str,
        agent: str,
        user_id: Optional[str],
        parent_task_id: Optional[str] = None,
    ) -> Optional[str]:
        if self.store is None or not user_id:
            return None
        task = AgentTask(
            id=str(uuid.uuid4()),
            description=description,
            agent=agent,
            status=TaskStatus.IN_PROGRESS,
            user_id=user_id,
            parent_task_id=parent_task_id,
        )
        try:
            return await self.store.create(task)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Task store unavailable, continuing unpersisted: %s", exc)
            return None

    async def finish(self, task_id: Optional[str], status: TaskStatus, result: Dict[str, Any]) -> None:
        if self.store is None or task_id is None:
            return
        try:
            await self.store.update(task_id, {"status": status, "result": result})
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to update task %s: %s", task_id, exc)
