"""AgentTask status transitions and tracker tolerance of store outages."""
from __future__ import annotations

import pytest

from mimir.core.errors import InvalidTaskTransition
from mimir.core.models import AgentTask, TaskStatus
from mimir.orchestration.tasks import InMemoryTaskStore, TaskTracker


@pytest.mark.anyio
async def test_status_only_moves_forward() -> None:
    store = InMemoryTaskStore()
    task_id = await store.create(AgentTask(id="t1", description="research EVs", agent="auto"))

    await store.update(task_id, {"status": TaskStatus.IN_PROGRESS})
    await store.update(task_id, {"status": "completed", "result": {"content": "done"}})

    assert store.get(task_id).status is TaskStatus.COMPLETED
    assert store.get(task_id).result == {"content": "done"}
    with pytest.raises(InvalidTaskTransition):
        await store.update(task_id, {"status": TaskStatus.IN_PROGRESS})
    with pytest.raises(InvalidTaskTransition):
        await store.update(task_id, {"status": TaskStatus.ERROR})


@pytest.mark.anyio
async def test_unknown_task_update_raises() -> None:
    with pytest.raises(KeyError):
        await InMemoryTaskStore().update("missing", {"status": TaskStatus.COMPLETED})


@pytest.mark.anyio
async def test_tracker_skips_anonymous_requests() -> None:
    store = InMemoryTaskStore()
    tracker = TaskTracker(store)

    assert await tracker.start(description="hi", agent="auto", user_id=None) is None
    assert store.list_for_user("anyone") == []


@pytest.mark.anyio
async def test_tracker_records_lifecycle() -> None:
    store = InMemoryTaskStore()
    tracker = TaskTracker(store)

    task_id = await tracker.start(description="write code", agent="coding", user_id="u1", parent_task_id="p1")
    await tracker.finish(task_id, TaskStatus.COMPLETED, {"content": "ok"})

    (task,) = store.list_for_user("u1")
    assert task.id == task_id
    assert task.parent_task_id == "p1"
    assert task.status is TaskStatus.COMPLETED


class BrokenStore:
    async def create(self, task: AgentTask) -> str:
        raise ConnectionError("database offline")

    async def update(self, task_id, patch) -> None:
        raise ConnectionError("database offline")


@pytest.mark.anyio
async def test_tracker_survives_store_outage() -> None:
    tracker = TaskTracker(BrokenStore())

    assert await tracker.start(description="x", agent="auto", user_id="u1") is None
    await tracker.finish("t1", TaskStatus.ERROR, {"error": "x"})
