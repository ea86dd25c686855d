"""In-memory task store."""

from __future__ import annotations

import threading
from typing import Any
from uuid import uuid4

from agent_runtime.errors import TaskNotFoundError
from agent_runtime.storage.models import Task, TaskSummary


class InMemoryTaskStore:
    """Process-local task registry.

    Only the map operations are locked. A task itself is mutated by the single
    loop that owns it, so no per-task locking happens here.
    """

    def __init__(self) -> None:
        self._tasks: dict[str, Task] = {}
        self._lock = threading.Lock()

    def create(self, metadata: dict[str, Any] | None = None) -> Task:
        task = Task(task_id=str(uuid4()), metadata=dict(metadata or {}))
        with self._lock:
            self._tasks[task.task_id] = task
        return task

    def get(self, task_id: str) -> Task:
        with self._lock:
            task = self._tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def list(self) -> list[TaskSummary]:
        with self._lock:
            tasks = list(self._tasks.values())
        return [
            TaskSummary(
                task_id=task.task_id,
                status=task.status,
                current_step=task.current_step,
                message_count=len(task.messages),
                created_at=task.created_at,
                parent_task_id=task.metadata.get("parent_task_id"),
                subagent=task.metadata.get("subagent"),
            )
            for task in tasks
        ]

    def delete(self, task_id: str) -> Task:
        with self._lock:
            task = self._tasks.pop(task_id, None)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task
