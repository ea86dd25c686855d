"""Storage interface for task lifecycle state."""

from __future__ import annotations

from typing import Any, Protocol

from agent_runtime.storage.models import Task, TaskSummary


class TaskStore(Protocol):
    def create(self, metadata: dict[str, Any] | None = None) -> Task: ...

    def get(self, task_id: str) -> Task: ...

    def list(self) -> list[TaskSummary]: ...

    def delete(self, task_id: str) -> Task: ...
