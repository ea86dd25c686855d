"""Task records held by the task store and mutated by the owning loop."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

TaskStatus = Literal["pending", "running", "completed", "failed"]
TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "failed"})


class Checkpoint(BaseModel):
    """A numbered transcript position the conversation can be rewound to."""

    id: int
    iteration: int
    message_index: int


class PendingRewind(BaseModel):
    checkpoint_id: int
    message: str


class Task(BaseModel):
    """Live task state.

    The orchestration loop that runs a task is its only mutator; the store
    hands out the live object rather than copies.
    """

    task_id: str
    status: TaskStatus = "pending"
    messages: list[dict[str, Any]] = Field(default_factory=list)
    current_step: int = 0
    result: str | None = None
    error: str | None = None
    checkpoints: list[Checkpoint] = Field(default_factory=list)
    next_checkpoint_id: int = 0
    pending_rewind: PendingRewind | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    cancel_requested: bool = False
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def touch(self) -> None:
        self.updated_at = datetime.now(UTC)


class TaskSummary(BaseModel):
    task_id: str
    status: TaskStatus
    current_step: int
    message_count: int
    created_at: datetime
    parent_task_id: str | None = None
    subagent: str | None = None


class TaskView(BaseModel):
    """Public task shape returned by the administrative API."""

    task_id: str
    status: TaskStatus
    current_step: int
    result: str | None = None
    error: str | None = None
    message_count: int
    checkpoints: list[Checkpoint] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_task(cls, task: Task) -> TaskView:
        return cls(
            task_id=task.task_id,
            status=task.status,
            current_step=task.current_step,
            result=task.result,
            error=task.error,
            message_count=len(task.messages),
            checkpoints=list(task.checkpoints),
            metadata=dict(task.metadata),
            created_at=task.created_at,
            updated_at=task.updated_at,
        )
