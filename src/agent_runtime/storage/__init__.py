"""Task store backends and models."""

from agent_runtime.storage.base import TaskStore
from agent_runtime.storage.memory import InMemoryTaskStore
from agent_runtime.storage.models import Checkpoint, PendingRewind, Task, TaskSummary, TaskView

__all__ = [
    "Checkpoint",
    "InMemoryTaskStore",
    "PendingRewind",
    "Task",
    "TaskStore",
    "TaskSummary",
    "TaskView",
]
