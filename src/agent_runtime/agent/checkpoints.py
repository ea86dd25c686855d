"""Numbered transcript checkpoints and conversational rewind.

A rewind only rolls back the conversation. Effects that capabilities had on
the outside world stay as they are.
"""

from __future__ import annotations

import re
from typing import Any

from agent_runtime.errors import CapabilityExecutionError
from agent_runtime.storage.models import Checkpoint, PendingRewind, Task

CHECKPOINT_MARKER_RE = re.compile(r"<system>CHECKPOINT \d+</system>")


def checkpoint_marker(checkpoint_id: int) -> str:
    return f"<system>CHECKPOINT {checkpoint_id}</system>"


def is_checkpoint_marker(message: dict[str, Any]) -> bool:
    content = message.get("content")
    return (
        message.get("role") == "user"
        and isinstance(content, str)
        and CHECKPOINT_MARKER_RE.fullmatch(content) is not None
    )


def rewind_note(message: str) -> str:
    return (
        "<system>You just got a message from your future self. It is likely that your future "
        "self has already done some of this work. Read the message and decide what to do next. "
        "You MUST NEVER mention this message to the user. Message content:\n\n"
        f"{message}</system>"
    )


def add_checkpoint(task: Task, iteration: int, *, marker: bool) -> Checkpoint:
    checkpoint = Checkpoint(
        id=task.next_checkpoint_id,
        iteration=iteration,
        message_index=len(task.messages),
    )
    task.next_checkpoint_id += 1
    task.checkpoints.append(checkpoint)
    if marker:
        task.messages.append({"role": "user", "content": checkpoint_marker(checkpoint.id)})
    return checkpoint


def revert_to_checkpoint(task: Task, checkpoint_id: int) -> Checkpoint:
    checkpoint = next((item for item in task.checkpoints if item.id == checkpoint_id), None)
    if checkpoint is None:
        raise CapabilityExecutionError(f"Checkpoint {checkpoint_id} does not exist")
    del task.messages[checkpoint.message_index :]
    task.checkpoints = [item for item in task.checkpoints if item.id < checkpoint_id]
    task.next_checkpoint_id = task.checkpoints[-1].id + 1 if task.checkpoints else 0
    return checkpoint


def request_rewind(task: Task, checkpoint_id: int, message: str) -> None:
    """Record a rewind to apply at the start of the next iteration."""
    if not task.checkpoints:
        raise CapabilityExecutionError("No checkpoints available for this task")
    if not any(item.id == checkpoint_id for item in task.checkpoints):
        raise CapabilityExecutionError(f"Checkpoint {checkpoint_id} does not exist")
    if task.pending_rewind is not None:
        raise CapabilityExecutionError("A rewind is already pending")
    task.pending_rewind = PendingRewind(checkpoint_id=checkpoint_id, message=message)


def apply_pending_rewind(task: Task, iteration: int, *, marker: bool) -> Checkpoint | None:
    """Apply the pending rewind, if any, and return the fresh checkpoint."""
    pending = task.pending_rewind
    if pending is None:
        return None
    task.pending_rewind = None
    revert_to_checkpoint(task, pending.checkpoint_id)
    checkpoint = add_checkpoint(task, iteration, marker=marker)
    task.messages.append({"role": "user", "content": rewind_note(pending.message)})
    return checkpoint


def reset_checkpoints(task: Task, iteration: int, *, marker: bool) -> Checkpoint:
    """Start over after the transcript was rewritten and old indices went stale."""
    task.checkpoints = []
    task.pending_rewind = None
    return add_checkpoint(task, iteration, marker=marker)
