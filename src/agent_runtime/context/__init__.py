"""Context-window budgeting and transcript compaction."""

from agent_runtime.context.guard import (
    ContextBudgetGuard,
    ContextStatus,
    compact_messages,
    smart_compact_messages,
    trim_messages,
)

__all__ = [
    "ContextBudgetGuard",
    "ContextStatus",
    "compact_messages",
    "smart_compact_messages",
    "trim_messages",
]
