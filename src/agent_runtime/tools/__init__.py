"""Capability registry and the loop's own capabilities."""

from agent_runtime.tools.builtin import (
    CREATE_SUBAGENT_CAPABILITY,
    REWIND_CAPABILITY,
    SUBAGENT_TASK_CAPABILITY,
    build_builtin_capabilities,
)
from agent_runtime.tools.registry import Capability, CapabilityRegistry, ExecutionContext, StrictModel

__all__ = [
    "CREATE_SUBAGENT_CAPABILITY",
    "Capability",
    "CapabilityRegistry",
    "ExecutionContext",
    "REWIND_CAPABILITY",
    "SUBAGENT_TASK_CAPABILITY",
    "StrictModel",
    "build_builtin_capabilities",
]
