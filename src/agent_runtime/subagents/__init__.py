"""Subagent profiles and request routing."""

from agent_runtime.subagents.registry import JsonSubagentStore, SubagentRegistry, SubagentSpec, SubagentUpdate
from agent_runtime.subagents.router import (
    DecompositionPlan,
    PlannedSubtask,
    SubagentSelection,
    auto_select_subagent,
    plan_decomposition,
    select_with_model,
    should_decompose,
)

__all__ = [
    "DecompositionPlan",
    "JsonSubagentStore",
    "PlannedSubtask",
    "SubagentRegistry",
    "SubagentSelection",
    "SubagentSpec",
    "SubagentUpdate",
    "auto_select_subagent",
    "plan_decomposition",
    "select_with_model",
    "should_decompose",
]
