"""Typed state contract for the orchestration LangGraph."""

from typing import Any, Literal, TypedDict

LoopRoute = Literal["model", "tools", "prepare", "force_complete", "exhausted", "fail", "end"]


class LoopState(TypedDict, total=False):
    task_id: str
    iteration: int
    max_iterations: int
    route: LoopRoute
    invocations: list[dict[str, Any]]
    error: str | None


def initial_state(task_id: str, max_iterations: int) -> LoopState:
    return {
        "task_id": task_id,
        "iteration": 0,
        "max_iterations": max_iterations,
        "route": "prepare",
        "invocations": [],
        "error": None,
    }
