import json
from typing import Literal

import pytest
from fakes import FakeBackend, calls, text

from agent_runtime.agent.checkpoints import is_checkpoint_marker
from agent_runtime.agent.loop import RunOptions
from agent_runtime.agent.prompts import EMPTY_COMPLETION_FALLBACK, EXHAUSTION_FALLBACK
from agent_runtime.approval.gate import ApprovalGate
from agent_runtime.context.guard import COMPACTION_HEADER, COMPACTION_NOTICE
from agent_runtime.errors import BackendError, TaskStateError
from agent_runtime.llm.backend import Usage
from agent_runtime.storage.models import Task
from agent_runtime.subagents.registry import SubagentRegistry, SubagentSpec
from agent_runtime.tools.builtin import build_builtin_capabilities
from agent_runtime.tools.registry import Capability, CapabilityRegistry, ExecutionContext, StrictModel


class NoteInput(StrictModel):
    note: str = ""


class FileManagerInput(StrictModel):
    action: Literal["read", "write", "delete"]
    path: str


def _file_manager_registry(touched: list[str]) -> CapabilityRegistry:
    def _file_manager(payload: FileManagerInput, context: ExecutionContext) -> dict:
        touched.append(f"{payload.action}:{payload.path}")
        return {"ok": True}

    return CapabilityRegistry(
        [Capability(name="file_manager", description="Manage files", input_model=FileManagerInput, fn=_file_manager)]
    )


def _run(loop, message: str = "Summarize the report", **options) -> Task:
    task = loop.store.create()
    return loop.run(task.task_id, message, RunOptions(**options))


def _types(events) -> list[str]:
    return [event.type for event in events]


def test_plain_answer_completes_in_one_iteration(build_loop) -> None:
    backend = FakeBackend([text("Here is the summary.")])
    events = []
    loop = build_loop(backend, sinks=[events.append])

    task = _run(loop)

    assert task.status == "completed"
    assert task.result == "Here is the summary."
    assert task.current_step == 1
    assert [message["role"] for message in task.messages] == ["system", "user", "user", "assistant"]
    assert task.messages[1]["content"] == "<system>CHECKPOINT 0</system>"
    assert _types(events) == ["checkpoint", "iteration_started", "completed"]
    assert "rewind" in backend.calls[0]["tools"]


def test_capability_results_are_appended_before_next_model_call(build_loop) -> None:
    backend = FakeBackend(
        [
            calls(("c1", "think", {"thought": "read it first"}), ("c2", "set_todo_list", {"todos": [{"title": "Read"}]})),
            text("Done."),
        ]
    )
    events = []
    loop = build_loop(backend, sinks=[events.append])

    task = _run(loop)

    assert task.status == "completed"
    second_request = backend.calls[1]["messages"]
    tool_messages = [message for message in second_request if message["role"] == "tool"]
    assert [message["tool_call_id"] for message in tool_messages] == ["c1", "c2"]
    assert second_request[-1]["content"] == "<system>CHECKPOINT 1</system>"
    assert "think" in _types(events)
    assert "todo_list" in _types(events)
    assert [event.data["ok"] for event in events if event.type == "capability_result"] == [True, True]


def test_unknown_capability_fails_the_task(build_loop) -> None:
    backend = FakeBackend([calls(("c1", "launch_rockets", {}))])
    events = []
    loop = build_loop(backend, sinks=[events.append])

    task = _run(loop)

    assert task.status == "failed"
    assert "Unknown capability: launch_rockets" in task.error
    assert _types(events)[-1] == "failed"


def test_capability_errors_are_fed_back_to_the_model(build_loop) -> None:
    def _explode(payload: NoteInput, context: ExecutionContext) -> str:
        raise RuntimeError("sensor offline")

    registry = CapabilityRegistry(
        [Capability(name="probe", description="Probe", input_model=NoteInput, fn=_explode)]
    )
    backend = FakeBackend([calls(("c1", "probe", {})), text("Could not probe.")])
    loop = build_loop(backend, registry=registry)

    task = _run(loop)

    assert task.status == "completed"
    tool_message = next(message for message in task.messages if message["role"] == "tool")
    assert json.loads(tool_message["content"]) == {"error": "sensor offline"}
    assert task.checkpoints[-1].iteration == 1


def test_denied_capabilities_are_hidden_and_rejected(build_loop) -> None:
    backend = FakeBackend([calls(("c1", "think", {"thought": "x"})), text("ok")])
    loop = build_loop(backend)

    task = _run(loop, denied_capabilities=["think"])

    assert "think" not in backend.calls[0]["tools"]
    tool_message = next(message for message in task.messages if message["role"] == "tool")
    assert "not allowed" in json.loads(tool_message["content"])["error"]


def test_iteration_exhaustion_completes_with_final_answer(build_loop) -> None:
    backend = FakeBackend(
        [calls(("c1", "think", {"thought": "a"})), calls(("c2", "think", {"thought": "b"}))],
        default="Partial findings: a and b.",
    )
    loop = build_loop(backend, max_iterations=2)

    task = _run(loop)

    assert task.status == "completed"
    assert task.result == "Partial findings: a and b."
    assert task.current_step == 2
    assert backend.calls[-1]["tools"] == []
    assert "used all available steps" in backend.calls[-1]["messages"][-1]["content"]


def test_iteration_exhaustion_falls_back_when_final_call_fails(build_loop) -> None:
    backend = FakeBackend(
        [calls(("c1", "think", {"thought": "a"})), BackendError("bad request", status_code=400)]
    )
    loop = build_loop(backend, max_iterations=1)

    task = _run(loop)

    assert task.status == "completed"
    assert task.result == EXHAUSTION_FALLBACK


def test_transient_error_consumes_an_iteration_and_recovers(build_loop) -> None:
    backend = FakeBackend([BackendError("reset", code="connection_reset"), text("Recovered.")])
    events = []
    loop = build_loop(backend, sinks=[events.append])

    task = _run(loop)

    assert task.status == "completed"
    assert task.current_step == 2
    error_event = next(event for event in events if event.type == "error")
    assert error_event.data["recoverable"] is True


def test_transient_error_on_last_iteration_fails(build_loop) -> None:
    backend = FakeBackend([BackendError("reset", code="connection_reset")])
    loop = build_loop(backend, max_iterations=1)

    task = _run(loop)

    assert task.status == "failed"
    assert task.error == "reset"


def test_non_transient_error_fails_immediately(build_loop) -> None:
    backend = FakeBackend([BackendError("invalid model", status_code=400), text("never")])
    loop = build_loop(backend)

    task = _run(loop)

    assert task.status == "failed"
    assert task.error == "invalid model"
    assert len(backend.calls) == 1


def test_empty_answer_gets_one_follow_up(build_loop) -> None:
    backend = FakeBackend([text(""), text("Final answer.")])
    loop = build_loop(backend)

    assert _run(loop).result == "Final answer."

    backend = FakeBackend([text(""), text("")])
    loop = build_loop(backend)

    assert _run(loop).result == EMPTY_COMPLETION_FALLBACK


def test_rewind_applies_at_the_start_of_the_next_iteration(build_loop) -> None:
    backend = FakeBackend(
        [
            calls(("c1", "think", {"thought": "noisy exploration"})),
            calls(("c2", "rewind", {"checkpoint_id": 1, "message": "Exploration done; answer is 42."})),
            text("The answer is 42."),
        ]
    )
    loop = build_loop(backend)

    task = _run(loop)

    assert task.status == "completed"
    third_request = backend.calls[2]["messages"]
    assert not any(message.get("tool_call_id") == "c2" for message in third_request)
    assert "Exploration done; answer is 42." in third_request[-1]["content"]
    assert third_request[-2]["content"] == "<system>CHECKPOINT 1</system>"


def test_failed_capability_discards_pending_rewind(build_loop) -> None:
    def _offline(payload: NoteInput, context: ExecutionContext) -> str:
        raise RuntimeError("offline")

    subagents = SubagentRegistry()
    registry = CapabilityRegistry(build_builtin_capabilities(subagents))
    registry.register(Capability(name="probe", description="Probe", input_model=NoteInput, fn=_offline))
    backend = FakeBackend(
        [
            calls(("c1", "rewind", {"checkpoint_id": 0, "message": "start over"}), ("c2", "probe", {})),
            text("done"),
        ]
    )
    loop = build_loop(backend, registry=registry, subagents=subagents)

    task = _run(loop)

    assert task.status == "completed"
    assert task.pending_rewind is None
    assert any(message.get("tool_call_id") == "c1" for message in backend.calls[1]["messages"])


def test_budget_pressure_compacts_the_transcript(build_loop) -> None:
    heavy = calls(("c3", "think", {"thought": "c"})).model_copy(update={"usage": Usage(prompt_tokens=850)})
    backend = FakeBackend(
        [
            calls(("c1", "think", {"thought": "a"})),
            calls(("c2", "think", {"thought": "b"})),
            heavy,
            text("Compact answer."),
        ]
    )
    events = []
    loop = build_loop(backend, sinks=[events.append], model_context_tokens=1000, reserved_tokens=0)

    task = _run(loop)

    assert task.status == "completed"
    final_request = backend.calls[-1]["messages"]
    assert final_request[0]["role"] == "system"
    assert final_request[1] == {"role": "user", "content": "Summarize the report"}
    assert final_request[2]["content"].startswith(COMPACTION_HEADER)
    markers = [message["content"] for message in final_request if is_checkpoint_marker(message)]
    assert markers == ["<system>CHECKPOINT 4</system>"]
    assert any(message["content"] == COMPACTION_NOTICE for message in final_request)
    assert len(task.checkpoints) == 1
    assert any(event.type == "context_warning" and event.data["level"] == "high" for event in events)


def test_critical_budget_forces_completion(build_loop) -> None:
    heavy = calls(("c1", "think", {"thought": "a"})).model_copy(update={"usage": Usage(prompt_tokens=950)})
    backend = FakeBackend([heavy], default="Wrapping up early.")
    loop = build_loop(backend, model_context_tokens=1000, reserved_tokens=0)

    task = _run(loop)

    assert task.status == "completed"
    assert task.result == "Wrapping up early."
    assert backend.calls[-1]["tools"] == []
    assert task.current_step == 2


def test_cancellation_fails_at_next_iteration(build_loop) -> None:
    backend = FakeBackend([calls(("c1", "stop", {}))])
    registry = CapabilityRegistry()
    loop = build_loop(backend, registry=registry)

    def _stop(payload: NoteInput, context: ExecutionContext) -> str:
        loop.store.get(context.task_id).cancel_requested = True
        return "stopping"

    registry.register(Capability(name="stop", description="Stop", input_model=NoteInput, fn=_stop))

    task = _run(loop)

    assert task.status == "failed"
    assert task.error == "Task cancelled"
    assert len(backend.calls) == 1


def test_cancellation_denies_remaining_gated_calls_in_the_batch(build_loop) -> None:
    backend = FakeBackend(
        [
            calls(
                ("call_a", "file_manager", {"action": "delete", "path": "a.txt"}),
                ("call_b", "file_manager", {"action": "delete", "path": "b.txt"}),
            )
        ]
    )
    touched: list[str] = []
    gate = ApprovalGate(default_mode="ask", timeout_s=0.5)
    events = []

    def _cancel_on_first_request(event) -> None:
        events.append(event)
        if event.type == "approval_required":
            loop.store.get(event.task_id).cancel_requested = True
            gate.cleanup(event.task_id)

    loop = build_loop(backend, registry=_file_manager_registry(touched), gate=gate, sinks=[_cancel_on_first_request])

    task = _run(loop, "Delete both files")

    assert task.status == "failed"
    assert task.error == "Task cancelled"
    assert touched == []
    assert _types(events).count("approval_required") == 1
    results = [json.loads(message["content"]) for message in task.messages if message["role"] == "tool"]
    assert results == [{"error": "Task ended"}, {"error": "Task cancelled"}]
    assert gate.pending(task.task_id) == []
    assert len(backend.calls) == 1


def test_denied_capability_is_rejected_before_asking_for_approval(build_loop) -> None:
    backend = FakeBackend(
        [
            calls(("call_a", "file_manager", {"action": "delete", "path": "a.txt"})),
            text("I am not allowed to delete a.txt."),
        ]
    )
    touched: list[str] = []
    events = []
    loop = build_loop(
        backend,
        registry=_file_manager_registry(touched),
        gate=ApprovalGate(default_mode="ask", timeout_s=0.5),
        sinks=[events.append],
    )

    task = _run(loop, "Delete a.txt", denied_capabilities=["file_manager"])

    assert task.status == "completed"
    assert "approval_required" not in _types(events)
    tool_message = next(message for message in task.messages if message["role"] == "tool")
    assert "not allowed" in json.loads(tool_message["content"])["error"]
    assert touched == []


def test_terminal_tasks_cannot_be_rerun(build_loop) -> None:
    loop = build_loop(FakeBackend([text("ok")]))
    task = _run(loop)

    with pytest.raises(TaskStateError):
        loop.run(task.task_id, "again")


def test_task_capability_runs_subagent_in_isolation(build_loop) -> None:
    subagents = SubagentRegistry(
        fixed=[SubagentSpec(name="reviewer", description="reviews code", system_prompt="You review code.")]
    )
    backend = FakeBackend(
        [
            calls(("c1", "task", {"subagent_name": "reviewer", "prompt": "Review app.py for bugs"})),
            text("No bugs in app.py."),
            text("The reviewer found no bugs."),
        ]
    )
    events = []
    loop = build_loop(backend, subagents=subagents, sinks=[events.append])

    task = _run(loop, "Get app.py reviewed", auto_route=False)

    assert task.result == "The reviewer found no bugs."
    child_request = backend.calls[1]
    assert child_request["messages"][0]["content"].startswith("You review code.")
    assert child_request["messages"][-1]["content"] == "Review app.py for bugs"
    assert "task" not in child_request["tools"]
    assert "create_subagent" not in child_request["tools"]

    tool_message = next(message for message in task.messages if message["role"] == "tool")
    assert json.loads(tool_message["content"]) == {"subagent": "reviewer", "output": "No bugs in app.py."}

    children = [summary for summary in loop.store.list() if summary.parent_task_id == task.task_id]
    assert len(children) == 1
    assert children[0].subagent == "reviewer"
    assert children[0].status == "completed"
    assert {"subagent_started", "subagent_completed"} <= set(_types(events))


def test_auto_routing_runs_matching_subagent_first(build_loop) -> None:
    subagents = SubagentRegistry(
        fixed=[
            SubagentSpec(name="reviewer", description="reviews code for bugs", system_prompt="Review."),
            SubagentSpec(name="writer", description="writes documentation", system_prompt="Write."),
        ]
    )
    backend = FakeBackend([text("Found an off-by-one bug."), text("Fix the off-by-one bug.")])
    loop = build_loop(backend, subagents=subagents)

    task = _run(loop, "please review this code for bugs")

    assert task.result == "Fix the off-by-one bug."
    assert backend.calls[0]["messages"][0]["content"].startswith("Review.")
    main_request = backend.calls[1]["messages"]
    assert "### reviewer\nFound an off-by-one bug." in main_request[-1]["content"]


def test_auto_routing_is_skipped_on_request(build_loop) -> None:
    subagents = SubagentRegistry(
        fixed=[SubagentSpec(name="reviewer", description="reviews code for bugs", system_prompt="Review.")]
    )
    backend = FakeBackend([text("Main agent answer.")])
    loop = build_loop(backend, subagents=subagents)

    task = _run(loop, "use main agent to review this code for bugs")

    assert task.result == "Main agent answer."
    assert len(backend.calls) == 1
