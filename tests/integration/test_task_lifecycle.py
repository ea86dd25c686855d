import json
import time
from pathlib import Path
from typing import Literal

from fakes import FakeBackend, calls, text
from fastapi.testclient import TestClient

from agent_runtime.api.main import create_app
from agent_runtime.config.settings import Settings
from agent_runtime.runtime import AgentRuntime, build_runtime
from agent_runtime.tools.registry import Capability, ExecutionContext, StrictModel


class FileManagerInput(StrictModel):
    action: Literal["read", "write", "delete"]
    path: str


def _build(tmp_path: Path, backend: FakeBackend, **overrides) -> tuple[TestClient, AgentRuntime, list[str]]:
    settings = Settings(
        llm_api_key="sk-test",
        load_env_credentials=False,
        iteration_delay_s=0.0,
        retry_delay_s=0.0,
        subagents_path=str(tmp_path / "subagents.json"),
        dynamic_subagents_path="",
        **overrides,
    )
    runtime = build_runtime(settings, backend=backend)
    touched: list[str] = []

    def _file_manager(payload: FileManagerInput, context: ExecutionContext) -> dict:
        touched.append(f"{payload.action}:{payload.path}")
        return {"ok": True}

    runtime.registry.register(
        Capability(name="file_manager", description="Manage files", input_model=FileManagerInput, fn=_file_manager)
    )
    return TestClient(create_app(runtime=runtime)), runtime, touched


def _wait_for(predicate, timeout_s: float = 5.0) -> None:
    deadline = time.monotonic() + timeout_s
    while time.monotonic() < deadline:
        if predicate():
            return
        time.sleep(0.01)
    raise TimeoutError("condition not met in time")


def test_denied_approval_reaches_terminal_state(tmp_path: Path) -> None:
    backend = FakeBackend(
        [
            calls(("call_del", "file_manager", {"action": "delete", "path": "prod.db"})),
            text("I did not delete prod.db because the request was denied."),
        ]
    )
    client, runtime, touched = _build(tmp_path, backend, approval_mode="ask", approval_timeout_s=10.0)
    task_id = client.post("/tasks").json()["task_id"]

    run_resp = client.post(f"/tasks/{task_id}/run", json={"message": "Delete prod.db", "wait": False})
    assert run_resp.status_code == 202

    _wait_for(lambda: client.get(f"/tasks/{task_id}/approvals").json()["pending"])
    pending = client.get(f"/tasks/{task_id}/approvals").json()["pending"]
    assert pending[0]["call_id"] == "call_del"
    assert pending[0]["tool_name"] == "file_manager"

    deny_resp = client.post(f"/tasks/{task_id}/approvals/call_del/deny", json={"reason": "Never touch prod"})
    assert deny_resp.status_code == 200

    _wait_for(lambda: client.get(f"/tasks/{task_id}").json()["status"] in {"completed", "failed"})
    task = runtime.store.get(task_id)
    assert task.status == "completed"
    assert touched == []
    tool_message = next(message for message in task.messages if message["role"] == "tool")
    assert json.loads(tool_message["content"]) == {"error": "Never touch prod"}

    event_types = [event["type"] for event in client.get(f"/tasks/{task_id}/events").json()["events"]]
    assert "approval_required" in event_types
    assert event_types[-1] == "completed"


def test_approved_call_runs_the_capability(tmp_path: Path) -> None:
    backend = FakeBackend(
        [calls(("call_w", "file_manager", {"action": "write", "path": "notes.md"})), text("Wrote notes.md.")]
    )
    client, runtime, touched = _build(tmp_path, backend, approval_mode="ask", approval_timeout_s=10.0)
    task_id = client.post("/tasks").json()["task_id"]

    client.post(f"/tasks/{task_id}/run", json={"message": "Write notes", "wait": False})
    _wait_for(lambda: client.get(f"/tasks/{task_id}/approvals").json()["pending"])
    assert client.post(f"/tasks/{task_id}/approvals/call_w/approve").status_code == 200

    _wait_for(lambda: runtime.store.get(task_id).is_terminal)
    assert runtime.store.get(task_id).result == "Wrote notes.md."
    assert touched == ["write:notes.md"]


def test_deleting_a_waiting_task_ends_its_run(tmp_path: Path) -> None:
    backend = FakeBackend(
        [
            calls(
                ("call_a", "file_manager", {"action": "delete", "path": "a.txt"}),
                ("call_b", "file_manager", {"action": "delete", "path": "b.txt"}),
            )
        ]
    )
    client, runtime, touched = _build(tmp_path, backend, approval_mode="ask", approval_timeout_s=10.0)
    task = runtime.store.create()

    future = runtime.submit(task.task_id, "Delete both files")
    _wait_for(lambda: runtime.gate.pending(task.task_id))
    assert client.delete(f"/tasks/{task.task_id}").status_code == 200

    # Well under the approval timeout: the queued call_b must not start a new wait.
    future.result(timeout=2)
    assert task.status == "failed"
    assert task.error == "Task cancelled"
    assert touched == []
    assert [message["content"] for message in task.messages if message["role"] == "tool"] == [
        json.dumps({"error": "Task ended"}),
        json.dumps({"error": "Task cancelled"}),
    ]
    assert runtime.gate.pending(task.task_id) == []


def test_iteration_exhaustion_completes_with_result(tmp_path: Path) -> None:
    backend = FakeBackend(
        [calls((f"c{idx}", "think", {"thought": f"step {idx}"})) for idx in range(3)],
        default="",
    )
    client, _runtime, _touched = _build(tmp_path, backend, max_iterations=3)
    task_id = client.post("/tasks").json()["task_id"]

    payload = client.post(f"/tasks/{task_id}/run", json={"message": "Think forever"}).json()

    assert payload["status"] == "completed"
    assert payload["result"]
    assert payload["current_step"] == 3
