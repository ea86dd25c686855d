"""FastAPI app entrypoint for agent-runtime."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Literal

from fastapi import FastAPI, HTTPException, Request, Response
from pydantic import BaseModel, Field

from agent_runtime.agent.events import ProgressEvent
from agent_runtime.agent.loop import RunOptions
from agent_runtime.config.settings import Settings, get_settings
from agent_runtime.errors import (
    ApprovalNotFoundError,
    InvalidSubagentError,
    SubagentConflictError,
    SubagentNotFoundError,
    TaskNotFoundError,
    TaskStateError,
)
from agent_runtime.runtime import AgentRuntime, build_runtime
from agent_runtime.storage.models import Task, TaskSummary, TaskView
from agent_runtime.subagents.registry import SubagentSpec

ApprovalMode = Literal["ask", "auto", "yolo"]


class CreateTaskRequest(BaseModel):
    metadata: dict[str, Any] = Field(default_factory=dict)


class RunTaskRequest(BaseModel):
    message: str = Field(min_length=1)
    wait: bool = True
    system_prompt: str | None = None
    allowed_capabilities: list[str] | None = None
    denied_capabilities: list[str] = Field(default_factory=list)
    max_iterations: int | None = Field(default=None, ge=1)
    approval_mode: ApprovalMode | None = None
    model: str | None = None
    auto_route: bool | None = None

    def to_options(self) -> RunOptions:
        return RunOptions(
            system_prompt=self.system_prompt,
            allowed_capabilities=self.allowed_capabilities,
            denied_capabilities=list(self.denied_capabilities),
            max_iterations=self.max_iterations,
            approval_mode=self.approval_mode,
            model=self.model,
            auto_route=self.auto_route,
        )


class DenyApprovalRequest(BaseModel):
    reason: str = "User denied approval"


class ApprovalModeRequest(BaseModel):
    mode: ApprovalMode


class TaskListResponse(BaseModel):
    tasks: list[TaskSummary]


class EventListResponse(BaseModel):
    task_id: str
    events: list[ProgressEvent]


class SubagentListResponse(BaseModel):
    subagents: list[SubagentSpec]


def _ensure_runtime_state(
    app: FastAPI,
    *,
    settings: Settings,
    runtime_override: AgentRuntime | None,
) -> None:
    if not hasattr(app.state, "settings"):
        app.state.settings = settings

    if not hasattr(app.state, "runtime"):
        app.state.runtime = runtime_override or build_runtime(settings)


def create_app(
    *,
    runtime: AgentRuntime | None = None,
    settings_override: Settings | None = None,
) -> FastAPI:
    settings = settings_override or (runtime.settings if runtime is not None else get_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        _ensure_runtime_state(app, settings=settings, runtime_override=runtime)
        yield
        app.state.runtime.shutdown()

    app_lifespan = lifespan if runtime is None else None
    app = FastAPI(title=settings.app_name, lifespan=app_lifespan)

    # Keep test paths reliable when lifespan is not executed by the client.
    if runtime is not None:
        _ensure_runtime_state(app, settings=settings, runtime_override=runtime)

    def _get_runtime(request: Request) -> AgentRuntime:
        if not hasattr(request.app.state, "runtime"):
            _ensure_runtime_state(request.app, settings=settings, runtime_override=runtime)
        return request.app.state.runtime

    def _get_task(agent_runtime: AgentRuntime, task_id: str) -> Task:
        try:
            return agent_runtime.store.get(task_id)
        except TaskNotFoundError as exc:
            raise HTTPException(status_code=404, detail="Task not found") from exc

    @app.get("/health")
    def health(request: Request) -> dict[str, Any]:
        agent_runtime = _get_runtime(request)
        return {
            "status": "ok",
            "service": settings.app_name,
            "model": settings.model,
            "model_configured": agent_runtime.gateway.configured,
        }

    @app.get("/capabilities")
    def capabilities(request: Request) -> dict[str, list[dict[str, Any]]]:
        return {"capabilities": _get_runtime(request).registry.get_definitions()}

    @app.post("/tasks", response_model=TaskView)
    def create_task(request: Request, payload: CreateTaskRequest | None = None) -> TaskView:
        agent_runtime = _get_runtime(request)
        task = agent_runtime.store.create(metadata=payload.metadata if payload is not None else None)
        return TaskView.from_task(task)

    @app.get("/tasks", response_model=TaskListResponse)
    def list_tasks(request: Request) -> TaskListResponse:
        return TaskListResponse(tasks=_get_runtime(request).store.list())

    @app.get("/tasks/{task_id}", response_model=TaskView)
    def get_task(task_id: str, request: Request) -> TaskView:
        return TaskView.from_task(_get_task(_get_runtime(request), task_id))

    @app.post("/tasks/{task_id}/run", response_model=TaskView)
    def run_task(task_id: str, payload: RunTaskRequest, request: Request, response: Response) -> TaskView:
        agent_runtime = _get_runtime(request)
        task = _get_task(agent_runtime, task_id)
        if task.is_terminal or task.status == "running" or task_id in agent_runtime.runs:
            raise HTTPException(status_code=409, detail=f"Task is already {task.status}")

        if not payload.wait:
            agent_runtime.submit(task_id, payload.message, payload.to_options())
            response.status_code = 202
            return TaskView.from_task(task)

        try:
            agent_runtime.loop.run(task_id, payload.message, payload.to_options())
        except TaskStateError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return TaskView.from_task(task)

    @app.get("/tasks/{task_id}/events", response_model=EventListResponse)
    def list_events(task_id: str, request: Request, after: int = 0) -> EventListResponse:
        agent_runtime = _get_runtime(request)
        _get_task(agent_runtime, task_id)
        return EventListResponse(task_id=task_id, events=agent_runtime.events.list(task_id, after=after))

    @app.delete("/tasks/{task_id}")
    def delete_task(task_id: str, request: Request) -> dict[str, Any]:
        agent_runtime = _get_runtime(request)
        try:
            agent_runtime.cancel_task(task_id)
            task = agent_runtime.store.delete(task_id)
        except TaskNotFoundError as exc:
            raise HTTPException(status_code=404, detail="Task not found") from exc
        agent_runtime.events.clear(task_id)
        return {"task_id": task_id, "deleted": True, "status": task.status}

    @app.get("/tasks/{task_id}/approvals")
    def list_approvals(task_id: str, request: Request) -> dict[str, Any]:
        agent_runtime = _get_runtime(request)
        _get_task(agent_runtime, task_id)
        return {
            "task_id": task_id,
            "mode": agent_runtime.gate.get_mode(task_id),
            "pending": agent_runtime.gate.pending(task_id),
        }

    @app.post("/tasks/{task_id}/approvals/{call_id}/approve")
    def approve(task_id: str, call_id: str, request: Request) -> dict[str, Any]:
        try:
            _get_runtime(request).gate.approve(task_id, call_id)
        except ApprovalNotFoundError as exc:
            raise HTTPException(status_code=404, detail="Approval request not found") from exc
        return {"task_id": task_id, "call_id": call_id, "approved": True}

    @app.post("/tasks/{task_id}/approvals/{call_id}/deny")
    def deny(
        task_id: str, call_id: str, request: Request, payload: DenyApprovalRequest | None = None
    ) -> dict[str, Any]:
        reason = payload.reason if payload is not None else DenyApprovalRequest().reason
        try:
            _get_runtime(request).gate.deny(task_id, call_id, reason)
        except ApprovalNotFoundError as exc:
            raise HTTPException(status_code=404, detail="Approval request not found") from exc
        return {"task_id": task_id, "call_id": call_id, "approved": False, "reason": reason}

    @app.put("/tasks/{task_id}/approval-mode")
    def set_approval_mode(task_id: str, payload: ApprovalModeRequest, request: Request) -> dict[str, str]:
        agent_runtime = _get_runtime(request)
        _get_task(agent_runtime, task_id)
        agent_runtime.gate.set_mode(task_id, payload.mode)
        return {"task_id": task_id, "mode": agent_runtime.gate.get_mode(task_id)}

    @app.get("/subagents", response_model=SubagentListResponse)
    def list_subagents(request: Request) -> SubagentListResponse:
        return SubagentListResponse(subagents=_get_runtime(request).subagents.list())

    @app.post("/subagents", response_model=SubagentSpec)
    def create_subagent(payload: dict[str, Any], request: Request) -> SubagentSpec:
        try:
            return _get_runtime(request).subagents.create(payload)
        except SubagentConflictError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except InvalidSubagentError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    @app.put("/subagents/{name}", response_model=SubagentSpec)
    def update_subagent(name: str, payload: dict[str, Any], request: Request) -> SubagentSpec:
        try:
            return _get_runtime(request).subagents.update(name, payload)
        except SubagentNotFoundError as exc:
            raise HTTPException(status_code=404, detail="Subagent not found") from exc
        except SubagentConflictError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except (InvalidSubagentError, ValueError) as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    @app.delete("/subagents/{name}", response_model=SubagentSpec)
    def delete_subagent(name: str, request: Request) -> SubagentSpec:
        try:
            return _get_runtime(request).subagents.delete(name)
        except SubagentNotFoundError as exc:
            raise HTTPException(status_code=404, detail="Subagent not found") from exc
        except SubagentConflictError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc

    @app.get("/credentials")
    def credentials(request: Request) -> dict[str, Any]:
        return _get_runtime(request).credentials.status()

    @app.post("/credentials/reset")
    def reset_credentials(request: Request) -> dict[str, Any]:
        agent_runtime = _get_runtime(request)
        agent_runtime.credentials.reset_all()
        return agent_runtime.credentials.status()

    return app


app = create_app()
