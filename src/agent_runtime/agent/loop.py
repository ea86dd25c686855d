"""Multi-step orchestration loop built on a LangGraph state machine.

One call to ``AgentLoop.run`` drives a task from ``pending`` to ``completed``
or ``failed``. Each iteration goes ``prepare -> model -> tools`` and back to
``prepare``. ``force_complete``, ``exhausted`` and ``fail`` are the terminal
branches.

The task record is the source of truth for the transcript; graph state only
carries the iteration counter and routing decisions.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from langgraph.graph import END, StateGraph

from agent_runtime.agent.checkpoints import (
    add_checkpoint,
    apply_pending_rewind,
    is_checkpoint_marker,
    request_rewind,
    reset_checkpoints,
)
from agent_runtime.agent.events import EventEmitter, EventSink
from agent_runtime.agent.prompts import (
    DEFAULT_SYSTEM_PROMPT,
    EMPTY_COMPLETION_FALLBACK,
    EXHAUSTION_FALLBACK,
    EXHAUSTION_PROMPT,
    FORCED_COMPLETION_FALLBACK,
    subagent_results_message,
    subagent_system_prompt,
)
from agent_runtime.agent.state import LoopState, initial_state
from agent_runtime.approval.gate import ApprovalGate, PendingApproval
from agent_runtime.context.guard import (
    COMPACTION_NOTICE,
    COMPACTION_SUMMARY_PROMPT,
    FORCE_COMPLETION_PROMPT,
    RESERVED_TOKENS,
    ContextBudgetGuard,
    ContextStatus,
    compact_messages,
    smart_compact_messages,
    trim_messages,
)
from agent_runtime.errors import (
    CapabilityExecutionError,
    CapabilityNotAllowedError,
    TaskNotFoundError,
    TaskStateError,
    UnknownCapabilityError,
    is_transient_error,
)
from agent_runtime.llm.backend import ModelResponse, ToolInvocation
from agent_runtime.llm.gateway import ModelGateway
from agent_runtime.storage.base import TaskStore
from agent_runtime.storage.models import Checkpoint, Task
from agent_runtime.subagents.registry import SubagentRegistry, SubagentSpec
from agent_runtime.subagents.router import (
    NO_SUBAGENT,
    PlannedSubtask,
    auto_select_subagent,
    build_auto_subagent_prompt,
    build_subagent_batch_prompt,
    plan_decomposition,
    select_with_model,
    wants_main_agent,
)
from agent_runtime.tools.builtin import (
    CREATE_SUBAGENT_CAPABILITY,
    REWIND_CAPABILITY,
    SUBAGENT_TASK_CAPABILITY,
)
from agent_runtime.tools.registry import CapabilityRegistry, ExecutionContext

logger = logging.getLogger(__name__)

RESULT_PREVIEW_CHARS = 2000
NESTED_DENIED_CAPABILITIES = (SUBAGENT_TASK_CAPABILITY, CREATE_SUBAGENT_CAPABILITY)

_ROUTES: dict[str, str] = {
    "prepare": "prepare",
    "model": "model",
    "tools": "tools",
    "force_complete": "force_complete",
    "exhausted": "exhausted",
    "fail": "fail",
    "end": END,
}


@dataclass
class LoopConfig:
    max_iterations: int = 15
    retry_delay_s: float = 2.0
    iteration_delay_s: float = 1.0
    auto_route_subagents: bool = True
    smart_compaction: bool = False
    model: str = "deepseek-chat"
    model_context_tokens: int | None = None
    reserved_tokens: int = RESERVED_TOKENS
    max_context_chars: int = 400000

    @classmethod
    def from_settings(cls, settings: Any) -> LoopConfig:
        return cls(
            max_iterations=settings.max_iterations,
            retry_delay_s=settings.retry_delay_s,
            iteration_delay_s=settings.iteration_delay_s,
            auto_route_subagents=settings.auto_route_subagents,
            smart_compaction=settings.smart_compaction,
            model=settings.model,
            model_context_tokens=settings.model_context_tokens,
            reserved_tokens=settings.reserved_tokens,
            max_context_chars=settings.max_context_chars,
        )


@dataclass
class RunOptions:
    """Per-run overrides. ``None`` means "use the loop configuration"."""

    system_prompt: str | None = None
    allowed_capabilities: list[str] | None = None
    denied_capabilities: list[str] = field(default_factory=list)
    max_iterations: int | None = None
    approval_mode: str | None = None
    model: str | None = None
    auto_route: bool | None = None
    event_sink: EventSink | None = None


class AgentLoop:
    def __init__(
        self,
        *,
        store: TaskStore,
        gateway: ModelGateway,
        registry: CapabilityRegistry,
        gate: ApprovalGate,
        subagents: SubagentRegistry | None = None,
        config: LoopConfig | None = None,
        sinks: Iterable[EventSink] = (),
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.registry = registry
        self.gate = gate
        self.subagents = subagents
        self.config = config or LoopConfig()
        self.sinks = list(sinks)
        self._sleep = sleep
        self._lock = threading.Lock()

    def run(self, task_id: str, message: str, options: RunOptions | None = None) -> Task:
        """Run ``task_id`` to a terminal state and return the task."""
        options = options or RunOptions()
        task = self.store.get(task_id)
        emitter = EventEmitter(task_id, [*self.sinks, options.event_sink])
        return self._execute(task, message, options, emitter)

    def _execute(
        self,
        task: Task,
        message: str,
        options: RunOptions,
        emitter: EventEmitter,
    ) -> Task:
        with self._lock:
            if task.is_terminal:
                raise TaskStateError(f"Task {task.task_id} is already {task.status}")
            if task.status == "running":
                raise TaskStateError(f"Task {task.task_id} is already running")
            task.status = "running"
            task.touch()

        if options.approval_mode:
            self.gate.set_mode(task.task_id, options.approval_mode)

        logger.info(
            "task_run event=started task_id=%s parent_task_id=%s",
            task.task_id,
            task.metadata.get("parent_task_id"),
        )
        started = time.perf_counter()
        try:
            _LoopRun(self, task, options, emitter).start(message)
        finally:
            self.gate.cleanup(task.task_id)
        logger.info(
            "task_run event=finished task_id=%s status=%s steps=%d duration_ms=%.1f",
            task.task_id,
            task.status,
            task.current_step,
            (time.perf_counter() - started) * 1000,
        )
        return task


class _LoopRun:
    """State shared by the graph nodes of a single run."""

    def __init__(self, loop: AgentLoop, task: Task, options: RunOptions, emitter: EventEmitter) -> None:
        self.loop = loop
        self.task = task
        self.options = options
        self.emitter = emitter
        self.config = loop.config
        self.model = options.model or self.config.model
        self.max_iterations = options.max_iterations or self.config.max_iterations
        self.allowed = (
            frozenset(options.allowed_capabilities) if options.allowed_capabilities is not None else None
        )
        self.denied = frozenset(options.denied_capabilities)
        self.nested = "parent_task_id" in task.metadata
        self.guard = ContextBudgetGuard(
            model=self.model,
            max_tokens=self.config.model_context_tokens,
            reserved_tokens=self.config.reserved_tokens,
        )
        # Markers are only useful when the model can act on them.
        self.markers = REWIND_CAPABILITY in loop.registry and self._permits(REWIND_CAPABILITY)
        # Leading messages compaction must keep: the system prompt through the request.
        self.head_length = 1

    def start(self, message: str) -> None:
        task = self.task
        if not task.messages or task.messages[0].get("role") != "system":
            task.messages.insert(
                0, {"role": "system", "content": self.options.system_prompt or DEFAULT_SYSTEM_PROMPT}
            )
        if not task.checkpoints:
            self._emit_checkpoint(add_checkpoint(task, 0, marker=self.markers))
        task.messages.append({"role": "user", "content": message})
        self.head_length = len(task.messages)

        if self._auto_route_enabled():
            self._auto_route(message)

        graph = build_loop_graph(self)
        try:
            graph.invoke(
                initial_state(task.task_id, self.max_iterations),
                config={"recursion_limit": self.max_iterations * 4 + 10},
            )
        except Exception as exc:  # noqa: BLE001
            logger.exception("task_run event=graph_error task_id=%s", task.task_id)
            self._fail(str(exc) or exc.__class__.__name__)
        if not task.is_terminal:
            self._fail("Loop ended without a result")

    # Graph nodes

    def prepare(self, state: LoopState) -> LoopState:
        task = self.task
        if self._cancelled():
            return {"route": "fail", "error": "Task cancelled"}
        iteration = state.get("iteration", 0)
        if iteration >= state.get("max_iterations", self.max_iterations):
            return {"route": "exhausted"}

        iteration += 1
        task.current_step = max(task.current_step, iteration)
        task.touch()
        self.emitter.iteration = iteration
        self.emitter.emit("iteration_started", {"max_iterations": self.max_iterations})

        pending = task.pending_rewind
        checkpoint = apply_pending_rewind(task, iteration, marker=self.markers)
        if pending is not None and checkpoint is not None:
            logger.info(
                "task_run event=rewound task_id=%s checkpoint_id=%d", task.task_id, pending.checkpoint_id
            )
            self.emitter.emit("status", {"message": f"Rewound to checkpoint {pending.checkpoint_id}"})
            self._emit_checkpoint(checkpoint)

        status = self.guard.check(task.messages, on_event=self._on_context_event)
        if status.should_force_complete:
            return {"route": "force_complete", "iteration": iteration}
        if status.should_compact:
            self._compact(iteration)
        return {"route": "model", "iteration": iteration}

    def call_model(self, state: LoopState) -> LoopState:
        response = self._invoke(with_capabilities=True)
        self.task.messages.append(response.to_message())
        if response.has_invocations:
            return {
                "route": "tools",
                "invocations": [invocation.model_dump() for invocation in response.invocations],
            }

        content = (response.content or "").strip()
        if not content:
            content = self._final_answer(FORCE_COMPLETION_PROMPT, EMPTY_COMPLETION_FALLBACK)
        self._complete(content)
        return {"route": "end"}

    def run_tools(self, state: LoopState) -> LoopState:
        task = self.task
        failed = False
        for raw in state.get("invocations", []):
            invocation = ToolInvocation.model_validate(raw)
            if not self._dispatch(invocation):
                failed = True

        if failed and task.pending_rewind is not None:
            logger.info("task_run event=rewind_discarded task_id=%s reason=capability_failed", task.task_id)
            task.pending_rewind = None
        self._emit_checkpoint(add_checkpoint(task, state.get("iteration", 0), marker=self.markers))

        if self.config.iteration_delay_s > 0:
            self.loop._sleep(self.config.iteration_delay_s)
        return {"route": "prepare", "invocations": []}

    def force_complete(self, state: LoopState) -> LoopState:
        logger.warning("task_run event=force_complete task_id=%s", self.task.task_id)
        self.emitter.emit("status", {"message": "Context window nearly full; finishing early"})
        self._complete(self._final_answer(FORCE_COMPLETION_PROMPT, FORCED_COMPLETION_FALLBACK))
        return {"route": "end"}

    def exhausted(self, state: LoopState) -> LoopState:
        logger.info(
            "task_run event=exhausted task_id=%s max_iterations=%d", self.task.task_id, self.max_iterations
        )
        self.emitter.emit("status", {"message": "Iteration limit reached; requesting final answer"})
        self._complete(self._final_answer(EXHAUSTION_PROMPT, EXHAUSTION_FALLBACK))
        return {"route": "end"}

    def fail(self, state: LoopState) -> LoopState:
        self._fail(state.get("error") or "Task failed")
        return {"route": "end"}

    def guarded(self, node: Callable[[LoopState], LoopState]) -> Callable[[LoopState], LoopState]:
        def _run(state: LoopState) -> LoopState:
            try:
                return node(state)
            except Exception as exc:  # noqa: BLE001
                return self._on_error(state, exc)

        return _run

    # Helpers

    def _on_error(self, state: LoopState, exc: Exception) -> LoopState:
        message = str(exc) or exc.__class__.__name__
        iteration = state.get("iteration", 0)
        if is_transient_error(exc) and iteration < state.get("max_iterations", self.max_iterations):
            logger.warning(
                "task_run event=transient_error task_id=%s iteration=%d reason=%s",
                self.task.task_id,
                iteration,
                message,
            )
            self.emitter.emit("error", {"message": message, "recoverable": True})
            if self.config.retry_delay_s > 0:
                self.loop._sleep(self.config.retry_delay_s)
            return {"route": "prepare", "invocations": []}
        logger.error("task_run event=error task_id=%s iteration=%d reason=%s", self.task.task_id, iteration, message)
        return {"route": "fail", "error": message}

    def _invoke(self, *, with_capabilities: bool) -> ModelResponse:
        definitions = None
        if with_capabilities:
            definitions = self.loop.registry.get_definitions(include=self.allowed, exclude=self.denied)
        request = trim_messages(self.task.messages, self.config.max_context_chars)
        response = self.loop.gateway.invoke(request, definitions, model=self.model)
        self.guard.update_from_response(response.usage)
        return response

    def _final_answer(self, prompt: str, fallback: str) -> str:
        """Ask once more, without capabilities, for a plain-text answer."""
        self.task.messages.append({"role": "user", "content": prompt})
        try:
            response = self._invoke(with_capabilities=False)
        except Exception as exc:  # noqa: BLE001
            logger.warning("task_run event=final_answer_failed task_id=%s reason=%s", self.task.task_id, exc)
            return fallback
        content = (response.content or "").strip()
        if content:
            self.task.messages.append({"role": "assistant", "content": content})
        return content or fallback

    def _dispatch(self, invocation: ToolInvocation) -> bool:
        task = self.task
        name = invocation.name
        if name not in self.loop.registry:
            raise UnknownCapabilityError(name)

        self.emitter.emit(
            "capability_invoked",
            {"call_id": invocation.id, "name": name, "arguments": invocation.arguments},
        )
        # Teardown has already released this task's approval state.
        if self._cancelled():
            return self._record_result(invocation, json.dumps({"error": "Task cancelled"}), ok=False)
        if not self._permits(name):
            error = CapabilityNotAllowedError(name)
            return self._record_result(invocation, json.dumps({"error": str(error)}), ok=False)

        gate = self.loop.gate
        if gate.requires_approval(name, invocation.arguments):

            def _announce(pending: PendingApproval) -> None:
                self.emitter.emit(
                    "approval_required",
                    {"call_id": pending.call_id, "name": pending.tool_name, "arguments": pending.args},
                )

            decision = gate.request_approval(
                task.task_id,
                invocation.id,
                name,
                invocation.arguments,
                on_pending=_announce,
                is_cancelled=self._cancelled,
            )
            if not decision.approved:
                reason = decision.reason or "Approval denied"
                return self._record_result(invocation, json.dumps({"error": reason}), ok=False)

        context = ExecutionContext(
            task_id=task.task_id,
            allowed=self.allowed,
            denied=self.denied,
            call_id=invocation.id,
            emit=self.emitter.emit,
            run_subagent=self.run_subagent,
            request_rewind=lambda checkpoint_id, note: request_rewind(task, checkpoint_id, note),
        )
        try:
            output = self.loop.registry.execute(name, invocation.arguments, context)
        except (CapabilityNotAllowedError, CapabilityExecutionError) as exc:
            logger.warning(
                "task_run event=capability_error task_id=%s capability=%s reason=%s", task.task_id, name, exc
            )
            return self._record_result(invocation, json.dumps({"error": str(exc)}), ok=False)
        return self._record_result(invocation, output, ok=True)

    def _record_result(self, invocation: ToolInvocation, output: str, *, ok: bool) -> bool:
        self.task.messages.append({"role": "tool", "tool_call_id": invocation.id, "content": output})
        self.task.touch()
        self.emitter.emit(
            "capability_result",
            {
                "call_id": invocation.id,
                "name": invocation.name,
                "ok": ok,
                "output": output[:RESULT_PREVIEW_CHARS],
            },
        )
        return ok

    def _compact(self, iteration: int) -> None:
        task = self.task
        before = len(task.messages)
        keep_head = min(self.head_length, before)
        strategy = "summary"
        compacted = None
        if self.config.smart_compaction:
            compacted = smart_compact_messages(task.messages, self._summarize, keep_head)
            strategy = "smart"
        if compacted is None:
            compacted = compact_messages(task.messages, keep_head)
            strategy = "summary"
        # Compaction shifts every message index, so older checkpoints and their
        # markers are unusable.
        head = [message for message in compacted[:keep_head] if not is_checkpoint_marker(message)]
        rest = [message for message in compacted[keep_head:] if not is_checkpoint_marker(message)]
        task.messages = [*head, *rest, {"role": "user", "content": COMPACTION_NOTICE}]
        self.head_length = len(head)
        self.guard.forget_reported_usage()
        checkpoint = reset_checkpoints(task, iteration, marker=self.markers)
        logger.info(
            "task_run event=compacted task_id=%s strategy=%s messages_before=%d messages_after=%d",
            task.task_id,
            strategy,
            before,
            len(task.messages),
        )
        self.emitter.emit(
            "status",
            {
                "message": "Conversation compacted",
                "strategy": strategy,
                "messages_before": before,
                "messages_after": len(task.messages),
            },
        )
        self._emit_checkpoint(checkpoint)

    def _summarize(self, payload: str) -> str | None:
        try:
            response = self.loop.gateway.invoke(
                [
                    {"role": "system", "content": COMPACTION_SUMMARY_PROMPT},
                    {"role": "user", "content": payload},
                ],
                model=self.model,
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("task_run event=smart_compaction_failed task_id=%s reason=%s", self.task.task_id, exc)
            return None
        return response.content

    def _on_context_event(self, status: ContextStatus) -> None:
        self.emitter.emit(
            "context_warning",
            {
                "level": status.level,
                "usage_percent": status.usage_percent,
                "current_tokens": status.current_tokens,
                "max_tokens": status.max_tokens,
                "message": status.message,
            },
        )

    def _emit_checkpoint(self, checkpoint: Checkpoint) -> None:
        self.emitter.emit(
            "checkpoint",
            {
                "checkpoint_id": checkpoint.id,
                "iteration": checkpoint.iteration,
                "message_index": checkpoint.message_index,
            },
        )

    def _complete(self, result: str) -> None:
        task = self.task
        task.status = "completed"
        task.result = result
        task.touch()
        self.emitter.emit("completed", {"result": result})

    def _fail(self, error: str) -> None:
        task = self.task
        if task.is_terminal:
            return
        task.status = "failed"
        task.error = error
        task.touch()
        logger.warning("task_run event=failed task_id=%s reason=%s", task.task_id, error)
        self.emitter.emit("failed", {"error": error})

    def _cancelled(self) -> bool:
        if self.task.cancel_requested:
            return True
        parent_id = self.task.metadata.get("parent_task_id")
        if not parent_id:
            return False
        try:
            return self.loop.store.get(parent_id).cancel_requested
        except TaskNotFoundError:
            return True

    def _permits(self, name: str) -> bool:
        if name in self.denied:
            return False
        return self.allowed is None or name in self.allowed

    # Subagents

    def _auto_route_enabled(self) -> bool:
        if self.nested or self.loop.subagents is None:
            return False
        if self.options.auto_route is not None:
            return self.options.auto_route
        return self.config.auto_route_subagents

    def _auto_route(self, message: str) -> None:
        specs = self.loop.subagents.list() if self.loop.subagents is not None else []
        if not specs or wants_main_agent(message):
            return
        try:
            results = self._route(message, specs)
        except Exception as exc:  # noqa: BLE001
            logger.warning("task_run event=auto_route_failed task_id=%s reason=%s", self.task.task_id, exc)
            return
        if results:
            self.task.messages.append({"role": "user", "content": subagent_results_message(results)})

    def _route(self, message: str, specs: list[SubagentSpec]) -> list[tuple[str, str]]:
        gateway = self.loop.gateway
        plan = plan_decomposition(message, specs, gateway, model=self.model)
        if plan is not None:
            groups: dict[str, list[PlannedSubtask]] = {}
            for subtask in plan.tasks:
                if subtask.subagent != NO_SUBAGENT:
                    groups.setdefault(subtask.subagent, []).append(subtask)
            by_name = {spec.name: spec for spec in specs}
            results: list[tuple[str, str]] = []
            for name, subtasks in groups.items():
                spec = by_name.get(name)
                if spec is None:
                    continue
                self.emitter.emit(
                    "status",
                    {"message": f"Delegating {len(subtasks)} subtask(s) to {name}", "reason": plan.reason},
                )
                results.append((name, self.run_subagent(spec, build_subagent_batch_prompt(message, subtasks))))
            if results:
                return results

        selection = auto_select_subagent(message, specs) or select_with_model(
            message, specs, gateway, model=self.model
        )
        if selection is None:
            return []
        name = selection.subagent.name
        logger.info(
            "task_run event=auto_routed task_id=%s subagent=%s score=%.1f",
            self.task.task_id,
            name,
            selection.score,
        )
        self.emitter.emit("status", {"message": f"Auto-selected subagent {name}", "reason": selection.reason})
        return [(name, self.run_subagent(selection.subagent, build_auto_subagent_prompt(message)))]

    def run_subagent(self, spec: SubagentSpec, prompt: str, *, call_id: str | None = None) -> str:
        """Run ``prompt`` in an isolated child task and return its result text."""
        parent = self.task
        child = self.loop.store.create(
            metadata={"parent_task_id": parent.task_id, "subagent": spec.name, "call_id": call_id}
        )
        self.emitter.emit(
            "subagent_started",
            {"subagent": spec.name, "child_task_id": child.task_id, "call_id": call_id},
        )
        options = RunOptions(
            system_prompt=subagent_system_prompt(spec),
            allowed_capabilities=spec.allowed_capabilities,
            denied_capabilities=sorted(
                {*spec.denied_capabilities, *self.denied, *NESTED_DENIED_CAPABILITIES}
            ),
            max_iterations=self.max_iterations,
            approval_mode=self.loop.gate.get_mode(parent.task_id),
            model=self.options.model,
            auto_route=False,
        )
        self.loop._execute(child, prompt, options, self.emitter.child(child.task_id))

        if child.status == "completed":
            output = child.result or ""
        else:
            output = f"Subagent failed: {child.error or 'unknown error'}"
        self.emitter.emit(
            "subagent_completed",
            {
                "subagent": spec.name,
                "child_task_id": child.task_id,
                "call_id": call_id,
                "status": child.status,
            },
        )
        return output


def build_loop_graph(run: _LoopRun):
    def _next(state: LoopState) -> str:
        return state.get("route", "fail")

    graph = StateGraph(LoopState)

    graph.add_node("prepare", run.guarded(run.prepare))
    graph.add_node("model", run.guarded(run.call_model))
    graph.add_node("tools", run.guarded(run.run_tools))
    graph.add_node("force_complete", run.force_complete)
    graph.add_node("exhausted", run.exhausted)
    graph.add_node("fail", run.fail)

    graph.set_entry_point("prepare")
    for node in ("prepare", "model", "tools"):
        graph.add_conditional_edges(node, _next, _ROUTES)
    graph.add_edge("force_complete", END)
    graph.add_edge("exhausted", END)
    graph.add_edge("fail", END)

    return graph.compile()
