"""Service wiring: builds the shared collaborators from settings."""

from __future__ import annotations

import logging
import os
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path

from agent_runtime.agent.events import EventLog
from agent_runtime.agent.loop import AgentLoop, LoopConfig, RunOptions
from agent_runtime.approval.gate import ApprovalGate
from agent_runtime.config.settings import PROJECT_ROOT, Settings
from agent_runtime.llm.backend import ModelBackend, OpenAIChatBackend
from agent_runtime.llm.credentials import CredentialProfile, CredentialRotationManager
from agent_runtime.llm.gateway import ModelGateway
from agent_runtime.storage.base import TaskStore
from agent_runtime.storage.memory import InMemoryTaskStore
from agent_runtime.storage.models import Task
from agent_runtime.subagents.registry import SubagentRegistry
from agent_runtime.tools.builtin import build_builtin_capabilities
from agent_runtime.tools.registry import CapabilityRegistry

logger = logging.getLogger(__name__)


@dataclass
class AgentRuntime:
    settings: Settings
    store: TaskStore
    credentials: CredentialRotationManager
    gateway: ModelGateway
    registry: CapabilityRegistry
    gate: ApprovalGate
    subagents: SubagentRegistry
    events: EventLog
    loop: AgentLoop
    executor: ThreadPoolExecutor
    runs: dict[str, Future] = field(default_factory=dict)

    def submit(self, task_id: str, message: str, options: RunOptions | None = None) -> Future:
        """Run a task on the worker pool."""
        future = self.executor.submit(self.loop.run, task_id, message, options)
        self.runs[task_id] = future
        future.add_done_callback(lambda _done: self.runs.pop(task_id, None))
        return future

    def cancel_task(self, task_id: str) -> Task:
        """Flag a task (and its subagent tasks) cancelled and release its waiters."""
        task = self.store.get(task_id)
        task.cancel_requested = True
        self.gate.cleanup(task_id)
        for summary in self.store.list():
            if summary.parent_task_id == task_id:
                self.cancel_task(summary.task_id)
        logger.info("task_run event=cancel_requested task_id=%s status=%s", task_id, task.status)
        return task

    def shutdown(self) -> None:
        self.executor.shutdown(wait=False, cancel_futures=True)


def build_runtime(
    settings: Settings,
    *,
    backend: ModelBackend | None = None,
    store: TaskStore | None = None,
    credentials: CredentialRotationManager | None = None,
    subagents: SubagentRegistry | None = None,
) -> AgentRuntime:
    if credentials is None:
        credentials = (
            CredentialRotationManager.from_env(
                os.environ,
                base_cooldown_s=settings.credential_cooldown_s,
                max_wait_s=settings.credential_max_wait_s,
            )
            if settings.load_env_credentials
            else CredentialRotationManager(
                base_cooldown_s=settings.credential_cooldown_s,
                max_wait_s=settings.credential_max_wait_s,
            )
        )

    api_key = settings.resolved_llm_api_key()
    fallback_profile = (
        CredentialProfile(
            id="settings",
            api_key=api_key,
            provider=settings.llm_provider,
            model=settings.model,
            base_url=settings.llm_base_url,
        )
        if api_key
        else None
    )
    gateway = ModelGateway(
        backend=backend
        or OpenAIChatBackend(
            timeout_s=settings.llm_timeout_s,
            temperature=settings.llm_temperature,
            max_tokens=settings.llm_max_tokens,
        ),
        credentials=credentials,
        fallback_profile=fallback_profile,
        max_retries=settings.llm_max_retries,
        base_delay_s=settings.llm_backoff_s,
    )

    if subagents is None:
        subagents = SubagentRegistry.from_paths(
            _resolve_path(settings.subagents_path),
            _resolve_path(settings.dynamic_subagents_path) if settings.dynamic_subagents_path else None,
        )
    registry = CapabilityRegistry(build_builtin_capabilities(subagents))
    gate = ApprovalGate(
        default_mode=settings.resolved_approval_mode(),
        timeout_s=settings.approval_timeout_s,
    )
    store = store or InMemoryTaskStore()
    events = EventLog()
    loop = AgentLoop(
        store=store,
        gateway=gateway,
        registry=registry,
        gate=gate,
        subagents=subagents,
        config=LoopConfig.from_settings(settings),
        sinks=[events],
    )
    logger.info(
        "runtime event=ready credentials=%d fallback=%s capabilities=%d subagents=%d",
        credentials.size,
        fallback_profile is not None,
        len(registry.names()),
        len(subagents.names()),
    )
    return AgentRuntime(
        settings=settings,
        store=store,
        credentials=credentials,
        gateway=gateway,
        registry=registry,
        gate=gate,
        subagents=subagents,
        events=events,
        loop=loop,
        executor=ThreadPoolExecutor(max_workers=settings.run_workers, thread_name_prefix="agent-run"),
    )


def _resolve_path(value: str) -> Path:
    path = Path(value)
    return path if path.is_absolute() else PROJECT_ROOT / path
