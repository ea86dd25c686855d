from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pytest
from fakes import FakeBackend, ManualClock

from agent_runtime.agent.loop import AgentLoop, LoopConfig
from agent_runtime.approval.gate import ApprovalGate
from agent_runtime.llm.credentials import CredentialProfile
from agent_runtime.llm.gateway import ModelGateway
from agent_runtime.storage.memory import InMemoryTaskStore
from agent_runtime.subagents.registry import SubagentRegistry
from agent_runtime.tools.builtin import build_builtin_capabilities
from agent_runtime.tools.registry import CapabilityRegistry


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def build_loop() -> Callable[..., AgentLoop]:
    def _build(
        backend: FakeBackend,
        *,
        registry: CapabilityRegistry | None = None,
        gate: ApprovalGate | None = None,
        subagents: SubagentRegistry | None = None,
        sinks: list[Any] | None = None,
        **config: Any,
    ) -> AgentLoop:
        subagents = subagents or SubagentRegistry()
        gateway = ModelGateway(
            backend=backend,
            fallback_profile=CredentialProfile(id="test", api_key="sk-test"),
            sleep=lambda _delay: None,
        )
        config.setdefault("iteration_delay_s", 0.0)
        config.setdefault("retry_delay_s", 0.0)
        return AgentLoop(
            store=InMemoryTaskStore(),
            gateway=gateway,
            registry=registry or CapabilityRegistry(build_builtin_capabilities(subagents)),
            gate=gate or ApprovalGate(default_mode="yolo"),
            subagents=subagents,
            config=LoopConfig(**config),
            sinks=sinks or [],
            sleep=lambda _delay: None,
        )

    return _build
