"""Orchestration loop, progress events and checkpoints."""

from agent_runtime.agent.events import EventEmitter, EventLog, ProgressEvent
from agent_runtime.agent.loop import AgentLoop, LoopConfig, RunOptions

__all__ = ["AgentLoop", "EventEmitter", "EventLog", "LoopConfig", "ProgressEvent", "RunOptions"]
