from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor, TimeoutError
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError

from agent_runtime.errors import CapabilityExecutionError, CapabilityNotAllowedError, UnknownCapabilityError

logger = logging.getLogger(__name__)


class StrictModel(BaseModel):
    model_config = ConfigDict(extra="forbid")


@dataclass
class ExecutionContext:
    """Per-invocation context handed to a capability executor."""

    task_id: str
    allowed: frozenset[str] | None = None
    denied: frozenset[str] = frozenset()
    call_id: str | None = None
    emit: Callable[[str, dict[str, Any]], None] | None = None
    run_subagent: Callable[..., str] | None = None
    request_rewind: Callable[[int, str], None] | None = None

    def permits(self, name: str) -> bool:
        if name in self.denied:
            return False
        return self.allowed is None or name in self.allowed


@dataclass(frozen=True)
class Capability:
    name: str
    description: str | Callable[[], str]
    input_model: type[BaseModel]
    fn: Callable[[Any, ExecutionContext], Any]
    timeout_s: float | None = None
    schema_hook: Callable[[dict[str, Any]], dict[str, Any]] | None = None

    def definition(self) -> dict[str, Any]:
        description = self.description() if callable(self.description) else self.description
        parameters = self.input_model.model_json_schema()
        parameters.pop("title", None)
        if self.schema_hook is not None:
            parameters = self.schema_hook(parameters)
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": description,
                "parameters": parameters,
            },
        }


class CapabilityRegistry:
    def __init__(self, capabilities: Iterable[Capability] = ()) -> None:
        self._capabilities: dict[str, Capability] = {}
        self._lock = threading.Lock()
        for capability in capabilities:
            self.register(capability)

    def register(self, capability: Capability) -> None:
        with self._lock:
            replaced = capability.name in self._capabilities
            self._capabilities[capability.name] = capability
        if replaced:
            logger.info("capability_registry event=replaced name=%s", capability.name)

    def get(self, name: str) -> Capability | None:
        with self._lock:
            return self._capabilities.get(name)

    def names(self) -> list[str]:
        with self._lock:
            return list(self._capabilities)

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._capabilities

    def get_definitions(
        self,
        include: Iterable[str] | None = None,
        exclude: Iterable[str] | None = None,
    ) -> list[dict[str, Any]]:
        allowed = set(include) if include is not None else None
        denied = set(exclude or ())
        with self._lock:
            capabilities = list(self._capabilities.values())
        definitions: list[dict[str, Any]] = []
        for capability in capabilities:
            if capability.name in denied:
                continue
            if allowed is not None and capability.name not in allowed:
                continue
            definitions.append(capability.definition())
        return definitions

    def execute(self, name: str, args: dict[str, Any], context: ExecutionContext) -> str:
        capability = self.get(name)
        if capability is None:
            raise UnknownCapabilityError(name)
        if not context.permits(name):
            raise CapabilityNotAllowedError(name)

        try:
            payload = capability.input_model.model_validate(args)
        except ValidationError as exc:
            raise CapabilityExecutionError(f"Invalid arguments for '{name}': {exc}") from exc

        try:
            raw_output = self._run(capability, payload, context)
        except CapabilityExecutionError:
            raise
        except TimeoutError as exc:
            raise CapabilityExecutionError(
                f"Capability '{name}' timed out after {capability.timeout_s:.2f}s"
            ) from exc
        except Exception as exc:  # noqa: BLE001
            raise CapabilityExecutionError(str(exc) or exc.__class__.__name__) from exc
        return _to_text(raw_output)

    def _run(self, capability: Capability, payload: BaseModel, context: ExecutionContext) -> Any:
        if capability.timeout_s is None:
            return capability.fn(payload, context)
        pool = ThreadPoolExecutor(max_workers=1)
        try:
            future = pool.submit(capability.fn, payload, context)
            return future.result(timeout=capability.timeout_s)
        finally:
            # A timed-out executor keeps running in its thread; do not block on it.
            pool.shutdown(wait=False)


def _to_text(raw_output: Any) -> str:
    if isinstance(raw_output, str):
        return raw_output
    if isinstance(raw_output, BaseModel):
        return raw_output.model_dump_json()
    return json.dumps(raw_output, default=str)
