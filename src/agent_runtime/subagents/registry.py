"""Subagent profiles: fixed ones from a JSON file, dynamic ones managed at runtime."""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from agent_runtime.errors import InvalidSubagentError, SubagentConflictError, SubagentNotFoundError

logger = logging.getLogger(__name__)

SubagentOrigin = Literal["fixed", "dynamic"]


class SubagentSpec(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    name: str = Field(min_length=1)
    description: str = ""
    system_prompt: str = Field(min_length=1)
    allowed_capabilities: list[str] | None = None
    denied_capabilities: list[str] = Field(default_factory=list)
    origin: SubagentOrigin = "dynamic"

    @model_validator(mode="before")
    @classmethod
    def _accept_aliases(cls, raw: Any) -> Any:
        if not isinstance(raw, dict):
            return raw
        data = dict(raw)
        aliases = {
            "systemPrompt": "system_prompt",
            "tools": "allowed_capabilities",
            "allowedCapabilities": "allowed_capabilities",
            "excludeTools": "denied_capabilities",
            "exclude_tools": "denied_capabilities",
            "deniedCapabilities": "denied_capabilities",
        }
        for alias, field_name in aliases.items():
            if alias in data and field_name not in data:
                data[field_name] = data.pop(alias)
            else:
                data.pop(alias, None)
        name = data.get("name")
        if not data.get("description") and isinstance(name, str):
            data["description"] = f"Subagent {name.strip()}"
        return data

    @field_validator("name", "system_prompt", "description", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value

    @field_validator("allowed_capabilities", mode="before")
    @classmethod
    def _normalize_allowed(cls, value: Any) -> list[str] | None:
        names = _clean_names(value)
        return names or None

    @field_validator("denied_capabilities", mode="before")
    @classmethod
    def _normalize_denied(cls, value: Any) -> list[str]:
        return _clean_names(value)


class SubagentUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    description: str | None = None
    system_prompt: str | None = None
    allowed_capabilities: list[str] | None = None
    denied_capabilities: list[str] | None = None


class JsonSubagentStore:
    """Persists dynamic subagent specs to a single JSON file."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def load(self) -> list[SubagentSpec]:
        if not self.path.exists():
            return []
        try:
            parsed = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("subagent_store event=load_failed path=%s reason=%s", self.path, exc)
            return []
        return _parse_spec_list(parsed, origin="dynamic", source=self.path)

    def save(self, specs: list[SubagentSpec]) -> None:
        payload = {
            "subagents": [
                spec.model_dump(exclude={"origin"}) for spec in specs if spec.origin == "dynamic"
            ]
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        tmp_path.replace(self.path)


class SubagentRegistry:
    """Fixed specs are read once and immutable; dynamic specs support full CRUD.

    A dynamic spec never shadows a fixed one: names are unique across both.
    """

    def __init__(
        self,
        *,
        fixed: list[SubagentSpec] | None = None,
        store: JsonSubagentStore | None = None,
    ) -> None:
        self._fixed: dict[str, SubagentSpec] = {}
        self._dynamic: dict[str, SubagentSpec] = {}
        self._store = store
        self._lock = threading.Lock()
        for spec in fixed or []:
            self._fixed[spec.name] = spec.model_copy(update={"origin": "fixed"})
        if store is not None:
            for spec in store.load():
                if spec.name in self._fixed:
                    logger.warning("subagent_registry event=skip_shadowed name=%s", spec.name)
                    continue
                self._dynamic[spec.name] = spec

    @classmethod
    def from_paths(
        cls, fixed_path: str | Path, dynamic_path: str | Path | None = None
    ) -> SubagentRegistry:
        store = JsonSubagentStore(dynamic_path) if dynamic_path else None
        return cls(fixed=load_fixed_specs(fixed_path), store=store)

    def list(self) -> list[SubagentSpec]:
        with self._lock:
            return [*self._fixed.values(), *self._dynamic.values()]

    def names(self) -> list[str]:
        return [spec.name for spec in self.list()]

    def get(self, name: str) -> SubagentSpec | None:
        with self._lock:
            return self._dynamic.get(name) or self._fixed.get(name)

    def require(self, name: str) -> SubagentSpec:
        spec = self.get(name)
        if spec is None:
            raise SubagentNotFoundError(name)
        return spec

    def create(self, raw: dict[str, Any] | SubagentSpec) -> SubagentSpec:
        spec = _coerce_spec(raw)
        with self._lock:
            if spec.name in self._fixed or spec.name in self._dynamic:
                raise SubagentConflictError(f"Subagent already exists: {spec.name}")
            self._dynamic[spec.name] = spec
            snapshot = list(self._dynamic.values())
        self._persist(snapshot)
        logger.info("subagent_registry event=created name=%s", spec.name)
        return spec

    def update(self, name: str, changes: SubagentUpdate | dict[str, Any]) -> SubagentSpec:
        update = changes if isinstance(changes, SubagentUpdate) else SubagentUpdate.model_validate(changes)
        with self._lock:
            if name in self._fixed:
                raise SubagentConflictError(f"Fixed subagent cannot be modified: {name}")
            current = self._dynamic.get(name)
            if current is None:
                raise SubagentNotFoundError(name)
            merged = current.model_dump()
            merged.update(update.model_dump(exclude_unset=True))
            spec = _coerce_spec(merged)
            self._dynamic[name] = spec
            snapshot = list(self._dynamic.values())
        self._persist(snapshot)
        logger.info("subagent_registry event=updated name=%s", name)
        return spec

    def delete(self, name: str) -> SubagentSpec:
        with self._lock:
            if name in self._fixed:
                raise SubagentConflictError(f"Fixed subagent cannot be deleted: {name}")
            spec = self._dynamic.pop(name, None)
            if spec is None:
                raise SubagentNotFoundError(name)
            snapshot = list(self._dynamic.values())
        self._persist(snapshot)
        logger.info("subagent_registry event=deleted name=%s", name)
        return spec

    def _persist(self, specs: list[SubagentSpec]) -> None:
        if self._store is not None:
            self._store.save(specs)


def load_fixed_specs(path: str | Path) -> list[SubagentSpec]:
    """Read ``subagents.json``: a list, or an object with a ``subagents`` list."""
    config_path = Path(path)
    if not config_path.exists():
        return []
    try:
        parsed = json.loads(config_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.error("subagent_registry event=load_failed path=%s reason=%s", config_path, exc)
        return []
    return _parse_spec_list(parsed, origin="fixed", source=config_path)


def _parse_spec_list(parsed: Any, *, origin: SubagentOrigin, source: Path) -> list[SubagentSpec]:
    items = parsed if isinstance(parsed, list) else (parsed or {}).get("subagents")
    if not isinstance(items, list):
        return []
    specs: list[SubagentSpec] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        try:
            specs.append(SubagentSpec.model_validate({**item, "origin": origin}))
        except ValidationError as exc:
            logger.warning(
                "subagent_registry event=invalid_spec source=%s name=%s reason=%s",
                source,
                item.get("name"),
                exc.errors()[0].get("msg") if exc.errors() else exc,
            )
    return specs


def _coerce_spec(raw: dict[str, Any] | SubagentSpec) -> SubagentSpec:
    data = raw.model_dump() if isinstance(raw, SubagentSpec) else dict(raw)
    data["origin"] = "dynamic"
    try:
        return SubagentSpec.model_validate(data)
    except ValidationError as exc:
        raise InvalidSubagentError(
            "Invalid subagent spec. name and system_prompt are required."
        ) from exc


def _clean_names(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item.strip() for item in value if isinstance(item, str) and item.strip()]
