"""OpenAI-compatible chat completions backend and its response model."""

from __future__ import annotations

import json
import logging
import os
import socket
from typing import TYPE_CHECKING, Any, Protocol
from urllib import error, request

from pydantic import BaseModel, Field

from agent_runtime.errors import BackendError

if TYPE_CHECKING:
    from agent_runtime.llm.credentials import CredentialProfile

logger = logging.getLogger(__name__)


class Usage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class ToolInvocation(BaseModel):
    """One capability invocation requested by the model."""

    id: str
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    raw_arguments: str = "{}"


class ModelResponse(BaseModel):
    content: str | None = None
    invocations: list[ToolInvocation] = Field(default_factory=list)
    usage: Usage | None = None
    finish_reason: str | None = None
    reasoning: str | None = None

    @property
    def has_invocations(self) -> bool:
        return bool(self.invocations)

    def to_message(self) -> dict[str, Any]:
        """Render as an assistant transcript entry."""
        message: dict[str, Any] = {"role": "assistant", "content": self.content or ""}
        if self.invocations:
            message["tool_calls"] = [
                {
                    "id": invocation.id,
                    "type": "function",
                    "function": {"name": invocation.name, "arguments": invocation.raw_arguments},
                }
                for invocation in self.invocations
            ]
        return message


class ModelBackend(Protocol):
    """Issues one chat completion with one credential."""

    def complete(
        self,
        profile: CredentialProfile,
        *,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        tool_choice: str = "auto",
        model: str | None = None,
    ) -> ModelResponse: ...


class OpenAIChatBackend:
    """Small chat completions client over urllib."""

    def __init__(
        self,
        *,
        timeout_s: float = 60.0,
        temperature: float = 0.2,
        max_tokens: int = 4096,
    ) -> None:
        self.timeout_s = timeout_s
        self.temperature = temperature
        self.max_tokens = max_tokens

    def complete(
        self,
        profile: CredentialProfile,
        *,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        tool_choice: str = "auto",
        model: str | None = None,
    ) -> ModelResponse:
        selected_model = model or profile.model
        payload: dict[str, Any] = {
            "model": selected_model,
            "messages": messages,
            "temperature": _resolve_temperature(
                model=selected_model, provider=profile.provider, default=self.temperature
            ),
            "max_tokens": self.max_tokens,
        }
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = tool_choice
        response_json = self._request(profile, payload)
        return parse_chat_response(response_json)

    def _request(self, profile: CredentialProfile, payload: dict[str, Any]) -> dict[str, Any]:
        url = f"{profile.base_url.rstrip('/')}/chat/completions"
        if _trace_enabled():
            logger.warning(
                "LLM trace request provider=%s model=%s url=%s timeout_s=%s",
                profile.provider,
                payload.get("model"),
                url,
                self.timeout_s,
            )
        req = request.Request(
            url=url,
            data=json.dumps(payload).encode("utf-8"),
            method="POST",
            headers={
                "Authorization": f"Bearer {profile.api_key}",
                "Content-Type": "application/json",
            },
        )
        try:
            with request.urlopen(req, timeout=self.timeout_s) as response:
                raw = response.read().decode("utf-8")
        except error.HTTPError as exc:
            message = exc.read().decode("utf-8", errors="replace")
            raise BackendError(
                f"Model request failed with status {exc.code}: {message[:400]}",
                status_code=exc.code,
                code=_error_code(message),
            ) from exc
        except (TimeoutError, socket.timeout) as exc:
            raise BackendError("Model request timed out", code="timeout") from exc
        except error.URLError as exc:
            raise BackendError(
                f"Model request failed: {exc.reason}", code=_network_code(exc.reason)
            ) from exc
        except ConnectionResetError as exc:
            raise BackendError("Model connection reset", code="connection_reset") from exc

        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            raise BackendError("Model returned non-JSON response", status_code=502) from exc


def parse_chat_response(response_json: dict[str, Any]) -> ModelResponse:
    choices = response_json.get("choices", [])
    if not choices:
        raise BackendError("Model response missing choices", status_code=502)

    choice = choices[0]
    message = choice.get("message", {}) or {}
    invocations: list[ToolInvocation] = []
    for idx, raw_call in enumerate(message.get("tool_calls") or []):
        function = raw_call.get("function", {}) or {}
        raw_arguments = function.get("arguments") or "{}"
        invocations.append(
            ToolInvocation(
                id=str(raw_call.get("id") or f"call_{idx}"),
                name=str(function.get("name") or ""),
                arguments=_parse_arguments(raw_arguments),
                raw_arguments=raw_arguments if isinstance(raw_arguments, str) else json.dumps(raw_arguments),
            )
        )

    usage_raw = response_json.get("usage")
    usage = Usage.model_validate(usage_raw) if isinstance(usage_raw, dict) else None
    reasoning = message.get("reasoning_content") or choice.get("reasoning_content") or choice.get("reasoning")
    return ModelResponse(
        content=_extract_text(message.get("content")),
        invocations=invocations,
        usage=usage,
        finish_reason=choice.get("finish_reason"),
        reasoning=reasoning if isinstance(reasoning, str) else None,
    )


def _extract_text(content: Any) -> str | None:
    if content is None:
        return None
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict) and isinstance(item.get("text"), str):
                parts.append(item["text"])
        return "".join(parts)
    return str(content)


def _parse_arguments(raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    try:
        parsed = json.loads(raw)
    except (TypeError, json.JSONDecodeError):
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _resolve_temperature(*, model: str, provider: str, default: float) -> float:
    # Moonshot kimi-k2.5 only accepts temperature=1.
    if provider == "moonshot" or "kimi-k2.5" in model.lower():
        return 1.0
    return default


def _error_code(body: str) -> str | None:
    try:
        parsed = json.loads(body)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict):
        return None
    err = parsed.get("error")
    if isinstance(err, dict):
        code = err.get("code") or err.get("type")
        return str(code) if code else None
    return None


def _network_code(reason: Any) -> str:
    if isinstance(reason, (TimeoutError, socket.timeout)):
        return "timeout"
    if isinstance(reason, ConnectionResetError):
        return "connection_reset"
    return "connection_error"


def _trace_enabled() -> bool:
    return os.getenv("AGENT_RUNTIME_LLM_TRACE", "0").strip() == "1"
