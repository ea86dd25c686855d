"""Token-budget tracking and transcript compaction.

Usage is measured against ``effective_limit`` (model window minus a
reservation for the system prompt and completion). The backend-reported
prompt token count is preferred; otherwise ~4 characters count as a token.

Thresholds:
- 70 %: one warning per task.
- 80 %: one compaction per task.
- 90 %: force completion, every time it is reached.
"""

from __future__ import annotations

import json
import math
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Literal

from agent_runtime.llm.backend import Usage

MODEL_CONTEXT_LIMITS: dict[str, int] = {
    "deepseek-chat": 64000,
    "deepseek-coder": 64000,
    "deepseek-reasoner": 64000,
}
DEFAULT_CONTEXT_TOKENS = 64000
RESERVED_TOKENS = 8000
CHARS_PER_TOKEN = 4

WARNING_THRESHOLD = 0.70
COMPACT_THRESHOLD = 0.80
CRITICAL_THRESHOLD = 0.90

COMPACTION_HEADER = "[CONVERSATION COMPACTED - Previous context summarized]"
SMART_COMPACTION_HEADER = "[SMART COMPACTION SUMMARY]"
KEEP_RECENT = 6
TRIM_MIN_MESSAGES = 8
TRIM_BODY_THRESHOLD = 500
TRIM_HEAD_CHARS = 300
TRUNCATED_MARKER = "\n...[truncated]"
DROPPED_RESULT = "[previous result truncated]"

ContextAction = Literal["continue", "compact", "force_complete"]
ContextLevel = Literal["warning", "high", "critical"]


@dataclass(frozen=True)
class ContextStatus:
    current_tokens: int
    max_tokens: int
    usage_percent: int
    remaining_tokens: int
    action: ContextAction = "continue"
    level: ContextLevel | None = None
    message: str | None = None

    @property
    def should_compact(self) -> bool:
        return self.action == "compact"

    @property
    def should_force_complete(self) -> bool:
        return self.action == "force_complete"


class ContextBudgetGuard:
    def __init__(
        self,
        *,
        model: str = "deepseek-chat",
        max_tokens: int | None = None,
        reserved_tokens: int = RESERVED_TOKENS,
    ) -> None:
        self.model = model
        self.max_tokens = max_tokens or MODEL_CONTEXT_LIMITS.get(model, DEFAULT_CONTEXT_TOKENS)
        self.effective_limit = max(1, self.max_tokens - reserved_tokens)
        self.last_prompt_tokens = 0
        self.last_completion_tokens = 0
        self.last_total_tokens = 0
        self.estimated_tokens = 0
        self.warning_emitted = False
        self.compaction_triggered = False

    def update_from_response(self, usage: Usage | None) -> None:
        if usage is None:
            return
        self.last_prompt_tokens = usage.prompt_tokens
        self.last_completion_tokens = usage.completion_tokens
        self.last_total_tokens = usage.total_tokens
        self.estimated_tokens = usage.prompt_tokens

    def forget_reported_usage(self) -> None:
        """Drop the reported count so the next check re-estimates (after compaction)."""
        self.last_prompt_tokens = 0
        self.estimated_tokens = 0

    def check(
        self,
        messages: list[dict[str, Any]],
        on_event: Callable[[ContextStatus], None] | None = None,
    ) -> ContextStatus:
        current = self.last_prompt_tokens or estimate_tokens(messages)
        self.estimated_tokens = current
        ratio = current / self.effective_limit
        percent = round(ratio * 100)
        remaining = self.effective_limit - current

        status = ContextStatus(
            current_tokens=current,
            max_tokens=self.effective_limit,
            usage_percent=percent,
            remaining_tokens=remaining,
        )

        if ratio >= CRITICAL_THRESHOLD:
            status = ContextStatus(
                current_tokens=current,
                max_tokens=self.effective_limit,
                usage_percent=percent,
                remaining_tokens=remaining,
                action="force_complete",
                level="critical",
                message=f"Context window critical ({percent}% used). Forcing early completion.",
            )
        elif ratio >= COMPACT_THRESHOLD and not self.compaction_triggered:
            self.compaction_triggered = True
            status = ContextStatus(
                current_tokens=current,
                max_tokens=self.effective_limit,
                usage_percent=percent,
                remaining_tokens=remaining,
                action="compact",
                level="high",
                message=f"Context window high ({percent}% used). Compacting conversation.",
            )
        elif ratio >= WARNING_THRESHOLD and not self.warning_emitted:
            self.warning_emitted = True
            status = ContextStatus(
                current_tokens=current,
                max_tokens=self.effective_limit,
                usage_percent=percent,
                remaining_tokens=remaining,
                level="warning",
                message=f"Context window at {percent}%. Consider wrapping up.",
            )

        if status.level is not None and on_event is not None:
            on_event(status)
        return status

    def status(self) -> dict[str, Any]:
        current = self.last_prompt_tokens or self.estimated_tokens
        return {
            "model": self.model,
            "current_tokens": current,
            "max_tokens": self.max_tokens,
            "effective_limit": self.effective_limit,
            "usage_percent": round(current / self.effective_limit * 100),
            "remaining_tokens": self.effective_limit - current,
            "warning_emitted": self.warning_emitted,
            "compaction_triggered": self.compaction_triggered,
        }


def estimate_chars(messages: list[dict[str, Any]]) -> int:
    total = 0
    for message in messages:
        content = message.get("content")
        if isinstance(content, str):
            total += len(content)
        tool_calls = message.get("tool_calls")
        if tool_calls:
            total += len(json.dumps(tool_calls))
    return total


def estimate_tokens(messages: list[dict[str, Any]]) -> int:
    return math.ceil(estimate_chars(messages) / CHARS_PER_TOKEN)


def compaction_split(messages: list[dict[str, Any]], keep_head: int = 1) -> tuple[int, int] | None:
    """Return ``(start, end)`` of the span compaction would replace, or None.

    The first ``keep_head`` messages (at least the system prompt) are always
    retained. The retained tail is at least the last ``KEEP_RECENT`` messages
    and is extended backwards so it never opens with a tool result whose
    invocation would be summarized away.
    """
    if len(messages) <= 4:
        return None
    head = max(1, min(keep_head, len(messages)))
    tail_start = max(head, len(messages) - KEEP_RECENT)
    while tail_start > head and messages[tail_start].get("role") == "tool":
        tail_start -= 1
    middle = messages[head:tail_start]
    if not middle:
        return None
    if len(middle) == 1 and _is_compaction_summary(middle[0]):
        return None
    return head, tail_start


def compact_messages(messages: list[dict[str, Any]], keep_head: int = 1) -> list[dict[str, Any]]:
    split = compaction_split(messages, keep_head)
    if split is None:
        return messages
    start, end = split
    middle = messages[start:end]

    tool_names: list[str] = []
    highlights: list[str] = []
    for message in middle:
        if message.get("role") != "assistant":
            continue
        tool_calls = message.get("tool_calls")
        if tool_calls:
            for call in tool_calls:
                tool_names.append(str((call.get("function") or {}).get("name", "")))
            continue
        content = message.get("content")
        if isinstance(content, str) and content and not _is_compaction_summary(message):
            highlights.append(content[:200])

    distinct = list(dict.fromkeys(name for name in tool_names if name))
    lines = [
        COMPACTION_HEADER,
        "",
        f"Tools used: {', '.join(distinct) or 'none'}",
        f"Total tool calls: {len(tool_names)}",
    ]
    if highlights:
        lines.extend(["", "Previous reasoning highlights:"])
        lines.extend(f"- {item}..." for item in highlights[-3:])

    summary = {"role": "assistant", "content": "\n".join(lines)}
    return [*messages[:start], summary, *messages[end:]]


def smart_compact_messages(
    messages: list[dict[str, Any]],
    summarize: Callable[[str], str | None],
    keep_head: int = 1,
) -> list[dict[str, Any]] | None:
    """Replace the middle span with a model-written summary.

    ``summarize`` receives the serialized span. Returns None when there is
    nothing to compact or the summary comes back empty, so the caller can fall
    back to ``compact_messages``.
    """
    split = compaction_split(messages, keep_head)
    if split is None:
        return None
    start, end = split
    payload = json.dumps(_serialize_for_summary(messages[start:end]))
    summary = (summarize(payload) or "").strip()
    if not summary:
        return None
    return [
        *messages[:start],
        {"role": "assistant", "content": f"{SMART_COMPACTION_HEADER}\n{summary}"},
        *messages[end:],
    ]


def _serialize_for_summary(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    entries: list[dict[str, Any]] = []
    for message in messages:
        entry: dict[str, Any] = {
            "role": message.get("role"),
            "content": _truncate_text(message.get("content"), 1200),
        }
        if message.get("role") == "tool":
            entry["tool_call_id"] = message.get("tool_call_id")
        elif message.get("tool_calls"):
            entry["tool_calls"] = [
                {
                    "name": (call.get("function") or {}).get("name"),
                    "arguments": _truncate_text((call.get("function") or {}).get("arguments"), 600),
                }
                for call in message["tool_calls"]
            ]
        entries.append(entry)
    return entries


def _truncate_text(value: Any, max_chars: int) -> str:
    text = value if isinstance(value, str) else json.dumps(value, default=str)
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + TRUNCATED_MARKER


def trim_messages(messages: list[dict[str, Any]], max_chars: int) -> list[dict[str, Any]]:
    """Shrink old tool-result bodies when the transcript exceeds ``max_chars``.

    Only contents change, so every invocation keeps its paired result.
    """
    if len(messages) <= TRIM_MIN_MESSAGES:
        return messages
    if estimate_chars(messages) <= max_chars:
        return messages

    head = messages[0]
    middle = messages[1:-KEEP_RECENT]
    tail = messages[-KEEP_RECENT:]

    trimmed = [head]
    for message in middle:
        content = message.get("content")
        if (
            message.get("role") == "tool"
            and isinstance(content, str)
            and len(content) > TRIM_BODY_THRESHOLD
        ):
            trimmed.append({**message, "content": content[:TRIM_HEAD_CHARS] + TRUNCATED_MARKER})
        else:
            trimmed.append(message)
    trimmed.extend(tail)

    if estimate_chars(trimmed) <= max_chars:
        return trimmed

    aggressive = [head]
    for message in middle:
        if message.get("role") == "tool":
            aggressive.append({**message, "content": DROPPED_RESULT})
        else:
            aggressive.append(message)
    aggressive.extend(tail)
    return aggressive


def _is_compaction_summary(message: dict[str, Any]) -> bool:
    content = message.get("content")
    if message.get("role") != "assistant" or not isinstance(content, str):
        return False
    return content.startswith(COMPACTION_HEADER) or content.startswith(SMART_COMPACTION_HEADER)


FORCE_COMPLETION_PROMPT = """IMPORTANT: You are running low on context space. You MUST provide your final answer NOW.

Summarize what you have accomplished so far and provide any partial results. Do NOT call any more tools.

If you were in the middle of a task:
1. State what was completed
2. State what remains to be done
3. Provide any data/results gathered so far

Be concise but complete."""

COMPACTION_NOTICE = (
    "[System: Previous conversation context has been compacted to save space. "
    "Key information is preserved above. Continue with the task.]"
)

COMPACTION_SUMMARY_PROMPT = """You are summarizing a conversation to preserve context window space. Return a structured, high-signal summary so the agent can continue without rework.

Use this priority order (highest first):

1. Current Task State: What is the user's goal? What step is the agent on? What remains?
2. Errors & Solutions: Errors encountered and how they were resolved.
3. Code & Files: Files created or modified, with paths.
4. System Context: Project structure, dependencies, environment details discovered.
5. Key Decisions: Approach selected and alternatives rejected.
6. Next Steps: What the agent planned to do next.

Rules:
- Do NOT invent or assume details not in the conversation.
- Be specific: include exact file paths, command outputs, variable names.
- Keep the summary under 2000 tokens."""
