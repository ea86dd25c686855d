"""Routing a request to subagents.

Two independent strategies:
- ``auto_select_subagent``: keyword overlap between the request and each
  subagent's name and description.
- ``plan_decomposition`` / ``select_with_model``: ask the model to split or
  classify the request. These need a gateway and return None without one.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, Field

from agent_runtime.llm.gateway import ModelGateway
from agent_runtime.subagents.registry import SubagentSpec

logger = logging.getLogger(__name__)

STOPWORDS = {
    "the", "and", "for", "with", "that", "this", "from", "into", "when", "then",
    "your", "you", "are", "use", "using", "used", "have", "has", "had", "will",
    "can", "could", "should", "would", "about", "over", "under", "onto",
    "also", "more", "less", "make", "made", "need", "needs", "task", "agent",
    "subagent", "help", "please", "just", "like", "some", "any", "each", "such",
}

SKIP_PHRASES = (
    "no subagent",
    "dont use subagent",
    "don't use subagent",
    "do not use subagent",
    "use main agent",
    "no helper",
)

DECOMPOSE_HINTS = (
    "research",
    "analyze",
    "compare",
    "summarize",
    "plan",
    "design",
    "review",
    "audit",
    "benchmark",
)

MULTI_STEP_PATTERNS = [
    re.compile(r"\band\b", re.IGNORECASE),
    re.compile(r"\bthen\b", re.IGNORECASE),
    re.compile(r"\balso\b", re.IGNORECASE),
    re.compile(r"\bplus\b", re.IGNORECASE),
    re.compile(r";"),
    re.compile(r"\n"),
]

NAME_TOKEN_WEIGHT = 2
DESCRIPTION_TOKEN_WEIGHT = 1
MIN_SELECTION_SCORE = 2
MIN_MODEL_CONFIDENCE = 0.55
MAX_DECOMPOSED_TASKS = 5
MIN_DECOMPOSE_CHARS = 80
MIN_DECOMPOSE_WORDS = 12
NO_SUBAGENT = "none"


@dataclass(frozen=True)
class SubagentSelection:
    subagent: SubagentSpec
    score: float
    reason: str
    matched: list[str] = field(default_factory=list)


class PlannedSubtask(BaseModel):
    title: str = ""
    prompt: str
    subagent: str = NO_SUBAGENT


class DecompositionPlan(BaseModel):
    reason: str = ""
    tasks: list[PlannedSubtask] = Field(default_factory=list)


def tokenize(text: str | None) -> list[str]:
    if not text:
        return []
    return [
        token
        for token in re.split(r"[^a-z0-9]+", text.lower())
        if len(token) >= 4 and token not in STOPWORDS
    ]


def wants_main_agent(message: str) -> bool:
    lowered = message.lower()
    return any(phrase in lowered for phrase in SKIP_PHRASES)


def auto_select_subagent(
    message: str | None, subagents: Sequence[SubagentSpec]
) -> SubagentSelection | None:
    if not message or not subagents:
        return None
    if wants_main_agent(message):
        return None

    lowered = message.lower()
    for spec in subagents:
        if spec.name and spec.name.lower() in lowered:
            return SubagentSelection(subagent=spec, score=10, reason="explicit name")

    message_tokens = set(tokenize(message))
    if not message_tokens:
        return None

    best: SubagentSelection | None = None
    runner_up = 0.0
    for spec in subagents:
        name_tokens = set(tokenize(spec.name))
        description_tokens = set(tokenize(spec.description)) - name_tokens
        matched_names = sorted(name_tokens & message_tokens)
        matched_descriptions = sorted(description_tokens & message_tokens)
        score = (
            NAME_TOKEN_WEIGHT * len(matched_names)
            + DESCRIPTION_TOKEN_WEIGHT * len(matched_descriptions)
        )
        if best is None or score > best.score:
            runner_up = best.score if best is not None else runner_up
            matched = matched_names + matched_descriptions
            best = SubagentSelection(
                subagent=spec,
                score=score,
                reason=", ".join(matched[:5]),
                matched=matched,
            )
        elif score > runner_up:
            runner_up = score

    if best is None or best.score < MIN_SELECTION_SCORE:
        return None
    if best.score <= runner_up:
        return None
    return best


def should_decompose(message: str | None) -> bool:
    if not message:
        return False
    trimmed = message.strip()
    if len(trimmed) < MIN_DECOMPOSE_CHARS:
        return False
    if len(trimmed.split()) < MIN_DECOMPOSE_WORDS:
        return False
    if any(pattern.search(trimmed) for pattern in MULTI_STEP_PATTERNS):
        return True
    lowered = trimmed.lower()
    return any(hint in lowered for hint in DECOMPOSE_HINTS)


def plan_decomposition(
    message: str,
    subagents: Sequence[SubagentSpec],
    gateway: ModelGateway | None,
    *,
    model: str | None = None,
) -> DecompositionPlan | None:
    """Ask the model whether to split ``message`` into at most five subtasks."""
    if gateway is None or not gateway.configured or not subagents:
        return None
    if not should_decompose(message):
        return None

    system_prompt = "\n".join(
        [
            "You are a task decomposition planner for a multi-agent system.",
            "Decide whether the user request should be split into parallel subtasks.",
            'If not, return JSON: {"decompose":false,"reason":"short reason"}.',
            'If yes, return JSON: {"decompose":true,"reason":"short reason","tasks":'
            '[{"title":"short name","prompt":"clear instruction","subagent":"subagent_name_or_none"}]}.',
            "Rules:",
            '- Use only subagent names from the provided list, or "none" if the main agent should handle it.',
            f"- Keep tasks <= {MAX_DECOMPOSED_TASKS} and prompts concise but specific.",
            "- Prefer assigning tasks to subagents that best match the description.",
        ]
    )
    parsed = _ask_for_json(gateway, system_prompt, _routing_user_prompt(message, subagents), model=model)
    if not parsed or not parsed.get("decompose"):
        return None
    raw_tasks = parsed.get("tasks")
    if not isinstance(raw_tasks, list):
        return None

    valid_names = {spec.name for spec in subagents}
    tasks: list[PlannedSubtask] = []
    for raw in raw_tasks:
        if not isinstance(raw, dict):
            continue
        prompt = str(raw.get("prompt") or "").strip()
        subagent = str(raw.get("subagent") or "").strip() or NO_SUBAGENT
        if not prompt:
            continue
        if subagent != NO_SUBAGENT and subagent not in valid_names:
            logger.info("subagent_router event=drop_subtask reason=unknown_subagent subagent=%s", subagent)
            continue
        tasks.append(
            PlannedSubtask(title=str(raw.get("title") or "").strip(), prompt=prompt, subagent=subagent)
        )
    if not tasks:
        return None
    return DecompositionPlan(
        reason=str(parsed.get("reason") or "").strip(),
        tasks=tasks[:MAX_DECOMPOSED_TASKS],
    )


def select_with_model(
    message: str,
    subagents: Sequence[SubagentSpec],
    gateway: ModelGateway | None,
    *,
    model: str | None = None,
) -> SubagentSelection | None:
    if gateway is None or not gateway.configured or not subagents or not message:
        return None
    system_prompt = "\n".join(
        [
            "You are a routing classifier.",
            'Choose the single best subagent for the user request, or "none".',
            'Return JSON only: {"name":"subagent_name_or_none","reason":"short reason","confidence":0-1}.',
        ]
    )
    parsed = _ask_for_json(gateway, system_prompt, _routing_user_prompt(message, subagents), model=model)
    if not parsed or not parsed.get("name"):
        return None
    name = str(parsed["name"]).strip()
    if name.lower() == NO_SUBAGENT:
        return None
    match = next((spec for spec in subagents if spec.name == name), None)
    if match is None:
        return None
    try:
        confidence = float(parsed.get("confidence") or 0)
    except (TypeError, ValueError):
        return None
    if confidence < MIN_MODEL_CONFIDENCE:
        return None
    return SubagentSelection(
        subagent=match,
        score=confidence * 10,
        reason=str(parsed.get("reason") or "").strip(),
    )


def build_auto_subagent_prompt(user_message: str) -> str:
    return "\n".join(
        [
            "You are running as an auto-selected subagent.",
            "Focus on producing a concise, actionable summary for the main agent.",
            "",
            "User request:",
            user_message,
        ]
    )


def build_subagent_batch_prompt(user_message: str, tasks: Sequence[PlannedSubtask]) -> str:
    lines = [f"- {task.title + ': ' if task.title else ''}{task.prompt}" for task in tasks]
    return "\n".join(
        [
            build_auto_subagent_prompt(user_message),
            "",
            "Your assigned subtasks:",
            *(lines or ["- (no tasks provided)"]),
        ]
    )


def extract_json_block(text: str | None) -> dict[str, Any] | None:
    if not text:
        return None
    first = text.find("{")
    last = text.rfind("}")
    if first == -1 or last <= first:
        return None
    try:
        parsed = json.loads(text[first : last + 1])
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def _routing_user_prompt(message: str, subagents: Sequence[SubagentSpec]) -> str:
    listing = "\n".join(f"- {spec.name}: {spec.description or 'No description'}" for spec in subagents)
    return "\n".join(["User request:", message, "", "Available subagents:", listing])


def _ask_for_json(
    gateway: ModelGateway,
    system_prompt: str,
    user_prompt: str,
    *,
    model: str | None,
) -> dict[str, Any] | None:
    # Routing is advisory: a failed classifier call means "no routing".
    try:
        response = gateway.invoke(
            [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            model=model,
        )
    except Exception as exc:  # noqa: BLE001
        logger.warning("subagent_router event=model_call_failed reason=%s", exc)
        return None
    return extract_json_block(response.content)
