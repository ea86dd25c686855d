"""Prompt text used by the orchestration loop."""

from __future__ import annotations

from collections.abc import Sequence

from agent_runtime.subagents.registry import SubagentSpec

DEFAULT_SYSTEM_PROMPT = """You are an autonomous assistant that completes tasks step by step using the capabilities provided to you.

## How to work:
1. PLAN: Before acting, briefly state your plan for the current step.
2. ACT: Call the appropriate capability to make progress.
3. OBSERVE: Analyze the results to determine next steps.
4. REPEAT: Continue until the task is fully complete.

## Rules:
- Break complex tasks into small, manageable steps.
- If a capability call fails or is denied, try an alternative approach.
- Never fabricate information; verify through capabilities where possible.
- When you are done, reply without calling capabilities and give a clear summary of what was accomplished."""

EXHAUSTION_PROMPT = (
    "You have used all available steps. Please provide your final answer now with everything "
    "you have gathered so far. Summarize what was accomplished and any remaining steps the user "
    "could take."
)
EXHAUSTION_FALLBACK = (
    "Task completed. The agent used all available steps to work on your request."
)
EMPTY_COMPLETION_FALLBACK = "Task completed."
FORCED_COMPLETION_FALLBACK = (
    "Task stopped early because the context window is nearly full."
)


def subagent_system_prompt(spec: SubagentSpec) -> str:
    return "\n\n".join(
        [
            spec.system_prompt,
            (
                f"You are running as the '{spec.name}' subagent in an isolated context. "
                "You cannot see the main agent's conversation. When you finish, reply with a "
                "concise, self-contained result for the main agent."
            ),
        ]
    )


def subagent_results_message(results: Sequence[tuple[str, str]]) -> str:
    sections = [f"### {name}\n{output.strip() or '(no output)'}" for name, output in results]
    return "\n\n".join(
        [
            "<system>Specialized subagents already worked on this request. "
            "Use their results below when answering; do not repeat their work.</system>",
            *sections,
        ]
    )
