"""Human approval for risky capability invocations.

Modes:
- ask: every risky invocation waits for a human decision.
- auto: the first one waits; after one approval the rest of the task is approved.
- yolo: nothing waits.

A waiter blocks on a ``threading.Event`` with a deadline and resolves as a
denial when the deadline passes.
"""

from __future__ import annotations

import logging
import re
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Literal

from agent_runtime.errors import ApprovalNotFoundError

logger = logging.getLogger(__name__)

ApprovalMode = Literal["ask", "auto", "yolo"]
APPROVAL_MODES: frozenset[str] = frozenset({"ask", "auto", "yolo"})
DEFAULT_APPROVAL_TIMEOUT_S = 5 * 60.0

ApprovalRule = Callable[[dict[str, Any]], bool]

SHELL_LANGUAGES = {"bash", "shell", "sh"}
DESTRUCTIVE_SHELL_PATTERNS = [
    re.compile(r"rm\s+-rf"),
    re.compile(r"rm\s+--recursive\s+--force"),
    re.compile(r"dd\s+if="),
    re.compile(r"mkfs\."),
    re.compile(r":\(\)\s*\{"),
    re.compile(r">\s*/dev/sd"),
    re.compile(r"chmod\s+777"),
    re.compile(r"curl.*\|\s*bash"),
    re.compile(r"wget.*\|\s*bash"),
]


def _code_executor_rule(args: dict[str, Any]) -> bool:
    language = str(args.get("language") or "bash").lower()
    if language not in SHELL_LANGUAGES:
        return False
    code = str(args.get("code") or "")
    return any(pattern.search(code) for pattern in DESTRUCTIVE_SHELL_PATTERNS)


def _file_manager_rule(args: dict[str, Any]) -> bool:
    return args.get("action") in {"write", "delete"}


DEFAULT_RULES: dict[str, ApprovalRule] = {
    "code_executor": _code_executor_rule,
    "file_manager": _file_manager_rule,
    "project_scaffold": lambda _args: True,
}


@dataclass(frozen=True)
class ApprovalDecision:
    approved: bool
    mode: str
    reason: str | None = None


@dataclass
class PendingApproval:
    call_id: str
    tool_name: str
    args: dict[str, Any]
    deadline: float
    event: threading.Event = field(default_factory=threading.Event)
    decision: ApprovalDecision | None = None

    def resolve(self, decision: ApprovalDecision) -> None:
        self.decision = decision
        self.event.set()


@dataclass
class _TaskApprovalState:
    mode: str
    has_approved_once: bool = False
    pending: dict[str, PendingApproval] = field(default_factory=dict)


class ApprovalGate:
    def __init__(
        self,
        *,
        default_mode: str = "ask",
        timeout_s: float = DEFAULT_APPROVAL_TIMEOUT_S,
        rules: dict[str, ApprovalRule] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.default_mode = _validate_mode(default_mode)
        self.timeout_s = timeout_s
        self._rules: dict[str, ApprovalRule] = dict(DEFAULT_RULES if rules is None else rules)
        self._clock = clock
        self._states: dict[str, _TaskApprovalState] = {}
        self._lock = threading.Lock()

    def register_rule(self, tool_name: str, rule: ApprovalRule) -> None:
        with self._lock:
            self._rules[tool_name] = rule

    def requires_approval(self, tool_name: str, args: dict[str, Any]) -> bool:
        with self._lock:
            rule = self._rules.get(tool_name)
        return bool(rule(args)) if rule is not None else False

    def set_mode(self, task_id: str, mode: str) -> None:
        mode = _validate_mode(mode)
        with self._lock:
            state = self._states.get(task_id)
            if state is None:
                self._states[task_id] = _TaskApprovalState(mode=mode)
            else:
                state.mode = mode
        logger.info("approval event=mode_set task_id=%s mode=%s", task_id, mode)

    def get_mode(self, task_id: str) -> str:
        with self._lock:
            state = self._states.get(task_id)
            return state.mode if state is not None else self.default_mode

    def request_approval(
        self,
        task_id: str,
        call_id: str,
        tool_name: str,
        args: dict[str, Any],
        *,
        on_pending: Callable[[PendingApproval], None] | None = None,
        timeout_s: float | None = None,
        is_cancelled: Callable[[], bool] | None = None,
    ) -> ApprovalDecision:
        """Block until ``call_id`` is approved, denied or times out.

        ``is_cancelled`` is consulted under the gate lock, so a teardown that
        flags the task before calling ``cleanup`` can never leave a waiter behind.
        """
        wait_s = self.timeout_s if timeout_s is None else timeout_s
        with self._lock:
            state = self._states.get(task_id)
            if state is None:
                state = _TaskApprovalState(mode=self.default_mode)
                self._states[task_id] = state
            if is_cancelled is not None and is_cancelled():
                return ApprovalDecision(approved=False, mode=state.mode, reason="Task cancelled")
            if state.mode == "yolo":
                logger.info("approval event=auto_approved task_id=%s tool=%s mode=yolo", task_id, tool_name)
                return ApprovalDecision(approved=True, mode="yolo")
            if state.mode == "auto" and state.has_approved_once:
                logger.info("approval event=auto_approved task_id=%s tool=%s mode=auto", task_id, tool_name)
                return ApprovalDecision(approved=True, mode="auto")
            pending = PendingApproval(
                call_id=call_id,
                tool_name=tool_name,
                args=dict(args),
                deadline=self._clock() + wait_s,
            )
            state.pending[call_id] = pending
            mode = state.mode

        logger.info("approval event=requested task_id=%s call_id=%s tool=%s", task_id, call_id, tool_name)
        if on_pending is not None:
            on_pending(pending)

        if not pending.event.wait(wait_s):
            timed_out = False
            with self._lock:
                state = self._states.get(task_id)
                if state is not None and state.pending.get(call_id) is pending:
                    del state.pending[call_id]
                # A decision may have landed between the timeout and the lock.
                if pending.decision is None:
                    timed_out = True
                    pending.resolve(
                        ApprovalDecision(
                            approved=False,
                            mode=mode,
                            reason=f"Approval timeout ({wait_s:g} seconds)",
                        )
                    )
            if timed_out:
                logger.warning(
                    "approval event=timeout task_id=%s call_id=%s tool=%s timeout_s=%.1f",
                    task_id,
                    call_id,
                    tool_name,
                    wait_s,
                )
        return pending.decision or ApprovalDecision(approved=False, mode=mode)

    def approve(self, task_id: str, call_id: str) -> None:
        with self._lock:
            state = self._states.get(task_id)
            pending = state.pending.pop(call_id, None) if state is not None else None
            if state is None or pending is None:
                raise ApprovalNotFoundError(task_id, call_id)
            state.has_approved_once = True
            pending.resolve(ApprovalDecision(approved=True, mode=state.mode))
        logger.info("approval event=approved task_id=%s call_id=%s tool=%s", task_id, call_id, pending.tool_name)

    def deny(self, task_id: str, call_id: str, reason: str = "User denied approval") -> None:
        with self._lock:
            state = self._states.get(task_id)
            pending = state.pending.pop(call_id, None) if state is not None else None
            if state is None or pending is None:
                raise ApprovalNotFoundError(task_id, call_id)
            pending.resolve(ApprovalDecision(approved=False, mode=state.mode, reason=reason))
        logger.info("approval event=denied task_id=%s call_id=%s tool=%s", task_id, call_id, pending.tool_name)

    def pending(self, task_id: str) -> list[dict[str, Any]]:
        with self._lock:
            state = self._states.get(task_id)
            entries = list(state.pending.values()) if state is not None else []
        now = self._clock()
        return [
            {
                "call_id": entry.call_id,
                "tool_name": entry.tool_name,
                "args": entry.args,
                "expires_in_s": round(max(0.0, entry.deadline - now), 3),
            }
            for entry in entries
        ]

    def cleanup(self, task_id: str) -> int:
        """Deny every outstanding request for ``task_id`` and drop its state."""
        with self._lock:
            state = self._states.pop(task_id, None)
            entries = list(state.pending.values()) if state is not None else []
            for entry in entries:
                entry.resolve(ApprovalDecision(approved=False, mode=state.mode, reason="Task ended"))
        if entries:
            logger.info("approval event=cleanup task_id=%s denied=%d", task_id, len(entries))
        return len(entries)


def _validate_mode(mode: str) -> str:
    normalized = mode.lower().strip()
    if normalized not in APPROVAL_MODES:
        raise ValueError(f"Unknown approval mode: {mode}")
    return normalized
