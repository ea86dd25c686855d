"""Error taxonomy shared by the gateway, registry, approval gate and loop."""

from __future__ import annotations

FAILOVER_CODES = {"connection_reset", "timeout", "insufficient_quota"}
TRANSIENT_CODES = {"connection_reset", "timeout"}


class AgentRuntimeError(Exception):
    """Base class for errors raised by the agent runtime."""


class ConfigurationError(AgentRuntimeError):
    """Raised when required runtime configuration is missing or invalid."""


class BackendError(AgentRuntimeError):
    """A failed model backend request.

    ``status_code`` is the HTTP status (0 for network-level failures) and
    ``code`` an optional machine-readable reason such as ``connection_reset``.
    """

    def __init__(self, message: str, *, status_code: int = 0, code: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code


class NoAvailableCredentialsError(BackendError):
    """Raised when every credential attempt in the pool has been used up."""

    def __init__(self, message: str = "No available credentials", *, last_error: Exception | None = None) -> None:
        status_code = last_error.status_code if isinstance(last_error, BackendError) else 0
        code = last_error.code if isinstance(last_error, BackendError) else None
        super().__init__(message, status_code=status_code, code=code)
        self.last_error = last_error


class TaskNotFoundError(AgentRuntimeError, KeyError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id

    def __str__(self) -> str:
        return str(self.args[0])


class TaskStateError(AgentRuntimeError):
    """Raised when an operation is not valid for the task's lifecycle state."""


class UnknownCapabilityError(AgentRuntimeError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Unknown capability: {name}")
        self.name = name


class CapabilityNotAllowedError(AgentRuntimeError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Capability not allowed in this context: {name}")
        self.name = name


class CapabilityExecutionError(AgentRuntimeError):
    """A capability ran (or tried to) and failed; fed back to the model."""


class ApprovalNotFoundError(AgentRuntimeError, KeyError):
    def __init__(self, task_id: str, call_id: str) -> None:
        super().__init__(f"No pending approval for task={task_id} call={call_id}")
        self.task_id = task_id
        self.call_id = call_id

    def __str__(self) -> str:
        return str(self.args[0])


class SubagentError(AgentRuntimeError):
    pass


class SubagentNotFoundError(SubagentError, KeyError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Subagent not found: {name}")
        self.name = name

    def __str__(self) -> str:
        return str(self.args[0])


class SubagentConflictError(SubagentError):
    pass


class InvalidSubagentError(SubagentError, ValueError):
    pass


def is_failover_error(exc: BaseException) -> bool:
    """Return True when a credential should be cooled down and another tried."""
    if not isinstance(exc, BackendError):
        return False
    status = exc.status_code
    if status in (401, 403, 429):
        return True
    if 500 <= status < 600:
        return True
    return exc.code in FAILOVER_CODES


def is_transient_error(exc: BaseException) -> bool:
    """Return True for rate limits, server errors and dropped connections."""
    if isinstance(exc, NoAvailableCredentialsError):
        return exc.last_error is not None and is_transient_error(exc.last_error)
    if not isinstance(exc, BackendError):
        return False
    if exc.status_code == 429 or 500 <= exc.status_code < 600:
        return True
    return exc.code in TRANSIENT_CODES


def is_retryable_status(exc: BaseException) -> bool:
    """Single-credential retry policy: rate limits and server errors only."""
    if not isinstance(exc, BackendError):
        return False
    return exc.status_code == 429 or exc.status_code >= 500
