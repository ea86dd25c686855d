"""Human-in-the-loop approval for risky capability invocations."""

from agent_runtime.approval.gate import APPROVAL_MODES, ApprovalDecision, ApprovalGate, PendingApproval

__all__ = ["APPROVAL_MODES", "ApprovalDecision", "ApprovalGate", "PendingApproval"]
