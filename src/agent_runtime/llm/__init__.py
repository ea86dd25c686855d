"""Model backend access: credentials, transport and the invocation gateway."""

from agent_runtime.llm.backend import (
    ModelBackend,
    ModelResponse,
    OpenAIChatBackend,
    ToolInvocation,
    Usage,
)
from agent_runtime.llm.credentials import CredentialProfile, CredentialRotationManager
from agent_runtime.llm.gateway import ModelGateway

__all__ = [
    "CredentialProfile",
    "CredentialRotationManager",
    "ModelBackend",
    "ModelGateway",
    "ModelResponse",
    "OpenAIChatBackend",
    "ToolInvocation",
    "Usage",
]
