"""Single entry point for model requests."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

from agent_runtime.errors import ConfigurationError, is_retryable_status
from agent_runtime.llm.backend import ModelBackend, ModelResponse
from agent_runtime.llm.credentials import CredentialProfile, CredentialRotationManager

logger = logging.getLogger(__name__)

MAX_RETRIES = 5
BASE_DELAY_S = 3.0


class ModelGateway:
    """Route a request through the credential pool, or a single credential.

    With a non-empty pool every request goes through failover. Otherwise the
    fallback credential is retried with exponential backoff on rate limits
    and server errors only.
    """

    def __init__(
        self,
        *,
        backend: ModelBackend,
        credentials: CredentialRotationManager | None = None,
        fallback_profile: CredentialProfile | None = None,
        max_retries: int = MAX_RETRIES,
        base_delay_s: float = BASE_DELAY_S,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.backend = backend
        self.credentials = credentials
        self.fallback_profile = fallback_profile
        self.max_retries = max(1, min(max_retries, MAX_RETRIES))
        self.base_delay_s = max(0.0, base_delay_s)
        self._sleep = sleep

    @property
    def configured(self) -> bool:
        pool_size = self.credentials.size if self.credentials is not None else 0
        return pool_size > 0 or self.fallback_profile is not None

    def invoke(
        self,
        messages: list[dict[str, Any]],
        capabilities: list[dict[str, Any]] | None = None,
        tool_choice: str = "auto",
        *,
        model: str | None = None,
    ) -> ModelResponse:
        def _request(profile: CredentialProfile) -> ModelResponse:
            return self.backend.complete(
                profile,
                messages=messages,
                tools=capabilities or None,
                tool_choice=tool_choice,
                model=model,
            )

        if self.credentials is not None and self.credentials.size > 0:
            return self.credentials.execute_with_failover(_request)

        if self.fallback_profile is None:
            raise ConfigurationError(
                "No model credentials configured. Set DEEPSEEK_API_KEY or AGENT_RUNTIME_LLM_API_KEY."
            )
        return self._invoke_with_retry(_request, self.fallback_profile)

    def _invoke_with_retry(
        self,
        request_fn: Callable[[CredentialProfile], ModelResponse],
        profile: CredentialProfile,
    ) -> ModelResponse:
        last_error: Exception | None = None
        for attempt in range(self.max_retries):
            try:
                return request_fn(profile)
            except Exception as exc:
                if not is_retryable_status(exc):
                    raise
                last_error = exc
                delay = self.base_delay_s * (2**attempt)
                logger.warning(
                    "model_request event=retry attempt=%d/%d delay_s=%.1f reason=%s",
                    attempt + 1,
                    self.max_retries,
                    delay,
                    exc,
                )
                if attempt < self.max_retries - 1:
                    self._sleep(delay)
        if last_error is None:
            raise RuntimeError("Model request failed with unknown error")
        raise last_error
