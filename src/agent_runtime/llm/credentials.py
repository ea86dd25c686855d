"""Credential pool with priority ordering, cooldowns and failover.

A profile that fails with a failover-worthy error (rate limit, auth, server
error, dropped connection) is put in cooldown for ``base * min(failures, 5)``
seconds. Cooldown expiry is checked lazily whenever availability is queried;
there are no timers.

The pool is shared by every task using the same backend, so selection and
state transitions happen under one lock. Requests and cooldown waits run
outside it.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, Literal, TypeVar

from agent_runtime.errors import NoAvailableCredentialsError, is_failover_error

logger = logging.getLogger(__name__)

T = TypeVar("T")
ProfileState = Literal["active", "cooldown", "disabled"]

DEFAULT_COOLDOWN_S = 5 * 60.0
MAX_COOLDOWN_MULTIPLIER = 5
MAX_COOLDOWN_WAIT_S = 30.0

PROVIDER_DEFAULTS: dict[str, dict[str, str]] = {
    "deepseek": {"base_url": "https://api.deepseek.com/v1", "model": "deepseek-chat"},
    "openai": {"base_url": "https://api.openai.com/v1", "model": "gpt-4o-mini"},
    "openrouter": {"base_url": "https://openrouter.ai/api/v1", "model": "deepseek/deepseek-chat"},
    "groq": {"base_url": "https://api.groq.com/openai/v1", "model": "llama-3.1-70b-versatile"},
    "moonshot": {"base_url": "https://api.moonshot.ai/v1", "model": "kimi-k2.5"},
}

ENV_PROFILE_KEYS: tuple[tuple[str, str, int], ...] = (
    ("DEEPSEEK_API_KEY", "deepseek", 0),
    ("DEEPSEEK_API_KEY_2", "deepseek", 1),
    ("DEEPSEEK_API_KEY_3", "deepseek", 2),
    ("OPENAI_API_KEY", "openai", 10),
    ("OPENAI_API_KEY_2", "openai", 11),
    ("OPENROUTER_API_KEY", "openrouter", 20),
    ("GROQ_API_KEY", "groq", 30),
)


@dataclass
class CredentialProfile:
    id: str
    api_key: str
    provider: str = "deepseek"
    name: str = ""
    model: str = ""
    base_url: str = ""
    priority: int = 0
    state: ProfileState = "active"
    failure_count: int = 0
    success_count: int = 0
    cooldown_until: float | None = None
    last_used: float | None = None
    last_error: str | None = None

    def __post_init__(self) -> None:
        defaults = PROVIDER_DEFAULTS.get(self.provider, {})
        self.name = self.name or self.id
        self.model = self.model or defaults.get("model", "")
        self.base_url = self.base_url or defaults.get("base_url", "")

    def is_available(self, now: float) -> bool:
        if self.state == "disabled":
            return False
        if self.state == "cooldown":
            if self.cooldown_until is None or now >= self.cooldown_until:
                self.state = "active"
                self.cooldown_until = None
                return True
            return False
        return True

    def remaining_cooldown(self, now: float) -> float:
        if self.cooldown_until is None:
            return 0.0
        return max(0.0, self.cooldown_until - now)

    def status(self, now: float) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "provider": self.provider,
            "model": self.model,
            "priority": self.priority,
            "state": self.state,
            "is_available": self.is_available(now),
            "failure_count": self.failure_count,
            "success_count": self.success_count,
            "cooldown_remaining_s": round(self.remaining_cooldown(now), 3),
            "last_error": self.last_error,
        }


class CredentialRotationManager:
    def __init__(
        self,
        *,
        base_cooldown_s: float = DEFAULT_COOLDOWN_S,
        max_wait_s: float = MAX_COOLDOWN_WAIT_S,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.base_cooldown_s = base_cooldown_s
        self.max_wait_s = max_wait_s
        self._clock = clock
        self._sleep = sleep
        self._profiles: list[CredentialProfile] = []
        self._lock = threading.Lock()

    @classmethod
    def from_env(cls, environ: Mapping[str, str], **kwargs: Any) -> CredentialRotationManager:
        manager = cls(**kwargs)
        for env_key, provider, priority in ENV_PROFILE_KEYS:
            api_key = environ.get(env_key, "").strip()
            if not api_key:
                continue
            manager.add_profile(
                CredentialProfile(
                    id=env_key.lower().replace("_", "-"),
                    name=f"{provider} ({env_key})",
                    provider=provider,
                    api_key=api_key,
                    priority=priority,
                )
            )
        if manager.size == 0:
            logger.warning("credential_pool event=empty reason=no provider keys in environment")
        else:
            logger.info("credential_pool event=loaded profiles=%d", manager.size)
        return manager

    @property
    def size(self) -> int:
        with self._lock:
            return len(self._profiles)

    def profiles(self) -> list[CredentialProfile]:
        with self._lock:
            return list(self._profiles)

    def add_profile(self, profile: CredentialProfile) -> CredentialProfile:
        with self._lock:
            self._profiles.append(profile)
            # Stable sort keeps insertion order among equal priorities.
            self._profiles.sort(key=lambda item: item.priority)
        logger.info(
            "credential_pool event=profile_added profile=%s provider=%s priority=%d",
            profile.name,
            profile.provider,
            profile.priority,
        )
        return profile

    def disable(self, profile_id: str) -> None:
        with self._lock:
            for profile in self._profiles:
                if profile.id == profile_id:
                    profile.state = "disabled"
                    profile.cooldown_until = None
                    return
        raise KeyError(f"Unknown credential profile: {profile_id}")

    def get_next_profile(self) -> CredentialProfile | None:
        with self._lock:
            return self._select_locked(self._clock())

    def _select_locked(self, now: float) -> CredentialProfile | None:
        for profile in self._profiles:
            if profile.is_available(now):
                return profile

        best: CredentialProfile | None = None
        shortest = float("inf")
        for profile in self._profiles:
            if profile.state == "disabled":
                continue
            remaining = profile.remaining_cooldown(now)
            if remaining < shortest:
                shortest = remaining
                best = profile
        return best

    def mark_success(self, profile: CredentialProfile) -> None:
        with self._lock:
            profile.success_count += 1
            profile.failure_count = 0
            profile.last_used = self._clock()

    def mark_failure(
        self,
        profile: CredentialProfile,
        base_cooldown_s: float | None = None,
        *,
        error: BaseException | None = None,
    ) -> float:
        """Put ``profile`` in cooldown and return the cooldown length in seconds."""
        base = self.base_cooldown_s if base_cooldown_s is None else base_cooldown_s
        with self._lock:
            now = self._clock()
            profile.failure_count += 1
            profile.last_used = now
            profile.last_error = str(error) if error is not None else None
            cooldown = base * min(profile.failure_count, MAX_COOLDOWN_MULTIPLIER)
            if profile.state != "disabled":
                profile.state = "cooldown"
                profile.cooldown_until = now + cooldown
            failures = profile.failure_count
        logger.warning(
            "credential_pool event=cooldown profile=%s cooldown_s=%.1f failures=%d",
            profile.name,
            cooldown,
            failures,
        )
        return cooldown

    def execute_with_failover(self, request_fn: Callable[[CredentialProfile], T]) -> T:
        max_attempts = self.size * 2
        last_error: Exception | None = None

        for attempt in range(max_attempts):
            with self._lock:
                now = self._clock()
                profile = self._select_locked(now)
                wait_s = 0.0
                if profile is not None and not profile.is_available(now):
                    wait_s = profile.remaining_cooldown(now)
            if profile is None:
                break
            if 0 < wait_s < self.max_wait_s:
                logger.info(
                    "credential_pool event=wait_cooldown profile=%s wait_s=%.2f",
                    profile.name,
                    wait_s,
                )
                self._sleep(wait_s)

            logger.info(
                "credential_pool event=attempt profile=%s attempt=%d/%d",
                profile.name,
                attempt + 1,
                max_attempts,
            )
            try:
                result = request_fn(profile)
            except Exception as exc:
                if not is_failover_error(exc):
                    raise
                last_error = exc
                logger.warning(
                    "credential_pool event=failover profile=%s reason=%s", profile.name, exc
                )
                self.mark_failure(profile, error=exc)
                continue
            self.mark_success(profile)
            return result

        raise NoAvailableCredentialsError(
            "No available credentials" if last_error is None else f"No available credentials: {last_error}",
            last_error=last_error,
        )

    def status(self) -> dict[str, Any]:
        with self._lock:
            now = self._clock()
            profiles = [profile.status(now) for profile in self._profiles]
        return {
            "total_profiles": len(profiles),
            "available_profiles": sum(1 for item in profiles if item["is_available"]),
            "profiles": profiles,
        }

    def reset_all(self) -> None:
        with self._lock:
            for profile in self._profiles:
                if profile.state != "disabled":
                    profile.state = "active"
                profile.cooldown_until = None
                profile.failure_count = 0
