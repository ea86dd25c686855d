import time
from concurrent.futures import ThreadPoolExecutor

import pytest
from fakes import ManualClock

from agent_runtime.errors import BackendError, NoAvailableCredentialsError
from agent_runtime.llm.credentials import CredentialProfile, CredentialRotationManager


def _manager(clock: ManualClock, *profiles: CredentialProfile) -> CredentialRotationManager:
    manager = CredentialRotationManager(base_cooldown_s=60.0, max_wait_s=30.0, clock=clock, sleep=clock.sleep)
    for profile in profiles:
        manager.add_profile(profile)
    return manager


def test_next_profile_prefers_lowest_priority_and_skips_disabled(clock: ManualClock) -> None:
    manager = _manager(
        clock,
        CredentialProfile(id="backup", api_key="k2", priority=5),
        CredentialProfile(id="primary", api_key="k1", priority=0),
    )
    assert manager.get_next_profile().id == "primary"

    manager.disable("primary")
    assert manager.get_next_profile().id == "backup"

    manager.disable("backup")
    assert manager.get_next_profile() is None


def test_cooldown_grows_with_failures_and_caps_at_five(clock: ManualClock) -> None:
    profile = CredentialProfile(id="only", api_key="k")
    manager = _manager(clock, profile)

    durations = [manager.mark_failure(profile) for _ in range(7)]

    assert durations == [60.0, 120.0, 180.0, 240.0, 300.0, 300.0, 300.0]
    assert profile.state == "cooldown"


def test_expired_cooldown_is_available_without_reset(clock: ManualClock) -> None:
    primary = CredentialProfile(id="primary", api_key="k1", priority=0)
    backup = CredentialProfile(id="backup", api_key="k2", priority=1)
    manager = _manager(clock, primary, backup)

    manager.mark_failure(primary)
    assert manager.get_next_profile().id == "backup"

    clock.advance(61)
    assert manager.get_next_profile().id == "primary"
    assert primary.state == "active"


def test_all_in_cooldown_returns_soonest_to_recover(clock: ManualClock) -> None:
    first = CredentialProfile(id="first", api_key="k1", priority=0)
    second = CredentialProfile(id="second", api_key="k2", priority=1)
    manager = _manager(clock, first, second)

    manager.mark_failure(first)
    manager.mark_failure(first)
    manager.mark_failure(second)

    assert manager.get_next_profile().id == "second"


def test_failover_moves_to_next_profile_on_rate_limit(clock: ManualClock) -> None:
    manager = _manager(
        clock,
        CredentialProfile(id="primary", api_key="k1", priority=0),
        CredentialProfile(id="backup", api_key="k2", priority=1),
    )
    attempts: list[str] = []

    def request(profile: CredentialProfile) -> str:
        attempts.append(profile.id)
        if profile.id == "primary":
            raise BackendError("rate limited", status_code=429)
        return "ok"

    assert manager.execute_with_failover(request) == "ok"
    assert attempts == ["primary", "backup"]
    status = {item["id"]: item for item in manager.status()["profiles"]}
    assert status["primary"]["state"] == "cooldown"
    assert status["backup"]["success_count"] == 1


def test_failover_does_not_retry_non_failover_errors(clock: ManualClock) -> None:
    manager = _manager(clock, CredentialProfile(id="primary", api_key="k1"))

    def request(_profile: CredentialProfile) -> str:
        raise BackendError("bad request", status_code=400)

    with pytest.raises(BackendError):
        manager.execute_with_failover(request)
    assert manager.get_next_profile().failure_count == 0


def test_failover_exhaustion_raises_with_last_error(clock: ManualClock) -> None:
    manager = _manager(clock, CredentialProfile(id="primary", api_key="k1"))

    def request(_profile: CredentialProfile) -> str:
        raise BackendError("upstream down", status_code=503)

    with pytest.raises(NoAvailableCredentialsError) as exc_info:
        manager.execute_with_failover(request)
    assert exc_info.value.status_code == 503
    assert isinstance(exc_info.value.last_error, BackendError)


def test_short_cooldown_is_waited_out(clock: ManualClock) -> None:
    manager = CredentialRotationManager(base_cooldown_s=5.0, max_wait_s=30.0, clock=clock, sleep=clock.sleep)
    manager.add_profile(CredentialProfile(id="only", api_key="k"))
    outcomes = iter([BackendError("reset", code="connection_reset"), None])

    def request(_profile: CredentialProfile) -> str:
        outcome = next(outcomes)
        if outcome is not None:
            raise outcome
        return "ok"

    assert manager.execute_with_failover(request) == "ok"
    assert clock.sleeps == [5.0]


def test_reset_all_clears_cooldowns_but_keeps_disabled(clock: ManualClock) -> None:
    cooling = CredentialProfile(id="cooling", api_key="k1")
    disabled = CredentialProfile(id="disabled", api_key="k2", priority=1)
    manager = _manager(clock, cooling, disabled)
    manager.mark_failure(cooling)
    manager.disable("disabled")

    manager.reset_all()

    assert cooling.state == "active"
    assert cooling.failure_count == 0
    assert disabled.state == "disabled"


def test_from_env_builds_profiles_in_priority_order() -> None:
    manager = CredentialRotationManager.from_env(
        {"OPENAI_API_KEY": "sk-openai", "DEEPSEEK_API_KEY": "sk-deepseek", "GROQ_API_KEY": " "}
    )

    profiles = manager.profiles()
    assert [profile.provider for profile in profiles] == ["deepseek", "openai"]
    assert profiles[0].base_url == "https://api.deepseek.com/v1"
    assert all("sk-" not in str(item) for item in manager.status()["profiles"])


def test_concurrent_failover_keeps_pool_counters_consistent() -> None:
    manager = CredentialRotationManager(base_cooldown_s=60.0, max_wait_s=0.0)
    flaky = manager.add_profile(CredentialProfile(id="flaky", api_key="k1", priority=0))
    steady = manager.add_profile(CredentialProfile(id="steady", api_key="k2", priority=1))
    manager.add_profile(CredentialProfile(id="revoked", api_key="k0", priority=-1))
    manager.disable("revoked")
    attempts: list[str] = []

    def _request(profile: CredentialProfile) -> str:
        attempts.append(profile.id)
        time.sleep(0.001)
        if profile.id == "flaky":
            raise BackendError("rate limited", status_code=429)
        return profile.id

    calls = 40
    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda _idx: manager.execute_with_failover(_request), range(calls)))

    assert results == ["steady"] * calls
    assert "revoked" not in attempts
    assert steady.success_count == calls
    assert flaky.failure_count + steady.success_count == len(attempts)
    assert flaky.state == "cooldown"
