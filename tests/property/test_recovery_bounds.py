"""Property-based tests for recovery attempt bounds."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from hypothesis import given, strategies as st, settings, HealthCheck

from eliza_orchestrator.managers import RecoveryConfig, RecoveryEngine


async def _no_sleep(seconds):
    return None


@pytest.mark.property
@pytest.mark.asyncio
@given(st.integers(min_value=0, max_value=4), st.integers(min_value=0, max_value=8))
@settings(suppress_health_check=[HealthCheck.function_scoped_fixture], max_examples=50)
async def test_invocations_are_bounded(max_attempts: int, failures: int):
    """Property: An operation runs at most max_attempts + 1 times."""
    manager = MagicMock()
    manager.restart = AsyncMock()
    engine = RecoveryEngine(
        manager,
        RecoveryConfig(recovery_delay=0.0, max_attempts=max_attempts),
        sleep=_no_sleep,
    )
    calls = []

    async def operation():
        calls.append(None)
        if len(calls) <= failures:
            raise ConnectionError("tcp connect error: Connection refused")
        return "ok"

    result = await engine.execute(operation, "probe")

    assert len(calls) == result.attempts_made
    assert result.attempts_made <= max_attempts + 1
    assert manager.restart.await_count == result.attempts_made - 1
    assert result.ok == (failures <= max_attempts)
    assert result.recovery_attempted == (min(failures, max_attempts) > 0)


@pytest.mark.property
@pytest.mark.asyncio
@given(st.text(max_size=40).filter(lambda s: "connection" not in s.lower() and "tcp" not in s.lower()))
@settings(suppress_health_check=[HealthCheck.function_scoped_fixture], max_examples=50)
async def test_non_recoverable_runs_once(message: str):
    """Property: Non-connection failures never trigger a restart."""
    manager = MagicMock()
    manager.restart = AsyncMock()
    engine = RecoveryEngine(manager, RecoveryConfig(recovery_delay=0.0), sleep=_no_sleep)

    result = await engine.execute(AsyncMock(side_effect=ValueError(message)), "probe")

    assert not result.ok
    assert result.attempts_made == 1
    manager.restart.assert_not_awaited()
