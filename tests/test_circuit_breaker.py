from typing import List
from unittest.mock import AsyncMock, patch

import pytest

from coreason_free_fleet.circuit_breaker import (
    FAILURE_THRESHOLD,
    RESET_TIMEOUT_SECONDS,
    CircuitBreaker,
    CircuitBreakerOpenError,
    CircuitState,
)


async def _fail() -> None:
    raise ConnectionError("provider unreachable")


async def _trip(breaker: CircuitBreaker) -> None:
    for _ in range(breaker.threshold):
        with pytest.raises(ConnectionError):
            await breaker.execute(_fail)


def test_defaults() -> None:
    breaker = CircuitBreaker()
    assert breaker.threshold == FAILURE_THRESHOLD == 3
    assert breaker.reset_timeout == RESET_TIMEOUT_SECONDS
    assert breaker.state == CircuitState.CLOSED
    assert breaker.failures == 0


@pytest.mark.asyncio
async def test_success_passes_result_through() -> None:
    breaker = CircuitBreaker("groq")
    assert await breaker.execute(AsyncMock(return_value=42)) == 42
    assert breaker.state == CircuitState.CLOSED
    assert breaker.failures == 0


@pytest.mark.asyncio
async def test_wrapped_error_is_reraised_unchanged() -> None:
    breaker = CircuitBreaker("groq")
    with pytest.raises(ConnectionError, match="provider unreachable"):
        await breaker.execute(_fail)
    assert breaker.failures == 1
    assert breaker.state == CircuitState.CLOSED


@pytest.mark.asyncio
async def test_opens_after_threshold_and_rejects_without_calling() -> None:
    breaker = CircuitBreaker("groq", threshold=3)

    # Two failures keep the circuit closed
    for _ in range(2):
        with pytest.raises(ConnectionError):
            await breaker.execute(_fail)
    assert breaker.state == CircuitState.CLOSED

    with pytest.raises(ConnectionError):
        await breaker.execute(_fail)
    assert breaker.state == CircuitState.OPEN
    assert breaker.failures == 3

    wrapped = AsyncMock(return_value="never")
    with pytest.raises(CircuitBreakerOpenError) as exc_info:
        await breaker.execute(wrapped)
    wrapped.assert_not_called()
    assert exc_info.value.name == "groq"
    assert "groq" in str(exc_info.value)


@pytest.mark.asyncio
async def test_open_error_is_distinct_from_wrapped_errors() -> None:
    breaker = CircuitBreaker("groq", threshold=1)
    with pytest.raises(ConnectionError):
        await breaker.execute(_fail)
    with pytest.raises(CircuitBreakerOpenError) as exc_info:
        await breaker.execute(_fail)
    assert not isinstance(exc_info.value, ConnectionError)


@pytest.mark.asyncio
async def test_success_resets_consecutive_failures() -> None:
    breaker = CircuitBreaker("groq", threshold=3)
    for _ in range(2):
        with pytest.raises(ConnectionError):
            await breaker.execute(_fail)

    await breaker.execute(AsyncMock(return_value="ok"))
    assert breaker.failures == 0

    # The count restarts, so two more failures do not open the circuit
    for _ in range(2):
        with pytest.raises(ConnectionError):
            await breaker.execute(_fail)
    assert breaker.state == CircuitState.CLOSED


@pytest.mark.asyncio
async def test_half_open_trial_success_closes_circuit() -> None:
    breaker = CircuitBreaker("groq", threshold=3, reset_timeout=30.0)

    with patch("time.time") as mock_time:
        mock_time.return_value = 1000.0
        await _trip(breaker)
        assert breaker.state == CircuitState.OPEN

        # Still cooling down
        mock_time.return_value = 1000.0 + 29.0
        with pytest.raises(CircuitBreakerOpenError):
            await breaker.execute(AsyncMock())

        mock_time.return_value = 1000.0 + 30.0
        observed: List[CircuitState] = []

        async def trial_call() -> str:
            observed.append(breaker.state)
            return "recovered"

        assert await breaker.execute(trial_call) == "recovered"

    assert observed == [CircuitState.HALF_OPEN]
    assert breaker.state == CircuitState.CLOSED
    assert breaker.failures == 0


@pytest.mark.asyncio
async def test_half_open_trial_failure_reopens_circuit() -> None:
    breaker = CircuitBreaker("groq", threshold=3, reset_timeout=30.0)

    with patch("time.time") as mock_time:
        mock_time.return_value = 1000.0
        await _trip(breaker)

        mock_time.return_value = 1031.0
        with pytest.raises(ConnectionError):
            await breaker.execute(_fail)
        assert breaker.state == CircuitState.OPEN

        # The cooldown restarts from the failed trial call
        mock_time.return_value = 1040.0
        with pytest.raises(CircuitBreakerOpenError):
            await breaker.execute(AsyncMock())


@pytest.mark.asyncio
async def test_reset() -> None:
    breaker = CircuitBreaker("groq", threshold=1)
    with pytest.raises(ConnectionError):
        await breaker.execute(_fail)
    assert breaker.state == CircuitState.OPEN

    breaker.reset()
    assert breaker.state == CircuitState.CLOSED
    assert breaker.failures == 0
    assert await breaker.execute(AsyncMock(return_value=1)) == 1
