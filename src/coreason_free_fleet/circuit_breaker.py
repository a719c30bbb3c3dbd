# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_free_fleet

import threading
import time
from enum import Enum
from typing import Awaitable, Callable, Optional, TypeVar

from coreason_free_fleet.utils.logger import logger

T = TypeVar("T")

# Configuration constants
FAILURE_THRESHOLD = 3
RESET_TIMEOUT_SECONDS = 30.0


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreakerOpenError(RuntimeError):
    """Raised without invoking the wrapped call while the breaker is cooling down."""

    def __init__(self, name: str, retry_after: float) -> None:
        super().__init__(f"Circuit breaker '{name}' is OPEN (retry in {retry_after:.1f}s)")
        self.name = name
        self.retry_after = retry_after


class CircuitBreaker:
    """
    Guards a single fallible async dependency.
    - CLOSED: calls pass through; consecutive failures are counted.
    - OPEN: once failures reach the threshold, calls are rejected until
      `reset_timeout` seconds have passed since the last failure.
    - HALF_OPEN: one trial call; success closes the circuit, failure re-opens it.
    """

    def __init__(
        self,
        name: str = "default",
        threshold: int = FAILURE_THRESHOLD,
        reset_timeout: float = RESET_TIMEOUT_SECONDS,
    ) -> None:
        self.name = name
        self.threshold = threshold
        self.reset_timeout = reset_timeout
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._last_failure_time: Optional[float] = None

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failures(self) -> int:
        return self._failures

    async def execute(self, fn: Callable[[], Awaitable[T]]) -> T:
        """
        Runs `fn` through the breaker. Any exception raised by `fn` counts as a
        failure and is re-raised unchanged.
        """
        self._before_call()
        try:
            result = await fn()
        except Exception:
            self._on_failure()
            raise
        self._on_success()
        return result

    def reset(self) -> None:
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failures = 0
            self._last_failure_time = None

    def _before_call(self) -> None:
        with self._lock:
            if self._state != CircuitState.OPEN:
                return
            now = time.time()
            elapsed = now - (self._last_failure_time or now)
            if elapsed >= self.reset_timeout:
                self._state = CircuitState.HALF_OPEN
                logger.info(f"Circuit breaker '{self.name}' cooldown expired. Probing in HALF_OPEN.")
                return
        raise CircuitBreakerOpenError(self.name, self.reset_timeout - elapsed)

    def _on_success(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                logger.info(f"Circuit breaker '{self.name}' recovered. Closing circuit.")
            self._failures = 0
            self._state = CircuitState.CLOSED

    def _on_failure(self) -> None:
        with self._lock:
            self._failures += 1
            self._last_failure_time = time.time()

            if self._state == CircuitState.HALF_OPEN or self._failures >= self.threshold:
                if self._state != CircuitState.OPEN:
                    logger.warning(
                        f"Circuit breaker '{self.name}' opened after {self._failures} failures. "
                        f"Cooling down for {self.reset_timeout}s"
                    )
                self._state = CircuitState.OPEN
            else:
                logger.debug(f"Circuit breaker '{self.name}' failure count: {self._failures}")
