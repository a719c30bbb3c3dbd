# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_free_fleet

import asyncio
import time
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from pydantic import BaseModel, Field

from coreason_free_fleet.config import DEFAULT_RACE_TIMEOUT
from coreason_free_fleet.models import CategoryConfig, RaceResult
from coreason_free_fleet.utils.logger import logger

Executor = Callable[[str], Awaitable[Any]]
ProgressCallback = Callable[[str, str, Optional[BaseException]], None]
FallbackCallback = Callable[[int, List[str]], None]

STARTED = "started"
COMPLETED = "completed"
FAILED = "failed"


class RacerConfig(BaseModel):
    timeout: float = Field(DEFAULT_RACE_TIMEOUT, gt=0)
    # -1 means unlimited fallback waves
    fallback_depth: int = Field(3, ge=-1)


class CandidateTimeoutError(TimeoutError):
    """A single candidate exceeded the per-candidate timeout."""


class RaceError(RuntimeError):
    """Every candidate of a race failed. `failures` holds one reason per candidate."""

    def __init__(self, race_id: str, failures: List[Tuple[str, str]]) -> None:
        details = "\n".join(f"  {candidate}: {reason}" for candidate, reason in failures)
        super().__init__(f"Race '{race_id}': all {len(failures)} candidates failed:\n{details}")
        self.race_id = race_id
        self.failures = failures


class RaceCancelledError(RaceError):
    """The race was cancelled externally before any candidate succeeded."""

    def __init__(self, race_id: str, failures: List[Tuple[str, str]]) -> None:
        super().__init__(race_id, failures)
        self.args = (f"Race '{race_id}' was cancelled",)


class AttemptsExhaustedError(RuntimeError):
    """Every fallback wave failed."""

    def __init__(self, attempts: List[RaceError]) -> None:
        reasons = "\n".join(str(a) for a in attempts)
        super().__init__(f"All {len(attempts)} race attempts exhausted:\n{reasons}")
        self.attempts = attempts


class FreeModelRacer:
    """
    Races an operation across candidate models and keeps the first success.
    Losing candidates are cancelled and awaited before the race returns.
    """

    def __init__(
        self,
        config: Optional[RacerConfig] = None,
        on_progress: Optional[ProgressCallback] = None,
        on_fallback: Optional[FallbackCallback] = None,
    ) -> None:
        self.config = config or RacerConfig()
        self.on_progress = on_progress
        self.on_fallback = on_fallback
        self._active_races: Dict[str, asyncio.Event] = {}

    async def race(self, candidates: List[str], executor: Executor, race_id: Optional[str] = None) -> RaceResult:
        """
        Runs `executor(candidate)` for every candidate concurrently.

        Returns:
            RaceResult for the first candidate to succeed (`duration` in ms from race start).

        Raises:
            ValueError: If `candidates` is empty.
            RaceError: If every candidate failed or timed out.
            RaceCancelledError: If the race was cancelled via `cancel_race`.
        """
        if not candidates:
            raise ValueError("Racer: No candidates provided for competition")

        race_id = race_id or f"race-{uuid.uuid4().hex[:12]}"
        cancel_event = asyncio.Event()
        self._active_races[race_id] = cancel_event
        logger.info(f"Racer: Starting race '{race_id}' with {len(candidates)} candidates")

        start = time.perf_counter()
        tasks: Dict["asyncio.Task[RaceResult]", str] = {
            asyncio.ensure_future(self._run_candidate(candidate, executor, start)): candidate
            for candidate in candidates
        }
        cancel_waiter = asyncio.ensure_future(cancel_event.wait())
        pending: Set["asyncio.Task[RaceResult]"] = set(tasks)
        failures: List[Tuple[str, str]] = []
        winner: Optional[RaceResult] = None
        cancelled = False

        try:
            while pending and winner is None:
                done, _ = await asyncio.wait(pending | {cancel_waiter}, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    if task is cancel_waiter:
                        cancelled = True
                        continue
                    pending.discard(task)  # type: ignore[arg-type]
                    if task.cancelled():
                        # The executor cancelled itself; the race did not.
                        failures.append((tasks[task], "cancelled"))  # type: ignore[index]
                        continue
                    error = task.exception()
                    if error is None:
                        if winner is None:
                            winner = task.result()  # type: ignore[assignment]
                    else:
                        failures.append((tasks[task], str(error) or type(error).__name__))  # type: ignore[index]
                if cancelled and winner is None:
                    break
        finally:
            cancel_waiter.cancel()
            for task in pending:
                task.cancel()
            await asyncio.gather(cancel_waiter, *pending, return_exceptions=True)
            self._active_races.pop(race_id, None)

        if winner is not None:
            logger.info(
                f"Racer: Winner of '{race_id}' is {winner.model} ({winner.duration:.0f}ms), "
                f"competed against: {', '.join(candidates)}"
            )
            return winner

        if cancelled:
            failures.extend((tasks[task], "cancelled") for task in pending)
            logger.warning(f"Racer: Race '{race_id}' externally cancelled")
            raise RaceCancelledError(race_id, failures)

        error = RaceError(race_id, failures)
        logger.warning(str(error))
        raise error

    async def race_with_fallback(
        self,
        primary: List[str],
        fallback: List[str],
        executor: Executor,
        race_id: Optional[str] = None,
    ) -> RaceResult:
        """
        Races `primary`; while waves fail completely, races the next slice of
        `fallback` (slices are the size of the primary wave), for up to
        `fallback_depth` retry waves.

        Raises:
            AttemptsExhaustedError: When every wave failed.
        """
        if not primary and not fallback:
            raise ValueError("Racer: No candidates provided for competition")

        race_id = race_id or f"race-{uuid.uuid4().hex[:12]}"
        depth = self.config.fallback_depth
        size = max(len(primary), 1)

        if primary:
            wave, remaining = list(primary), list(fallback)
        else:
            wave, remaining = list(fallback[:size]), list(fallback[size:])

        attempts: List[RaceError] = []
        attempt = 0
        while wave:
            attempt += 1
            self._notify_fallback(attempt, wave)
            try:
                return await self.race(wave, executor, race_id)
            except RaceCancelledError:
                raise
            except RaceError as e:
                attempts.append(e)
                logger.warning(f"Racer: Wave {attempt} of '{race_id}' failed ({len(wave)} candidates)")

            if depth >= 0 and attempt > depth:
                break
            wave, remaining = remaining[:size], remaining[size:]

        raise AttemptsExhaustedError(attempts)

    async def race_from_category(
        self, category_config: CategoryConfig, executor: Executor, race_id: Optional[str] = None
    ) -> RaceResult:
        return await self.race([category_config.model, *category_config.fallback], executor, race_id)

    def cancel_race(self, race_id: str) -> bool:
        event = self._active_races.get(race_id)
        if event is None:
            return False
        event.set()
        logger.info(f"Racer: Cancelling race '{race_id}'")
        return True

    def cancel_all_races(self) -> None:
        for race_id, event in list(self._active_races.items()):
            event.set()
            logger.info(f"Racer: Cancelling race '{race_id}'")

    @property
    def active_race_count(self) -> int:
        return len(self._active_races)

    def is_race_active(self, race_id: str) -> bool:
        return race_id in self._active_races

    def update_config(self, **changes: Any) -> None:
        self.config = self.config.model_validate({**self.config.model_dump(), **changes})

    async def _run_candidate(self, candidate: str, executor: Executor, start: float) -> RaceResult:
        self._notify(candidate, STARTED)
        try:
            result = await asyncio.wait_for(executor(candidate), timeout=self.config.timeout)
        except asyncio.CancelledError as e:
            self._notify(candidate, FAILED, e)
            raise
        except asyncio.TimeoutError as e:
            timeout_error = CandidateTimeoutError(f"Timeout after {self.config.timeout}s")
            self._notify(candidate, FAILED, timeout_error)
            logger.debug(f"Racer: {candidate} timed out")
            raise timeout_error from e
        except Exception as e:
            self._notify(candidate, FAILED, e)
            logger.debug(f"Racer: {candidate} failed - {e}")
            raise

        duration = (time.perf_counter() - start) * 1000
        self._notify(candidate, COMPLETED)
        logger.debug(f"Racer: {candidate} completed in {duration:.0f}ms")
        return RaceResult(model=candidate, result=result, duration=duration)

    def _notify(self, candidate: str, status: str, error: Optional[BaseException] = None) -> None:
        if self.on_progress is None:
            return
        try:
            self.on_progress(candidate, status, error)
        except Exception as e:
            logger.debug(f"Racer: progress callback raised for {candidate}: {e}")

    def _notify_fallback(self, attempt: int, candidates: List[str]) -> None:
        if self.on_fallback is None:
            return
        try:
            self.on_fallback(attempt, list(candidates))
        except Exception as e:
            logger.debug(f"Racer: fallback callback raised on attempt {attempt}: {e}")


async def compete_free_models(
    candidates: List[str], executor: Executor, config: Optional[RacerConfig] = None
) -> RaceResult:
    """One-off race without keeping a racer around."""
    return await FreeModelRacer(config).race(candidates, executor)
