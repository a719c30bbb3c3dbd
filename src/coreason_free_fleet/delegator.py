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
import math
import time
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from litellm import acompletion

from coreason_free_fleet.metrics import MetricsEngine
from coreason_free_fleet.models import DelegationConfig, DelegationResult, ModelCategory, SessionMetrics, TaskType
from coreason_free_fleet.racer import Executor, FreeModelRacer, RacerConfig
from coreason_free_fleet.selector import ModelSelector
from coreason_free_fleet.task_detector import TaskTypeDetector
from coreason_free_fleet.utils.logger import logger

TOKENS_PER_WORD = 1.3
# Metrics key for delegations where no candidate won.
DELEGATION_FAILED = "delegation-failed"


def estimate_tokens(prompt: str) -> int:
    return math.ceil(len(prompt.split()) * TOKENS_PER_WORD)


def litellm_executor(messages: List[Dict[str, str]], **kwargs: Any) -> Executor:
    """
    Builds a race executor that sends `messages` to the candidate through
    `litellm.acompletion`. Candidate ids ("provider/model") are passed as the
    litellm model name.
    """

    async def execute(candidate: str) -> Any:
        return await acompletion(model=candidate, messages=messages, **kwargs)

    return execute


def _last_user_prompt(messages: List[Dict[str, str]]) -> str:
    for msg in reversed(messages):
        if msg.get("role") == "user":
            return msg.get("content", "") or ""
    return ""


class Delegator:
    """
    Runs one task through the fleet: classify the prompt, pick candidates for
    its category, race them with fallback, and record the outcome.
    """

    def __init__(
        self,
        selector: ModelSelector,
        racer: Optional[FreeModelRacer] = None,
        metrics: Optional[MetricsEngine] = None,
        detector: Optional[TaskTypeDetector] = None,
        config: Optional[DelegationConfig] = None,
    ) -> None:
        self.config = config or selector.get_config()
        self.selector = selector
        self.selector.config = self.config
        self.racer = racer or FreeModelRacer(RacerConfig(fallback_depth=self.config.fallback_depth))
        self.racer.update_config(fallback_depth=self.config.fallback_depth)
        if self.racer.on_fallback is None:
            self.racer.on_fallback = self._log_fallback
        self.metrics = metrics or MetricsEngine()
        self.detector = detector or TaskTypeDetector()

    async def delegate(
        self,
        prompt: str,
        executor: Callable[[str], Awaitable[Any]],
        force_category: Optional[ModelCategory] = None,
        force_task_type: Optional[TaskType] = None,
    ) -> DelegationResult:
        """
        Delegates `prompt` to the fleet.

        Args:
            prompt: The task text, used for classification and token estimates.
            executor: Called as `executor(candidate_id)` for every raced candidate.
            force_category: Skips category mapping when given.
            force_task_type: Skips prompt classification when given.

        Returns:
            DelegationResult describing the winning candidate.

        Raises:
            AttemptsExhaustedError: If every fallback wave failed.
            RaceCancelledError: If the race was cancelled externally.
            ValueError: If the category has no candidates at all.
        """
        start = time.perf_counter()

        task_type = force_task_type or self.detector.detect(prompt)
        category = force_category or self.detector.task_type_to_category(task_type)
        logger.info(f"Delegator: Task type '{task_type.value}' -> Category '{category.value}'")

        try:
            primary, fallback = await self._candidates(category, task_type)
            logger.info(f"Delegator: Racing {len(primary)} models ({len(fallback)} fallback)")
            outcome = await self.racer.race_with_fallback(
                primary, fallback, executor, f"delegate-{uuid.uuid4().hex[:12]}"
            )
        except Exception as e:
            logger.error(f"Delegator: Delegation failed for category '{category.value}': {e}")
            await asyncio.to_thread(self.metrics.record_failure, DELEGATION_FAILED)
            raise

        latency_ms = (time.perf_counter() - start) * 1000
        # Off the event loop: every update rewrites the metrics file.
        await asyncio.to_thread(self.metrics.record_success, outcome.model, latency_ms, estimate_tokens(prompt))
        await asyncio.to_thread(self.metrics.increment_delegation_count)

        return DelegationResult(
            success=True,
            task_type=task_type,
            category=category,
            winner=outcome.model,
            result=outcome.result,
            latency_ms=latency_ms,
            models_raced=len(primary),
        )

    async def chat(self, messages: List[Dict[str, str]], **kwargs: Any) -> DelegationResult:
        """
        Chat-completions entry point: classifies on the last user message and
        races candidates through litellm.
        """
        prompt = _last_user_prompt(messages)
        if not prompt:
            logger.warning("No user message found in messages list. Using empty string for classification.")
        return await self.delegate(prompt, litellm_executor(messages, **kwargs))

    async def _candidates(self, category: ModelCategory, task_type: TaskType) -> Tuple[List[str], List[str]]:
        selection = await self.selector.select_with_fallback(category)
        override = self.config.task_type_overrides.get(task_type)
        if override is None:
            return selection.primary, selection.fallback

        primary = await self.selector.select_models(category, mode=override)
        fallback = [c for c in selection.primary + selection.fallback if c not in primary]
        logger.debug(f"Delegator: Mode override '{override.value}' for task type '{task_type.value}'")
        return primary, fallback

    def get_config(self) -> DelegationConfig:
        return self.config.model_copy()

    def update_config(self, **changes: Any) -> None:
        self.config = self.config.model_validate({**self.config.model_dump(), **changes})
        self.selector.config = self.config
        self.racer.update_config(fallback_depth=self.config.fallback_depth)

    def get_metrics(self) -> SessionMetrics:
        return self.metrics.get_session_metrics()

    @staticmethod
    def _log_fallback(attempt: int, candidates: List[str]) -> None:
        if attempt > 1:
            logger.warning(f"Delegator: Fallback attempt {attempt} with {len(candidates)} models")
