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
import json
import re
from dataclasses import dataclass, field
from functools import cmp_to_key
from pathlib import Path
from typing import Dict, List, Optional, Set

import httpx
from pydantic import BaseModel, Field, ValidationError

from coreason_free_fleet.audit import StrictValidator
from coreason_free_fleet.circuit_breaker import (
    FAILURE_THRESHOLD,
    RESET_TIMEOUT_SECONDS,
    CircuitBreaker,
    CircuitBreakerOpenError,
)
from coreason_free_fleet.config import antigravity_accounts_path, host_config_path
from coreason_free_fleet.interfaces import ProviderAdapter
from coreason_free_fleet.models import (
    CategoryConfig,
    FreeModel,
    HostConfig,
    ModelCategory,
    ScoutResult,
    is_elite,
    matching_categories,
)
from coreason_free_fleet.registry import AdapterRegistry
from coreason_free_fleet.utils.logger import logger

# Lower number = preferred. Providers not listed sink to the bottom.
PROVIDER_PRIORITY: Dict[str, int] = {
    "groq": 1,
    "cerebras": 2,
    "openrouter": 3,
    "deepseek": 4,
    "huggingface": 5,
    "modelscope": 6,
    "google": 7,
}
UNRANKED_PRIORITY = 1_000

PARAMETER_PATTERN = re.compile(r"(\d+)b", re.IGNORECASE)

# Provider ids reachable through the account-bound Google auth bridge.
AUTH_BRIDGE_PROVIDERS = ("google", "gemini", "opencode")

SUMMARY_SIZE = 5


class NoActiveProvidersError(RuntimeError):
    """Discovery found no configured provider to query."""


class ScoutConfig(BaseModel):
    antigravity_path: Path = Field(default_factory=antigravity_accounts_path)
    opencode_config_path: Path = Field(default_factory=host_config_path)
    allow_antigravity: bool = False
    ultra_free_mode: bool = False
    breaker_threshold: int = Field(FAILURE_THRESHOLD, ge=1)
    breaker_reset_timeout: float = Field(RESET_TIMEOUT_SECONDS, gt=0)


@dataclass
class ActiveProviders:
    providers: List[str] = field(default_factory=list)
    adapters: Dict[str, ProviderAdapter] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)


def extract_parameter_count(model_id: str) -> int:
    """Parameter count in billions parsed from the id (`70b` -> 70), or 0 when absent."""
    match = PARAMETER_PATTERN.search(model_id)
    return int(match.group(1)) if match else 0


class Scout:
    """
    Discovers free models across every provider the host has configured,
    filters them for safety, and ranks them per functional category.
    """

    def __init__(
        self,
        config: Optional[ScoutConfig] = None,
        registry: Optional[AdapterRegistry] = None,
        validator: Optional[StrictValidator] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.config = config or ScoutConfig()
        self.registry = registry or AdapterRegistry()
        self.validator = validator
        self.blocklist: Set[str] = set()
        self._client = client
        self._breakers: Dict[str, CircuitBreaker] = {}

    def build_blocklist(self) -> Set[str]:
        """
        Blocks the account-bound provider family when the host holds
        authenticated accounts for it, unless explicitly allowed.
        """
        blocklist: Set[str] = set()

        if self.config.allow_antigravity:
            logger.info("Scout: Authenticated providers explicitly allowed, skipping blocklist")
            self.blocklist = blocklist
            return blocklist

        try:
            accounts = json.loads(self.config.antigravity_path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            logger.debug("Scout: No auth bridge accounts found (may not be configured)")
            accounts = {}

        if isinstance(accounts, dict) and accounts.get("accounts"):
            logger.warning(
                f"Scout: Found {len(accounts['accounts'])} authenticated Google/Gemini accounts, blocking "
                f"{', '.join(AUTH_BRIDGE_PROVIDERS)}"
            )
            blocklist.update(AUTH_BRIDGE_PROVIDERS)

        self.blocklist = blocklist
        return blocklist

    def detect_active_providers(self) -> ActiveProviders:
        """
        Enumerates provider ids named by the host configuration, either
        directly or through category model/fallback chains.
        """
        result = ActiveProviders()
        try:
            raw = json.loads(self.config.opencode_config_path.read_text(encoding="utf-8"))
            host = HostConfig.model_validate(raw)
        except (OSError, ValueError, ValidationError) as e:
            message = f"Failed to read OpenCode config: {e}"
            logger.warning(f"Scout: {message}")
            result.errors.append(message)
            return result

        provider_ids: List[str] = list(host.providers)
        for category in host.categories.values():
            for qualified in [category.model, *category.fallback]:
                if "/" in qualified:
                    provider_ids.append(qualified.split("/", 1)[0])

        for provider_id in dict.fromkeys(provider_ids):
            try:
                result.adapters[provider_id] = self.registry.create(
                    provider_id, host.providers.get(provider_id), self._client
                )
                result.providers.append(provider_id)
            except Exception as e:
                message = f"Failed to create adapter for {provider_id}: {e}"
                logger.warning(f"Scout: {message}")
                result.errors.append(message)

        logger.info(f"Scout: Active providers: {', '.join(result.providers) or 'none'}")
        return result

    def breaker_for(self, provider_id: str) -> CircuitBreaker:
        breaker = self._breakers.get(provider_id)
        if breaker is None:
            breaker = CircuitBreaker(
                name=provider_id,
                threshold=self.config.breaker_threshold,
                reset_timeout=self.config.breaker_reset_timeout,
            )
            self._breakers[provider_id] = breaker
        return breaker

    async def fetch_free_models(self, adapters: Dict[str, ProviderAdapter]) -> Dict[str, List[FreeModel]]:
        """
        Fetches every provider concurrently. A provider that fails (or whose
        breaker is open) contributes an empty list.
        """
        provider_ids = list(adapters)
        results = await asyncio.gather(*(self._fetch_provider(pid, adapters[pid]) for pid in provider_ids))
        return dict(zip(provider_ids, results))

    async def _fetch_provider(self, provider_id: str, adapter: ProviderAdapter) -> List[FreeModel]:
        if provider_id in self.blocklist:
            logger.info(f"Scout: Skipping blocklisted provider {provider_id}")
            return []

        try:
            raw_models = await self.breaker_for(provider_id).execute(adapter.fetch_models)
        except CircuitBreakerOpenError as e:
            logger.warning(f"Scout: {provider_id} skipped: {e}")
            return []
        except Exception as e:
            logger.warning(f"Scout: Failed to fetch models from {provider_id}: {e}")
            return []

        free_models: List[FreeModel] = []
        for raw in raw_models:
            if not adapter.is_free_model(raw):
                continue
            try:
                model = adapter.normalize_model(raw)
            except ValueError as e:
                logger.debug(f"Scout: Could not normalize {provider_id}/{raw.id}: {e}")
                continue
            if not model.is_free:
                continue
            if self.config.ultra_free_mode and self.validator is not None:
                if not self.validator.is_ultra_free_safe(model).is_safe:
                    continue
            free_models.append(model)

        logger.info(f"Scout: {provider_id}: {len(free_models)} free of {len(raw_models)} models")
        return free_models

    def categorize_models(self, models: List[FreeModel]) -> Dict[ModelCategory, List[FreeModel]]:
        """
        Places each model in every category whose keywords it matches;
        writing only collects models that match nothing else.
        """
        categories: Dict[ModelCategory, List[FreeModel]] = {category: [] for category in ModelCategory}
        for model in models:
            for category in matching_categories(model.id):
                if model.category == category:
                    categories[category].append(model)
                else:
                    categories[category].append(
                        model.model_copy(update={"category": category, "is_elite": is_elite(model.id, category)})
                    )
        return categories

    def rank_models_by_benchmark(self, models: List[FreeModel], category: ModelCategory) -> List[FreeModel]:
        """
        Stable sort by, in order: elite family membership, provider priority,
        parameter count (smaller first for speed, larger otherwise; ids with
        no count tie), and finally the id.
        """

        def compare(a: FreeModel, b: FreeModel) -> int:
            a_elite, b_elite = is_elite(a.id, category), is_elite(b.id, category)
            if a_elite != b_elite:
                return -1 if a_elite else 1

            a_priority = PROVIDER_PRIORITY.get(a.provider, UNRANKED_PRIORITY)
            b_priority = PROVIDER_PRIORITY.get(b.provider, UNRANKED_PRIORITY)
            if a_priority != b_priority:
                return a_priority - b_priority

            a_params, b_params = extract_parameter_count(a.id), extract_parameter_count(b.id)
            if a_params > 0 and b_params > 0 and a_params != b_params:
                return a_params - b_params if category == ModelCategory.SPEED else b_params - a_params

            return (a.id > b.id) - (a.id < b.id)

        return sorted(models, key=cmp_to_key(compare))

    async def discover(self) -> Dict[ModelCategory, ScoutResult]:
        """
        Runs a full discovery pass.
        Raises NoActiveProvidersError when the host configures no provider.
        """
        logger.info("Scout: Starting model discovery")
        self.build_blocklist()

        active = self.detect_active_providers()
        if not active.providers:
            details = "; ".join(active.errors) or "no providers referenced in host configuration"
            logger.error(f"Scout: No active providers found ({details})")
            raise NoActiveProvidersError(f"No active providers found: {details}")

        per_provider = await self.fetch_free_models(active.adapters)
        free_models = [model for models in per_provider.values() for model in models]
        logger.info(f"Scout: {len(free_models)} free models across {len(active.providers)} providers")

        results: Dict[ModelCategory, ScoutResult] = {}
        for category, models in self.categorize_models(free_models).items():
            ranked = self.rank_models_by_benchmark(models, category)
            results[category] = ScoutResult(
                category=category,
                models=models,
                ranked_models=ranked,
                elite_models=[m for m in ranked if is_elite(m.id, category)],
            )
            logger.debug(f"Scout: {category.value}: {len(models)} models")

        return results

    def generate_category_config(self, category: ModelCategory, ranked_models: List[FreeModel]) -> CategoryConfig:
        if not ranked_models:
            raise ValueError(f"No ranked models for category: {category.value}")
        model_ids = [m.qualified_id for m in ranked_models[:SUMMARY_SIZE]]
        return CategoryConfig(
            model=model_ids[0],
            fallback=model_ids[1:],
            description=f"Auto-ranked by Free Scout - {category.value.upper()} category",
        )

    def print_summary(self, results: Dict[ModelCategory, ScoutResult]) -> None:
        for category, result in results.items():
            lines = []
            for index, model in enumerate(result.ranked_models[:SUMMARY_SIZE], start=1):
                marker = " [ELITE]" if is_elite(model.id, category) else ""
                lines.append(f"  {index}. {model.qualified_id}{marker}")
            logger.info(f"{category.value.upper()} (top {len(lines)}):\n" + "\n".join(lines))
