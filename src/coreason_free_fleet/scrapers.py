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
import re
from pathlib import Path
from typing import Dict, List, Optional

import httpx

from coreason_free_fleet.config import PROVIDER_FETCH_TIMEOUT, policy_cache_path
from coreason_free_fleet.interfaces import PolicyScraper
from coreason_free_fleet.models import ScrapedPolicy
from coreason_free_fleet.persistence import PathLike, read_json, write_json
from coreason_free_fleet.utils.logger import logger

MODEL_ID_PATTERN = re.compile(r"[\w.]+-[\w.]+-[\w.-]+")
GROQ_FAMILIES = ("llama", "mixtral", "gemma")


class GroqScraper:
    """Reads Groq's public pricing page for the free plan and its model ids."""

    provider_id = "groq"
    policy_url = "https://groq.com/pricing/"
    FALLBACK_MODELS = ["llama-3.3-70b-versatile", "llama-3.1-8b-instant", "mixtral-8x7b-32768", "gemma2-9b-it"]

    def __init__(self, client: Optional[httpx.AsyncClient] = None) -> None:
        self._client = client

    async def scrape(self) -> ScrapedPolicy:
        try:
            text = await _fetch_text(self.policy_url, self._client)
        except Exception as e:
            logger.warning(f"GroqScraper: Falling back to static policy: {e}")
            return ScrapedPolicy(
                provider_id=self.provider_id, is_free_tier_active=True, free_models=self.FALLBACK_MODELS
            )

        lowered = text.lower()
        is_free_tier_active = "free" in lowered and ("$0" in text or "0/mo" in text)

        free_models: List[str] = []
        for match in MODEL_ID_PATTERN.finditer(lowered):
            model_id = match.group(0)
            if any(family in model_id for family in GROQ_FAMILIES) and model_id not in free_models:
                free_models.append(model_id)

        return ScrapedPolicy(
            provider_id=self.provider_id,
            is_free_tier_active=is_free_tier_active,
            free_models=free_models,
        )


class OpenRouterScraper:
    """Treats every zero-priced entry of the public catalog as free."""

    provider_id = "openrouter"
    policy_url = "https://openrouter.ai/api/v1/models"
    FALLBACK_MODELS = ["google/gemma-2-9b-it:free", "mistralai/mistral-7b-instruct:free"]

    def __init__(self, client: Optional[httpx.AsyncClient] = None) -> None:
        self._client = client

    async def scrape(self) -> ScrapedPolicy:
        try:
            payload = await _fetch_json(self.policy_url, self._client)
            free_models = [
                entry["id"]
                for entry in payload.get("data", [])
                if str((entry.get("pricing") or {}).get("prompt")) in ("0", "0.0")
                and str((entry.get("pricing") or {}).get("completion")) in ("0", "0.0")
            ]
        except Exception as e:
            logger.warning(f"OpenRouterScraper: Falling back to static policy: {e}")
            return ScrapedPolicy(
                provider_id=self.provider_id, is_free_tier_active=True, free_models=self.FALLBACK_MODELS
            )

        return ScrapedPolicy(
            provider_id=self.provider_id,
            is_free_tier_active=len(free_models) > 0,
            free_models=free_models,
        )


class CerebrasScraper:
    provider_id = "cerebras"
    policy_url = "https://cerebras.ai/pricing"

    async def scrape(self) -> ScrapedPolicy:
        return ScrapedPolicy(
            provider_id=self.provider_id,
            is_free_tier_active=True,
            free_models=["llama3.1-8b", "llama3.1-70b"],
        )


async def _fetch_text(url: str, client: Optional[httpx.AsyncClient]) -> str:
    if client is not None:
        response = await client.get(url, timeout=PROVIDER_FETCH_TIMEOUT)
    else:
        async with httpx.AsyncClient(timeout=PROVIDER_FETCH_TIMEOUT, follow_redirects=True) as own_client:
            response = await own_client.get(url)
    response.raise_for_status()
    return response.text


async def _fetch_json(url: str, client: Optional[httpx.AsyncClient]) -> dict:
    if client is not None:
        response = await client.get(url, headers={"Accept": "application/json"}, timeout=PROVIDER_FETCH_TIMEOUT)
    else:
        async with httpx.AsyncClient(timeout=PROVIDER_FETCH_TIMEOUT) as own_client:
            response = await own_client.get(url, headers={"Accept": "application/json"})
    response.raise_for_status()
    return response.json()


def default_scrapers(client: Optional[httpx.AsyncClient] = None) -> List[PolicyScraper]:
    return [GroqScraper(client), OpenRouterScraper(client), CerebrasScraper()]


class PolicyScraperOrchestrator:
    """
    Runs registered scrapers and keeps the latest policy per provider,
    persisted between runs.
    """

    def __init__(self, cache_path: Optional[PathLike] = None) -> None:
        self.cache_path = Path(cache_path) if cache_path is not None else policy_cache_path()
        self._scrapers: List[PolicyScraper] = []
        self._policies: Dict[str, ScrapedPolicy] = {}
        self._load_policies()

    def register_scraper(self, scraper: PolicyScraper) -> None:
        self._scrapers.append(scraper)

    @property
    def scrapers(self) -> List[PolicyScraper]:
        return list(self._scrapers)

    async def scrape_all(self) -> Dict[str, ScrapedPolicy]:
        """
        Runs every scraper concurrently. A scraper that raises despite its
        contract is skipped; the others' results are still recorded.
        """
        results = await asyncio.gather(*(s.scrape() for s in self._scrapers), return_exceptions=True)

        for scraper, result in zip(self._scrapers, results):
            if isinstance(result, BaseException):
                logger.warning(f"Policy scraper for {scraper.provider_id} failed: {result}")
                continue
            self._policies[result.provider_id] = result
            logger.debug(
                f"Policy for {result.provider_id}: free_tier={result.is_free_tier_active}, "
                f"{len(result.free_models)} models"
            )

        self._save_policies()
        return dict(self._policies)

    def get_policy(self, provider_id: str) -> Optional[ScrapedPolicy]:
        return self._policies.get(provider_id)

    def set_policy(self, policy: ScrapedPolicy) -> None:
        self._policies[policy.provider_id] = policy

    def _load_policies(self) -> None:
        cached = read_json(self.cache_path)
        if not isinstance(cached, dict):
            return
        for provider_id, raw in cached.items():
            try:
                self._policies[provider_id] = ScrapedPolicy.model_validate(raw)
            except ValueError as e:
                logger.warning(f"Ignoring cached policy for {provider_id}: {e}")

    def _save_policies(self) -> None:
        data = {pid: policy.model_dump(mode="json") for pid, policy in self._policies.items()}
        try:
            write_json(self.cache_path, data)
        except Exception as e:
            logger.warning(f"Failed to persist provider policies: {e}")
