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
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from types import TracebackType
from typing import Any, Awaitable, Dict, List, Optional, Set, Type

import httpx
from pydantic import BaseModel, ConfigDict, Field

from coreason_free_fleet.allowlist import ConfirmedFreeStore
from coreason_free_fleet.config import (
    METADATA_ADAPTER_TIMEOUT,
    REMOTE_DEFINITIONS_TIMEOUT,
    metadata_cache_path,
    remote_definitions_url,
)
from coreason_free_fleet.interfaces import MetadataAdapter
from coreason_free_fleet.models import FREE_PRICE_TOKENS, CostTier, ModelMetadata, Pricing
from coreason_free_fleet.persistence import PathLike, read_json, write_json
from coreason_free_fleet.scrapers import PolicyScraperOrchestrator
from coreason_free_fleet.utils.logger import logger


class CommunityDefinitions(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    version: str
    last_updated: str = Field(..., alias="lastUpdated")
    models: List[str]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ModelsDevAdapter:
    """
    Client for the open models.dev metadata database.
    The full catalog is fetched once and reused for an hour.
    """

    provider_id = "models.dev"
    provider_name = "Models.dev"
    MODELS_URL = "https://models.dev/api/v1/models"
    CACHE_TTL_SECONDS = 3600.0

    def __init__(self, client: Optional[httpx.AsyncClient] = None) -> None:
        self._client = client
        self._catalog: Optional[List[Dict[str, Any]]] = None
        self._catalog_time = 0.0

    def is_available(self) -> bool:
        return True

    async def fetch_model_metadata(self, model_id: str) -> Optional[ModelMetadata]:
        catalog = await self._fetch_catalog()
        entry = next((m for m in catalog if m.get("id") == model_id), None)
        if entry is None:
            return None
        return self._to_metadata(entry)

    async def fetch_models_metadata(self, model_ids: Optional[List[str]] = None) -> List[ModelMetadata]:
        catalog = await self._fetch_catalog()
        wanted = set(model_ids) if model_ids is not None else None
        return [self._to_metadata(m) for m in catalog if wanted is None or m.get("id") in wanted]

    def _to_metadata(self, entry: Dict[str, Any]) -> ModelMetadata:
        pricing = entry.get("pricing") or {}
        raw_prompt, raw_completion = pricing.get("prompt"), pricing.get("completion")
        # Only an explicit zero price counts as free; missing fields do not.
        is_free = any(
            raw is not None and str(raw) in FREE_PRICE_TOKENS for raw in (raw_prompt, raw_completion)
        )
        prompt = "0" if raw_prompt is None else str(raw_prompt)
        completion = "0" if raw_completion is None else str(raw_completion)

        return ModelMetadata(
            id=entry["id"],
            provider=self.provider_id,
            name=entry.get("name") or entry["id"],
            is_free=is_free,
            tier=CostTier.CONFIRMED_FREE if is_free else CostTier.CONFIRMED_PAID,
            confidence=1.0 if is_free else 0.7,
            reason=(
                f"Confirmed free via Models.dev (prompt={prompt}, completion={completion})"
                if is_free
                else "Uncertain pricing - SDK may differ"
            ),
            last_verified=_utcnow(),
            pricing=Pricing(prompt=prompt, completion=completion, request=str(pricing.get("request", "0"))),
        )

    async def _fetch_catalog(self) -> List[Dict[str, Any]]:
        now = time.time()
        if self._catalog is not None and now - self._catalog_time < self.CACHE_TTL_SECONDS:
            return self._catalog

        logger.debug("Models.dev: Fetching model metadata...")
        try:
            if self._client is not None:
                response = await self._client.get(self.MODELS_URL, headers={"Accept": "application/json"})
            else:
                async with httpx.AsyncClient(timeout=METADATA_ADAPTER_TIMEOUT) as client:
                    response = await client.get(self.MODELS_URL, headers={"Accept": "application/json"})
            response.raise_for_status()
            models = response.json().get("data", [])
        except (httpx.HTTPError, ValueError):
            if self._catalog is not None:
                logger.warning("Models.dev: API unavailable, using stale catalog")
                return self._catalog
            raise

        logger.info(f"Models.dev: Found {len(models)} models")
        self._catalog = models
        self._catalog_time = now
        return models


class MetadataOracle:
    """
    Answers "is model X free, and how sure are we?" by reconciling, in order:
    the durable verdict cache, the confirmed-free allow-list, scraped provider
    policies and the registered metadata adapters.

    Constructed inside a running event loop, it immediately launches the
    background refreshes (see `start`); otherwise they wait for `start()` or
    `async with`. Pass `autostart=False` to always defer them.
    """

    def __init__(
        self,
        cache_path: Optional[PathLike] = None,
        store: Optional[ConfirmedFreeStore] = None,
        adapters: Optional[List[MetadataAdapter]] = None,
        scrapers: Optional[PolicyScraperOrchestrator] = None,
        remote_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        adapter_timeout: float = METADATA_ADAPTER_TIMEOUT,
        autostart: bool = True,
    ) -> None:
        self.cache_path = Path(cache_path) if cache_path is not None else metadata_cache_path()
        self.store = store if store is not None else ConfirmedFreeStore()
        self.scrapers = scrapers if scrapers is not None else PolicyScraperOrchestrator()
        self.remote_url = remote_url or remote_definitions_url()
        self.adapter_timeout = adapter_timeout
        self._client = client
        self._adapters: Dict[str, MetadataAdapter] = {}
        self._cache: Dict[str, ModelMetadata] = {}
        self._background: Set["asyncio.Task[None]"] = set()
        self._started = False
        self._persist_lock = asyncio.Lock()
        self._file_lock = threading.Lock()

        for adapter in adapters if adapters is not None else [ModelsDevAdapter(client)]:
            self._adapters[adapter.provider_id] = adapter

        self._load_cache()
        logger.info(f"MetadataOracle initialized with adapters: {', '.join(self._adapters) or 'none'}")

        if autostart:
            try:
                asyncio.get_running_loop()
            except RuntimeError:
                logger.debug("MetadataOracle: No running event loop, background refresh waits for start()")
            else:
                self.start()

    async def __aenter__(self) -> "MetadataOracle":
        self.start()
        return self

    async def __aexit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc_val: Optional[BaseException],
        exc_tb: Optional[TracebackType],
    ) -> None:
        await self.close()

    def start(self) -> None:
        """
        Launches the best-effort background refreshes (community allow-list,
        policy scrapers). Returns immediately; lookups work before they finish.
        Calling it again before `close()` is a no-op.
        """
        if self._started:
            return
        self._started = True
        self._spawn(self.refresh_community_list(), "community allow-list refresh")
        self._spawn(self.scrapers.scrape_all(), "policy scrape")

    async def close(self) -> None:
        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._background.clear()
        self._started = False

    async def wait_background(self) -> None:
        """Waits for any in-flight background refresh to settle."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def _spawn(self, coro: Awaitable[Any], label: str) -> None:
        async def supervised() -> None:
            try:
                await coro
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Oracle background {label} failed: {e}")

        task = asyncio.get_running_loop().create_task(supervised())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def refresh_community_list(self) -> int:
        """
        Merges the remote community allow-list into the local store.
        Failures leave the store unchanged. Returns the number of ids added.
        """
        logger.info("Oracle: Fetching remote community definitions...")
        try:
            if self._client is not None:
                response = await self._client.get(
                    self.remote_url, headers={"Accept": "application/json"}, timeout=REMOTE_DEFINITIONS_TIMEOUT
                )
            else:
                async with httpx.AsyncClient(timeout=REMOTE_DEFINITIONS_TIMEOUT) as client:
                    response = await client.get(self.remote_url, headers={"Accept": "application/json"})
            response.raise_for_status()
            definitions = CommunityDefinitions.model_validate(response.json())
        except Exception as e:
            logger.warning(f"Oracle: Could not fetch remote definitions: {e}. Continuing with local list only")
            return 0

        added = self.store.merge(definitions.models)
        logger.info(
            f"Oracle: Fetched {len(definitions.models)} community models, added {added} new ones "
            f"(version {definitions.version}, updated {definitions.last_updated})"
        )
        return added

    def get_available_adapters(self) -> List[str]:
        return [pid for pid, adapter in self._adapters.items() if adapter.is_available()]

    @property
    def confirmed_free_models(self) -> frozenset:
        return self.store.snapshot()

    def add_confirmed_free_model(self, model_id: str) -> None:
        self.store.add(model_id)

    def remove_confirmed_free_model(self, model_id: str) -> None:
        self.store.remove(model_id)

    def get_cached(self, model_id: str) -> Optional[ModelMetadata]:
        return self._cache.get(model_id)

    def invalidate(self, model_id: str) -> bool:
        """
        Drops a cached verdict so the next lookup re-verifies it.
        """
        removed = self._cache.pop(model_id, None) is not None
        if removed:
            self._save_cache()
        return removed

    async def fetch_model_metadata(self, model_id: str, provider_id: Optional[str] = None) -> ModelMetadata:
        cached = self._cache.get(model_id)
        if cached is not None:
            logger.debug(f"Oracle: cache hit for {model_id}")
            return cached

        verdict = self._check_allow_list(model_id, provider_id)
        if verdict is None:
            verdict = await self._resolve_from_sources(model_id, provider_id)

        self._cache[model_id] = verdict
        await self._persist_cache()
        logger.info(
            f"Oracle: {model_id} -> {verdict.tier.value} (confidence {verdict.confidence:.1f}): {verdict.reason}"
        )
        return verdict

    async def fetch_models_metadata(
        self, model_ids: List[str], provider_id: Optional[str] = None
    ) -> List[ModelMetadata]:
        results: List[ModelMetadata] = []
        for model_id in model_ids:
            results.append(await self.fetch_model_metadata(model_id, provider_id))
        return results

    def _check_allow_list(self, model_id: str, provider_id: Optional[str]) -> Optional[ModelMetadata]:
        if self.store.contains(model_id):
            return self._confirmed(model_id, provider_id, "community-list")

        if provider_id:
            if self.store.contains(f"{provider_id}/{model_id}"):
                return self._confirmed(model_id, provider_id, provider_id)
            if provider_id != "openrouter" and self.store.contains(f"openrouter/{model_id}"):
                return self._confirmed(model_id, provider_id, "openrouter")
        return None

    def _confirmed(self, model_id: str, provider_id: Optional[str], source: str) -> ModelMetadata:
        return ModelMetadata(
            id=model_id,
            provider=provider_id or "community-list",
            name=model_id,
            is_free=True,
            tier=CostTier.CONFIRMED_FREE,
            confidence=1.0,
            reason=f"Confirmed free by Community List (via {source})",
            last_verified=_utcnow(),
            pricing=Pricing(),
        )

    async def _resolve_from_sources(self, model_id: str, provider_id: Optional[str]) -> ModelMetadata:
        policy = self.scrapers.get_policy(provider_id) if provider_id else None
        adapter_ids = self.get_available_adapters()
        results = await asyncio.gather(*(self._query_adapter(aid, model_id) for aid in adapter_ids))
        found = [m for m in results if m is not None]

        if policy is not None and policy.covers(model_id):
            return ModelMetadata(
                id=model_id,
                provider=policy.provider_id,
                name=model_id,
                is_free=True,
                tier=CostTier.CONFIRMED_FREE,
                confidence=1.0,
                reason=(
                    f"Confirmed free by {policy.provider_id} policy scraper "
                    f"(updated {policy.updated_at.isoformat()})"
                ),
                last_verified=_utcnow(),
                pricing=Pricing(),
            )

        free_results = [m for m in found if m.is_free]
        if free_results:
            return free_results[0].model_copy(
                update={
                    "id": model_id,
                    "tier": CostTier.CONFIRMED_FREE,
                    "confidence": 1.0,
                    "reason": f"Confirmed free by {', '.join(m.provider for m in free_results)}",
                    "last_verified": _utcnow(),
                }
            )

        if found:
            return found[0].model_copy(
                update={
                    "id": model_id,
                    "is_free": False,
                    "tier": CostTier.CONFIRMED_PAID,
                    "confidence": 0.7,
                    "reason": (
                        "Metadata found but not confirmed free "
                        f"(sources: {', '.join(m.provider for m in found)})"
                    ),
                    "last_verified": _utcnow(),
                }
            )

        return ModelMetadata(
            id=model_id,
            provider=provider_id or "unknown",
            name=model_id,
            is_free=False,
            tier=CostTier.UNKNOWN,
            confidence=0.0,
            reason="No source found for this model",
            last_verified=_utcnow(),
            pricing=Pricing(),
        )

    async def _query_adapter(self, adapter_id: str, model_id: str) -> Optional[ModelMetadata]:
        adapter = self._adapters[adapter_id]
        try:
            return await asyncio.wait_for(adapter.fetch_model_metadata(model_id), timeout=self.adapter_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Oracle: Adapter {adapter_id} timed out after {self.adapter_timeout}s for {model_id}")
        except Exception as e:
            logger.warning(f"Oracle: Adapter {adapter_id} failed for {model_id}: {e}")
        return None

    def _load_cache(self) -> None:
        cached = read_json(self.cache_path)
        if not isinstance(cached, dict):
            return
        for model_id, raw in cached.items():
            try:
                self._cache[model_id] = ModelMetadata.model_validate(raw)
            except ValueError as e:
                logger.warning(f"Ignoring cached verdict for {model_id}: {e}")
        logger.debug(f"Oracle: Loaded {len(self._cache)} cached verdicts")

    def _cache_snapshot(self) -> Dict[str, Any]:
        return {model_id: meta.model_dump(mode="json") for model_id, meta in self._cache.items()}

    def _save_cache(self) -> None:
        self._write_cache(self._cache_snapshot())

    async def _persist_cache(self) -> None:
        # The snapshot is taken once the lock is held, so writes land in lookup order.
        async with self._persist_lock:
            await asyncio.to_thread(self._write_cache, self._cache_snapshot())

    def _write_cache(self, data: Dict[str, Any]) -> None:
        with self._file_lock:
            try:
                write_json(self.cache_path, data)
            except Exception as e:
                logger.warning(f"Oracle: Failed to persist metadata cache: {e}")
