# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_free_fleet

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import httpx
from pydantic import ValidationError

from coreason_free_fleet.config import PROVIDER_FETCH_TIMEOUT
from coreason_free_fleet.models import (
    CostTier,
    FreeModel,
    Pricing,
    ProviderConfig,
    ProviderModel,
    is_elite,
    matching_categories,
)
from coreason_free_fleet.utils.logger import logger


def parse_catalog(entries: Any, renames: Optional[Dict[str, str]] = None) -> List[ProviderModel]:
    """
    Parses a provider's raw catalog entries into ProviderModel records.
    `renames` maps provider-specific field names onto ProviderModel fields.
    Entries that cannot be parsed are skipped.
    """
    if not isinstance(entries, list):
        return []

    models: List[ProviderModel] = []
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        data = dict(entry)
        for source, target in (renames or {}).items():
            if data.get(target) is None and data.get(source) is not None:
                data[target] = data[source]
        try:
            models.append(ProviderModel.model_validate(data))
        except ValidationError as e:
            logger.debug(f"Skipping malformed catalog entry {entry.get('id')!r}: {e.error_count()} errors")
    return models


class BaseAdapter(ABC):
    """
    Shared behaviour for provider adapters: HTTP access, the default
    pricing-based free rule and normalization into FreeModel.
    """

    # Tier and confidence assigned to models this adapter judges free.
    free_tier: CostTier = CostTier.CONFIRMED_FREE
    free_confidence: float = 1.0

    def __init__(
        self,
        provider_id: str,
        provider_name: str,
        config: Optional[ProviderConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = PROVIDER_FETCH_TIMEOUT,
    ) -> None:
        self.provider_id = provider_id
        self.provider_name = provider_name
        self.config = config or ProviderConfig()
        self.timeout = timeout
        self._client = client

    @abstractmethod
    async def fetch_models(self) -> List[ProviderModel]: ...

    def is_free_model(self, model: ProviderModel) -> bool:
        return model.pricing is not None and model.pricing.is_zero()

    def normalize_model(self, model: ProviderModel) -> FreeModel:
        is_free = self.is_free_model(model)
        category = matching_categories(model.id)[0]

        if is_free:
            tier, confidence = self.free_tier, self.free_confidence
        elif model.pricing is not None and (model.pricing.prompt or model.pricing.completion):
            tier, confidence = CostTier.CONFIRMED_PAID, 1.0
        else:
            tier, confidence = CostTier.UNKNOWN, 0.0

        pricing = model.pricing
        return FreeModel(
            id=model.id,
            provider=self.provider_id,
            name=model.name or model.id.split("/", 1)[-1],
            description=model.description,
            context_length=model.context_length,
            max_output_tokens=model.max_output_tokens,
            pricing=Pricing(
                prompt=(pricing.prompt if pricing else None) or "0",
                completion=(pricing.completion if pricing else None) or "0",
                request=(pricing.request if pricing else None) or "0",
            ),
            is_free=is_free,
            is_elite=is_elite(model.id, category),
            category=category,
            confidence=confidence,
            tier=tier,
        )

    def _auth_headers(self) -> Dict[str, str]:
        if self.config.api_key:
            return {"Authorization": f"Bearer {self.config.api_key}"}
        return {}

    async def _get_json(self, url: str) -> Any:
        headers = {"Accept": "application/json", **self._auth_headers()}
        if self._client is not None:
            response = await self._client.get(url, headers=headers, timeout=self.timeout)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(url, headers=headers)
        response.raise_for_status()
        return response.json()


class OpenRouterAdapter(BaseAdapter):
    """Free when both prompt and completion are priced at zero."""

    MODELS_URL = "https://openrouter.ai/api/v1/models"

    def __init__(self, config: Optional[ProviderConfig] = None, client: Optional[httpx.AsyncClient] = None) -> None:
        super().__init__("openrouter", "OpenRouter", config, client)

    async def fetch_models(self) -> List[ProviderModel]:
        logger.info("OpenRouter: Fetching models...")
        payload = await self._get_json(self.MODELS_URL)
        models = parse_catalog(payload.get("data", []))
        logger.info(f"OpenRouter: Found {len(models)} models")
        return models


class GroqAdapter(BaseAdapter):
    """Every Groq model is served on the free tier (rate limited)."""

    MODELS_URL = "https://api.groq.com/openai/v1/models"
    free_tier = CostTier.FREEMIUM_LIMITED
    free_confidence = 0.8

    def __init__(self, config: Optional[ProviderConfig] = None, client: Optional[httpx.AsyncClient] = None) -> None:
        super().__init__("groq", "Groq", config, client)

    async def fetch_models(self) -> List[ProviderModel]:
        logger.info("Groq: Fetching models...")
        payload = await self._get_json(self.MODELS_URL)
        models = parse_catalog(payload.get("data", []), renames={"context_window": "context_length"})
        logger.info(f"Groq: Found {len(models)} models")
        return models

    def is_free_model(self, model: ProviderModel) -> bool:
        return True


class CerebrasAdapter(BaseAdapter):
    """Every Cerebras model is served on the free tier (rate limited)."""

    MODELS_URL = "https://api.cerebras.ai/v1/models"
    free_tier = CostTier.FREEMIUM_LIMITED
    free_confidence = 0.8

    def __init__(self, config: Optional[ProviderConfig] = None, client: Optional[httpx.AsyncClient] = None) -> None:
        super().__init__("cerebras", "Cerebras", config, client)

    async def fetch_models(self) -> List[ProviderModel]:
        logger.info("Cerebras: Fetching models...")
        payload = await self._get_json(self.MODELS_URL)
        entries = payload.get("models") or payload.get("data") or []
        models = parse_catalog(entries, renames={"context_window": "context_length"})
        logger.info(f"Cerebras: Found {len(models)} models")
        return models

    def is_free_model(self, model: ProviderModel) -> bool:
        return True


class DeepSeekAdapter(BaseAdapter):
    """Only the documented free-token models count as free."""

    MODELS_URL = "https://api.deepseek.com/v1/models"
    KNOWN_FREE_MODELS = ("deepseek-chat", "deepseek-coder", "deepseek-v3", "deepseek-v3.2")
    free_tier = CostTier.FREEMIUM_LIMITED
    free_confidence = 0.9

    def __init__(self, config: Optional[ProviderConfig] = None, client: Optional[httpx.AsyncClient] = None) -> None:
        super().__init__("deepseek", "DeepSeek", config, client)

    async def fetch_models(self) -> List[ProviderModel]:
        logger.info("DeepSeek: Fetching models...")
        payload = await self._get_json(self.MODELS_URL)
        models = parse_catalog(payload.get("data", []), renames={"max_context_tokens": "context_length"})
        logger.info(f"DeepSeek: Found {len(models)} models")
        return models

    def is_free_model(self, model: ProviderModel) -> bool:
        model_id = model.id.lower()
        return any(known in model_id for known in self.KNOWN_FREE_MODELS)


class StaticCatalogAdapter(BaseAdapter):
    """
    Adapter for providers whose catalog needs an interactive auth flow;
    serves a curated list of their free-tier models instead.
    """

    CATALOG: List[Dict[str, Any]] = []

    async def fetch_models(self) -> List[ProviderModel]:
        models = parse_catalog(self.CATALOG)
        logger.info(f"{self.provider_name}: Found {len(models)} free models (curated)")
        return models


class GoogleAdapter(StaticCatalogAdapter):
    CATALOG = [
        {
            "id": "gemini-1.5-flash",
            "name": "Gemini 1.5 Flash",
            "description": "Fast, lightweight multimodal model (Free Tier)",
            "context_length": 28000,
            "pricing": {"prompt": "0", "completion": "0", "request": "0"},
        },
        {
            "id": "gemini-1.5-flash-8b",
            "name": "Gemini 1.5 Flash-8B",
            "description": "Even smaller and faster (Free Tier)",
            "context_length": 1000000,
            "pricing": {"prompt": "0", "completion": "0", "request": "0"},
        },
    ]

    def __init__(self, config: Optional[ProviderConfig] = None, client: Optional[httpx.AsyncClient] = None) -> None:
        super().__init__("google", "Google", config, client)


class ModelScopeAdapter(StaticCatalogAdapter):
    CATALOG = [
        {
            "id": "meta-llama/Meta-Llama-3.1-70B-Instruct-Turbo",
            "name": "Meta Llama 3.1 70B",
            "description": "Llama 3.1 with 128K context (Free Tier)",
            "context_length": 128000,
            "pricing": {"prompt": "0", "completion": "0", "request": "0"},
        },
    ]

    def __init__(self, config: Optional[ProviderConfig] = None, client: Optional[httpx.AsyncClient] = None) -> None:
        super().__init__("modelscope", "ModelScope", config, client)


class HuggingFaceAdapter(StaticCatalogAdapter):
    """Free when flagged as serverless-free or priced at zero for prompts."""

    CATALOG = [
        {
            "id": "Qwen/Qwen2.5-72B-Instruct",
            "name": "Qwen 2.5 72B",
            "description": "Qwen 2.5 with 128K context (Serverless Free)",
            "context_length": 128000,
            "serverless_free": True,
        },
    ]

    def __init__(self, config: Optional[ProviderConfig] = None, client: Optional[httpx.AsyncClient] = None) -> None:
        super().__init__("huggingface", "Hugging Face", config, client)

    def is_free_model(self, model: ProviderModel) -> bool:
        if model.serverless_free:
            return True
        return model.pricing is not None and model.pricing.prompt in ("0", "0.0")


class GenericAdapter(BaseAdapter):
    """
    OpenAI-compatible `GET <base_url>/models` for providers without a dedicated adapter.
    """

    def __init__(
        self,
        provider_id: str,
        config: Optional[ProviderConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        super().__init__(provider_id, provider_id, config, client)

    @property
    def base_url(self) -> str:
        if self.config.base_url:
            return self.config.base_url.rstrip("/")
        return f"https://api.{self.provider_id}.com/v1"

    async def fetch_models(self) -> List[ProviderModel]:
        url = f"{self.base_url}/models"
        logger.info(f"{self.provider_id}: Fetching models from {url}")
        payload = await self._get_json(url)
        models = parse_catalog(payload.get("data", []))
        logger.info(f"{self.provider_id}: Found {len(models)} models")
        return models
