# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_free_fleet


from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from coreason_free_fleet.models import DelegationConfig, FleetMode, FreeModel, ModelCategory, ScoutResult
from coreason_free_fleet.scout import Scout
from coreason_free_fleet.utils.logger import logger


class ModelSelection(BaseModel):
    primary: List[str] = Field(default_factory=list)
    fallback: List[str] = Field(default_factory=list)


class ModelSelector:
    """
    The Selector turns a category's ranked model list into race candidates
    ("provider/model" ids) according to the configured fleet mode.

    Discovery results are taken from the Scout once and reused until
    `refresh()` is called.
    """

    def __init__(self, scout: Scout, config: Optional[DelegationConfig] = None) -> None:
        self.scout = scout
        self.config = config or DelegationConfig()
        self._results: Optional[Dict[ModelCategory, ScoutResult]] = None

    async def refresh(self) -> Dict[ModelCategory, ScoutResult]:
        self._results = await self.scout.discover()
        return self._results

    def set_results(self, results: Dict[ModelCategory, ScoutResult]) -> None:
        self._results = results

    async def _free_ranked(self, category: ModelCategory) -> List[FreeModel]:
        results = self._results if self._results is not None else await self.refresh()
        category_result = results.get(category)
        if category_result is None:
            raise ValueError(f"No models found for category: {category.value}")
        return [m for m in category_result.ranked_models if m.is_free]

    async def select_models(self, category: ModelCategory, mode: Optional[FleetMode] = None) -> List[str]:
        models = await self._free_ranked(category)
        selected = self.filter_by_mode(models, mode)
        logger.debug(f"Selector: {category.value} -> {len(selected)} candidates ({(mode or self.config.mode).value})")
        return selected

    async def select_with_fallback(self, category: ModelCategory) -> ModelSelection:
        """
        Primary is the first `race_count` ranked free models, fallback is
        everything after, whatever the mode.
        """
        models = await self._free_ranked(category)
        race_count = self.config.race_count
        return ModelSelection(
            primary=[m.qualified_id for m in models[:race_count]],
            fallback=[m.qualified_id for m in models[race_count:]],
        )

    async def select_models_by_provider(self, category: ModelCategory, providers: List[str]) -> List[str]:
        wanted = {p.lower() for p in providers}
        models = [m for m in await self._free_ranked(category) if m.provider.lower() in wanted]
        return self.filter_by_mode(models)

    def filter_by_mode(self, models: List[FreeModel], mode: Optional[FleetMode] = None) -> List[str]:
        mode = mode or self.config.mode
        if mode == FleetMode.ULTRA_FREE:
            chosen = models
        elif mode == FleetMode.SOTA_ONLY:
            chosen = [m for m in models if m.is_elite][: self.config.race_count]
        else:
            chosen = models[: self.config.race_count]
        return [m.qualified_id for m in chosen]

    def get_config(self) -> DelegationConfig:
        return self.config.model_copy()

    def update_config(self, **changes: object) -> None:
        self.config = self.config.model_validate({**self.config.model_dump(), **changes})
