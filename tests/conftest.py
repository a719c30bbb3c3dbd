from pathlib import Path
from typing import Callable

import pytest

from coreason_free_fleet.models import CostTier, FreeModel, ModelCategory


@pytest.fixture(autouse=True)
def fleet_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    # Keep caches, metrics and audit logs out of the real home directory.
    monkeypatch.setenv("FREE_FLEET_HOME", str(tmp_path))
    return tmp_path


@pytest.fixture
def make_model() -> Callable[..., FreeModel]:
    def factory(
        model_id: str,
        provider: str = "provider",
        is_elite: bool = False,
        category: ModelCategory = ModelCategory.WRITING,
        tier: CostTier = CostTier.CONFIRMED_FREE,
        confidence: float = 1.0,
    ) -> FreeModel:
        return FreeModel(
            id=model_id,
            provider=provider,
            name=model_id,
            is_free=True,
            is_elite=is_elite,
            category=category,
            tier=tier,
            confidence=confidence,
        )

    return factory
