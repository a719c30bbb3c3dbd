# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_free_fleet


from types import TracebackType
from typing import Dict, List, Optional, Type

import httpx

from coreason_free_fleet.audit import AuditLogger, StrictValidator
from coreason_free_fleet.delegator import Delegator
from coreason_free_fleet.health import CheckResult, CheckStatus, HealthMonitor
from coreason_free_fleet.metrics import MetricsEngine
from coreason_free_fleet.models import DelegationConfig
from coreason_free_fleet.oracle import MetadataOracle
from coreason_free_fleet.racer import FreeModelRacer, RacerConfig
from coreason_free_fleet.registry import AdapterRegistry
from coreason_free_fleet.scout import Scout, ScoutConfig
from coreason_free_fleet.scrapers import PolicyScraperOrchestrator, default_scrapers
from coreason_free_fleet.selector import ModelSelector
from coreason_free_fleet.utils.logger import logger


class FleetEngine:
    """
    Owns one fully wired fleet: oracle, scout, selector, racer, delegator,
    metrics and health checks. Use as an async context manager so the
    oracle's background refreshes are started and stopped with it.
    """

    def __init__(
        self,
        scout_config: Optional[ScoutConfig] = None,
        delegation_config: Optional[DelegationConfig] = None,
        registry: Optional[AdapterRegistry] = None,
        oracle: Optional[MetadataOracle] = None,
        metrics: Optional[MetricsEngine] = None,
        audit: Optional[AuditLogger] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        logger.info("Initializing FleetEngine")
        self.delegation_config = delegation_config or DelegationConfig()
        self.audit = audit or AuditLogger()

        if oracle is None:
            scrapers = PolicyScraperOrchestrator()
            for scraper in default_scrapers(client):
                scrapers.register_scraper(scraper)
            oracle = MetadataOracle(scrapers=scrapers, client=client)
        self.oracle = oracle

        self.scout = Scout(scout_config, registry, StrictValidator(self.audit), client)
        self.selector = ModelSelector(self.scout, self.delegation_config)
        self.racer = FreeModelRacer(RacerConfig(fallback_depth=self.delegation_config.fallback_depth))
        self.metrics = metrics or MetricsEngine()
        self.delegator = Delegator(self.selector, self.racer, self.metrics, config=self.delegation_config)

        self.health = HealthMonitor()
        self.health.register_check("oracle", self._check_oracle)
        self.health.register_check("providers", self._check_providers)

    async def __aenter__(self) -> "FleetEngine":
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc_val: Optional[BaseException],
        exc_tb: Optional[TracebackType],
    ) -> None:
        await self.close()

    async def start(self) -> None:
        self.oracle.start()
        logger.info("FleetEngine started")

    async def close(self) -> None:
        self.racer.cancel_all_races()
        await self.oracle.close()
        logger.info("FleetEngine stopped")

    async def discover(self) -> Dict[str, List[str]]:
        """
        Re-runs discovery and returns the ranked candidate ids per category.
        """
        results = await self.selector.refresh()
        return {category.value: [m.qualified_id for m in result.ranked_models] for category, result in results.items()}

    async def _check_oracle(self) -> CheckResult:
        adapters = self.oracle.get_available_adapters()
        if not adapters:
            return CheckResult(status=CheckStatus.DEGRADED, message="No metadata adapters available")
        return CheckResult(status=CheckStatus.UP, message=f"{len(adapters)} metadata adapters available")

    async def _check_providers(self) -> CheckResult:
        active = self.scout.detect_active_providers()
        if not active.providers:
            return CheckResult(status=CheckStatus.DOWN, message="; ".join(active.errors) or "No active providers")
        if active.errors:
            return CheckResult(status=CheckStatus.DEGRADED, message="; ".join(active.errors))
        return CheckResult(status=CheckStatus.UP, message=f"{len(active.providers)} providers configured")
