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
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional

from pydantic import BaseModel, Field

from coreason_free_fleet.utils.logger import logger


class CheckStatus(str, Enum):
    UP = "up"
    DOWN = "down"
    DEGRADED = "degraded"


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class CheckResult(BaseModel):
    status: CheckStatus
    latency_ms: Optional[float] = None
    message: Optional[str] = None


class HealthReport(BaseModel):
    status: HealthStatus
    checks: Dict[str, CheckResult] = Field(default_factory=dict)
    timestamp: datetime
    uptime: float


HealthCheck = Callable[[], Awaitable[CheckResult]]


class HealthMonitor:
    """
    Runs registered health checks concurrently and folds them into one status:
    any `down` check makes the report unhealthy, any `degraded` one degraded.
    """

    def __init__(self) -> None:
        self._checks: Dict[str, HealthCheck] = {}
        self._start = time.monotonic()

    def register_check(self, name: str, check: HealthCheck) -> None:
        self._checks[name] = check

    async def check(self) -> HealthReport:
        names = list(self._checks)
        results = await asyncio.gather(*(self._run(name) for name in names))
        checks = dict(zip(names, results))

        status = HealthStatus.HEALTHY
        if any(r.status == CheckStatus.DOWN for r in checks.values()):
            status = HealthStatus.UNHEALTHY
        elif any(r.status == CheckStatus.DEGRADED for r in checks.values()):
            status = HealthStatus.DEGRADED

        return HealthReport(
            status=status,
            checks=checks,
            timestamp=datetime.now(timezone.utc),
            uptime=time.monotonic() - self._start,
        )

    async def _run(self, name: str) -> CheckResult:
        start = time.perf_counter()
        try:
            result = await self._checks[name]()
        except Exception as e:
            logger.warning(f"Health check '{name}' failed: {e}")
            return CheckResult(status=CheckStatus.DOWN, message=str(e) or type(e).__name__)
        return result.model_copy(update={"latency_ms": (time.perf_counter() - start) * 1000})
