# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_free_fleet

import json
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError

from coreason_free_fleet.config import audit_log_path
from coreason_free_fleet.models import CostTier, FreeModel
from coreason_free_fleet.persistence import PathLike, append_json_line
from coreason_free_fleet.utils.logger import logger

ULTRA_FREE_MIN_CONFIDENCE = 0.9


class AuditEventType(str, Enum):
    MODEL_BLOCKED = "model_blocked"
    FALLBACK_ACTIVATED = "fallback_activated"
    CACHE_STALE_USED = "cache_stale_used"
    SCRAPER_FAILED = "scraper_failed"


class AuditSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    type: AuditEventType
    severity: AuditSeverity
    component: str
    details: Dict[str, Any] = Field(default_factory=dict)


class AuditStats(BaseModel):
    total: int = 0
    by_type: Dict[str, int] = Field(default_factory=dict)
    by_severity: Dict[str, int] = Field(default_factory=dict)
    by_component: Dict[str, int] = Field(default_factory=dict)


class AuditLogger:
    """
    Append-only JSON-lines log of safety events (one event per line).
    """

    def __init__(self, path: Optional[PathLike] = None) -> None:
        self.path = Path(path) if path is not None else audit_log_path()

    def log(self, event: AuditEvent) -> None:
        try:
            append_json_line(self.path, event.model_dump(mode="json"))
        except OSError as e:
            logger.warning(f"AuditLogger: Failed to write audit log: {e}")

    def get_events(self, event_type: Optional[AuditEventType] = None, limit: int = 100) -> List[AuditEvent]:
        """
        Returns up to `limit` of the most recent events of `event_type` (all
        types when None), newest first.
        """
        events = self._read_events()
        if event_type is not None:
            events = [e for e in events if e.type == event_type]
        return list(reversed(events[-limit:])) if limit > 0 else []

    def get_stats(self) -> AuditStats:
        stats = AuditStats()
        for event in self._read_events():
            stats.total += 1
            stats.by_type[event.type.value] = stats.by_type.get(event.type.value, 0) + 1
            stats.by_severity[event.severity.value] = stats.by_severity.get(event.severity.value, 0) + 1
            stats.by_component[event.component] = stats.by_component.get(event.component, 0) + 1
        return stats

    def _read_events(self) -> List[AuditEvent]:
        """All parseable events, oldest first. Unparseable lines are skipped."""
        if not self.path.exists():
            return []
        try:
            lines = [line for line in self.path.read_text(encoding="utf-8").splitlines() if line.strip()]
        except OSError as e:
            logger.warning(f"AuditLogger: Failed to read audit log: {e}")
            return []

        events: List[AuditEvent] = []
        for line in lines:
            try:
                events.append(AuditEvent.model_validate(json.loads(line)))
            except (ValueError, ValidationError):
                continue
        return events


class ValidationResult(BaseModel):
    is_safe: bool
    failed_checks: List[str]
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class StrictValidator:
    """
    Gate for ultra-free routing: only confirmed, fully corroborated free models pass.
    Every rejection is written to the audit log.
    """

    def __init__(self, audit: Optional[AuditLogger] = None) -> None:
        self.audit = audit or AuditLogger()

    def is_ultra_free_safe(self, model: FreeModel) -> ValidationResult:
        checks = {
            "tier": model.tier == CostTier.CONFIRMED_FREE,
            "confidence": model.confidence >= ULTRA_FREE_MIN_CONFIDENCE,
            "multi_source": model.confidence == 1.0,
        }
        failed = [name for name, passed in checks.items() if not passed]
        result = ValidationResult(is_safe=not failed, failed_checks=failed)

        if not result.is_safe:
            logger.info(f"StrictValidator: Blocked {model.qualified_id} ({', '.join(failed)})")
            self.audit.log(
                AuditEvent(
                    timestamp=result.timestamp,
                    type=AuditEventType.MODEL_BLOCKED,
                    severity=AuditSeverity.MEDIUM,
                    component="strict-validator",
                    details={
                        "model": model.id,
                        "provider": model.provider,
                        "tier": model.tier.value,
                        "confidence": model.confidence,
                        "reason": f"Blocked: {', '.join(failed)}",
                    },
                )
            )
        return result
