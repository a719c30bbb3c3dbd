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
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import ValidationError

from coreason_free_fleet.config import metrics_path
from coreason_free_fleet.models import ModelMetrics, SessionMetrics
from coreason_free_fleet.persistence import PathLike, read_json, write_json
from coreason_free_fleet.utils.logger import logger

# Tokens a delegated task would have cost on a paid model.
ESTIMATED_TOKENS_PER_DELEGATION = 2000
# USD per token for the paid model a delegation replaces ($3 / 1M tokens).
PAID_MODEL_RATE = 3.0 / 1_000_000


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MetricsEngine:
    """
    Tracks per-model usage and session savings. Every mutation is persisted
    to disk; write failures are logged and never reach the caller.
    """

    def __init__(self, path: Optional[PathLike] = None) -> None:
        self.path = Path(path) if path is not None else metrics_path()
        self._models: Dict[str, ModelMetrics] = {}
        self._session_start = _utcnow()
        self._delegation_count = 0
        self._lock = threading.Lock()
        self._save_lock = threading.Lock()
        self._load()

    def record_success(self, model_id: str, latency_ms: float, tokens_used: int) -> None:
        with self._lock:
            metrics = self._models.setdefault(model_id, ModelMetrics(model_id=model_id))
            metrics.total_calls += 1
            metrics.success_count += 1
            # Running mean over successful calls only.
            metrics.avg_latency_ms += (latency_ms - metrics.avg_latency_ms) / metrics.success_count
            metrics.total_tokens_used += tokens_used
            metrics.last_used = _utcnow()
        logger.debug(f"Metrics: {model_id} succeeded in {latency_ms:.0f}ms ({tokens_used} tokens)")
        self._save()

    def record_failure(self, model_id: str) -> None:
        with self._lock:
            metrics = self._models.setdefault(model_id, ModelMetrics(model_id=model_id))
            metrics.total_calls += 1
            metrics.failure_count += 1
            metrics.last_used = _utcnow()
        logger.debug(f"Metrics: {model_id} failed")
        self._save()

    def increment_delegation_count(self) -> None:
        with self._lock:
            self._delegation_count += 1
        self._save()

    @property
    def delegation_count(self) -> int:
        return self._delegation_count

    def get_session_metrics(self) -> SessionMetrics:
        with self._lock:
            tokens_used = sum(m.total_tokens_used for m in self._models.values())
            tokens_saved = max(0, self._delegation_count * ESTIMATED_TOKENS_PER_DELEGATION - tokens_used)
            return SessionMetrics(
                session_id=f"session-{int(self._session_start.timestamp() * 1000)}",
                start_time=self._session_start,
                delegation_count=self._delegation_count,
                tokens_saved=tokens_saved,
                cost_saved=tokens_saved * PAID_MODEL_RATE,
                model_breakdown={k: v.model_copy() for k, v in self._models.items()},
            )

    def get_model_metrics(self, model_id: str) -> Optional[ModelMetrics]:
        with self._lock:
            metrics = self._models.get(model_id)
            return metrics.model_copy() if metrics is not None else None

    def get_all_model_metrics(self) -> Dict[str, ModelMetrics]:
        with self._lock:
            return {k: v.model_copy() for k, v in self._models.items()}

    def reset_session(self) -> None:
        """Starts a new session; per-model history is kept."""
        with self._lock:
            self._session_start = _utcnow()
            self._delegation_count = 0

    def reset_all(self) -> None:
        with self._lock:
            self._models.clear()
            self._session_start = _utcnow()
            self._delegation_count = 0
        self._save()

    def export_json(self) -> str:
        return json.dumps(self._snapshot(), indent=2, default=str)

    def _snapshot(self) -> Dict[str, Any]:
        session = self.get_session_metrics()
        return {
            "session": session.model_dump(mode="json", exclude={"model_breakdown"}),
            "models": {k: v.model_dump(mode="json") for k, v in session.model_breakdown.items()},
        }

    def _save(self) -> None:
        # Serialized so the newest snapshot is always the one left on disk.
        with self._save_lock:
            data = self._snapshot()
            data["last_updated"] = _utcnow().isoformat()
            try:
                write_json(self.path, data)
            except Exception as e:
                logger.warning(f"MetricsEngine: Failed to save metrics to disk: {e}")

    def _load(self) -> None:
        stored = read_json(self.path)
        if not isinstance(stored, dict) or not isinstance(stored.get("models"), dict):
            return
        for model_id, raw in stored["models"].items():
            try:
                self._models[model_id] = ModelMetrics.model_validate(raw)
            except ValidationError as e:
                logger.warning(f"MetricsEngine: Ignoring stored metrics for {model_id}: {e.error_count()} errors")
        logger.info(f"MetricsEngine: Loaded historical metrics for {len(self._models)} models")
