import json
import threading
from pathlib import Path

import pytest

from coreason_free_fleet.metrics import ESTIMATED_TOKENS_PER_DELEGATION, PAID_MODEL_RATE, MetricsEngine


@pytest.fixture
def metrics_file(tmp_path: Path) -> Path:
    return tmp_path / "metrics.json"


def test_record_success_updates_model(metrics_file: Path) -> None:
    engine = MetricsEngine(metrics_file)
    engine.record_success("groq/llama", 100.0, 50)
    engine.record_success("groq/llama", 300.0, 70)

    metrics = engine.get_model_metrics("groq/llama")
    assert metrics is not None
    assert metrics.total_calls == 2
    assert metrics.success_count == 2
    assert metrics.failure_count == 0
    assert metrics.avg_latency_ms == pytest.approx(200.0)
    assert metrics.total_tokens_used == 120


def test_failures_do_not_move_average_latency(metrics_file: Path) -> None:
    engine = MetricsEngine(metrics_file)
    engine.record_success("m", 100.0, 10)
    engine.record_failure("m")

    metrics = engine.get_model_metrics("m")
    assert metrics is not None
    assert metrics.total_calls == 2
    assert metrics.failure_count == 1
    assert metrics.avg_latency_ms == pytest.approx(100.0)


def test_unknown_model_returns_none(metrics_file: Path) -> None:
    assert MetricsEngine(metrics_file).get_model_metrics("nope") is None


def test_returned_metrics_are_copies(metrics_file: Path) -> None:
    engine = MetricsEngine(metrics_file)
    engine.record_success("m", 10.0, 1)

    snapshot = engine.get_all_model_metrics()
    snapshot["m"].total_calls = 99

    assert engine.get_model_metrics("m").total_calls == 1  # type: ignore[union-attr]


def test_session_savings(metrics_file: Path) -> None:
    engine = MetricsEngine(metrics_file)
    engine.record_success("m", 10.0, 500)
    engine.increment_delegation_count()
    engine.increment_delegation_count()

    session = engine.get_session_metrics()
    expected_saved = 2 * ESTIMATED_TOKENS_PER_DELEGATION - 500
    assert session.delegation_count == 2
    assert session.tokens_saved == expected_saved
    assert session.cost_saved == pytest.approx(expected_saved * PAID_MODEL_RATE)
    assert session.session_id.startswith("session-")
    assert set(session.model_breakdown) == {"m"}


def test_tokens_saved_never_negative(metrics_file: Path) -> None:
    engine = MetricsEngine(metrics_file)
    engine.record_success("m", 10.0, 10_000)
    engine.increment_delegation_count()

    assert engine.get_session_metrics().tokens_saved == 0
    assert engine.get_session_metrics().cost_saved == 0


def test_metrics_persist_across_instances(metrics_file: Path) -> None:
    engine = MetricsEngine(metrics_file)
    engine.record_success("groq/llama", 120.0, 40)
    engine.record_failure("groq/llama")

    stored = json.loads(metrics_file.read_text())
    assert "last_updated" in stored
    assert stored["models"]["groq/llama"]["total_calls"] == 2

    reloaded = MetricsEngine(metrics_file)
    metrics = reloaded.get_model_metrics("groq/llama")
    assert metrics is not None
    assert metrics.success_count == 1
    assert metrics.failure_count == 1
    # Session counters start fresh
    assert reloaded.delegation_count == 0


def test_invalid_stored_entries_are_ignored(metrics_file: Path) -> None:
    metrics_file.write_text(
        json.dumps({"models": {"good": {"model_id": "good", "total_calls": 3}, "bad": {"total_calls": "many"}}})
    )
    engine = MetricsEngine(metrics_file)

    assert set(engine.get_all_model_metrics()) == {"good"}


def test_corrupt_file_starts_empty(metrics_file: Path) -> None:
    metrics_file.write_text("{not json")
    assert MetricsEngine(metrics_file).get_all_model_metrics() == {}


def test_reset_session_keeps_model_history(metrics_file: Path) -> None:
    engine = MetricsEngine(metrics_file)
    engine.record_success("m", 10.0, 1)
    engine.increment_delegation_count()
    engine.reset_session()

    assert engine.delegation_count == 0
    assert engine.get_model_metrics("m") is not None


def test_reset_all_clears_everything(metrics_file: Path) -> None:
    engine = MetricsEngine(metrics_file)
    engine.record_success("m", 10.0, 1)
    engine.increment_delegation_count()
    engine.reset_all()

    assert engine.delegation_count == 0
    assert engine.get_all_model_metrics() == {}
    assert MetricsEngine(metrics_file).get_all_model_metrics() == {}


def test_export_json(metrics_file: Path) -> None:
    engine = MetricsEngine(metrics_file)
    engine.record_success("m", 10.0, 1)

    exported = json.loads(engine.export_json())
    assert set(exported) == {"session", "models"}
    assert "model_breakdown" not in exported["session"]
    assert exported["models"]["m"]["success_count"] == 1


def test_save_failure_is_swallowed(tmp_path: Path) -> None:
    # The target path is a directory, so every write fails
    target = tmp_path / "metrics"
    target.mkdir()
    engine = MetricsEngine(target)
    engine.record_success("m", 10.0, 1)

    assert engine.get_model_metrics("m") is not None


def test_default_path_under_fleet_home(fleet_home: Path) -> None:
    engine = MetricsEngine()
    engine.record_failure("m")

    assert engine.path.is_relative_to(fleet_home)
    assert engine.path.exists()


def test_concurrent_updates_leave_latest_snapshot_on_disk(metrics_file: Path) -> None:
    engine = MetricsEngine(metrics_file)
    workers = [threading.Thread(target=engine.record_success, args=(f"model-{i}", 100.0, 10)) for i in range(8)]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join()

    reloaded = MetricsEngine(metrics_file)
    assert {f"model-{i}" for i in range(8)} <= set(reloaded.get_all_model_metrics())
