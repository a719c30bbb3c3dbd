import asyncio
import json
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from coreason_free_fleet.allowlist import ConfirmedFreeStore
from coreason_free_fleet.interfaces import MetadataAdapter
from coreason_free_fleet.models import CostTier, ModelMetadata, ScrapedPolicy
from coreason_free_fleet.oracle import MetadataOracle, ModelsDevAdapter
from coreason_free_fleet.persistence import write_json
from coreason_free_fleet.scrapers import CerebrasScraper, PolicyScraperOrchestrator

COMMUNITY_URL = "https://example.com/community-models.json"


def _metadata(model_id: str, provider: str = "fake", is_free: bool = True) -> ModelMetadata:
    return ModelMetadata(
        id=model_id,
        provider=provider,
        name=model_id,
        is_free=is_free,
        tier=CostTier.CONFIRMED_FREE if is_free else CostTier.CONFIRMED_PAID,
        confidence=1.0 if is_free else 0.7,
        reason="test",
    )


def _adapter(provider_id: str = "fake", result: Optional[ModelMetadata] = None, **mock_kwargs: Any) -> MagicMock:
    adapter = MagicMock()
    adapter.provider_id = provider_id
    adapter.provider_name = provider_id
    adapter.is_available.return_value = True
    adapter.fetch_model_metadata = AsyncMock(return_value=result, **mock_kwargs)
    return adapter


def _community_client(payload: Dict[str, Any], status_code: int = 200) -> httpx.AsyncClient:
    def handler(request: httpx.Request) -> httpx.Response:
        assert str(request.url) == COMMUNITY_URL
        return httpx.Response(status_code, json=payload)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def build_oracle(tmp_path: Path) -> Callable[..., MetadataOracle]:
    def build(
        adapters: Optional[List[Any]] = None,
        store: Optional[ConfirmedFreeStore] = None,
        scrapers: Optional[PolicyScraperOrchestrator] = None,
        client: Optional[httpx.AsyncClient] = None,
        cache_path: Optional[Path] = None,
        autostart: bool = False,
        **kwargs: Any,
    ) -> MetadataOracle:
        return MetadataOracle(
            cache_path=cache_path or tmp_path / "metadata.json",
            store=store if store is not None else ConfirmedFreeStore(),
            adapters=adapters if adapters is not None else [],
            scrapers=scrapers or PolicyScraperOrchestrator(cache_path=tmp_path / "policies.json"),
            remote_url=COMMUNITY_URL,
            client=client,
            autostart=autostart,
            **kwargs,
        )

    return build


@pytest.mark.asyncio
async def test_allow_listed_model_needs_no_network(build_oracle: Callable[..., MetadataOracle]) -> None:
    adapter = _adapter()
    oracle = build_oracle(adapters=[adapter])

    verdict = await oracle.fetch_model_metadata("openrouter/qwen/qwen3-coder:free")

    assert verdict.is_free is True
    assert verdict.tier == CostTier.CONFIRMED_FREE
    assert verdict.confidence == 1.0
    adapter.fetch_model_metadata.assert_not_called()


@pytest.mark.asyncio
async def test_allow_list_matches_provider_qualified_ids(build_oracle: Callable[..., MetadataOracle]) -> None:
    adapter = _adapter()
    oracle = build_oracle(adapters=[adapter])

    direct = await oracle.fetch_model_metadata("deepseek-chat", provider_id="deepseek")
    via_openrouter = await oracle.fetch_model_metadata("qwen/qwen3-coder:free", provider_id="chutes")

    assert direct.tier == CostTier.CONFIRMED_FREE
    assert via_openrouter.tier == CostTier.CONFIRMED_FREE
    assert "openrouter" in via_openrouter.reason
    adapter.fetch_model_metadata.assert_not_called()


@pytest.mark.asyncio
async def test_second_lookup_is_served_from_cache(build_oracle: Callable[..., MetadataOracle]) -> None:
    adapter = _adapter(result=_metadata("m1"))
    oracle = build_oracle(adapters=[adapter])

    first = await oracle.fetch_model_metadata("m1")
    second = await oracle.fetch_model_metadata("m1")

    assert first == second
    assert adapter.fetch_model_metadata.await_count == 1


@pytest.mark.asyncio
async def test_verdicts_persist_across_instances(build_oracle: Callable[..., MetadataOracle]) -> None:
    await build_oracle(adapters=[_adapter(result=_metadata("m1"))]).fetch_model_metadata("m1")

    fresh_adapter = _adapter(result=_metadata("m1", is_free=False))
    reloaded = build_oracle(adapters=[fresh_adapter])

    verdict = await reloaded.fetch_model_metadata("m1")
    assert verdict.tier == CostTier.CONFIRMED_FREE
    fresh_adapter.fetch_model_metadata.assert_not_called()


@pytest.mark.asyncio
async def test_any_free_source_confirms_free(build_oracle: Callable[..., MetadataOracle]) -> None:
    paid = _adapter("paid-source", result=_metadata("m1", provider="paid-source", is_free=False))
    free = _adapter("free-source", result=_metadata("m1", provider="free-source"))
    oracle = build_oracle(adapters=[paid, free])

    verdict = await oracle.fetch_model_metadata("m1")

    assert verdict.is_free is True
    assert verdict.tier == CostTier.CONFIRMED_FREE
    assert verdict.confidence == 1.0
    assert "free-source" in verdict.reason


@pytest.mark.asyncio
async def test_metadata_without_free_signal_is_paid(build_oracle: Callable[..., MetadataOracle]) -> None:
    oracle = build_oracle(adapters=[_adapter(result=_metadata("m1", is_free=False))])

    verdict = await oracle.fetch_model_metadata("m1")

    assert verdict.is_free is False
    assert verdict.tier == CostTier.CONFIRMED_PAID
    assert verdict.confidence == 0.7


@pytest.mark.asyncio
async def test_failing_sources_yield_unknown(build_oracle: Callable[..., MetadataOracle]) -> None:
    broken = _adapter(side_effect=httpx.ConnectError("down"))
    empty = _adapter("empty", result=None)
    oracle = build_oracle(adapters=[broken, empty])

    verdict = await oracle.fetch_model_metadata("mystery-model")

    assert verdict.is_free is False
    assert verdict.tier == CostTier.UNKNOWN
    assert verdict.confidence == 0.0
    assert verdict.reason == "No source found for this model"


@pytest.mark.asyncio
async def test_slow_adapter_is_timed_out(build_oracle: Callable[..., MetadataOracle]) -> None:
    async def hang(model_id: str) -> ModelMetadata:
        await asyncio.sleep(5)
        return _metadata(model_id)

    slow = _adapter("slow")
    slow.fetch_model_metadata = hang
    fast = _adapter("fast", result=_metadata("m1", provider="fast", is_free=False))
    oracle = build_oracle(adapters=[slow, fast], adapter_timeout=0.05)

    verdict = await oracle.fetch_model_metadata("m1")

    assert verdict.tier == CostTier.CONFIRMED_PAID


@pytest.mark.asyncio
async def test_scraped_policy_confirms_free(build_oracle: Callable[..., MetadataOracle], tmp_path: Path) -> None:
    scrapers = PolicyScraperOrchestrator(cache_path=tmp_path / "policies.json")
    scrapers.set_policy(
        ScrapedPolicy(provider_id="groq", is_free_tier_active=True, free_models=["llama-3.3-70b-versatile"])
    )
    oracle = build_oracle(adapters=[_adapter(result=None)], scrapers=scrapers)

    verdict = await oracle.fetch_model_metadata("llama-3.3-70b-versatile", provider_id="groq")

    assert verdict.tier == CostTier.CONFIRMED_FREE
    assert verdict.confidence == 1.0
    assert "policy" in verdict.reason


@pytest.mark.asyncio
async def test_unavailable_adapters_are_skipped(build_oracle: Callable[..., MetadataOracle]) -> None:
    offline = _adapter("offline", result=_metadata("m1"))
    offline.is_available.return_value = False
    oracle = build_oracle(adapters=[offline])

    assert oracle.get_available_adapters() == []
    verdict = await oracle.fetch_model_metadata("m1")
    assert verdict.tier == CostTier.UNKNOWN
    offline.fetch_model_metadata.assert_not_called()


@pytest.mark.asyncio
async def test_cache_write_failure_is_swallowed(build_oracle: Callable[..., MetadataOracle], tmp_path: Path) -> None:
    cache_dir = tmp_path / "unwritable"
    cache_dir.mkdir()
    oracle = build_oracle(adapters=[_adapter(result=_metadata("m1"))], cache_path=cache_dir)

    verdict = await oracle.fetch_model_metadata("m1")

    assert verdict.is_free is True
    assert oracle.get_cached("m1") == verdict


@pytest.mark.asyncio
async def test_refresh_community_list_merges_additively(build_oracle: Callable[..., MetadataOracle]) -> None:
    payload = {"version": "2", "lastUpdated": "2025-06-01", "models": ["custom/new-model", "deepseek/deepseek-chat"]}
    store = ConfirmedFreeStore(["deepseek/deepseek-chat", "local/only"])

    async with _community_client(payload) as client:
        oracle = build_oracle(store=store, client=client)
        added = await oracle.refresh_community_list()

    assert added == 1
    assert oracle.confirmed_free_models == frozenset({"deepseek/deepseek-chat", "local/only", "custom/new-model"})
    verdict = await oracle.fetch_model_metadata("custom/new-model")
    assert verdict.tier == CostTier.CONFIRMED_FREE


@pytest.mark.asyncio
async def test_refresh_community_list_failure_keeps_local_list(build_oracle: Callable[..., MetadataOracle]) -> None:
    store = ConfirmedFreeStore(["local/only"])
    async with _community_client({"error": "gone"}, status_code=404) as client:
        oracle = build_oracle(store=store, client=client)
        assert await oracle.refresh_community_list() == 0

    assert oracle.confirmed_free_models == frozenset({"local/only"})


@pytest.mark.asyncio
async def test_background_refresh_lifecycle(build_oracle: Callable[..., MetadataOracle], tmp_path: Path) -> None:
    payload = {"version": "1", "lastUpdated": "2025-06-01", "models": ["remote/model"]}
    scrapers = PolicyScraperOrchestrator(cache_path=tmp_path / "policies.json")
    scrapers.register_scraper(CerebrasScraper())

    async with _community_client(payload) as client:
        async with build_oracle(store=ConfirmedFreeStore([]), scrapers=scrapers, client=client) as oracle:
            await oracle.wait_background()
            assert "remote/model" in oracle.confirmed_free_models
            assert scrapers.get_policy("cerebras") is not None


@pytest.mark.asyncio
async def test_close_cancels_background_work(build_oracle: Callable[..., MetadataOracle]) -> None:
    oracle = build_oracle()
    started = asyncio.Event()

    async def never_finishes() -> int:
        started.set()
        await asyncio.sleep(10)
        return 0

    oracle.refresh_community_list = never_finishes  # type: ignore[method-assign]
    oracle.start()
    await started.wait()
    await oracle.close()
    await oracle.wait_background()


@pytest.mark.asyncio
async def test_invalidate(build_oracle: Callable[..., MetadataOracle]) -> None:
    adapter = _adapter(result=_metadata("m1"))
    oracle = build_oracle(adapters=[adapter])
    await oracle.fetch_model_metadata("m1")

    assert oracle.invalidate("m1") is True
    assert oracle.get_cached("m1") is None
    assert oracle.invalidate("m1") is False

    await oracle.fetch_model_metadata("m1")
    assert adapter.fetch_model_metadata.await_count == 2


@pytest.mark.asyncio
async def test_add_and_remove_confirmed_free_model(build_oracle: Callable[..., MetadataOracle]) -> None:
    oracle = build_oracle(store=ConfirmedFreeStore([]))
    oracle.add_confirmed_free_model("custom/model")
    assert "custom/model" in oracle.confirmed_free_models

    oracle.remove_confirmed_free_model("custom/model")
    assert "custom/model" not in oracle.confirmed_free_models


@pytest.mark.asyncio
async def test_fetch_models_metadata(build_oracle: Callable[..., MetadataOracle]) -> None:
    oracle = build_oracle(adapters=[_adapter(result=None)])
    verdicts = await oracle.fetch_models_metadata(["deepseek/deepseek-chat", "unknown/model"])
    assert [v.tier for v in verdicts] == [CostTier.CONFIRMED_FREE, CostTier.UNKNOWN]


def test_confirmed_free_store() -> None:
    store = ConfirmedFreeStore(["a"])
    assert "a" in store
    assert 42 not in store
    assert store.merge(["a", "b", "c"]) == 2
    assert len(store) == 3
    store.remove("missing")
    assert store.snapshot() == frozenset({"a", "b", "c"})
    # The default store is seeded with curated ids
    assert len(ConfirmedFreeStore()) > 0


def test_models_dev_adapter_satisfies_protocol() -> None:
    assert isinstance(ModelsDevAdapter(), MetadataAdapter)


@pytest.mark.asyncio
async def test_models_dev_adapter() -> None:
    calls = {"count": 0, "fail": False}
    payload = {
        "data": [
            {"id": "m-free", "name": "Free Model", "pricing": {"prompt": "0", "completion": "0"}},
            {"id": "m-paid", "pricing": {"prompt": "0.1", "completion": "0.2"}},
        ]
    }

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        if calls["fail"]:
            return httpx.Response(500)
        return httpx.Response(200, json=payload)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        adapter = ModelsDevAdapter(client)

        free = await adapter.fetch_model_metadata("m-free")
        paid = await adapter.fetch_model_metadata("m-paid")
        missing = await adapter.fetch_model_metadata("m-missing")
        assert calls["count"] == 1

        assert free is not None and free.is_free and free.tier == CostTier.CONFIRMED_FREE
        assert free.name == "Free Model"
        assert paid is not None and paid.tier == CostTier.CONFIRMED_PAID and paid.confidence == 0.7
        assert missing is None
        assert len(await adapter.fetch_models_metadata(["m-paid"])) == 1

        # An expired catalog is reused when the API is down
        adapter._catalog_time = 0.0
        calls["fail"] = True
        assert await adapter.fetch_model_metadata("m-free") is not None
        assert calls["count"] == 2


@pytest.mark.asyncio
async def test_models_dev_adapter_raises_without_catalog() -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(503))
    async with httpx.AsyncClient(transport=transport) as client:
        with pytest.raises(httpx.HTTPStatusError):
            await ModelsDevAdapter(client).fetch_model_metadata("m")


@pytest.mark.asyncio
async def test_models_dev_missing_pricing_is_not_free() -> None:
    payload = {
        "data": [
            {"id": "no-pricing"},
            {"id": "empty-pricing", "pricing": {}},
            {"id": "numeric-zero", "pricing": {"prompt": 0, "completion": 0.5}},
        ]
    }
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json=payload))
    async with httpx.AsyncClient(transport=transport) as client:
        adapter = ModelsDevAdapter(client)

        for model_id in ("no-pricing", "empty-pricing"):
            metadata = await adapter.fetch_model_metadata(model_id)
            assert metadata is not None
            assert not metadata.is_free
            assert metadata.tier == CostTier.CONFIRMED_PAID
            assert metadata.confidence == 0.7

        numeric = await adapter.fetch_model_metadata("numeric-zero")
        assert numeric is not None and numeric.is_free


@pytest.mark.asyncio
async def test_unpriced_catalog_entry_does_not_confirm_free(build_oracle: Callable[..., MetadataOracle]) -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"data": [{"id": "mystery-model"}]}))
    async with httpx.AsyncClient(transport=transport) as client:
        oracle = build_oracle(adapters=[ModelsDevAdapter(client)])
        verdict = await oracle.fetch_model_metadata("mystery-model")

    assert not verdict.is_free
    assert verdict.tier == CostTier.CONFIRMED_PAID


@pytest.mark.asyncio
async def test_construction_in_event_loop_starts_background_refresh(
    build_oracle: Callable[..., MetadataOracle],
) -> None:
    payload = {"version": "1", "lastUpdated": "2025-06-01", "models": ["remote/model"]}
    async with _community_client(payload) as client:
        oracle = build_oracle(store=ConfirmedFreeStore([]), client=client, autostart=True)
        await oracle.wait_background()

    assert "remote/model" in oracle.confirmed_free_models
    await oracle.close()


@pytest.mark.asyncio
async def test_start_is_idempotent(build_oracle: Callable[..., MetadataOracle]) -> None:
    oracle = build_oracle()
    refreshes: List[int] = []

    async def count_refresh() -> int:
        refreshes.append(1)
        return 0

    oracle.refresh_community_list = count_refresh  # type: ignore[method-assign]
    oracle.start()
    oracle.start()
    await oracle.wait_background()
    assert len(refreshes) == 1

    await oracle.close()
    oracle.start()
    await oracle.wait_background()
    assert len(refreshes) == 2
    await oracle.close()


def test_construction_without_event_loop_defers_refresh(build_oracle: Callable[..., MetadataOracle]) -> None:
    oracle = build_oracle(autostart=True)
    assert not oracle._background


@pytest.mark.asyncio
async def test_cache_is_written_off_the_event_loop(build_oracle: Callable[..., MetadataOracle], tmp_path: Path) -> None:
    writer_threads: List[int] = []

    def recording_write(path: Path, data: Any) -> None:
        writer_threads.append(threading.get_ident())
        write_json(path, data)

    oracle = build_oracle(adapters=[_adapter(result=_metadata("m1"))])
    with patch("coreason_free_fleet.oracle.write_json", side_effect=recording_write):
        await oracle.fetch_model_metadata("m1")

    assert writer_threads
    assert threading.get_ident() not in writer_threads
    assert "m1" in json.loads((tmp_path / "metadata.json").read_text())


@pytest.mark.asyncio
async def test_concurrent_lookups_all_reach_disk(build_oracle: Callable[..., MetadataOracle], tmp_path: Path) -> None:
    adapter = _adapter()
    adapter.fetch_model_metadata = AsyncMock(side_effect=lambda model_id: _metadata(model_id))
    oracle = build_oracle(adapters=[adapter])

    await asyncio.gather(*(oracle.fetch_model_metadata(f"m{i}") for i in range(5)))

    stored = json.loads((tmp_path / "metadata.json").read_text())
    assert set(stored) == {f"m{i}" for i in range(5)}
