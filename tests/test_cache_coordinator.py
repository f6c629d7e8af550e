"""Unit tests for the single-flight CacheCoordinator."""

import asyncio
import logging
import random
from unittest.mock import AsyncMock, MagicMock

import pytest
from pydantic import BaseModel

from kvguard.adapters.store.in_memory import InMemorySharedStore
from kvguard.core.config import CacheSettings
from kvguard.core.errors import (
    LoaderFailedError,
    PopulationInProgressError,
    StoreUnavailableError,
)
from kvguard.services.cache_coordinator import CacheCoordinator
from kvguard.utils.codecs import ModelCodec


class Post(BaseModel):
    id: int
    title: str


def _coordinator(store: InMemorySharedStore, **overrides) -> CacheCoordinator:
    params = {
        "namespace": "posts",
        "default_ttl": 60.0,
        "jitter_max": 10.0,
        "lock_ttl": 5.0,
        "loader_timeout": 2.0,
        "max_attempts": 20,
        "backoff_base": 0.01,
        "backoff_max": 0.02,
        "rng": random.Random(1234),
    }
    params.update(overrides)
    return CacheCoordinator(store, **params)


def _slow_loader(value, delay: float = 0.05):
    calls = {"count": 0}

    async def loader():
        calls["count"] += 1
        await asyncio.sleep(delay)
        return value

    return loader, calls


class TestHitsAndMisses:
    @pytest.mark.asyncio
    async def test_miss_populates_and_hit_skips_loader(self, store: InMemorySharedStore) -> None:
        coordinator = _coordinator(store)
        loader = AsyncMock(return_value={"id": 42, "title": "Hello"})

        first = await coordinator.get_or_load("42", loader)
        second = await coordinator.get_or_load("42", loader)

        assert first == {"id": 42, "title": "Hello"}
        assert second == first
        loader.assert_awaited_once()
        assert coordinator.stats()["hits"] == 1
        assert coordinator.stats()["loads"] == 1

    @pytest.mark.asyncio
    async def test_value_is_stored_under_namespaced_key(self, store: InMemorySharedStore) -> None:
        coordinator = _coordinator(store)

        await coordinator.get_or_load("42", AsyncMock(return_value=[1, 2, 3]))

        assert await store.get("posts:42") == b"[1,2,3]"
        assert await store.get("lock:posts:42") is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "payload",
        [
            {"nested": {"list": [1, 2.5, None, True]}, "text": "ação"},
            [1, "two", 3.0],
            "plain string",
            0,
        ],
    )
    async def test_round_trip_returns_loaded_value(self, store: InMemorySharedStore, payload) -> None:
        coordinator = _coordinator(store)
        await coordinator.get_or_load("k", AsyncMock(return_value=payload))

        again = await coordinator.get_or_load("k", AsyncMock(side_effect=AssertionError("no reload")))

        assert again == payload

    @pytest.mark.asyncio
    async def test_model_codec_round_trip(self, store: InMemorySharedStore) -> None:
        coordinator = _coordinator(store)
        codec = ModelCodec(Post)

        await coordinator.get_or_load("42", AsyncMock(return_value=Post(id=42, title="t")), codec=codec)
        cached = await coordinator.get_or_load("42", AsyncMock(), codec=codec)

        assert cached == Post(id=42, title="t")

    @pytest.mark.asyncio
    async def test_corrupt_payload_is_treated_as_miss(self, store: InMemorySharedStore) -> None:
        coordinator = _coordinator(store)
        await store.set_with_ttl("posts:42", b"{not json", 60)
        loader = AsyncMock(return_value={"id": 42})

        value = await coordinator.get_or_load("42", loader)

        assert value == {"id": 42}
        loader.assert_awaited_once()
        assert await store.get("posts:42") == b'{"id":42}'
        assert coordinator.stats()["decode_failures"] == 1

    @pytest.mark.asyncio
    async def test_schema_mismatch_is_treated_as_miss(self, store: InMemorySharedStore) -> None:
        coordinator = _coordinator(store)
        await store.set_with_ttl("posts:42", b'{"unexpected": true}', 60)
        loader = AsyncMock(return_value=Post(id=42, title="fresh"))

        value = await coordinator.get_or_load("42", loader, codec=ModelCodec(Post))

        assert value.title == "fresh"
        loader.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_invalidate_forces_reload(self, store: InMemorySharedStore) -> None:
        coordinator = _coordinator(store)
        loader = AsyncMock(side_effect=[{"v": 1}, {"v": 2}])

        assert await coordinator.get_or_load("k", loader) == {"v": 1}
        await coordinator.invalidate("k")

        assert await coordinator.get_or_load("k", loader) == {"v": 2}
        assert loader.await_count == 2


class TestSingleFlight:
    @pytest.mark.asyncio
    async def test_concurrent_cold_callers_invoke_loader_once(self, store: InMemorySharedStore) -> None:
        coordinator = _coordinator(store)
        loader, calls = _slow_loader({"id": 1})

        results = await asyncio.gather(
            *(coordinator.get_or_load("hot", loader) for _ in range(25))
        )

        assert calls["count"] == 1
        assert all(r == {"id": 1} for r in results)
        assert await store.get("lock:posts:hot") is None

    @pytest.mark.asyncio
    async def test_separate_coordinators_share_the_lock(self, store: InMemorySharedStore) -> None:
        # Two coordinators stand in for two processes talking to one store
        first = _coordinator(store)
        second = _coordinator(store)
        loader, calls = _slow_loader("value")

        results = await asyncio.gather(
            first.get_or_load("k", loader),
            second.get_or_load("k", loader),
            first.get_or_load("k", loader),
            second.get_or_load("k", loader),
        )

        assert calls["count"] == 1
        assert results == ["value"] * 4

    @pytest.mark.asyncio
    async def test_late_requester_receives_value_populated_by_first(
        self, store: InMemorySharedStore
    ) -> None:
        coordinator = _coordinator(store)
        loader_a, calls_a = _slow_loader({"id": 42, "title": "post"}, delay=0.05)
        loader_b = AsyncMock(return_value={"id": -1})

        task_a = asyncio.create_task(coordinator.get_or_load("post:42", loader_a))
        await asyncio.sleep(0.005)
        task_b = asyncio.create_task(coordinator.get_or_load("post:42", loader_b))

        result_a, result_b = await asyncio.gather(task_a, task_b)

        assert calls_a["count"] == 1
        loader_b.assert_not_awaited()
        assert result_a == result_b == {"id": 42, "title": "post"}
        assert coordinator.stats()["contended"] >= 1

    @pytest.mark.asyncio
    async def test_exhausted_budget_raises_population_in_progress(
        self, store: InMemorySharedStore
    ) -> None:
        coordinator = _coordinator(store, max_attempts=3)
        await store.set_with_ttl("lock:posts:k", "someone-else", 60)
        loader = AsyncMock(return_value="never")

        with pytest.raises(PopulationInProgressError) as exc_info:
            await coordinator.get_or_load("k", loader)

        loader.assert_not_awaited()
        assert exc_info.value.code == "population_in_progress"
        assert exc_info.value.details["attempts"] == 3
        assert exc_info.value.details["key"] == "posts:k"
        # The foreign lock is untouched
        assert await store.get("lock:posts:k") == b"someone-else"

    @pytest.mark.asyncio
    async def test_single_attempt_budget_does_not_sleep(
        self, store: InMemorySharedStore, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        coordinator = _coordinator(store, max_attempts=1)
        await store.set_with_ttl("lock:posts:k", "someone-else", 60)
        delay = MagicMock(return_value=0.0)
        monkeypatch.setattr("kvguard.services.cache_coordinator.backoff_delay", delay)

        with pytest.raises(PopulationInProgressError):
            await coordinator.get_or_load("k", AsyncMock())

        delay.assert_not_called()


class TestLockRelease:
    @pytest.mark.asyncio
    async def test_lock_released_after_loader_error(self, store: InMemorySharedStore) -> None:
        coordinator = _coordinator(store)
        loader = AsyncMock(side_effect=ValueError("origin exploded"))

        with pytest.raises(ValueError, match="origin exploded"):
            await coordinator.get_or_load("k", loader)

        assert await store.get("lock:posts:k") is None
        assert await store.get("posts:k") is None

    @pytest.mark.asyncio
    async def test_loader_timeout_raises_loader_failed_and_releases(
        self, store: InMemorySharedStore
    ) -> None:
        coordinator = _coordinator(store, lock_ttl=1.0, loader_timeout=0.05)
        loader, _ = _slow_loader("late", delay=1.0)

        with pytest.raises(LoaderFailedError) as exc_info:
            await coordinator.get_or_load("k", loader)

        assert exc_info.value.code == "loader_failed"
        assert await store.get("lock:posts:k") is None

    @pytest.mark.asyncio
    async def test_loader_own_timeout_error_propagates_verbatim(
        self, store: InMemorySharedStore
    ) -> None:
        coordinator = _coordinator(store)
        loader = AsyncMock(side_effect=TimeoutError("upstream socket timeout"))

        with pytest.raises(TimeoutError, match="upstream socket timeout"):
            await coordinator.get_or_load("k", loader)

        assert await store.get("lock:posts:k") is None

    @pytest.mark.asyncio
    async def test_lock_released_when_caller_is_cancelled(self, store: InMemorySharedStore) -> None:
        coordinator = _coordinator(store)
        never = asyncio.Event()

        async def loader():
            await never.wait()

        task = asyncio.create_task(coordinator.get_or_load("k", loader))
        await asyncio.sleep(0.01)
        assert await store.get("lock:posts:k") is not None

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert await store.get("lock:posts:k") is None

    @pytest.mark.asyncio
    async def test_release_never_deletes_a_lock_owned_by_another_caller(
        self, store: InMemorySharedStore, caplog: pytest.LogCaptureFixture
    ) -> None:
        coordinator = _coordinator(store)

        async def loader():
            # Our lock expired and another caller took it over meanwhile
            await store.set_with_ttl("lock:posts:k", "other-holder", 5)
            return "value"

        with caplog.at_level(logging.WARNING, logger="kvguard.services.cache_coordinator"):
            assert await coordinator.get_or_load("k", loader) == "value"

        assert await store.get("lock:posts:k") == b"other-holder"
        assert any(r.getMessage() == "cache.lock_lost" for r in caplog.records)

    @pytest.mark.asyncio
    async def test_release_failure_does_not_mask_result(self, store: InMemorySharedStore) -> None:
        coordinator = _coordinator(store)
        store.eval_atomic = AsyncMock(  # type: ignore[method-assign]
            side_effect=StoreUnavailableError(code="store_unavailable", message="down")
        )

        assert await coordinator.get_or_load("k", AsyncMock(return_value="v")) == "v"

    @pytest.mark.asyncio
    async def test_store_failure_on_read_propagates(self, store: InMemorySharedStore) -> None:
        coordinator = _coordinator(store)
        store.get = AsyncMock(  # type: ignore[method-assign]
            side_effect=StoreUnavailableError(
                code="store_unavailable",
                message="down",
                details={"operation": "get", "key": "posts:k"},
            )
        )
        loader = AsyncMock()

        with pytest.raises(StoreUnavailableError):
            await coordinator.get_or_load("k", loader)

        loader.assert_not_awaited()


class TestJitter:
    @pytest.mark.asyncio
    async def test_expiries_spread_across_jitter_window(self, clock, clocked_store) -> None:
        base_ttl, jitter = 60.0, 30.0
        coordinator = _coordinator(
            clocked_store, default_ttl=base_ttl, jitter_max=jitter, rng=random.Random(7)
        )

        await asyncio.gather(
            *(coordinator.get_or_load(f"k{i}", AsyncMock(return_value=i)) for i in range(100))
        )

        ttls = [clocked_store.ttl(f"posts:k{i}") for i in range(100)]
        assert all(t is not None and base_ttl <= t < base_ttl + jitter for t in ttls)
        assert len(set(ttls)) > 90
        assert max(ttls) - min(ttls) > jitter / 2

    @pytest.mark.asyncio
    async def test_explicit_ttl_overrides_default(self, clock, clocked_store) -> None:
        coordinator = _coordinator(clocked_store, jitter_max=0.0)

        await coordinator.get_or_load("k", AsyncMock(return_value=1), ttl=5.0)

        assert clocked_store.ttl("posts:k") == pytest.approx(5.0)
        clock.advance(5.0)
        assert await clocked_store.get("posts:k") is None


class TestConstruction:
    @pytest.mark.parametrize(
        "kwargs",
        [
            {"lock_ttl": 5.0, "loader_timeout": 5.0},
            {"lock_ttl": 0.0},
            {"jitter_max": -1.0},
            {"max_attempts": 0},
        ],
    )
    def test_invalid_arguments(self, store: InMemorySharedStore, kwargs: dict) -> None:
        with pytest.raises(ValueError):
            _coordinator(store, **kwargs)

    def test_from_settings_applies_overrides(self, store: InMemorySharedStore) -> None:
        cache_settings = CacheSettings(namespace="users", lock_ttl_seconds=10, loader_timeout_seconds=5)

        coordinator = CacheCoordinator.from_settings(store, cache_settings, max_attempts=2)

        assert coordinator.namespace == "users"
        assert coordinator.lock_ttl == 10
        assert coordinator._max_attempts == 2
