from __future__ import annotations

import asyncio
from typing import Any

import numpy as np
import pytest

import batview.tile_cache as tile_cache_module
from batview.column_store import ColumnStore
from batview.models import AudioData, Frame, LoadedFile, RenderedTile, Spectrogram
from batview.scheduler import AsyncioScheduler
from batview.session import ViewerSession
from batview.tile_cache import TileCache, ring_order, tile_count

BINS = 8
TILE_FRAMES = 4
TILE_BYTES = TILE_FRAMES * BINS * 4


def _rendered(width: int = TILE_FRAMES, height: int = BINS) -> RenderedTile:
    return RenderedTile(width=width, height=height, pixels=bytes(width * height * 4))


def _frames(count: int, start: int = 0) -> list[Frame]:
    return [
        Frame.from_array(np.linspace(0.1, 1.0, BINS, dtype=np.float32), (start + index) * 0.01)
        for index in range(count)
    ]


def _loaded(n_frames: int, with_frames: bool = True, samples: np.ndarray | None = None) -> LoadedFile:
    audio = AudioData(samples=np.zeros(16, dtype=np.float32) if samples is None else samples, sample_rate=8000)
    spectrogram = Spectrogram(
        frames=_frames(n_frames) if with_frames else [],
        total_frames=n_frames,
        freq_resolution=1.0,
        time_resolution=0.01,
        max_freq=4000.0,
        sample_rate=8000,
    )
    return LoadedFile(name="test.wav", audio=audio, spectrogram=spectrogram)


def _make_cache(budget_tiles: int = 100) -> tuple[TileCache, ViewerSession, ColumnStore, AsyncioScheduler]:
    session = ViewerSession()
    store = ColumnStore(budget_bytes=10_000_000, bytes_per_frame=100)
    scheduler = AsyncioScheduler()
    cache = TileCache(session, store, scheduler, budget_bytes=budget_tiles * TILE_BYTES, tile_frames=TILE_FRAMES)
    return cache, session, store, scheduler


def test_tile_count_and_ring_order() -> None:
    assert tile_count(0, 4) == 0
    assert tile_count(9, 4) == 3
    assert ring_order(5, 10, 5) == [5, 4, 6, 3, 7]
    assert ring_order(0, 3, 10) == [0, 1, 2]
    assert ring_order(9, 10, 3) == [9, 8, 7]
    assert ring_order(0, 0, 5) == []


def test_insert_evicts_least_recently_used() -> None:
    cache, *_ = _make_cache(budget_tiles=3)
    for index in range(3):
        assert cache.insert(0, index, _rendered())

    assert cache.get_or_touch(0, 0) is not None
    cache.insert(0, 3, _rendered())

    assert cache.state(0, 1) == "empty"
    assert [cache.state(0, index) for index in (0, 2, 3)] == ["ready", "ready", "ready"]
    assert cache.total_bytes == 3 * TILE_BYTES
    assert len(cache) == 3


def test_insert_replaces_existing_tile() -> None:
    cache, *_ = _make_cache(budget_tiles=3)
    cache.insert(0, 0, _rendered())
    cache.insert(0, 0, _rendered(width=2))

    assert cache.total_bytes == 2 * BINS * 4
    tile = cache.get_or_touch(0, 0)
    assert tile is not None
    assert tile.rendered.width == 2


def test_insert_refuses_tile_larger_than_budget() -> None:
    cache, *_ = _make_cache(budget_tiles=1)
    cache.insert(0, 0, _rendered())

    assert not cache.insert(0, 1, _rendered(width=TILE_FRAMES * 2))
    assert cache.state(0, 0) == "ready"
    assert cache.total_bytes <= cache.budget_bytes


def test_evict_far_keeps_tiles_near_center() -> None:
    cache, *_ = _make_cache()
    for index in range(10):
        cache.insert(0, index, _rendered())
    cache.insert(1, 0, _rendered())

    removed = cache.evict_far(0, 5, 2)

    assert removed == 6
    assert [index for index in range(10) if cache.state(0, index) == "ready"] == [3, 4, 5, 6, 7]
    assert cache.state(1, 0) == "empty"
    assert cache.total_bytes == 5 * TILE_BYTES


def test_clear_only_touches_one_file() -> None:
    cache, *_ = _make_cache()
    cache.insert(0, 0, _rendered())
    cache.insert(1, 0, _rendered())

    cache.clear(0)

    assert cache.state(0, 0) == "empty"
    assert cache.state(1, 0) == "ready"
    assert cache.total_bytes == TILE_BYTES
    cache.clear_all()
    assert cache.total_bytes == 0
    assert len(cache) == 0


def test_schedule_is_deduplicated(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[int] = []
    real_render = tile_cache_module.render_frames

    def counting(*args: Any, **kwargs: Any) -> RenderedTile:
        calls.append(1)
        return real_render(*args, **kwargs)

    monkeypatch.setattr(tile_cache_module, "render_frames", counting)
    cache, session, _, scheduler = _make_cache()
    loaded = _loaded(8)
    file_id = session.open_file(loaded)

    async def scenario() -> None:
        first = cache.schedule(file_id, 1, loaded)
        second = cache.schedule(file_id, 1, loaded)
        assert first is not None
        assert second is None
        assert cache.state(file_id, 1) == "pending"
        await scheduler.wait_idle()

    asyncio.run(scenario())

    assert calls == [1]
    assert cache.state(file_id, 1) == "ready"
    assert session.changes.value == 1
    assert cache.total_bytes == TILE_BYTES


def test_schedule_is_abandoned_when_file_closes() -> None:
    cache, session, _, scheduler = _make_cache()
    loaded = _loaded(8)
    file_id = session.open_file(loaded)

    async def scenario() -> None:
        cache.schedule(file_id, 0, loaded)
        session.close_file(file_id)
        await scheduler.wait_idle()

    asyncio.run(scenario())

    assert cache.state(file_id, 0) == "empty"
    assert cache.total_bytes == 0
    assert session.changes.value == 0


def test_schedule_without_running_loop_leaves_no_marker() -> None:
    cache, session, _, scheduler = _make_cache()
    loaded = _loaded(8)
    file_id = session.open_file(loaded)

    with pytest.raises(RuntimeError):
        cache.schedule(file_id, 0, loaded)

    assert cache.state(file_id, 0) == "empty"
    assert len(cache) == 0

    async def scenario() -> None:
        assert cache.schedule(file_id, 0, loaded) is not None
        await scheduler.wait_idle()

    asyncio.run(scenario())

    assert cache.state(file_id, 0) == "ready"


def test_clear_cancels_pending_generation() -> None:
    cache, session, _, scheduler = _make_cache()
    loaded = _loaded(8)
    file_id = session.open_file(loaded)

    async def scenario() -> None:
        cache.schedule(file_id, 0, loaded)
        cache.clear(file_id)
        assert cache.state(file_id, 0) == "empty"
        await scheduler.wait_idle()

    asyncio.run(scenario())

    assert cache.state(file_id, 0) == "empty"
    assert session.changes.value == 0


def test_incomplete_store_range_releases_marker() -> None:
    cache, session, store, scheduler = _make_cache()
    loaded = _loaded(8, with_frames=False)
    file_id = session.open_file(loaded)
    store.init(file_id, 8)
    store.insert(file_id, 0, _frames(2))

    async def scenario() -> None:
        cache.schedule(file_id, 0, loaded)
        await scheduler.wait_idle()
        assert cache.state(file_id, 0) == "empty"

        store.insert(file_id, 2, _frames(2, start=2))
        assert cache.schedule(file_id, 0, loaded) is not None
        await scheduler.wait_idle()

    asyncio.run(scenario())

    assert cache.state(file_id, 0) == "ready"


def test_failed_generation_clears_marker(monkeypatch: pytest.MonkeyPatch) -> None:
    def broken(*args: Any, **kwargs: Any) -> RenderedTile:
        raise RuntimeError("render failed")

    monkeypatch.setattr(tile_cache_module, "render_frames", broken)
    cache, session, _, scheduler = _make_cache()
    loaded = _loaded(8)
    file_id = session.open_file(loaded)

    async def scenario() -> None:
        cache.schedule(file_id, 0, loaded)
        await scheduler.wait_idle()

    asyncio.run(scenario())

    assert cache.state(file_id, 0) == "empty"


def test_schedule_all_renders_every_tile() -> None:
    cache, session, _, scheduler = _make_cache()
    loaded = _loaded(10)
    file_id = session.open_file(loaded)

    async def scenario() -> int:
        tasks = cache.schedule_all(file_id, loaded)
        await scheduler.wait_idle()
        return len(tasks)

    assert asyncio.run(scenario()) == 3
    assert cache.ready_count(file_id, 3) == 3
    last = cache.get_or_touch(file_id, 2)
    assert last is not None
    assert last.rendered.width == 2


def test_schedule_visible_limits_to_ring() -> None:
    cache, session, _, scheduler = _make_cache()
    loaded = _loaded(40)
    file_id = session.open_file(loaded)

    async def scenario() -> None:
        cache.schedule_visible(file_id, loaded, center_tile=5, limit=3)
        await scheduler.wait_idle()

    asyncio.run(scenario())

    assert [index for index in range(10) if cache.state(file_id, index) == "ready"] == [4, 5, 6]


def test_render_from_store_sync() -> None:
    cache, session, store, _ = _make_cache()
    loaded = _loaded(8, with_frames=False)
    file_id = session.open_file(loaded)
    store.init(file_id, 8)

    assert not cache.render_from_store_sync(file_id, 0)
    store.insert(file_id, 0, _frames(4))
    assert cache.render_from_store_sync(file_id, 0)
    assert cache.state(file_id, 0) == "ready"
    assert not cache.render_from_store_sync(file_id, 5)


def test_schedule_on_demand_recomputes_from_audio() -> None:
    cache, session, store, scheduler = _make_cache(budget_tiles=1000)
    t = np.arange(8000, dtype=np.float64) / 8000.0
    samples = (0.5 * np.sin(2.0 * np.pi * 1000.0 * t)).astype(np.float32)
    loaded = _loaded(12, with_frames=False, samples=samples)
    file_id = session.open_file(loaded)
    store.init(file_id, 12)

    async def scenario() -> None:
        cache.schedule_on_demand(file_id, 1, loaded)
        await scheduler.wait_idle()

    asyncio.run(scenario())

    tile = cache.get_or_touch(file_id, 1)
    assert tile is not None
    assert tile.rendered.width == TILE_FRAMES
    assert tile.rendered.height == 1025
    assert store.is_range_complete(file_id, 4, 8)
    assert store.running_max(file_id) > 0.0
