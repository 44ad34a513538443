"""LRU cache of rendered spectrogram tiles with de-duplicated background generation.

Each ``(file_id, tile_index)`` key has one slot: absent (empty), a pending marker
while a generation task is in flight, or the ready ``Tile``. Only ready tiles
count towards the byte budget and take part in LRU eviction.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from collections.abc import Callable
from typing import Any, Literal

from batview.analysis import compute_frames
from batview.colormap import Colormap, greyscale
from batview.column_store import ColumnStore
from batview.constants import TILE_BUDGET_BYTES, TILE_FRAMES, VISIBLE_SCHEDULE_LIMIT
from batview.models import LoadedFile, RenderedTile, Tile, TileKey
from batview.scheduler import Scheduler
from batview.session import ViewerSession
from batview.tile_renderer import global_max_magnitude, render_frames

_logger = logging.getLogger(__name__)

TileState = Literal["empty", "pending", "ready"]


class _Pending:
    """In-flight marker. Each scheduled task owns its own instance."""

    __slots__ = ()


def tile_count(total_frames: int, tile_frames: int = TILE_FRAMES) -> int:
    if total_frames <= 0:
        return 0
    return (total_frames + tile_frames - 1) // tile_frames


def ring_order(center: int, count: int, limit: int) -> list[int]:
    """Tile indices ordered by distance from ``center`` (center, -1, +1, -2, +2, ...)."""
    if count <= 0 or limit <= 0:
        return []
    center = min(max(center, 0), count - 1)
    wanted = min(limit, count)
    order = [center]
    distance = 1
    while len(order) < wanted:
        left = center - distance
        right = center + distance
        if left >= 0:
            order.append(left)
        if right < count and len(order) < wanted:
            order.append(right)
        distance += 1
    return order


class TileCache:
    def __init__(
        self,
        session: ViewerSession,
        column_store: ColumnStore,
        scheduler: Scheduler,
        *,
        budget_bytes: int = TILE_BUDGET_BYTES,
        tile_frames: int = TILE_FRAMES,
        colormap: Colormap = greyscale,
    ) -> None:
        self._session = session
        self._column_store = column_store
        self._scheduler = scheduler
        self._budget_bytes = budget_bytes
        self._tile_frames = tile_frames
        self._colormap = colormap
        # 先頭が最も古い。
        self._slots: OrderedDict[TileKey, Tile | _Pending] = OrderedDict()
        self._total_bytes = 0

    @property
    def budget_bytes(self) -> int:
        return self._budget_bytes

    @property
    def tile_frames(self) -> int:
        return self._tile_frames

    @property
    def total_bytes(self) -> int:
        return self._total_bytes

    def __len__(self) -> int:
        return sum(1 for slot in self._slots.values() if isinstance(slot, Tile))

    def state(self, file_id: int, tile_index: int) -> TileState:
        slot = self._slots.get((file_id, tile_index))
        if slot is None:
            return "empty"
        return "ready" if isinstance(slot, Tile) else "pending"

    def insert(self, file_id: int, tile_index: int, rendered: RenderedTile) -> bool:
        key = (file_id, tile_index)
        new_bytes = rendered.nbytes
        if new_bytes > self._budget_bytes:
            _logger.warning(
                "tile %s (%d bytes) exceeds the tile cache budget of %d bytes; not cached",
                key,
                new_bytes,
                self._budget_bytes,
            )
            return False
        existing = self._slots.get(key)
        if isinstance(existing, Tile):
            del self._slots[key]
            self._total_bytes -= existing.nbytes
        while self._total_bytes + new_bytes > self._budget_bytes:
            if not self._evict_oldest():
                break
        self._slots[key] = Tile(file_id=file_id, tile_index=tile_index, rendered=rendered)
        self._slots.move_to_end(key)
        self._total_bytes += new_bytes
        return True

    def get_or_touch(self, file_id: int, tile_index: int) -> Tile | None:
        key = (file_id, tile_index)
        slot = self._slots.get(key)
        if not isinstance(slot, Tile):
            return None
        self._slots.move_to_end(key)
        return slot

    def evict_far(self, file_id: int, center_tile: int, keep_radius: int) -> int:
        doomed = [
            key
            for key, slot in self._slots.items()
            if isinstance(slot, Tile) and (key[0] != file_id or abs(key[1] - center_tile) > keep_radius)
        ]
        for key in doomed:
            self._drop(key)
        if doomed:
            _logger.debug("evicted %d tiles far from tile %d of file %d", len(doomed), center_tile, file_id)
        return len(doomed)

    def clear(self, file_id: int) -> None:
        for key in [key for key in self._slots if key[0] == file_id]:
            self._drop(key)

    def clear_all(self) -> None:
        self._slots.clear()
        self._total_bytes = 0

    def ready_count(self, file_id: int, n_tiles: int) -> int:
        return sum(1 for index in range(n_tiles) if isinstance(self._slots.get((file_id, index)), Tile))

    def render_from_store_sync(self, file_id: int, tile_index: int) -> bool:
        """Render a tile right away from the column store, before later inserts can evict its frames."""
        if isinstance(self._slots.get((file_id, tile_index)), Tile):
            return True
        rendered = self._render_from_store(file_id, tile_index)
        if rendered is None:
            return False
        return self.insert(file_id, tile_index, rendered)

    def schedule(
        self,
        file_id: int,
        tile_index: int,
        source: LoadedFile,
        max_magnitude: float | None = None,
    ) -> asyncio.Task[Any] | None:
        return self._spawn(
            file_id,
            tile_index,
            source,
            lambda: self._render_from_source(file_id, tile_index, source, max_magnitude),
        )

    def schedule_all(self, file_id: int, source: LoadedFile) -> list[asyncio.Task[Any]]:
        spectrogram = source.spectrogram
        total = spectrogram.total_frames or len(spectrogram.frames)
        n_tiles = tile_count(total, self._tile_frames)
        if n_tiles == 0:
            return []
        max_magnitude = global_max_magnitude(spectrogram) if spectrogram.frames else None
        tasks: list[asyncio.Task[Any]] = []
        for tile_index in range(n_tiles):
            task = self.schedule(file_id, tile_index, source, max_magnitude)
            if task is not None:
                tasks.append(task)
        return tasks

    def schedule_visible(
        self,
        file_id: int,
        source: LoadedFile,
        center_tile: int,
        limit: int = VISIBLE_SCHEDULE_LIMIT,
    ) -> list[asyncio.Task[Any]]:
        n_tiles = tile_count(source.spectrogram.total_frames, self._tile_frames)
        tasks: list[asyncio.Task[Any]] = []
        for tile_index in ring_order(center_tile, n_tiles, limit):
            task = self.schedule(file_id, tile_index, source)
            if task is not None:
                tasks.append(task)
        return tasks

    def schedule_on_demand(self, file_id: int, tile_index: int, source: LoadedFile) -> asyncio.Task[Any] | None:
        """Recompute a tile's frames from the audio samples when the column store no longer holds them."""
        return self._spawn(
            file_id,
            tile_index,
            source,
            lambda: self._recompute_from_audio(file_id, tile_index, source),
        )

    def _spawn(
        self,
        file_id: int,
        tile_index: int,
        source: LoadedFile,
        produce: Callable[[], RenderedTile | None],
    ) -> asyncio.Task[Any] | None:
        key = (file_id, tile_index)
        if key in self._slots:
            return None
        marker = _Pending()
        self._slots[key] = marker
        coro = self._generate(key, source, marker, produce)
        try:
            return self._scheduler.spawn(coro, name=f"tile-{file_id}-{tile_index}")
        except BaseException:
            coro.close()
            self._release(key, marker)
            raise

    async def _generate(
        self,
        key: TileKey,
        source: LoadedFile,
        marker: _Pending,
        produce: Callable[[], RenderedTile | None],
    ) -> bool:
        file_id, tile_index = key
        try:
            await self._scheduler.yield_now()
            if self._slots.get(key) is not marker or not self._session.is_open(file_id, source):
                _logger.debug("tile %s abandoned: file closed or tile cleared", key)
                return False
            rendered = produce()
            if rendered is None:
                _logger.debug("tile %s abandoned: frames not available", key)
                return False
            self._release(key, marker)
            if not self.insert(file_id, tile_index, rendered):
                return False
            self._session.changes.bump()
            return True
        finally:
            self._release(key, marker)

    def _release(self, key: TileKey, marker: _Pending) -> None:
        if self._slots.get(key) is marker:
            del self._slots[key]

    def _render_from_source(
        self,
        file_id: int,
        tile_index: int,
        source: LoadedFile,
        max_magnitude: float | None,
    ) -> RenderedTile | None:
        frames = source.spectrogram.frames
        if not frames:
            return self._render_from_store(file_id, tile_index)
        start = tile_index * self._tile_frames
        end = min(start + self._tile_frames, len(frames))
        if start >= end:
            return None
        if max_magnitude is None:
            max_magnitude = global_max_magnitude(source.spectrogram)
        return render_frames(frames[start:end], max_magnitude, self._colormap)

    def _render_from_store(self, file_id: int, tile_index: int) -> RenderedTile | None:
        start = tile_index * self._tile_frames
        if start >= self._column_store.length(file_id):
            return None
        return self._column_store.with_range(
            file_id,
            start,
            start + self._tile_frames,
            lambda frames, max_magnitude: render_frames(frames, max_magnitude, self._colormap),
        )

    def _recompute_from_audio(self, file_id: int, tile_index: int, source: LoadedFile) -> RenderedTile | None:
        start = tile_index * self._tile_frames
        frames = compute_frames(source.audio, start, self._tile_frames)
        if not frames:
            return None
        self._column_store.insert(file_id, start, frames)
        max_magnitude = self._column_store.running_max(file_id)
        if max_magnitude <= 0.0:
            max_magnitude = max(frame.peak for frame in frames)
        return render_frames(frames, max_magnitude, self._colormap)

    def _drop(self, key: TileKey) -> None:
        slot = self._slots.pop(key, None)
        if isinstance(slot, Tile):
            self._total_bytes -= slot.nbytes

    def _evict_oldest(self) -> bool:
        for key, slot in self._slots.items():
            if isinstance(slot, Tile):
                del self._slots[key]
                self._total_bytes -= slot.nbytes
                _logger.debug("evicted least recently used tile %s", key)
                return True
        return False
