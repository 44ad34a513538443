from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from batview.analysis import compute_frames, compute_preview, placeholder_spectrogram
from batview.colormap import get_colormap
from batview.column_store import ColumnStore
from batview.config import CacheConfig
from batview.models import AudioData, LoadedFile, Spectrogram
from batview.scheduler import Scheduler
from batview.session import ViewerSession
from batview.tile_cache import TileCache, tile_count

_logger = logging.getLogger(__name__)

BatchCallback = Callable[[int, int], None]


class ChunkDriver:
    """Produces a file's frames in small batches, yielding to the host after each one."""

    def __init__(
        self,
        session: ViewerSession,
        column_store: ColumnStore,
        scheduler: Scheduler,
        chunk_frames: int,
    ) -> None:
        self._session = session
        self._column_store = column_store
        self._scheduler = scheduler
        self._chunk_frames = chunk_frames

    async def run(self, file_id: int, loaded: LoadedFile, on_batch: BatchCallback | None = None) -> bool:
        """Return ``False`` when the file was closed before every frame was produced."""
        total = loaded.spectrogram.total_frames
        for start in range(0, total, self._chunk_frames):
            if not self._session.is_open(file_id, loaded):
                _logger.debug("frame production for %s stopped at %d/%d: file closed", loaded.name, start, total)
                return False
            frames = compute_frames(loaded.audio, start, self._chunk_frames)
            self._column_store.insert(file_id, start, frames)
            if on_batch is not None:
                on_batch(start, len(frames))
            await self._scheduler.yield_now()
        return self._session.is_open(file_id, loaded)


class LoadingService:
    def __init__(
        self,
        session: ViewerSession,
        column_store: ColumnStore,
        tile_cache: TileCache,
        scheduler: Scheduler,
        config: CacheConfig | None = None,
    ) -> None:
        self._session = session
        self._column_store = column_store
        self._tile_cache = tile_cache
        self._scheduler = scheduler
        self._config = config or CacheConfig()
        self._colormap = get_colormap(self._config.colormap)
        self._driver = ChunkDriver(session, column_store, scheduler, self._config.chunk_frames)

    def start_load(self, name: str, audio: AudioData) -> tuple[int, asyncio.Task[Any]]:
        """Register the file right away and compute its frames in the background."""
        file_id, loaded = self._register(name, audio)
        coro = self._compute(file_id, loaded)
        try:
            task = self._scheduler.spawn(coro, name=f"load-{file_id}")
        except BaseException:
            coro.close()
            self._session.close_file(file_id)
            raise
        return file_id, task

    async def load(self, name: str, audio: AudioData) -> int | None:
        file_id, loaded = self._register(name, audio)
        return await self._compute(file_id, loaded)

    def _register(self, name: str, audio: AudioData) -> tuple[int, LoadedFile]:
        preview = compute_preview(audio, colormap=self._colormap)
        loaded = LoadedFile(name=name, audio=audio, spectrogram=placeholder_spectrogram(audio), preview=preview)
        file_id = self._session.open_file(loaded)
        _logger.info(
            "Loaded %s: %d samples, %d Hz, %.2fs",
            name,
            audio.samples.shape[0],
            audio.sample_rate,
            audio.duration_sec,
        )
        self._session.changes.bump()
        return file_id, loaded

    async def _compute(self, file_id: int, loaded: LoadedFile) -> int | None:
        # プレビューを先に描画させる。
        await self._scheduler.yield_now()
        if not self._session.is_open(file_id, loaded):
            return None

        total = loaded.spectrogram.total_frames
        self._column_store.init(file_id, total)
        on_batch = self._tile_renderer_for(file_id, total)
        if not await self._driver.run(file_id, loaded, on_batch):
            return None

        is_large = total > self._config.large_file_frames
        if is_large:
            loaded.is_large = True
            _logger.info("Large file (%d frames): keeping column store, skipping full assembly", total)
        else:
            frames = self._column_store.drain(file_id) or []
            placeholder = loaded.spectrogram
            loaded.spectrogram = Spectrogram(
                frames=frames,
                total_frames=total,
                freq_resolution=placeholder.freq_resolution,
                time_resolution=placeholder.time_resolution,
                max_freq=placeholder.max_freq,
                sample_rate=placeholder.sample_rate,
            )
            _logger.info(
                "Spectrogram: %d frames, freq_res=%.1f Hz, time_res=%.4fs",
                len(frames),
                placeholder.freq_resolution,
                placeholder.time_resolution,
            )

        # 読み込み中のタイルは暫定の最大値で描かれているので、最終値で描き直す。
        self._tile_cache.clear(file_id)
        if is_large:
            center_tile = self._session.viewport_frame(file_id) // self._tile_cache.tile_frames
            self._tile_cache.schedule_visible(file_id, loaded, center_tile, self._config.visible_schedule_limit)
        else:
            self._tile_cache.schedule_all(file_id, loaded)

        loaded.is_complete = True
        self._session.changes.bump()
        self._session.emit({"type": "file_loaded", "file_id": file_id, **loaded.spectrogram.to_dict()})
        return file_id

    def _tile_renderer_for(self, file_id: int, total: int) -> BatchCallback:
        tile_frames = self._tile_cache.tile_frames
        n_tiles = tile_count(total, tile_frames)
        rendered: set[int] = set()

        def _render_completed(start: int, count: int) -> None:
            if count <= 0 or n_tiles == 0:
                return
            first_tile = start // tile_frames
            last_tile = min((start + count - 1) // tile_frames, n_tiles - 1)
            any_rendered = False
            for tile_index in range(first_tile, last_tile + 1):
                if tile_index in rendered:
                    continue
                tile_start = tile_index * tile_frames
                tile_end = min(tile_start + tile_frames, total)
                if not self._column_store.is_range_complete(file_id, tile_start, tile_end):
                    continue
                if self._tile_cache.render_from_store_sync(file_id, tile_index):
                    any_rendered = True
                rendered.add(tile_index)
            if any_rendered:
                self._session.changes.bump()

        return _render_completed
