from __future__ import annotations

from batview.column_store import ColumnStore
from batview.config import CacheConfig
from batview.models import LoadedFile, Tile
from batview.session import ViewerSession
from batview.tile_cache import TileCache, tile_count


class ViewportService:
    def __init__(
        self,
        session: ViewerSession,
        column_store: ColumnStore,
        tile_cache: TileCache,
        config: CacheConfig | None = None,
    ) -> None:
        self._session = session
        self._column_store = column_store
        self._tile_cache = tile_cache
        self._config = config or CacheConfig()

    def tiles_for_view(self, file_id: int, first_frame: int, last_frame: int) -> list[Tile | None]:
        """Cached tiles covering the visible frames; missing ones are scheduled and returned as ``None``."""
        loaded = self._session.get(file_id)
        if loaded is None:
            return []
        tile_frames = self._tile_cache.tile_frames
        n_tiles = tile_count(loaded.spectrogram.total_frames, tile_frames)
        if n_tiles == 0:
            return []
        self._session.set_viewport_frame(file_id, (first_frame + last_frame) // 2)
        first_tile = min(first_frame // tile_frames, n_tiles - 1)
        last_tile = min(last_frame // tile_frames, n_tiles - 1)
        tiles: list[Tile | None] = []
        for tile_index in range(first_tile, last_tile + 1):
            tile = self._tile_cache.get_or_touch(file_id, tile_index)
            if tile is None:
                self._request(file_id, tile_index, loaded)
            tiles.append(tile)
        return tiles

    def jump_to(self, file_id: int, center_frame: int, keep_radius: int | None = None) -> int:
        """Record a viewport move; after a jump of more than ``keep_radius`` tiles release far tiles."""
        if self._session.get(file_id) is None:
            return 0
        radius = self._config.keep_radius_tiles if keep_radius is None else keep_radius
        tile_frames = self._tile_cache.tile_frames
        previous_tile = self._session.viewport_frame(file_id) // tile_frames
        self._session.set_viewport_frame(file_id, center_frame)
        center_tile = center_frame // tile_frames
        if abs(center_tile - previous_tile) <= radius:
            return 0
        return self._tile_cache.evict_far(file_id, center_tile, radius)

    def progress(self, file_id: int) -> tuple[int, int]:
        loaded = self._session.get(file_id)
        if loaded is None:
            return 0, 0
        n_tiles = tile_count(loaded.spectrogram.total_frames, self._tile_cache.tile_frames)
        return self._tile_cache.ready_count(file_id, n_tiles), n_tiles

    def _request(self, file_id: int, tile_index: int, loaded: LoadedFile) -> None:
        if not loaded.is_large or loaded.spectrogram.frames:
            self._tile_cache.schedule(file_id, tile_index, loaded)
            return
        tile_frames = self._tile_cache.tile_frames
        start = tile_index * tile_frames
        end = min(start + tile_frames, loaded.spectrogram.total_frames)
        if self._column_store.is_range_complete(file_id, start, end):
            self._tile_cache.schedule(file_id, tile_index, loaded)
        else:
            self._tile_cache.schedule_on_demand(file_id, tile_index, loaded)
