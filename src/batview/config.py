from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import asdict, dataclass
from typing import Any

from batview.api_schema import CacheConfigPayload, parse_payload
from batview.constants import (
    BYTES_PER_FRAME,
    CHUNK_FRAMES,
    COLUMN_BUDGET_BYTES,
    DEFAULT_KEEP_RADIUS_TILES,
    LARGE_FILE_FRAMES,
    TILE_BUDGET_BYTES,
    TILE_FRAMES,
    VISIBLE_SCHEDULE_LIMIT,
)

_MIB = 1024 * 1024
_ENV_KEYS = {
    "BATVIEW_COLUMN_BUDGET_MB": "column_budget_mb",
    "BATVIEW_TILE_BUDGET_MB": "tile_budget_mb",
    "BATVIEW_COLORMAP": "colormap",
    "BATVIEW_LARGE_FILE_FRAMES": "large_file_frames",
}


@dataclass(frozen=True)
class CacheConfig:
    column_budget_bytes: int = COLUMN_BUDGET_BYTES
    bytes_per_frame: int = BYTES_PER_FRAME
    tile_budget_bytes: int = TILE_BUDGET_BYTES
    tile_frames: int = TILE_FRAMES
    chunk_frames: int = CHUNK_FRAMES
    large_file_frames: int = LARGE_FILE_FRAMES
    keep_radius_tiles: int = DEFAULT_KEEP_RADIUS_TILES
    visible_schedule_limit: int = VISIBLE_SCHEDULE_LIMIT
    colormap: str = "greyscale"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def is_dev_mode(environ: Mapping[str, str] | None = None) -> bool:
    env = os.environ if environ is None else environ
    return env.get("BATVIEW_DEV", "").lower() in {"1", "true", "yes"}


def load_config(environ: Mapping[str, str] | None = None) -> CacheConfig:
    env = os.environ if environ is None else environ
    raw = {field: env[key] for key, field in _ENV_KEYS.items() if env.get(key, "").strip()}
    if not raw:
        return CacheConfig()
    parsed, error = parse_payload(CacheConfigPayload, raw)
    if error is not None or not isinstance(parsed, CacheConfigPayload):
        raise ValueError(error or "Invalid configuration.")
    overrides: dict[str, Any] = {}
    if parsed.column_budget_mb is not None:
        overrides["column_budget_bytes"] = int(parsed.column_budget_mb * _MIB)
    if parsed.tile_budget_mb is not None:
        overrides["tile_budget_bytes"] = int(parsed.tile_budget_mb * _MIB)
    if parsed.large_file_frames is not None:
        overrides["large_file_frames"] = parsed.large_file_frames
    if parsed.colormap is not None:
        overrides["colormap"] = parsed.colormap
    return CacheConfig(**overrides)
