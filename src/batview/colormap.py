from __future__ import annotations

from collections.abc import Callable
from typing import cast

import numpy as np

Colormap = Callable[[np.ndarray], np.ndarray]

_MIN_DB = -80.0


def magnitude_to_level(magnitudes: np.ndarray, max_magnitude: float) -> np.ndarray:
    """Map magnitudes to 0-255 levels on a log scale clamped to [-80, 0] dB."""
    values = np.asarray(magnitudes, dtype=np.float32)
    if max_magnitude <= 0.0 or values.size == 0:
        return np.zeros(values.shape, dtype=np.uint8)
    levels = np.zeros(values.shape, dtype=np.uint8)
    positive = values > 0.0
    if not np.any(positive):
        return levels
    db = 20.0 * np.log10(values[positive].astype(np.float64) / float(max_magnitude))
    db = np.clip(db, _MIN_DB, 0.0)
    # 切り捨てで 0-255 に量子化する。
    levels[positive] = ((db - _MIN_DB) / -_MIN_DB * 255.0).astype(np.uint8)
    return levels


def greyscale(levels: np.ndarray) -> np.ndarray:
    return np.repeat(np.asarray(levels, dtype=np.uint8)[..., None], 3, axis=-1)


def magma(levels: np.ndarray) -> np.ndarray:
    stops = np.asarray(
        [
            [0, 0, 4],
            [50, 18, 91],
            [121, 40, 130],
            [189, 55, 84],
            [249, 142, 8],
            [252, 253, 191],
        ],
        dtype=np.float32,
    )

    t = (np.asarray(levels).astype(np.float32) / 255.0) * float(stops.shape[0] - 1)
    idx = np.floor(t).astype(np.int32)
    idx = np.clip(idx, 0, stops.shape[0] - 1)
    frac = (t - idx.astype(np.float32))[..., None]
    next_idx = np.minimum(idx + 1, stops.shape[0] - 1)
    start = stops[idx]
    end = stops[next_idx]
    rgb = np.rint(start + (end - start) * frac).astype(np.uint8)
    return cast(np.ndarray, rgb)


COLORMAPS: dict[str, Colormap] = {
    "greyscale": greyscale,
    "magma": magma,
}


def get_colormap(name: str) -> Colormap:
    try:
        return COLORMAPS[name]
    except KeyError:
        raise ValueError(f"Unknown colormap: {name}") from None
