from __future__ import annotations

from collections.abc import Sequence

import numpy as np

from batview.colormap import Colormap, greyscale, magnitude_to_level
from batview.models import Frame, RenderedTile, Spectrogram


def global_max_magnitude(spectrogram: Spectrogram) -> float:
    peak = 0.0
    for frame in spectrogram.frames:
        value = frame.peak
        if value > peak:
            peak = value
    return peak


def render_frames(
    frames: Sequence[Frame],
    max_magnitude: float,
    colormap: Colormap = greyscale,
) -> RenderedTile:
    """Render a contiguous run of frames into an RGBA block.

    Width is the frame count and height the bin count. Empty placeholder frames
    (evicted before assembly) render as black columns.
    """
    if not frames:
        return RenderedTile(width=0, height=0, pixels=b"")
    bin_counts = {frame.magnitudes.size for frame in frames if not frame.is_empty}
    if len(bin_counts) > 1:
        raise ValueError(f"frames have inconsistent bin counts: {sorted(bin_counts)}")
    if not bin_counts:
        return RenderedTile(width=0, height=0, pixels=b"")
    height = bin_counts.pop()
    width = len(frames)

    matrix = np.zeros((width, height), dtype=np.float32)
    for col, frame in enumerate(frames):
        if not frame.is_empty:
            matrix[col] = frame.magnitudes
    levels = magnitude_to_level(matrix, max_magnitude)
    # (frames, bins) -> (rows, cols) で行 0 が最高周波数。
    image_levels = levels.T[::-1]

    rgba = np.empty((height, width, 4), dtype=np.uint8)
    rgba[..., :3] = colormap(image_levels)
    rgba[..., 3] = 255
    return RenderedTile(width=width, height=height, pixels=rgba.tobytes())
