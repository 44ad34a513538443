from __future__ import annotations

from pathlib import Path

import numpy as np
import pytest
from PIL import Image

from batview.colormap import get_colormap, greyscale, magma, magnitude_to_level
from batview.models import Frame, Spectrogram, empty_frame
from batview.tile_renderer import global_max_magnitude, render_frames


def _frame(values: list[float]) -> Frame:
    return Frame.from_array(np.asarray(values, dtype=np.float32), 0.0)


def test_magnitude_to_level_db_mapping() -> None:
    levels = magnitude_to_level(np.asarray([1.0, 0.1, 1e-5, 0.0], dtype=np.float32), 1.0)

    assert levels[0] == 255
    # -20 dB -> (60 / 80) * 255 = 191.25
    assert levels[1] == 191
    assert levels[2] == 0
    assert levels[3] == 0


def test_magnitude_to_level_silent_input_is_black() -> None:
    assert not magnitude_to_level(np.ones(4, dtype=np.float32), 0.0).any()


def test_colormaps() -> None:
    levels = np.asarray([0, 128, 255], dtype=np.uint8)

    assert greyscale(levels).tolist() == [[0, 0, 0], [128, 128, 128], [255, 255, 255]]
    assert magma(levels)[0].tolist() == [0, 0, 4]
    assert magma(levels)[-1].tolist() == [252, 253, 191]
    assert get_colormap("magma") is magma
    with pytest.raises(ValueError):
        get_colormap("rainbow")


def test_render_frames_layout() -> None:
    frames = [_frame([1.0, 0.0, 0.0]), _frame([0.0, 0.0, 1.0])]

    tile = render_frames(frames, 1.0)

    assert (tile.width, tile.height) == (2, 3)
    pixels = tile.to_array()
    # 行 0 が最高周波数のビン。
    assert pixels[2, 0, 0] == 255
    assert pixels[0, 0, 0] == 0
    assert pixels[0, 1, 0] == 255
    assert np.all(pixels[..., 3] == 255)


def test_render_frames_placeholder_columns_are_black() -> None:
    frames = [_frame([1.0, 1.0]), empty_frame(), _frame([1.0, 1.0])]

    pixels = render_frames(frames, 1.0).to_array()

    assert pixels.shape == (2, 3, 4)
    assert np.all(pixels[:, 1, :3] == 0)
    assert np.all(pixels[:, 0, :3] == 255)


def test_render_frames_empty_input() -> None:
    assert render_frames([], 1.0).nbytes == 0
    assert render_frames([empty_frame()], 1.0).nbytes == 0


def test_render_frames_rejects_mixed_bin_counts() -> None:
    with pytest.raises(ValueError):
        render_frames([_frame([1.0, 1.0]), _frame([1.0, 1.0, 1.0])], 1.0)


def test_global_max_magnitude() -> None:
    spectrogram = Spectrogram(
        frames=[_frame([0.5, 2.0]), empty_frame(), _frame([1.5, 0.0])],
        total_frames=3,
        freq_resolution=1.0,
        time_resolution=0.01,
        max_freq=1.0,
        sample_rate=2,
    )

    assert global_max_magnitude(spectrogram) == 2.0


def test_rendered_tile_save_png(tmp_path: Path) -> None:
    tile = render_frames([_frame([1.0, 0.1]), _frame([0.1, 1.0])], 1.0, magma)

    path = tile.save_png(tmp_path / "tiles" / "tile.png")

    with Image.open(path) as image:
        assert image.size == (2, 2)
        assert image.mode == "RGBA"


def test_empty_tile_cannot_become_image() -> None:
    with pytest.raises(ValueError):
        render_frames([], 1.0).to_image()
