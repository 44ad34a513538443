from __future__ import annotations

from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

import numpy as np
from PIL import Image

TileKey = tuple[int, int]


@dataclass(frozen=True, eq=False)
class Frame:
    """One spectral time slice. ``magnitudes`` is a read-only float32 vector."""

    magnitudes: np.ndarray
    time_offset: float

    @classmethod
    def from_array(cls, magnitudes: np.ndarray, time_offset: float) -> Frame:
        # 一括計算した行列の行ビューを持たないよう必ずコピーする。
        values = np.array(magnitudes, dtype=np.float32, copy=True)
        if values.ndim != 1:
            raise ValueError(f"frame magnitudes must be 1-D, got shape {values.shape}")
        values.setflags(write=False)
        return cls(magnitudes=values, time_offset=float(time_offset))

    @property
    def is_empty(self) -> bool:
        return self.magnitudes.size == 0

    @property
    def peak(self) -> float:
        if self.magnitudes.size == 0:
            return 0.0
        return float(np.max(self.magnitudes))


_EMPTY_MAGNITUDES = np.zeros(0, dtype=np.float32)
_EMPTY_MAGNITUDES.setflags(write=False)


def empty_frame() -> Frame:
    return Frame(magnitudes=_EMPTY_MAGNITUDES, time_offset=0.0)


@dataclass(frozen=True)
class AudioData:
    samples: np.ndarray
    sample_rate: int

    @property
    def duration_sec(self) -> float:
        if self.sample_rate <= 0:
            return 0.0
        return self.samples.shape[0] / float(self.sample_rate)


@dataclass(frozen=True)
class AudioInfo:
    path: str
    name: str
    sample_rate: int
    duration_sec: float
    channels: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Spectrogram:
    frames: list[Frame]
    total_frames: int
    freq_resolution: float
    time_resolution: float
    max_freq: float
    sample_rate: int

    @property
    def is_placeholder(self) -> bool:
        return not self.frames

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_frames": self.total_frames,
            "computed_frames": len(self.frames),
            "freq_resolution": self.freq_resolution,
            "time_resolution": self.time_resolution,
            "max_freq": self.max_freq,
            "sample_rate": self.sample_rate,
        }


@dataclass(frozen=True)
class RenderedTile:
    """RGBA pixel block, row-major, row 0 = highest frequency bin."""

    width: int
    height: int
    pixels: bytes

    @property
    def nbytes(self) -> int:
        return len(self.pixels)

    def to_array(self) -> np.ndarray:
        return np.frombuffer(self.pixels, dtype=np.uint8).reshape((self.height, self.width, 4))

    def to_image(self) -> Image.Image:
        if self.width <= 0 or self.height <= 0:
            raise ValueError("cannot build an image from an empty tile")
        return Image.frombuffer("RGBA", (self.width, self.height), self.pixels, "raw", "RGBA", 0, 1)

    def save_png(self, path: Path) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        self.to_image().save(path, format="PNG")
        return path


@dataclass(frozen=True)
class Tile:
    file_id: int
    tile_index: int
    rendered: RenderedTile

    @property
    def nbytes(self) -> int:
        return self.rendered.nbytes

    def to_dict(self) -> dict[str, Any]:
        return {
            "file_id": self.file_id,
            "tile_index": self.tile_index,
            "width": self.rendered.width,
            "height": self.rendered.height,
            "bytes": self.rendered.nbytes,
        }


@dataclass
class LoadedFile:
    """An open file. Liveness checks compare these objects by identity."""

    name: str
    audio: AudioData
    spectrogram: Spectrogram
    preview: RenderedTile | None = None
    is_large: bool = False
    is_complete: bool = False


@dataclass
class ChangeCounter:
    """Monotonic "data changed" counter watched by views that need to repaint."""

    value: int = 0
    _listeners: list[Callable[[int], None]] = field(default_factory=list, repr=False)

    def bump(self) -> int:
        self.value += 1
        for listener in list(self._listeners):
            listener(self.value)
        return self.value

    def subscribe(self, listener: Callable[[int], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe
