from __future__ import annotations

from functools import lru_cache
from pathlib import Path

import numpy as np
import soundfile as sf
from numpy.lib.stride_tricks import sliding_window_view
from scipy.fft import rfft
from scipy.signal import get_window

from batview.colormap import Colormap, greyscale, magnitude_to_level
from batview.constants import FFT_SIZE, HOP_SIZE, PREVIEW_FFT_SIZE, PREVIEW_HEIGHT, PREVIEW_WIDTH
from batview.models import AudioData, AudioInfo, Frame, RenderedTile, Spectrogram


def load_audio(path: Path) -> tuple[AudioInfo, AudioData]:
    raw, sample_rate = sf.read(path, dtype="float32", always_2d=True)
    channels = int(raw.shape[1])
    samples = raw[:, 0] if channels == 1 else raw.mean(axis=1)
    samples = np.ascontiguousarray(samples, dtype=np.float32)
    audio = AudioData(samples=samples, sample_rate=int(sample_rate))
    info = AudioInfo(
        path=str(path),
        name=path.name,
        sample_rate=int(sample_rate),
        duration_sec=audio.duration_sec,
        channels=channels,
    )
    return info, audio


@lru_cache(maxsize=8)
def _hann_window(size: int) -> np.ndarray:
    # 対称 Hann (分母 size - 1)。
    window = get_window("hann", size, fftbins=False).astype(np.float32)
    window.setflags(write=False)
    return window


def frame_count(sample_count: int, fft_size: int = FFT_SIZE, hop_size: int = HOP_SIZE) -> int:
    return max(0, (sample_count - fft_size) // hop_size + 1)


def compute_frame_magnitudes(
    samples: np.ndarray,
    start: int,
    count: int,
    fft_size: int = FFT_SIZE,
    hop_size: int = HOP_SIZE,
) -> np.ndarray:
    """Return a ``(frames, fft_size // 2 + 1)`` magnitude matrix for frames ``start .. start + count``."""
    total = frame_count(samples.shape[0], fft_size, hop_size)
    end = min(start + count, total)
    bins = fft_size // 2 + 1
    if start < 0 or count <= 0 or start >= end:
        return np.zeros((0, bins), dtype=np.float32)
    first_sample = start * hop_size
    last_sample = (end - 1) * hop_size + fft_size
    segment = np.asarray(samples[first_sample:last_sample], dtype=np.float32)
    blocks = sliding_window_view(segment, fft_size)[::hop_size]
    spectrum = rfft(blocks * _hann_window(fft_size), axis=1)
    return np.abs(spectrum).astype(np.float32)


def compute_frames(
    audio: AudioData,
    start: int,
    count: int,
    fft_size: int = FFT_SIZE,
    hop_size: int = HOP_SIZE,
) -> list[Frame]:
    magnitudes = compute_frame_magnitudes(audio.samples, start, count, fft_size, hop_size)
    rate = float(audio.sample_rate)
    return [
        Frame.from_array(row, (start + offset) * hop_size / rate) for offset, row in enumerate(magnitudes)
    ]


def placeholder_spectrogram(audio: AudioData, fft_size: int = FFT_SIZE, hop_size: int = HOP_SIZE) -> Spectrogram:
    return Spectrogram(
        frames=[],
        total_frames=frame_count(audio.samples.shape[0], fft_size, hop_size),
        freq_resolution=audio.sample_rate / float(fft_size),
        time_resolution=hop_size / float(audio.sample_rate),
        max_freq=audio.sample_rate / 2.0,
        sample_rate=audio.sample_rate,
    )


def compute_preview(
    audio: AudioData,
    width: int = PREVIEW_WIDTH,
    height: int = PREVIEW_HEIGHT,
    colormap: Colormap = greyscale,
) -> RenderedTile:
    """Fast low-resolution overview shown while the full frames are computed."""
    samples = audio.samples
    if samples.shape[0] < PREVIEW_FFT_SIZE:
        return RenderedTile(width=1, height=1, pixels=bytes([0, 0, 0, 255]))

    hop = max(samples.shape[0] // max(1, width), PREVIEW_FFT_SIZE)
    total = frame_count(samples.shape[0], PREVIEW_FFT_SIZE, hop)
    matrix = compute_frame_magnitudes(samples, 0, total, PREVIEW_FFT_SIZE, hop)
    src_w, src_h = matrix.shape
    out_w = min(src_w, width)
    out_h = min(src_h, height)

    cols = (np.arange(out_w) * src_w) // out_w
    # 行 0 が最高周波数。
    bins = src_h - 1 - np.minimum((np.arange(out_h) * src_h) // out_h, src_h - 1)
    sampled = matrix[cols][:, bins].T
    levels = magnitude_to_level(sampled, float(np.max(matrix)))
    rgba = np.empty((out_h, out_w, 4), dtype=np.uint8)
    rgba[..., :3] = colormap(levels)
    rgba[..., 3] = 255
    return RenderedTile(width=out_w, height=out_h, pixels=rgba.tobytes())
