from __future__ import annotations

import asyncio
import json
import time
from datetime import UTC, datetime
from pathlib import Path

import numpy as np

from batview.column_store import ColumnStore
from batview.config import CacheConfig
from batview.models import AudioData
from batview.scheduler import AsyncioScheduler
from batview.services import LoadingService
from batview.session import ViewerSession
from batview.tile_cache import TileCache
from batview.tile_renderer import render_frames


async def _load(audio: AudioData, config: CacheConfig) -> tuple[float, int, int, ColumnStore, int]:
    session = ViewerSession()
    store = ColumnStore(config.column_budget_bytes, config.bytes_per_frame)
    scheduler = AsyncioScheduler()
    cache = TileCache(session, store, scheduler, budget_bytes=config.tile_budget_bytes, tile_frames=config.tile_frames)
    service = LoadingService(session, store, cache, scheduler, config)
    t0 = time.perf_counter()
    file_id = await service.load("benchmark", audio)
    await scheduler.wait_idle()
    elapsed = time.perf_counter() - t0
    assert file_id is not None
    loaded = session.get(file_id)
    assert loaded is not None
    return elapsed, loaded.spectrogram.total_frames, len(cache), store, file_id


def main() -> None:
    sample_rate = 384_000
    duration_sec = 30.0
    samples = int(sample_rate * duration_sec)
    t = np.arange(samples, dtype=np.float64) / float(sample_rate)
    chirp = np.sin(2.0 * np.pi * (40_000.0 + 20_000.0 * (t % 0.05) / 0.05) * t)
    audio = AudioData(samples=(0.3 * chirp).astype(np.float32), sample_rate=sample_rate)
    # ストアを保持させるため大ファイル扱いにする。
    config = CacheConfig(large_file_frames=0)

    load_sec, total_frames, ready_tiles, store, file_id = asyncio.run(_load(audio, config))

    iterations = 20
    warmup = 3
    times_ms: list[float] = []
    n_tiles = max(1, total_frames // config.tile_frames)
    for index in range(warmup + iterations):
        tile_index = index % n_tiles
        start = tile_index * config.tile_frames
        t0 = time.perf_counter()
        store.with_range(
            file_id,
            start,
            start + config.tile_frames,
            lambda frames, peak: render_frames(frames, peak),
        )
        elapsed_ms = (time.perf_counter() - t0) * 1000.0
        if index >= warmup:
            times_ms.append(elapsed_ms)

    arr = np.asarray(times_ms, dtype=np.float64)
    payload = {
        "captured_at": datetime.now(UTC).isoformat(),
        "sample_rate": sample_rate,
        "duration_sec": duration_sec,
        "total_frames": total_frames,
        "load_sec": round(load_sec, 4),
        "frames_per_sec": round(total_frames / load_sec, 1) if load_sec > 0 else None,
        "ready_tiles": ready_tiles,
        "column_bytes": store.total_bytes,
        "iterations": iterations,
        "render_timings_ms": [round(float(v), 4) for v in times_ms],
        "render_stats_ms": {
            "min": float(np.min(arr)),
            "max": float(np.max(arr)),
            "mean": float(np.mean(arr)),
            "p95": float(np.percentile(arr, 95.0)),
        },
    }
    out_dir = Path("logs/benchmarks")
    out_dir.mkdir(parents=True, exist_ok=True)
    stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    out_file = out_dir / f"tiles-{stamp}.json"
    latest_file = out_dir / "tiles-latest.json"
    out_file.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
    latest_file.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
    print(out_file)


if __name__ == "__main__":
    main()
