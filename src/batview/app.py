from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from collections.abc import Callable, Sequence
from dataclasses import replace
from functools import wraps
from pathlib import Path
from typing import Any, TypeVar, cast

import numpy as np

from batview.analysis import load_audio
from batview.api_schema import (
    ExportTilePayload,
    FilePayload,
    JumpViewportPayload,
    OpenAudioPathPayload,
    PayloadBase,
    RequestTilesPayload,
    parse_payload,
)
from batview.colormap import COLORMAPS, get_colormap
from batview.column_store import ColumnStore
from batview.config import CacheConfig, load_config
from batview.logging_utils import configure_logging
from batview.models import AudioData
from batview.scheduler import AsyncioScheduler
from batview.services import LoadingService, ViewportService
from batview.session import ViewerSession
from batview.tile_cache import TileCache

logger = logging.getLogger(__name__)


def _summarize_payload(value: Any) -> Any:
    if isinstance(value, dict):
        items = list(value.items())
        summary = {key: _summarize_payload(val) for key, val in items[:10]}
        if len(items) > 10:
            summary["..."] = f"{len(items) - 10} more"
        return summary
    if isinstance(value, (list, tuple)):
        if len(value) > 10:
            preview = [_summarize_payload(item) for item in value[:3]]
            preview.append(f"...({len(value) - 3} more)")
            return preview
        return [_summarize_payload(item) for item in value]
    if isinstance(value, np.ndarray):
        return f"ndarray(shape={value.shape}, dtype={value.dtype})"
    if isinstance(value, (bytes, bytearray)):
        return f"bytes(len={len(value)})"
    if isinstance(value, str) and len(value) > 200:
        return f"{value[:200]}...(truncated)"
    return value


def _log_api_call(method: Any) -> Any:
    @wraps(method)
    def wrapper(self: BatviewApp, *args: Any, **kwargs: Any) -> Any:
        logger.info(
            "api request %s args=%s kwargs=%s",
            method.__name__,
            _summarize_payload(args),
            _summarize_payload(kwargs),
        )
        result = method(self, *args, **kwargs)
        logger.info("api response %s result=%s", method.__name__, _summarize_payload(result))
        return result

    return wrapper


PayloadT = TypeVar("PayloadT", bound=PayloadBase)


def _validated_payload(
    model: type[PayloadT],
    payload: dict[str, Any],
    method_name: str,
) -> PayloadT | dict[str, str]:
    parsed, error = parse_payload(model, payload)
    if error:
        logger.warning("api request %s invalid payload: %s", method_name, error)
        return {"status": "error", "message": error}
    if parsed is None:
        return {"status": "error", "message": "Invalid payload."}
    return cast(PayloadT, parsed)


class BatviewApp:
    """Request boundary over the session, the two caches and the background services.

    Methods that start background work must be called from inside the running event loop.
    """

    def __init__(
        self,
        config: CacheConfig | None = None,
        scheduler: AsyncioScheduler | None = None,
        event_sink: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self._config = config or load_config()
        self._scheduler = scheduler or AsyncioScheduler()
        self._session = ViewerSession(event_sink=event_sink)
        self._column_store = ColumnStore(self._config.column_budget_bytes, self._config.bytes_per_frame)
        self._tile_cache = TileCache(
            self._session,
            self._column_store,
            self._scheduler,
            budget_bytes=self._config.tile_budget_bytes,
            tile_frames=self._config.tile_frames,
            colormap=get_colormap(self._config.colormap),
        )
        self._loading_service = LoadingService(
            self._session,
            self._column_store,
            self._tile_cache,
            self._scheduler,
            self._config,
        )
        self._viewport_service = ViewportService(
            self._session,
            self._column_store,
            self._tile_cache,
            self._config,
        )

    @property
    def config(self) -> CacheConfig:
        return self._config

    @property
    def session(self) -> ViewerSession:
        return self._session

    @property
    def column_store(self) -> ColumnStore:
        return self._column_store

    @property
    def tile_cache(self) -> TileCache:
        return self._tile_cache

    def health(self) -> dict[str, str]:
        return {"status": "ok"}

    def open_audio(self, name: str, audio: AudioData) -> int:
        file_id, _ = self._loading_service.start_load(name, audio)
        return file_id

    @_log_api_call
    def open_audio_path(self, payload: dict[str, Any]) -> dict[str, Any]:
        parsed = _validated_payload(OpenAudioPathPayload, payload, "open_audio_path")
        if isinstance(parsed, dict):
            return parsed

        path = Path(parsed.path).expanduser()
        if not path.is_absolute():
            path = path.resolve()
        if not path.exists() or not path.is_file():
            return {"status": "error", "message": "Audio file not found."}
        try:
            info, audio = load_audio(path)
        except Exception as exc:  # pragma: no cover - surface errors to the caller
            logger.exception("open_audio_path failed: %s", path)
            return {"status": "error", "message": str(exc)}

        file_id = self.open_audio(info.name, audio)
        loaded = self._session.get(file_id)
        preview = loaded.preview if loaded is not None else None
        return {
            "status": "ok",
            "file_id": file_id,
            "audio": info.to_dict(),
            "spectrogram": loaded.spectrogram.to_dict() if loaded is not None else None,
            "preview": None if preview is None else {"width": preview.width, "height": preview.height},
        }

    @_log_api_call
    def close_file(self, payload: dict[str, Any]) -> dict[str, Any]:
        parsed = _validated_payload(FilePayload, payload, "close_file")
        if isinstance(parsed, dict):
            return parsed
        loaded = self._session.close_file(parsed.file_id)
        if loaded is None:
            return {"status": "error", "message": "File not open."}
        self._column_store.clear(parsed.file_id)
        self._tile_cache.clear(parsed.file_id)
        self._session.changes.bump()
        return {"status": "ok", "file_id": parsed.file_id}

    @_log_api_call
    def clear_all(self) -> dict[str, Any]:
        closed = self._session.close_all()
        self._column_store.clear_all()
        self._tile_cache.clear_all()
        self._session.changes.bump()
        return {"status": "ok", "closed": closed}

    @_log_api_call
    def request_tiles(self, payload: dict[str, Any]) -> dict[str, Any]:
        parsed = _validated_payload(RequestTilesPayload, payload, "request_tiles")
        if isinstance(parsed, dict):
            return parsed
        if self._session.get(parsed.file_id) is None:
            return {"status": "error", "message": "File not open."}
        tiles = self._viewport_service.tiles_for_view(parsed.file_id, parsed.first_frame, parsed.last_frame)
        return {
            "status": "ok",
            "tiles": [tile.to_dict() if tile is not None else None for tile in tiles],
            "missing": sum(1 for tile in tiles if tile is None),
        }

    @_log_api_call
    def jump_viewport(self, payload: dict[str, Any]) -> dict[str, Any]:
        parsed = _validated_payload(JumpViewportPayload, payload, "jump_viewport")
        if isinstance(parsed, dict):
            return parsed
        if self._session.get(parsed.file_id) is None:
            return {"status": "error", "message": "File not open."}
        evicted = self._viewport_service.jump_to(parsed.file_id, parsed.center_frame, parsed.keep_radius)
        return {"status": "ok", "evicted": evicted}

    @_log_api_call
    def progress(self, payload: dict[str, Any]) -> dict[str, Any]:
        parsed = _validated_payload(FilePayload, payload, "progress")
        if isinstance(parsed, dict):
            return parsed
        loaded = self._session.get(parsed.file_id)
        if loaded is None:
            return {"status": "error", "message": "File not open."}
        ready, total = self._viewport_service.progress(parsed.file_id)
        return {
            "status": "ok",
            "file_id": parsed.file_id,
            "name": loaded.name,
            "ready_tiles": ready,
            "total_tiles": total,
            "computed": loaded.is_complete,
            "is_large": loaded.is_large,
            "column_bytes": self._column_store.total_bytes,
            "tile_bytes": self._tile_cache.total_bytes,
        }

    @_log_api_call
    def export_tile(self, payload: dict[str, Any]) -> dict[str, Any]:
        parsed = _validated_payload(ExportTilePayload, payload, "export_tile")
        if isinstance(parsed, dict):
            return parsed
        tile = self._tile_cache.get_or_touch(parsed.file_id, parsed.tile_index)
        if tile is None:
            return {"status": "error", "message": "Tile not ready."}
        try:
            path = tile.rendered.save_png(Path(parsed.path).expanduser())
        except (OSError, ValueError) as exc:
            logger.exception("export_tile failed")
            return {"status": "error", "message": str(exc)}
        return {"status": "ok", "path": str(path)}

    def status(self) -> dict[str, Any]:
        files = []
        for file_id in self._session.file_ids():
            loaded = self._session.get(file_id)
            if loaded is None:
                continue
            files.append({"file_id": file_id, "name": loaded.name, **loaded.spectrogram.to_dict()})
        return {
            "status": "ok",
            "files": files,
            "current_file_id": self._session.current_file_id,
            "column_bytes": self._column_store.total_bytes,
            "column_budget_bytes": self._column_store.budget_bytes,
            "tile_bytes": self._tile_cache.total_bytes,
            "tile_budget_bytes": self._tile_cache.budget_bytes,
            "changes": self._session.changes.value,
        }

    async def wait_until_idle(self) -> None:
        await self._scheduler.wait_idle()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="batview", description="Compute spectrogram tiles for audio files.")
    parser.add_argument("paths", nargs="+", type=Path, help="audio files to load")
    parser.add_argument("--export-dir", type=Path, default=None, help="write ready tiles as PNG here")
    parser.add_argument("--colormap", choices=sorted(COLORMAPS), default=None)
    parser.add_argument("--verbose", action="store_true", help="log at DEBUG level")
    return parser


async def _run(app: BatviewApp, paths: Sequence[Path], export_dir: Path | None) -> int:
    exit_code = 0
    for path in paths:
        result = app.open_audio_path({"path": str(path)})
        if result["status"] != "ok":
            print(f"{path}: {result['message']}", file=sys.stderr)
            exit_code = 1
    await app.wait_until_idle()

    for file_id in app.session.file_ids():
        result = app.progress({"file_id": file_id})
        if result["status"] != "ok":
            continue
        print(f"{result['name']}: {result['ready_tiles']}/{result['total_tiles']} tiles ready")
        if export_dir is None:
            continue
        stem = Path(result["name"]).stem
        for tile_index in range(result["total_tiles"]):
            if app.tile_cache.state(file_id, tile_index) != "ready":
                continue
            target = export_dir / f"{stem}-{file_id}-{tile_index:05d}.png"
            exported = app.export_tile({"file_id": file_id, "tile_index": tile_index, "path": str(target)})
            if exported["status"] != "ok":
                exit_code = 1

    status = app.status()
    print(
        f"column store: {status['column_bytes']}/{status['column_budget_bytes']} bytes, "
        f"tile cache: {status['tile_bytes']}/{status['tile_budget_bytes']} bytes"
    )
    return exit_code


def main(argv: Sequence[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    configure_logging(level=logging.DEBUG if args.verbose else logging.INFO)
    try:
        config = load_config()
    except ValueError as exc:
        print(f"batview: {exc}", file=sys.stderr)
        return 2
    if args.colormap is not None:
        config = replace(config, colormap=args.colormap)

    async def _main() -> int:
        return await _run(BatviewApp(config), args.paths, args.export_dir)

    return asyncio.run(_main())


if __name__ == "__main__":
    sys.exit(main())
