from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from batview.models import ChangeCounter, LoadedFile


class ViewerSession:
    """Registry of open files plus the shared "data changed" counter.

    File ids are never reused, but background work must still compare the
    ``LoadedFile`` object it started with, since a closed id means the file is gone.
    """

    def __init__(self, event_sink: Callable[[dict[str, Any]], None] | None = None) -> None:
        self.changes = ChangeCounter()
        self.current_file_id: int | None = None
        self._files: dict[int, LoadedFile] = {}
        self._viewport_frames: dict[int, int] = {}
        self._next_file_id = 0
        self._event_sink = event_sink
        self._logger = logging.getLogger(__name__)

    def emit(self, payload: dict[str, Any]) -> None:
        if self._event_sink is None:
            return
        try:
            self._event_sink(payload)
        except Exception:  # pragma: no cover
            self._logger.exception("event_sink failed")

    def open_file(self, loaded: LoadedFile) -> int:
        file_id = self._next_file_id
        self._next_file_id += 1
        self._files[file_id] = loaded
        if self.current_file_id is None:
            self.current_file_id = file_id
        self.emit({"type": "file_opened", "file_id": file_id, "name": loaded.name})
        return file_id

    def close_file(self, file_id: int) -> LoadedFile | None:
        loaded = self._files.pop(file_id, None)
        self._viewport_frames.pop(file_id, None)
        if loaded is None:
            return None
        if self.current_file_id == file_id:
            self.current_file_id = next(iter(self._files), None)
        self.emit({"type": "file_closed", "file_id": file_id, "name": loaded.name})
        return loaded

    def close_all(self) -> list[int]:
        closed = list(self._files)
        for file_id in closed:
            self.close_file(file_id)
        return closed

    def get(self, file_id: int) -> LoadedFile | None:
        return self._files.get(file_id)

    def is_open(self, file_id: int, loaded: LoadedFile) -> bool:
        return self._files.get(file_id) is loaded

    def file_ids(self) -> list[int]:
        return list(self._files)

    def viewport_frame(self, file_id: int) -> int:
        return self._viewport_frames.get(file_id, 0)

    def set_viewport_frame(self, file_id: int, frame: int) -> None:
        if file_id in self._files:
            self._viewport_frames[file_id] = max(0, int(frame))
