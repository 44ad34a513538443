"""Memory-bounded store of computed spectral frames, one slot array per open file.

Frames arrive from the chunked loader in increasing index order and are read
back by tile generation once a whole tile range is present. All open files share
one byte budget; when it is exceeded frames are evicted one at a time, preferring
files other than the one currently being written so an active load keeps its
progress.

Operations on a file id without a store are silent no-ops: a file may be closed
while work for it is still queued.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator, Sequence
from typing import TypeVar

import numpy as np

from batview.constants import BYTES_PER_FRAME, COLUMN_BUDGET_BYTES
from batview.models import Frame, empty_frame

_logger = logging.getLogger(__name__)

R = TypeVar("R")


class _FileColumns:
    __slots__ = ("slots", "present", "present_count", "running_max")

    def __init__(self, total_frames: int) -> None:
        self.slots: list[Frame | None] = [None] * total_frames
        self.present = np.zeros(total_frames, dtype=bool)
        self.present_count = 0
        self.running_max = 0.0

    def __len__(self) -> int:
        return len(self.slots)


def _farthest_first(present: np.ndarray, center: float) -> np.ndarray:
    """Present indices ordered by distance from ``center``, farthest first (ties: lower index first)."""
    indices = np.flatnonzero(present)
    distances = np.abs(indices.astype(np.float64) - center)
    return indices[np.argsort(-distances, kind="stable")]


class ColumnStore:
    def __init__(
        self,
        budget_bytes: int = COLUMN_BUDGET_BYTES,
        bytes_per_frame: int = BYTES_PER_FRAME,
    ) -> None:
        self._budget_bytes = budget_bytes
        self._bytes_per_frame = bytes_per_frame
        self._stores: dict[int, _FileColumns] = {}
        self._total_present = 0

    @property
    def budget_bytes(self) -> int:
        return self._budget_bytes

    @property
    def total_bytes(self) -> int:
        return self._total_present * self._bytes_per_frame

    def __contains__(self, file_id: object) -> bool:
        return file_id in self._stores

    def file_ids(self) -> Iterator[int]:
        return iter(list(self._stores))

    def length(self, file_id: int) -> int:
        store = self._stores.get(file_id)
        return 0 if store is None else len(store)

    def present_count(self, file_id: int) -> int:
        store = self._stores.get(file_id)
        return 0 if store is None else store.present_count

    def running_max(self, file_id: int) -> float:
        store = self._stores.get(file_id)
        return 0.0 if store is None else store.running_max

    def init(self, file_id: int, total_frames: int) -> None:
        self.clear(file_id)
        self._stores[file_id] = _FileColumns(max(0, int(total_frames)))

    def insert(self, file_id: int, start_index: int, frames: Sequence[Frame]) -> None:
        store = self._stores.get(file_id)
        if store is None:
            return
        written = 0
        for offset, frame in enumerate(frames):
            index = start_index + offset
            if index < 0 or index >= len(store):
                continue
            peak = frame.peak
            if peak > store.running_max:
                store.running_max = peak
            if store.slots[index] is None:
                store.present[index] = True
                store.present_count += 1
                self._total_present += 1
            store.slots[index] = frame
            written += 1
        if written:
            self._enforce_budget(file_id, start_index + (len(frames) - 1) / 2.0)

    def is_range_complete(self, file_id: int, start: int, end: int) -> bool:
        store = self._stores.get(file_id)
        if store is None:
            return False
        end = min(end, len(store))
        start = max(0, start)
        return bool(np.all(store.present[start:end]))

    def with_range(
        self,
        file_id: int,
        start: int,
        end: int,
        callback: Callable[[list[Frame], float], R],
    ) -> R | None:
        store = self._stores.get(file_id)
        if store is None:
            return None
        end = min(end, len(store))
        start = max(0, start)
        if not bool(np.all(store.present[start:end])):
            return None
        frames = [frame for frame in store.slots[start:end] if frame is not None]
        return callback(frames, store.running_max)

    def drain(self, file_id: int) -> list[Frame] | None:
        store = self._stores.pop(file_id, None)
        if store is None:
            return None
        self._total_present -= store.present_count
        placeholder = empty_frame()
        return [frame if frame is not None else placeholder for frame in store.slots]

    def clear(self, file_id: int) -> None:
        store = self._stores.pop(file_id, None)
        if store is not None:
            self._total_present -= store.present_count

    def clear_all(self) -> None:
        self._stores.clear()
        self._total_present = 0

    def _evict(self, store: _FileColumns, index: int) -> None:
        store.slots[index] = None
        store.present[index] = False
        store.present_count -= 1
        self._total_present -= 1

    def _largest_other(self, file_id: int) -> int | None:
        best_id: int | None = None
        best_count = 0
        for other_id, other in self._stores.items():
            if other_id == file_id or other.present_count == 0:
                continue
            if best_id is None or other.present_count > best_count:
                best_id = other_id
                best_count = other.present_count
        return best_id

    def _enforce_budget(self, file_id: int, batch_center: float) -> None:
        excess = self._total_present - self._budget_bytes // self._bytes_per_frame
        if excess <= 0:
            return
        evicted_other = 0
        evicted_self = 0
        # 占有範囲 [min, max] の中点から最も遠いのは常に min 側 (同距離なら小さい方)。
        # 各ファイルの占有インデックスは一度だけ求め、昇順に消していく。
        queues: dict[int, Iterator[int]] = {}
        while excess > 0:
            other_id = self._largest_other(file_id)
            if other_id is None:
                break
            other = self._stores[other_id]
            queue = queues.get(other_id)
            if queue is None:
                queue = queues[other_id] = iter(np.flatnonzero(other.present).tolist())
            self._evict(other, next(queue))
            evicted_other += 1
            excess -= 1
        if excess > 0:
            store = self._stores[file_id]
            for index in _farthest_first(store.present, batch_center)[:excess].tolist():
                self._evict(store, index)
                evicted_self += 1
        if evicted_other or evicted_self:
            _logger.debug(
                "column store over budget: evicted %d frames from other files, %d from file %d",
                evicted_other,
                evicted_self,
                file_id,
            )
