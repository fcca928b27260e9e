# services/frame_relay/frame_queue.py
from __future__ import annotations
import threading
from collections import deque
from pathlib import Path
from typing import Deque, Iterable, List, Set

from services.frame_relay.models import FrameRecord


class FrameQueue:
    """
    FIFO of frames awaiting upload, ordered by capture time.
    enqueue / drain_snapshot / requeue share one lock, so an upload pass
    never races a capture tick.
    """
    def __init__(self):
        self._items: Deque[FrameRecord] = deque()
        self._lock = threading.Lock()

    def enqueue(self, record: FrameRecord):
        with self._lock:
            self._items.append(record)

    def drain_snapshot(self) -> List[FrameRecord]:
        with self._lock:
            batch = list(self._items)
            self._items.clear()
        return batch

    def requeue(self, records: Iterable[FrameRecord]):
        """Put failed records back ahead of anything captured since the snapshot."""
        records = list(records)
        if not records:
            return
        with self._lock:
            self._items.extendleft(reversed(records))

    def paths(self) -> Set[Path]:
        with self._lock:
            return {r.storage_path for r in self._items}

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def __bool__(self) -> bool:
        return len(self) > 0
