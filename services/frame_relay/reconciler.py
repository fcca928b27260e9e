# services/frame_relay/reconciler.py
from __future__ import annotations
from datetime import datetime, timezone

from common.logging import get_logger
from services.frame_relay.frame_queue import FrameQueue
from services.frame_relay.models import FrameRecord
from services.frame_relay.store import CaptureStore, captured_at_from_name

log = get_logger("frame_relay")


class RecoveryReconciler:
    """
    Re-enqueue frame files that are on disk but not in the queue: frames whose
    enqueue was interrupted, or orphans left by a previous crash.
    Set-difference by filename; running it twice in a row recovers nothing new.
    """
    def __init__(self, queue: FrameQueue, store: CaptureStore):
        self.queue = queue
        self.store = store

    async def reconcile(self) -> int:
        queued = {p.name for p in self.queue.paths()}
        recovered = 0
        for path in self.store.frame_files():
            if path.name in queued:
                continue
            try:
                data = await self.store.read(path)
            except OSError as e:
                log.warning(f"[recover] unreadable {path}: {e}")
                continue
            captured_at = captured_at_from_name(path) or datetime.now(timezone.utc)
            self.queue.enqueue(FrameRecord(
                id=path.stem,
                captured_at=captured_at,
                storage_path=path,
                payload=data,
            ))
            queued.add(path.name)
            recovered += 1
            log.info(f"[recover] frame={path.stem} captured_at={captured_at.isoformat()}")
        if recovered:
            log.info(f"Recovered {recovered} frame(s) from {self.store.root}")
        return recovered
