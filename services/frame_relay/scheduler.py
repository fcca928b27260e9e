# services/frame_relay/scheduler.py
from __future__ import annotations
import asyncio
from typing import Any, Awaitable, Callable, Optional

from common.bus import EventBus
from common.logging import get_logger
from common.schemas import CaptureError, FrameCaptured
from services.frame_relay.errors import AcquisitionError
from services.frame_relay.frame_queue import FrameQueue
from services.frame_relay.models import FrameRecord

log = get_logger("frame_relay")


class PeriodicTask:
    """
    Fixed-rate loop: wait for the tick, await body, repeat.
    The body never overlaps itself; ticks that elapsed while it ran are skipped.
    stop() lets an in-flight body finish and only interrupts the wait.
    """
    def __init__(self, name: str, interval: float, body: Callable[[], Awaitable[Any]]):
        self.name = name
        self.interval = interval
        self.body = body
        self.ticks = 0
        self.skipped = 0
        self._stop: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        if self.running:
            return
        self._stop = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name=f"periodic:{self.name}")
        log.info(f"[{self.name}] scheduled every {self.interval}s")

    async def stop(self):
        if self._task is None:
            return
        self._stop.set()
        await self._task
        self._task = None
        log.info(f"[{self.name}] stopped after {self.ticks} tick(s)")

    async def _wait(self, delay: float) -> bool:
        """True if stop was requested while waiting."""
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=delay)
            return True
        except asyncio.TimeoutError:
            return False

    async def _run(self):
        loop = asyncio.get_running_loop()
        next_at = loop.time() + self.interval
        while True:
            delay = max(0.0, next_at - loop.time())
            if await self._wait(delay) or self._stop.is_set():
                return
            try:
                await self.body()
            except Exception as e:
                log.exception(f"[{self.name}] tick failed: {e}")
            self.ticks += 1

            next_at += self.interval
            now = loop.time()
            if next_at < now:
                missed = int((now - next_at) // self.interval) + 1
                next_at += missed * self.interval
                self.skipped += missed
                log.warning(f"[{self.name}] tick overran; skipped {missed} tick(s)")


class CaptureScheduler:
    """Each tick grabs one frame and appends it to the queue."""
    def __init__(self, acquirer, queue: FrameQueue, source_url: str, interval: float,
                 bus: Optional[EventBus] = None):
        self.acquirer = acquirer
        self.queue = queue
        self.source_url = source_url
        self.bus = bus
        self.task = PeriodicTask("capture", interval, self.tick)
        self._in_flight = False

    async def _notify(self, event):
        if self.bus is not None:
            await self.bus.publish(event)

    async def tick(self) -> Optional[FrameRecord]:
        if self._in_flight:
            log.debug("[capture] acquisition still in flight, skipping tick")
            return None

        self._in_flight = True
        try:
            record = await self.acquirer.capture(self.source_url)
        except AcquisitionError as e:
            log.error(f"[capture] failed source={self.source_url}: {e}")
            await self._notify(CaptureError(source_url=self.source_url, error=str(e)))
            return None
        except Exception as e:
            log.exception(f"[capture] unexpected error source={self.source_url}: {e}")
            await self._notify(CaptureError(source_url=self.source_url, error=f"{type(e).__name__}: {e}"))
            return None
        finally:
            self._in_flight = False

        self.queue.enqueue(record)
        size = len(record.payload) if record.payload is not None else 0
        log.info(f"[captured] frame={record.id} path={record.storage_path} bytes={size}")
        await self._notify(FrameCaptured(
            frame_id=record.id,
            captured_at=record.captured_at.isoformat(),
            path=str(record.storage_path),
            size=size,
            queued=len(self.queue),
        ))
        return record
