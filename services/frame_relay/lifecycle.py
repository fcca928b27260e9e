# services/frame_relay/lifecycle.py
from __future__ import annotations
import asyncio
from typing import Callable, Optional

import httpx

from common.bus import EventBus
from common.logging import get_logger
from common.schemas import CaptureStarted, PipelineStopped
from services.frame_relay.acquisition import FrameAcquirer
from services.frame_relay.config import PipelineConfig
from services.frame_relay.errors import LifecycleError
from services.frame_relay.frame_queue import FrameQueue
from services.frame_relay.models import DrainReport, LifecycleState
from services.frame_relay.reconciler import RecoveryReconciler
from services.frame_relay.scheduler import CaptureScheduler, PeriodicTask
from services.frame_relay.store import CaptureStore
from services.frame_relay.uploader import UploadPipeline

log = get_logger("frame_relay")

AcquirerFactory = Callable[[PipelineConfig, CaptureStore], object]


def default_acquirer(config: PipelineConfig, store: CaptureStore) -> FrameAcquirer:
    return FrameAcquirer(
        store,
        ffmpeg_bin=config.ffmpeg_bin,
        width=config.width,
        height=config.height,
        rtsp_transport=config.rtsp_transport,
        timeout_sec=config.capture_timeout,
    )


class PipelineController:
    """
    IDLE --start--> CAPTURING --stop--> DRAINING --(drained | given up)--> IDLE

    stop() blocks its caller until every pending frame is delivered,
    dead-lettered, or left on disk after drain_max_passes.
    """
    def __init__(self, bus: Optional[EventBus] = None,
                 acquirer_factory: AcquirerFactory = default_acquirer,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.bus = bus
        self._acquirer_factory = acquirer_factory
        self._transport = transport
        self.state = LifecycleState.IDLE
        self.config: Optional[PipelineConfig] = None
        self.queue: Optional[FrameQueue] = None
        self.store: Optional[CaptureStore] = None
        self.capture: Optional[CaptureScheduler] = None
        self.uploader: Optional[UploadPipeline] = None
        self.reconciler: Optional[RecoveryReconciler] = None
        self._upload_task: Optional[PeriodicTask] = None

    async def _notify(self, event):
        if self.bus is not None:
            await self.bus.publish(event)

    async def start(self, config: PipelineConfig):
        if self.state is not LifecycleState.IDLE:
            raise LifecycleError(f"start() requires {LifecycleState.IDLE.value}, state is {self.state.value}")

        self.config = config
        self.store = CaptureStore(config.capture_store_path).ensure()
        self.queue = FrameQueue()
        self.reconciler = RecoveryReconciler(self.queue, self.store)
        self.uploader = UploadPipeline(
            self.queue, self.store, config.endpoint,
            api_key=config.api_key,
            store_id=config.store_id,
            timeout_sec=config.upload_timeout,
            bus=self.bus,
            transport=self._transport,
        )
        acquirer = self._acquirer_factory(config, self.store)
        self.capture = CaptureScheduler(acquirer, self.queue, config.source_url,
                                        config.capture_interval, bus=self.bus)
        self._upload_task = PeriodicTask("upload", config.upload_interval, self.uploader.run_pass)

        if config.recover_on_start:
            await self.reconciler.reconcile()

        self.state = LifecycleState.CAPTURING
        log.info(
            f"Capture session started source={config.source_url} store={self.store.root} "
            f"capture_every={config.capture_interval}s upload_every={config.upload_interval}s"
        )
        self.capture.task.start()
        self._upload_task.start()
        await self._notify(CaptureStarted(source_url=config.source_url, store_path=str(self.store.root)))

    async def stop(self) -> DrainReport:
        if self.state is not LifecycleState.CAPTURING:
            raise LifecycleError(f"stop() requires {LifecycleState.CAPTURING.value}, state is {self.state.value}")

        self.state = LifecycleState.DRAINING
        log.info("[drain] stopping schedulers")
        await self.capture.task.stop()
        await self._upload_task.stop()

        report = DrainReport()
        try:
            report = await self._drain()
        finally:
            self.state = LifecycleState.IDLE
            await self._notify(PipelineStopped(
                uploaded=self.uploader.uploaded_count,
                remaining=report.remaining,
                drain_passes=report.passes,
                completed=report.completed,
                reason=None if report.completed else "drain attempts exhausted",
            ))
        return report

    def _drained(self) -> bool:
        return not self.queue and not self.store.has_frames()

    async def _drain(self) -> DrainReport:
        cfg = self.config
        report = DrainReport()
        before = self.uploader.uploaded_count
        report.recovered = await self.reconciler.reconcile()

        while not self._drained() and report.passes < cfg.drain_max_passes:
            if report.passes > 0 and cfg.drain_pass_delay > 0:
                await asyncio.sleep(cfg.drain_pass_delay)
            if report.passes > 0:
                # a failed delete or late ffmpeg write can leave unqueued files
                report.recovered += await self.reconciler.reconcile()
            report.passes += 1
            await self.uploader.run_pass()
            log.info(f"[drain] pass {report.passes}/{cfg.drain_max_passes} queued={len(self.queue)}")

        report.uploaded = self.uploader.uploaded_count - before
        report.remaining = len(self.store.frame_files())
        report.completed = self._drained()
        if report.completed:
            log.info(f"[drain] complete: uploaded={report.uploaded} passes={report.passes}")
        else:
            log.warning(
                f"[drain] giving up after {report.passes} pass(es); "
                f"{report.remaining} frame(s) left in {self.store.root} for the next session"
            )
        return report
