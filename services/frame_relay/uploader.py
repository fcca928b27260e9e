# services/frame_relay/uploader.py
from __future__ import annotations
from typing import List, Optional

import httpx

from common.bus import EventBus
from common.logging import get_logger
from common.schemas import UploadStats
from services.frame_relay.classifier import Retryability, classify
from services.frame_relay.errors import ClientError, ServerError, TransportError, UploadError
from services.frame_relay.frame_queue import FrameQueue
from services.frame_relay.models import BatchReport, FrameRecord, UploadAttemptResult, UploadOutcome
from services.frame_relay.store import CaptureStore

log = get_logger("frame_relay")

# ---------- HTTP ----------
async def _upload_http(client: httpx.AsyncClient, url: str, api_key: str, store_id: str,
                       record: FrameRecord, payload: bytes):
    multipart = {
        "image": (record.storage_path.name, payload, "image/jpeg"),
    }
    data = {
        "timestamp": record.captured_at.isoformat(),
        "store_id": store_id,
    }
    headers = {"X-API-KEY": api_key} if api_key else {}
    try:
        resp = await client.post(url, files=multipart, data=data, headers=headers)
    except httpx.TimeoutException as e:
        raise TransportError(f"timeout: {e!r}") from e
    except (httpx.UnsupportedProtocol, httpx.LocalProtocolError):
        # request could not be built; classified terminal as-is
        raise
    except httpx.TransportError as e:
        raise TransportError(f"unreachable: {e!r}") from e

    if resp.is_success:
        return
    body = resp.text
    if 500 <= resp.status_code <= 599:
        raise ServerError(f"HTTP {resp.status_code}: {body}", status=resp.status_code)
    raise ClientError(f"HTTP {resp.status_code}: {body}", status=resp.status_code)


class UploadPipeline:
    """
    One pass = snapshot the queue, deliver each frame in order, then requeue
    the retryable failures. Delivered and dead-lettered frames leave the store.
    """
    def __init__(self, queue: FrameQueue, store: CaptureStore, endpoint: str, api_key: str = "",
                 store_id: str = "", timeout_sec: float = 30.0, bus: Optional[EventBus] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.queue = queue
        self.store = store
        self.endpoint = endpoint
        self.api_key = api_key
        self.store_id = store_id
        self.timeout_sec = timeout_sec
        self.bus = bus
        self._transport = transport
        self.uploaded_count = 0

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout_sec, transport=self._transport)

    async def attempt(self, client: httpx.AsyncClient, record: FrameRecord) -> UploadAttemptResult:
        try:
            payload = record.payload
            if payload is None:
                payload = await self.store.read(record.storage_path)
            await _upload_http(client, self.endpoint, self.api_key, self.store_id, record, payload)
        except Exception as e:
            reason = e.reason if isinstance(e, UploadError) else f"{type(e).__name__}: {e}"
            if classify(e) is Retryability.RETRYABLE:
                return UploadAttemptResult.retryable(reason)
            return UploadAttemptResult.terminal(reason)
        return UploadAttemptResult.success()

    async def _dead_letter(self, record: FrameRecord, reason: str):
        """Terminal: never raises, so the record can't find its way back into the queue."""
        log.error(f"[dead-letter] frame={record.id} path={record.storage_path} reason={reason}")
        self.store.dead_lettered.add(record.storage_path.name)
        try:
            await self.store.append_dead_letter(record.storage_path, reason)
        except OSError as e:
            log.error(f"[dead-letter] could not write {self.store.dead_letter_path}: {e}")
        try:
            self.store.delete(record.storage_path)
        except OSError as e:
            log.error(f"[dead-letter] could not delete {record.storage_path}: {e}")

    async def _handle(self, client: httpx.AsyncClient, record: FrameRecord,
                      retry: List[FrameRecord], report: BatchReport):
        if not record.storage_path.exists():
            report.dropped += 1
            log.debug(f"[drop] frame={record.id} backing file gone: {record.storage_path}")
            return

        report.attempted += 1
        result = await self.attempt(client, record)

        if result.outcome is UploadOutcome.SUCCESS:
            self.store.delete(record.storage_path)
            self.uploaded_count += 1
            report.uploaded += 1
            log.info(f"[uploaded] frame={record.id} total={self.uploaded_count}")
        elif result.outcome is UploadOutcome.RETRYABLE:
            retry.append(record)
            report.requeued += 1
            log.warning(f"[requeue] frame={record.id} reason={result.reason}")
        else:
            await self._dead_letter(record, result.reason)
            report.dead_lettered += 1

    async def run_pass(self) -> BatchReport:
        report = BatchReport()
        if not self.queue:
            return report

        batch = self.queue.drain_snapshot()
        retry: List[FrameRecord] = []
        done = 0
        log.info(f"Upload pass: {len(batch)} frame(s) → POST {self.endpoint}")
        try:
            async with self._client() as client:
                for record in batch:
                    try:
                        await self._handle(client, record, retry, report)
                    except Exception as e:
                        # file still on disk -> try again next pass
                        log.error(f"[pass] frame={record.id} error={e}")
                        if record.storage_path.exists() and all(r is not record for r in retry):
                            retry.append(record)
                            report.requeued += 1
                    done += 1
        except Exception as e:
            log.error(f"Upload pass aborted after {done}/{len(batch)} frame(s): {e}")
        finally:
            # also covers cancellation mid-pass
            for record in batch[done:]:
                if record.storage_path.exists() and all(r is not record for r in retry):
                    retry.append(record)
            self.queue.requeue(retry)

        log.info(
            f"Upload pass done: uploaded={report.uploaded} requeued={report.requeued} "
            f"dead_lettered={report.dead_lettered} dropped={report.dropped} queued={len(self.queue)}"
        )
        if self.bus is not None:
            await self.bus.publish(UploadStats(
                count=self.uploaded_count,
                attempted=report.attempted,
                uploaded=report.uploaded,
                requeued=report.requeued,
                dead_lettered=report.dead_lettered,
                dropped=report.dropped,
            ))
        return report
