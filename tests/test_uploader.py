import asyncio
import json
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import httpx

from common.bus import EventBus
from services.frame_relay.frame_queue import FrameQueue
from services.frame_relay.models import UploadAttemptResult, UploadOutcome
from services.frame_relay.reconciler import RecoveryReconciler
from services.frame_relay.store import CaptureStore
from services.frame_relay.uploader import UploadPipeline
from tests._support import Endpoint, EventRecorder, write_frame, write_frames


class UploadPipelineTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.store = CaptureStore(Path(self._tmp.name) / "frames").ensure()
        self.queue = FrameQueue()
        self.bus = EventBus()
        self.events = EventRecorder(self.bus)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _pipeline(self, endpoint: Endpoint) -> UploadPipeline:
        return UploadPipeline(
            self.queue, self.store, "http://ingest.test/upload-images/",
            api_key="secret", store_id="111", timeout_sec=5, bus=self.bus,
            transport=endpoint.transport,
        )

    def _assert_queue_backed_by_files(self) -> None:
        snapshot = self.queue.drain_snapshot()
        for r in snapshot:
            self.assertTrue(r.storage_path.exists(), r.storage_path)
        self.queue.requeue(snapshot)

    async def test_success_deletes_files_and_empties_queue(self) -> None:
        for r in write_frames(self.store, 3):
            self.queue.enqueue(r)
        endpoint = Endpoint()
        up = self._pipeline(endpoint)

        report = await up.run_pass()

        self.assertEqual(report.uploaded, 3)
        self.assertEqual(up.uploaded_count, 3)
        self.assertEqual(len(self.queue), 0)
        self.assertEqual(self.store.frame_files(), [])
        stats = self.events.named("upload.stats")
        self.assertEqual(stats[-1]["count"], 3)

    async def test_request_shape(self) -> None:
        rec = write_frame(self.store)
        self.queue.enqueue(rec)
        endpoint = Endpoint()
        await self._pipeline(endpoint).run_pass()

        (req,) = endpoint.requests
        self.assertEqual(req.method, "POST")
        self.assertEqual(req.headers["X-API-KEY"], "secret")
        self.assertTrue(req.headers["content-type"].startswith("multipart/form-data"))
        body = req.content.decode("latin-1")
        self.assertIn('name="image"; filename="%s"' % rec.storage_path.name, body)
        self.assertIn('name="timestamp"', body)
        self.assertIn(rec.captured_at.isoformat(), body)
        self.assertIn('name="store_id"', body)
        self.assertIn("111", body)

    async def test_server_error_requeues_then_succeeds(self) -> None:
        a, b = write_frames(self.store, 2)
        self.queue.enqueue(a)
        self.queue.enqueue(b)
        endpoint = Endpoint({a.storage_path.name: [503, 200]})
        up = self._pipeline(endpoint)

        first = await up.run_pass()
        self.assertEqual((first.uploaded, first.requeued), (1, 1))
        self.assertEqual([r.id for r in self.queue.drain_snapshot()], [a.id])
        self.queue.enqueue(a)
        self.assertTrue(a.storage_path.exists())
        self._assert_queue_backed_by_files()

        second = await up.run_pass()
        self.assertEqual(second.uploaded, 1)
        self.assertEqual(self.store.frame_files(), [])
        self.assertEqual(endpoint.filenames().count(a.storage_path.name), 2)

    async def test_client_error_dead_letters_once_and_never_retries(self) -> None:
        b = write_frame(self.store)
        self.queue.enqueue(b)
        endpoint = Endpoint({b.storage_path.name: 401})
        up = self._pipeline(endpoint)

        report = await up.run_pass()
        self.assertEqual(report.dead_lettered, 1)
        self.assertFalse(b.storage_path.exists())
        self.assertEqual(len(self.queue), 0)

        lines = self.store.dead_letter_path.read_text(encoding="utf-8").splitlines()
        self.assertEqual(len(lines), 1)
        entry = json.loads(lines[0])
        self.assertEqual(entry["path"], str(b.storage_path))
        self.assertIn("HTTP 401", entry["reason"])
        self.assertIn("status 401 for", entry["reason"])

        await up.run_pass()
        self.assertEqual(len(endpoint.requests), 1)

    async def test_unreachable_endpoint_is_retryable(self) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("Connection refused", request=request)

        recs = write_frames(self.store, 2)
        for r in recs:
            self.queue.enqueue(r)
        report = await self._pipeline(Endpoint(responder=refuse)).run_pass()

        self.assertEqual(report.requeued, 2)
        self.assertEqual([r.id for r in self.queue.drain_snapshot()], [r.id for r in recs])
        self.assertEqual(len(self.store.frame_files()), 2)

    async def test_timeout_is_retryable(self) -> None:
        def slow(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        rec = write_frame(self.store)
        endpoint = Endpoint(responder=slow)
        up = self._pipeline(endpoint)
        async with httpx.AsyncClient(transport=endpoint.transport) as client:
            result = await up.attempt(client, rec)
        self.assertIs(result.outcome, UploadOutcome.RETRYABLE)
        self.assertIn("timeout", result.reason)

    async def test_missing_backing_file_is_dropped_silently(self) -> None:
        a, b = write_frames(self.store, 2)
        self.queue.enqueue(a)
        self.queue.enqueue(b)
        a.storage_path.unlink()
        endpoint = Endpoint()

        report = await self._pipeline(endpoint).run_pass()
        self.assertEqual(report.dropped, 1)
        self.assertEqual(report.uploaded, 1)
        self.assertEqual(endpoint.filenames(), [b.storage_path.name])
        self.assertFalse(self.store.dead_letter_path.exists())

    async def test_payload_reread_from_disk_when_not_in_memory(self) -> None:
        rec = write_frame(self.store, data=b"on-disk-bytes")
        rec.payload = None
        self.queue.enqueue(rec)
        endpoint = Endpoint()
        await self._pipeline(endpoint).run_pass()
        self.assertIn(b"on-disk-bytes", endpoint.requests[0].content)

    async def test_one_bad_record_does_not_abort_the_batch(self) -> None:
        a, b, c = write_frames(self.store, 3)
        for r in (a, b, c):
            self.queue.enqueue(r)

        def flaky(request: httpx.Request) -> httpx.Response:
            if a.storage_path.name.encode() in request.content:
                raise RuntimeError("boom")
            return httpx.Response(200)

        report = await self._pipeline(Endpoint(responder=flaky)).run_pass()
        self.assertEqual(report.uploaded, 2)
        self.assertEqual(report.dead_lettered, 1)
        self.assertEqual(self.store.frame_files(), [])

    async def test_failed_records_stay_ahead_of_new_captures(self) -> None:
        a, b, c = write_frames(self.store, 3)
        self.queue.enqueue(a)
        self.queue.enqueue(b)

        captured = []

        def capture_during_pass(request: httpx.Request) -> httpx.Response:
            if not captured:
                captured.append(c)
                self.queue.enqueue(c)
            return httpx.Response(503)

        await self._pipeline(Endpoint(responder=capture_during_pass)).run_pass()
        self.assertEqual([r.id for r in self.queue.drain_snapshot()], [a.id, b.id, c.id])

    async def test_catastrophic_failure_restores_batch(self) -> None:
        recs = write_frames(self.store, 3)
        for r in recs:
            self.queue.enqueue(r)
        recs[1].storage_path.unlink()
        up = self._pipeline(Endpoint())

        def broken_client():
            raise RuntimeError("cannot build client")

        up._client = broken_client
        report = await up.run_pass()

        self.assertEqual(report.attempted, 0)
        self.assertEqual([r.id for r in self.queue.drain_snapshot()], [recs[0].id, recs[2].id])

    async def test_server_disconnect_is_requeued_not_dead_lettered(self) -> None:
        def hang_up(request: httpx.Request) -> httpx.Response:
            raise httpx.RemoteProtocolError("Server disconnected without sending a response.", request=request)

        rec = write_frame(self.store)
        self.queue.enqueue(rec)
        report = await self._pipeline(Endpoint(responder=hang_up)).run_pass()

        self.assertEqual((report.requeued, report.dead_lettered), (1, 0))
        self.assertEqual([r.id for r in self.queue.drain_snapshot()], [rec.id])
        self.assertTrue(rec.storage_path.exists())
        self.assertFalse(self.store.dead_letter_path.exists())

    async def test_unsupported_url_scheme_is_dead_lettered(self) -> None:
        rec = write_frame(self.store)
        self.queue.enqueue(rec)
        up = UploadPipeline(self.queue, self.store, "ftp://ingest.test/upload-images/")

        report = await up.run_pass()
        self.assertEqual(report.dead_lettered, 1)
        self.assertEqual(len(self.queue), 0)

    async def test_terminal_frame_stays_out_of_queue_when_delete_fails(self) -> None:
        rec = write_frame(self.store)
        self.queue.enqueue(rec)
        endpoint = Endpoint({rec.storage_path.name: 401})
        up = self._pipeline(endpoint)

        with mock.patch.object(self.store, "delete", side_effect=PermissionError("locked")):
            report = await up.run_pass()
        self.assertEqual(report.dead_lettered, 1)
        self.assertEqual(len(self.queue), 0)
        self.assertTrue(rec.storage_path.exists())

        await up.run_pass()
        self.assertEqual(await RecoveryReconciler(self.queue, self.store).reconcile(), 0)
        self.assertEqual(len(endpoint.requests), 1)
        lines = self.store.dead_letter_path.read_text(encoding="utf-8").splitlines()
        self.assertEqual(len(lines), 1)

    async def test_cancelled_pass_keeps_unprocessed_frames_queued(self) -> None:
        a, b, c = write_frames(self.store, 3)
        for r in (a, b, c):
            self.queue.enqueue(r)
        up = self._pipeline(Endpoint())

        async def attempt(client, record):
            if record is b:
                raise asyncio.CancelledError()
            return UploadAttemptResult.success()

        up.attempt = attempt
        with self.assertRaises(asyncio.CancelledError):
            await up.run_pass()
        self.assertEqual([r.id for r in self.queue.drain_snapshot()], [b.id, c.id])
        self.assertFalse(a.storage_path.exists())

    async def test_empty_queue_is_a_noop(self) -> None:
        endpoint = Endpoint()
        report = await self._pipeline(endpoint).run_pass()
        self.assertEqual(report.attempted, 0)
        self.assertEqual(endpoint.requests, [])
        self.assertEqual(self.events.named("upload.stats"), [])


if __name__ == "__main__":
    unittest.main()
