# services/frame_relay/acquisition.py
from __future__ import annotations
import asyncio, shlex
from datetime import datetime, timezone
from pathlib import Path
from typing import List

from common.logging import get_logger
from services.frame_relay.errors import AcquisitionError
from services.frame_relay.models import FrameRecord
from services.frame_relay.store import CaptureStore

log = get_logger("frame_relay")


class FrameAcquirer:
    """
    One-shot still capture through ffmpeg:
      <ffmpeg> -y -rtsp_transport tcp -i <url> -vframes 1 ... <store>/frame_<ts>.jpg
    Stateless apart from its settings; callers serialize calls.
    """
    def __init__(self, store: CaptureStore, ffmpeg_bin: str = "ffmpeg", width: int = 1280,
                 height: int = 720, rtsp_transport: str = "tcp", timeout_sec: float = 20.0):
        self.store = store
        self.ffmpeg_bin = ffmpeg_bin
        self.width = width
        self.height = height
        self.rtsp_transport = rtsp_transport
        self.timeout_sec = timeout_sec

    def build_command(self, source_url: str, output_path: Path) -> List[str]:
        parts = shlex.split(self.ffmpeg_bin)
        parts += ["-y"]
        if self.rtsp_transport and source_url.startswith("rtsp"):
            parts += ["-rtsp_transport", self.rtsp_transport]
        parts += [
            "-i", source_url,
            "-vframes", "1",
            "-q:v", "1",
            "-vf", f"scale={self.width}:{self.height}",
            "-f", "image2",
            "-pix_fmt", "yuvj420p",
            str(output_path),
        ]
        return parts

    async def capture(self, source_url: str) -> FrameRecord:
        captured_at = datetime.now(timezone.utc)
        out_path = self.store.new_frame_path(captured_at)
        parts = self.build_command(source_url, out_path)
        log.debug(f"ffmpeg: {' '.join(parts)}")

        try:
            proc = await asyncio.create_subprocess_exec(
                *parts,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise AcquisitionError("capture tool not found", str(e)) from e
        except OSError as e:
            raise AcquisitionError("capture tool failed to start", str(e)) from e

        try:
            _, err = await asyncio.wait_for(proc.communicate(), timeout=self.timeout_sec)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            self.store.delete(out_path)
            raise AcquisitionError(f"capture tool timed out after {self.timeout_sec}s")

        diag = (err or b"").decode(errors="ignore").strip()
        if proc.returncode != 0:
            self.store.delete(out_path)
            raise AcquisitionError(f"capture tool exited {proc.returncode}", diag)

        try:
            data = await self.store.read(out_path)
        except OSError as e:
            try:
                self.store.delete(out_path)
            except OSError as rm_err:
                log.warning(f"could not remove unreadable output {out_path}: {rm_err}")
            raise AcquisitionError(f"output unreadable: {out_path}", str(e) or diag) from e
        if not data:
            self.store.delete(out_path)
            raise AcquisitionError(f"output empty: {out_path}", diag)

        return FrameRecord(
            id=out_path.stem,
            captured_at=captured_at,
            storage_path=out_path,
            payload=data,
        )
