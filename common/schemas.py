from __future__ import annotations
from datetime import datetime, timezone
from typing import Optional
from pydantic import BaseModel, Field

# Notifications published by the frame relay; observers only read these.

def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()

class RelayEvent(BaseModel):
    event: str
    ts: str = Field(default_factory=_now_iso)   # ISO8601 UTC

class CaptureStarted(RelayEvent):
    event: str = "capture.started"
    source_url: str
    store_path: str

class CaptureError(RelayEvent):
    event: str = "capture.error"
    source_url: str
    error: str

class FrameCaptured(RelayEvent):
    event: str = "frame.captured"
    frame_id: str
    captured_at: str
    path: str         # file path to JPEG
    size: int
    queued: int       # queue length after enqueue

class UploadStats(RelayEvent):
    event: str = "upload.stats"
    count: int        # total frames delivered this session
    attempted: int = 0
    uploaded: int = 0
    requeued: int = 0
    dead_lettered: int = 0
    dropped: int = 0

class PipelineStopped(RelayEvent):
    event: str = "pipeline.stopped"
    uploaded: int
    remaining: int
    drain_passes: int
    completed: bool
    reason: Optional[str] = None
