# services/frame_relay/models.py
from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional


@dataclass
class FrameRecord:
    id: str                      # file stem, derived from the capture timestamp
    captured_at: datetime        # tz-aware UTC
    storage_path: Path
    payload: Optional[bytes] = field(default=None, repr=False)  # None -> re-read from storage_path


class UploadOutcome(str, Enum):
    SUCCESS = "success"
    RETRYABLE = "retryable"
    TERMINAL = "terminal"


@dataclass(frozen=True)
class UploadAttemptResult:
    outcome: UploadOutcome
    reason: str = ""

    @classmethod
    def success(cls) -> "UploadAttemptResult":
        return cls(UploadOutcome.SUCCESS)

    @classmethod
    def retryable(cls, reason: str) -> "UploadAttemptResult":
        return cls(UploadOutcome.RETRYABLE, reason)

    @classmethod
    def terminal(cls, reason: str) -> "UploadAttemptResult":
        return cls(UploadOutcome.TERMINAL, reason)


class LifecycleState(str, Enum):
    IDLE = "idle"
    CAPTURING = "capturing"
    DRAINING = "draining"


@dataclass
class BatchReport:
    attempted: int = 0
    uploaded: int = 0
    requeued: int = 0
    dead_lettered: int = 0
    dropped: int = 0


@dataclass
class DrainReport:
    passes: int = 0
    recovered: int = 0
    uploaded: int = 0
    remaining: int = 0          # frame files still on disk when drain ended
    completed: bool = False     # False -> abandoned after drain_max_passes
