# services/frame_relay/store.py
from __future__ import annotations
import json, re
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Set

import aiofiles

from common.logging import get_logger

log = get_logger("frame_relay")

FRAME_GLOB = "frame_*.jpg"
DEAD_LETTER_NAME = "dead_letter.log"

# frame_2024-05-01T12-30-05-123Z.jpg, optionally frame_..._2.jpg on a name clash
_NAME_RE = re.compile(
    r"^frame_(\d{4})-(\d{2})-(\d{2})T(\d{2})-(\d{2})-(\d{2})-(\d{3})Z(?:_\d+)?$"
)

def frame_stem(ts: datetime) -> str:
    ts = ts.astimezone(timezone.utc)
    return f"frame_{ts.strftime('%Y-%m-%dT%H-%M-%S')}-{ts.microsecond // 1000:03d}Z"

def captured_at_from_name(path: Path) -> Optional[datetime]:
    m = _NAME_RE.match(path.stem)
    if not m:
        return None
    y, mo, d, h, mi, s, ms = (int(g) for g in m.groups())
    try:
        return datetime(y, mo, d, h, mi, s, ms * 1000, tzinfo=timezone.utc)
    except ValueError:
        return None


class CaptureStore:
    """
    Directory of frames not yet delivered, plus the dead-letter log.
    Files here are the durable record; the in-memory queue is a cache over them.
    """
    def __init__(self, root: Path):
        self.root = Path(root)
        self.dead_letter_path = self.root / DEAD_LETTER_NAME
        # names already dead-lettered whose file could not be removed
        self.dead_lettered: Set[str] = set()

    def ensure(self) -> "CaptureStore":
        self.root.mkdir(parents=True, exist_ok=True)
        return self

    def new_frame_path(self, captured_at: datetime) -> Path:
        stem = frame_stem(captured_at)
        p = self.root / f"{stem}.jpg"
        n = 1
        while p.exists():
            p = self.root / f"{stem}_{n}.jpg"
            n += 1
        return p

    def frame_files(self) -> List[Path]:
        if not self.root.is_dir():
            return []
        return sorted(
            p for p in self.root.glob(FRAME_GLOB)
            if p.is_file() and p.name not in self.dead_lettered
        )

    def has_frames(self) -> bool:
        return bool(self.frame_files())

    async def read(self, path: Path) -> bytes:
        async with aiofiles.open(path, "rb") as f:
            return await f.read()

    def delete(self, path: Path) -> bool:
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False

    async def append_dead_letter(self, path: Path, reason: str):
        line = json.dumps({
            "ts": datetime.now(timezone.utc).isoformat(),
            "path": str(path),
            "reason": reason,
        }, ensure_ascii=False)
        async with aiofiles.open(self.dead_letter_path, "a", encoding="utf-8") as f:
            await f.write(line + "\n")
