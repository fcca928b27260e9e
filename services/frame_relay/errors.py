# services/frame_relay/errors.py
from __future__ import annotations
from typing import Optional


class RelayError(Exception):
    """Base for every error raised by the frame relay."""


class AcquisitionError(RelayError):
    """ffmpeg missing, non-zero exit, timed out, or output unreadable."""

    def __init__(self, message: str, detail: str = ""):
        super().__init__(message)
        self.detail = detail

    def __str__(self) -> str:
        base = super().__str__()
        return f"{base}: {self.detail}" if self.detail else base


class LifecycleError(RelayError):
    """Illegal start/stop for the current lifecycle state."""


class UploadError(RelayError):
    def __init__(self, reason: str, status: Optional[int] = None):
        super().__init__(reason)
        self.reason = reason
        self.status = status


class TransportError(UploadError):
    """Endpoint unreachable or the request timed out."""


class ServerError(UploadError):
    """Remote answered 5xx."""


class ClientError(UploadError):
    """Remote answered 4xx (bad request, invalid credential, ...)."""
