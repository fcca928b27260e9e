# services/frame_relay/classifier.py
from __future__ import annotations
from enum import Enum

import httpx

from services.frame_relay.errors import TransportError, ServerError, ClientError


class Retryability(str, Enum):
    RETRYABLE = "retryable"
    TERMINAL = "terminal"


def _status_of(failure: BaseException) -> int | None:
    if isinstance(failure, (ServerError, ClientError)):
        return failure.status
    if isinstance(failure, httpx.HTTPStatusError):
        return failure.response.status_code
    return None


def classify(failure: BaseException) -> Retryability:
    """
    The only place deciding whether a frame is ever retried.
      unreachable / timed out / dropped connection -> RETRYABLE
      request could not be built (bad URL scheme, ...) -> TERMINAL
      5xx                     -> RETRYABLE
      4xx (incl. auth)        -> TERMINAL
      anything else           -> TERMINAL
    """
    if isinstance(failure, TransportError):
        return Retryability.RETRYABLE
    if isinstance(failure, (httpx.UnsupportedProtocol, httpx.LocalProtocolError)):
        return Retryability.TERMINAL
    if isinstance(failure, httpx.TransportError):
        return Retryability.RETRYABLE

    status = _status_of(failure)
    if status is not None and 500 <= status <= 599:
        return Retryability.RETRYABLE
    return Retryability.TERMINAL
