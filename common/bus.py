# common/bus.py
from __future__ import annotations
import json
from typing import Any, Callable, Dict, List, Optional
from pydantic import BaseModel
from redis import asyncio as aioredis
from common.logging import get_logger

log = get_logger("bus")

Listener = Callable[[Dict[str, Any]], None]

class EventBus:
    """
    Fan-out for relay notifications.
      - in-process listeners (subscribe) always receive every event
      - a Redis stream receives it too once connect() succeeded
    Publishing never raises into the caller.
    """
    def __init__(self, redis_url: Optional[str] = None, stream: str = "relay.events"):
        self._redis_url = redis_url
        self._redis = None
        self.stream = stream
        self._listeners: List[Listener] = []

    @property
    def connected(self) -> bool:
        return self._redis is not None

    async def connect(self):
        if self._redis is None and self._redis_url:
            log.info(f"Connecting to Redis: {self._redis_url}")
            r = aioredis.from_url(self._redis_url, encoding="utf-8", decode_responses=True)
            # quick ping
            try:
                pong = await r.ping()
                log.info(f"Redis ping: {pong}")
            except Exception as e:
                log.error(f"Redis connection failed: {e}")
                await r.close()
                raise
            self._redis = r
        return self

    async def close(self):
        if self._redis is not None:
            log.info("Closing Redis connection")
            await self._redis.close()
            self._redis = None

    def subscribe(self, listener: Listener):
        self._listeners.append(listener)

    async def xadd_json(self, stream: str, payload: Dict[str, Any]) -> str:
        assert self._redis is not None, "Call connect() first"
        data = {"json": json.dumps(payload, separators=(",", ":"))}
        msg_id = await self._redis.xadd(stream, data, maxlen=10000, approximate=True)
        log.debug(f"XADD stream={stream} id={msg_id}")
        return msg_id

    async def publish(self, event: BaseModel):
        payload = event.model_dump(mode="json")
        log.debug(f"[event] {payload.get('event')} {json.dumps(payload, ensure_ascii=False)}")
        for listener in list(self._listeners):
            try:
                listener(payload)
            except Exception as e:
                log.warning(f"Listener failed for event={payload.get('event')}: {e}")
        if self._redis is None:
            return
        try:
            await self.xadd_json(self.stream, payload)
        except Exception as e:
            log.warning(f"XADD failed stream={self.stream} event={payload.get('event')}: {e}")
