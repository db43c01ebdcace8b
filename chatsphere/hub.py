import asyncio
import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set

import redis.asyncio as redis
from fastapi import WebSocket

from . import config

log = logging.getLogger(__name__)

WS_EVENTS_CHANNEL = "ws_events"


def vlog(*args) -> None:
    if config.LOG_VERBOSE:
        log.info(" ".join(str(a) for a in args))


class ConnectionManager:
    """Server side of the notification channel: one socket per console tab."""

    def __init__(self):
        self.active_connections: Set[WebSocket] = set()
        self.connection_metadata: Dict[WebSocket, dict] = {}
        # Optional: attached after initialization
        self.redis_manager: Optional["RedisManager"] = None

    async def connect(self, websocket: WebSocket, client_info: dict | None = None):
        await websocket.accept()
        self.active_connections.add(websocket)
        self.connection_metadata[websocket] = {
            "connected_at": datetime.now(timezone.utc),
            "client_info": client_info or {},
        }
        log.info("WS connected operator=%s connections=%s", (client_info or {}).get("operator"), len(self.active_connections))

    def disconnect(self, websocket: WebSocket):
        if websocket not in self.active_connections:
            return
        self.active_connections.discard(websocket)
        meta = self.connection_metadata.pop(websocket, {}) or {}
        # Normal disconnects are expected (tab close, network change, idle timeout).
        log.info(
            "WS disconnected operator=%s remaining=%s",
            (meta.get("client_info") or {}).get("operator"),
            len(self.active_connections),
        )

    async def _send_local(self, frame: dict) -> int:
        disconnected: List[WebSocket] = []
        sent = 0
        for websocket in list(self.active_connections):
            try:
                await websocket.send_json(frame)
                sent += 1
            except Exception as exc:
                vlog(f"WS send failed, dropping socket: {exc}")
                disconnected.append(websocket)
        for websocket in disconnected:
            self.disconnect(websocket)
        return sent

    async def broadcast(self, event: str, data: Any) -> int:
        """Send ``{event, data}`` to every local socket and, if enabled, to other instances."""
        frame = {"event": event, "data": data}
        sent = await self._send_local(frame)
        vlog(f"WS broadcast event={event} delivered={sent}")
        if config.ENABLE_WS_PUBSUB and self.redis_manager is not None:
            try:
                await self.redis_manager.publish_ws_event(frame)
            except Exception as exc:
                log.warning("WS publish error: %s", exc)
        return sent

    def connection_count(self) -> int:
        return len(self.active_connections)


class RedisManager:
    """Optional Redis connection used to fan push events out across server instances."""

    def __init__(self, redis_url: str | None = None):
        self.redis_url = redis_url if redis_url is not None else config.REDIS_URL
        self.redis_client: Optional[redis.Redis] = None
        # Frames published by this process are tagged so the subscriber can skip them.
        self.instance_id = uuid.uuid4().hex

    async def connect(self):
        if not self.redis_url:
            return
        try:
            self.redis_client = redis.from_url(self.redis_url)
            await self.redis_client.ping()
            log.info("Redis connected")
        except Exception as exc:
            log.error("Redis connection failed: %s", exc)
            self.redis_client = None

    async def close(self):
        if self.redis_client is None:
            return
        try:
            await self.redis_client.aclose()
        except Exception as exc:
            log.warning("Redis close failed: %s", exc)
        self.redis_client = None

    async def publish_ws_event(self, frame: dict):
        if not self.redis_client:
            return
        payload = json.dumps({"origin": self.instance_id, "frame": frame})
        await self.redis_client.publish(WS_EVENTS_CHANNEL, payload)

    async def subscribe_ws_events(self, connection_manager: ConnectionManager):
        """Forward frames published by other instances to local connections only."""
        if not self.redis_client:
            return
        try:
            pubsub = self.redis_client.pubsub(ignore_subscribe_messages=True)
            await pubsub.subscribe(WS_EVENTS_CHANNEL)
            async for msg in pubsub.listen():
                try:
                    if not msg or msg.get("type") != "message":
                        continue
                    data = json.loads(msg.get("data"))
                    if data.get("origin") == self.instance_id:
                        continue
                    frame = data.get("frame")
                    if isinstance(frame, dict) and frame.get("event"):
                        await connection_manager._send_local(frame)
                except Exception as inner_exc:
                    vlog(f"WS subscribe handler error: {inner_exc}")
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log.error("Redis subscribe error: %s", exc)
