"""Key/value persistence for the console plus the listeners that react to changes.

``FileStorage`` plays the part of browser local storage: one JSON document per
key, shared by every console process pointed at the same directory. Changes
made by *this* process are announced through ``StorageEvents`` by whoever wrote
them; changes made by *another* process arrive as ``STORAGE_EVENT`` through the
``RedisStorageBridge``.
"""

import asyncio
import json
import logging
import os
import uuid
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import quote

from .. import config

log = logging.getLogger(__name__)

STORAGE_EVENT = "storage"
STORAGE_CHANNEL = "console_storage"


class StorageError(Exception):
    pass


class LocalStorage:
    def get_item(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def set_item(self, key: str, value: str) -> None:
        raise NotImplementedError

    def remove_item(self, key: str) -> None:
        raise NotImplementedError


class MemoryStorage(LocalStorage):
    def __init__(self, initial: Dict[str, str] | None = None):
        self._items: Dict[str, str] = dict(initial or {})

    def get_item(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._items[key] = str(value)

    def remove_item(self, key: str) -> None:
        self._items.pop(key, None)


class FileStorage(LocalStorage):
    def __init__(self, directory: str | Path | None = None):
        self.directory = Path(directory) if directory is not None else config.CONSOLE_STORAGE_DIR

    def _path(self, key: str) -> Path:
        return self.directory / f"{quote(key, safe='')}.json"

    def get_item(self, key: str) -> Optional[str]:
        path = self._path(key)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise StorageError(f"Failed to read {key!r}: {exc}") from exc

    def set_item(self, key: str, value: str) -> None:
        path = self._path(key)
        tmp = path.with_name(f".{path.name}.{uuid.uuid4().hex[:8]}.tmp")
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            tmp.write_text(str(value), encoding="utf-8")
            os.replace(tmp, path)
        except OSError as exc:
            tmp.unlink(missing_ok=True)
            raise StorageError(f"Failed to write {key!r}: {exc}") from exc

    def remove_item(self, key: str) -> None:
        try:
            self._path(key).unlink(missing_ok=True)
        except OSError as exc:
            raise StorageError(f"Failed to remove {key!r}: {exc}") from exc


Listener = Callable[[Any], None]


class StorageEvents:
    """Same-process event bus (the console's ``window`` events)."""

    def __init__(self):
        self._listeners: Dict[str, List[Listener]] = {}

    def add_listener(self, name: str, fn: Listener) -> None:
        self._listeners.setdefault(name, []).append(fn)

    def remove_listener(self, name: str, fn: Listener) -> None:
        fns = self._listeners.get(name) or []
        if fn in fns:
            fns.remove(fn)

    def dispatch(self, name: str, detail: Any = None) -> int:
        delivered = 0
        for fn in list(self._listeners.get(name) or []):
            try:
                fn(detail)
                delivered += 1
            except Exception:
                log.exception("Listener for %s failed", name)
        return delivered


class RedisStorageBridge(LocalStorage):
    """Wraps a storage and tells other console processes which keys changed.

    Writes go straight to the wrapped storage and then publish ``{key, origin}``
    on ``console_storage``. ``listen()`` turns publications from other origins
    into local ``storage`` events; our own publications are skipped.
    """

    def __init__(self, storage: LocalStorage, events: StorageEvents, redis_client, channel: str = STORAGE_CHANNEL):
        self.storage = storage
        self.events = events
        self.redis_client = redis_client
        self.channel = channel
        self.origin = uuid.uuid4().hex
        self._pending: set[asyncio.Task] = set()

    def get_item(self, key: str) -> Optional[str]:
        return self.storage.get_item(key)

    def set_item(self, key: str, value: str) -> None:
        self.storage.set_item(key, value)
        self._announce(key)

    def remove_item(self, key: str) -> None:
        self.storage.remove_item(key)
        self._announce(key)

    def _announce(self, key: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            log.debug("No running loop; change to %s not announced", key)
            return
        task = loop.create_task(self.publish(key))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def publish(self, key: str) -> None:
        try:
            await self.redis_client.publish(self.channel, json.dumps({"key": key, "origin": self.origin}))
        except Exception as exc:
            log.warning("Storage change publish failed key=%s: %s", key, exc)

    async def flush(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def handle_message(self, raw: Any) -> bool:
        """Apply one pub/sub payload; returns True when it produced a ``storage`` event."""
        try:
            if isinstance(raw, (bytes, bytearray)):
                raw = raw.decode("utf-8")
            data = json.loads(raw)
        except (ValueError, TypeError) as exc:
            log.debug("Ignoring malformed storage frame: %s", exc)
            return False
        if not isinstance(data, dict) or data.get("origin") == self.origin:
            return False
        key = data.get("key")
        if not isinstance(key, str):
            return False
        self.events.dispatch(STORAGE_EVENT, {"key": key})
        return True

    async def listen(self) -> None:
        pubsub = self.redis_client.pubsub(ignore_subscribe_messages=True)
        await pubsub.subscribe(self.channel)
        try:
            async for msg in pubsub.listen():
                if msg and msg.get("type") == "message":
                    self.handle_message(msg.get("data"))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log.error("Storage change subscription failed: %s", exc)
        finally:
            try:
                await pubsub.unsubscribe(self.channel)
                await pubsub.aclose()
            except Exception as exc:
                log.debug("Storage pubsub close failed: %s", exc)
