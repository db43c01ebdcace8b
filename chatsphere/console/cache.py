import asyncio
import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Hashable, List, Optional, Tuple

log = logging.getLogger(__name__)

Fetcher = Callable[[], Awaitable[Any]]


def freeze_key(key: Any) -> Hashable:
    """Structural form of a cache key: dict parts compare by items, lists by contents."""
    if isinstance(key, dict):
        return ("__dict__", tuple(sorted((str(k), freeze_key(v)) for k, v in key.items())))
    if isinstance(key, (list, tuple)):
        return tuple(freeze_key(k) for k in key)
    return key


def _has_prefix(frozen: Hashable, prefix: Hashable) -> bool:
    if not isinstance(frozen, tuple) or not isinstance(prefix, tuple):
        return frozen == prefix
    return frozen[: len(prefix)] == prefix


@dataclass
class CacheEntry:
    key: Tuple
    data: Any = None
    stale: bool = True
    updated_at: float = 0.0
    error: Optional[str] = None


@dataclass
class _Query:
    key: Tuple
    fetcher: Fetcher
    inflight: Optional[asyncio.Task] = field(default=None, repr=False)


class QueryCache:
    """Request/response cache keyed by logical resource.

    ``register`` marks a key as observed: invalidating it schedules a background
    refetch. Unregistered keys only go stale and are refetched on the next ``fetch``.
    """

    def __init__(self):
        self._entries: Dict[Hashable, CacheEntry] = {}
        self._queries: Dict[Hashable, _Query] = {}
        self._deferred: Optional[set] = None

    def register(self, key: Tuple, fetcher: Fetcher) -> None:
        self._queries[freeze_key(key)] = _Query(tuple(key), fetcher)

    def unregister(self, key: Tuple) -> None:
        self._queries.pop(freeze_key(key), None)

    def is_registered(self, key: Tuple) -> bool:
        return freeze_key(key) in self._queries

    def get(self, key: Tuple, default: Any = None) -> Any:
        entry = self._entries.get(freeze_key(key))
        return entry.data if entry is not None else default

    def is_stale(self, key: Tuple) -> bool:
        entry = self._entries.get(freeze_key(key))
        return entry is None or entry.stale

    def set(self, key: Tuple, data: Any) -> None:
        self._entries[freeze_key(key)] = CacheEntry(tuple(key), data, stale=False, updated_at=time.time())

    def keys(self) -> List[Tuple]:
        return [e.key for e in self._entries.values()]

    async def fetch(self, key: Tuple) -> Any:
        fk = freeze_key(key)
        entry = self._entries.get(fk)
        if entry is not None and not entry.stale:
            return entry.data
        if fk not in self._queries:
            raise KeyError(f"No fetcher registered for {key!r}")
        return await self._run(fk)

    async def _run(self, fk: Hashable) -> Any:
        query = self._queries[fk]
        if query.inflight is None or query.inflight.done():
            query.inflight = asyncio.ensure_future(self._load(query, fk))
        return await asyncio.shield(query.inflight)

    async def _load(self, query: _Query, fk: Hashable) -> Any:
        try:
            data = await query.fetcher()
        except Exception as exc:
            entry = self._entries.setdefault(fk, CacheEntry(query.key))
            entry.error = str(exc)
            raise
        self._entries[fk] = CacheEntry(query.key, data, stale=False, updated_at=time.time())
        return data

    def invalidate(self, prefix: Tuple = ()) -> List[Tuple]:
        """Mark every key under ``prefix`` stale and refetch the registered ones in the background."""
        fp = freeze_key(tuple(prefix))
        for fk, entry in self._entries.items():
            if _has_prefix(fk, fp):
                entry.stale = True
        scheduled: List[Tuple] = []
        for fk, query in self._queries.items():
            if not _has_prefix(fk, fp):
                continue
            if self._deferred is not None:
                self._deferred.add(fk)
                scheduled.append(query.key)
            elif self._schedule(fk):
                scheduled.append(query.key)
        return scheduled

    @contextmanager
    def batch(self):
        """Hold back background refetches until the block exits.

        Each registered key invalidated inside the block is refetched at most
        once, and only if it is still stale by then.
        """
        if self._deferred is not None:
            yield
            return
        self._deferred = set()
        try:
            yield
        finally:
            deferred, self._deferred = self._deferred, None
            for fk in deferred:
                entry = self._entries.get(fk)
                if fk in self._queries and (entry is None or entry.stale):
                    self._schedule(fk)

    def _schedule(self, fk: Hashable) -> bool:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return False
        query = self._queries[fk]
        if query.inflight is None or query.inflight.done():
            query.inflight = asyncio.ensure_future(self._load(query, fk))
            query.inflight.add_done_callback(self._log_failure)
        return True

    @staticmethod
    def _log_failure(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.warning("Background refetch failed: %s", exc)

    async def refetch(self, key: Tuple, exact: bool = True) -> List[Tuple]:
        """Refetch now: the key itself (``exact``) or every registered key under it."""
        fkey = freeze_key(tuple(key))
        targets = [fk for fk in self._queries if (fk == fkey if exact else _has_prefix(fk, fkey))]
        results = await asyncio.gather(*(self._run(fk) for fk in targets), return_exceptions=True)
        for fk, res in zip(targets, results):
            if isinstance(res, Exception):
                log.warning("Refetch of %s failed: %s", self._queries[fk].key, res)
        return [self._queries[fk].key for fk in targets]

    async def drain(self) -> None:
        """Wait for background refetches started by ``invalidate``."""
        while True:
            pending = [q.inflight for q in self._queries.values() if q.inflight is not None and not q.inflight.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)
