import copy
import json
import logging
import math
from typing import Dict, Iterable, List, Optional

from .cache import QueryCache
from .storage import LocalStorage, StorageError

log = logging.getLogger(__name__)

UNREAD_STORAGE_KEY = "chat_unread_counts"
CONVERSATIONS_KEY = ("/api/conversations",)


class UnreadCounts:
    """Per-conversation unread badges kept locally, independent of the server's count."""

    def __init__(self, storage: LocalStorage, cache: QueryCache | None = None, key: str = UNREAD_STORAGE_KEY):
        self.storage = storage
        self.cache = cache
        self.key = key
        self.selected_conversation_id: Optional[str] = None
        self._counts: Dict[str, int] = self._load()

    def _load(self) -> Dict[str, int]:
        try:
            raw = self.storage.get_item(self.key)
        except StorageError as exc:
            log.debug("Unread counts unavailable: %s", exc)
            return {}
        if not raw:
            return {}
        try:
            parsed = json.loads(raw)
        except ValueError:
            return {}
        if not isinstance(parsed, dict):
            return {}
        return {
            str(k): int(v)
            for k, v in parsed.items()
            if isinstance(v, (int, float)) and not isinstance(v, bool) and math.isfinite(v) and v > 0
        }

    def _persist(self) -> None:
        try:
            self.storage.set_item(self.key, json.dumps(self._counts))
        except StorageError as exc:
            # Counts stay correct in memory for this session.
            log.debug("Unread counts not persisted: %s", exc)

    def _invalidate(self) -> None:
        if self.cache is not None:
            self.cache.invalidate(CONVERSATIONS_KEY)

    @property
    def counts(self) -> Dict[str, int]:
        return dict(self._counts)

    def get(self, conversation_id: str) -> int:
        return self._counts.get(conversation_id, 0)

    def increment_unread(self, conversation_id: str) -> int:
        if conversation_id == self.selected_conversation_id:
            return self.get(conversation_id)
        self._counts[conversation_id] = self._counts.get(conversation_id, 0) + 1
        self._persist()
        self._invalidate()
        return self._counts[conversation_id]

    def reset_unread(self, conversation_id: str) -> None:
        if self._counts.pop(conversation_id, None) is not None:
            self._persist()
        self._invalidate()

    def select(self, conversation_id: Optional[str]) -> None:
        self.selected_conversation_id = conversation_id
        if conversation_id:
            self.reset_unread(conversation_id)

    def overlay(self, conversations: Iterable[dict]) -> List[dict]:
        """Copies of ``conversations`` with ``metadata.unreadCount`` replaced by the local count."""
        out = []
        for conv in conversations:
            item = copy.deepcopy(conv)
            meta = item.get("metadata") if isinstance(item.get("metadata"), dict) else {}
            meta["unreadCount"] = self.get(item.get("id"))
            item["metadata"] = meta
            out.append(item)
        return out
