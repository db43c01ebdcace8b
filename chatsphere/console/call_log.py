import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

from .. import config
from .storage import STORAGE_EVENT, LocalStorage, StorageError, StorageEvents

log = logging.getLogger(__name__)

CALL_LOG_STORAGE_KEY = "chatsphere:call-log:v1"
CALL_LOG_UPDATED_EVENT = "chatsphere:call-log-updated"

DIRECTIONS = ("incoming", "outgoing")
OUTCOMES = ("completed", "missed", "declined", "cancelled")


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def is_valid_entry(raw: Any) -> bool:
    return (
        isinstance(raw, dict)
        and isinstance(raw.get("id"), str)
        and isinstance(raw.get("phone"), str)
        and isinstance(raw.get("displayName"), str)
        and raw.get("direction") in DIRECTIONS
        and _is_number(raw.get("startedAt"))
        and _is_number(raw.get("endedAt"))
    )


@dataclass(frozen=True)
class CallLogEntry:
    id: str
    phone: str
    display_name: str
    direction: str
    outcome: str
    started_at: float
    ended_at: float
    duration_seconds: float = 0
    conversation_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "conversationId": self.conversation_id,
            "phone": self.phone,
            "displayName": self.display_name,
            "direction": self.direction,
            "outcome": self.outcome,
            "startedAt": self.started_at,
            "endedAt": self.ended_at,
            "durationSeconds": self.duration_seconds,
        }

    @classmethod
    def from_dict(cls, raw: Any) -> Optional["CallLogEntry"]:
        if not is_valid_entry(raw):
            return None
        conversation_id = raw.get("conversationId")
        duration = raw.get("durationSeconds")
        return cls(
            id=raw["id"],
            phone=raw["phone"],
            display_name=raw["displayName"],
            direction=raw["direction"],
            outcome=str(raw.get("outcome") or ""),
            started_at=raw["startedAt"],
            ended_at=raw["endedAt"],
            duration_seconds=duration if _is_number(duration) else 0,
            conversation_id=conversation_id if isinstance(conversation_id, str) else None,
        )


class CallLogStore:
    """Capped, newest-first history of finished calls kept in local storage."""

    def __init__(self, storage: LocalStorage, events: StorageEvents | None = None, max_entries: int | None = None):
        self.storage = storage
        self.events = events or StorageEvents()
        self.max_entries = int(max_entries if max_entries is not None else config.CALL_LOG_MAX_ENTRIES)

    def read(self) -> List[CallLogEntry]:
        try:
            raw = self.storage.get_item(CALL_LOG_STORAGE_KEY)
        except StorageError as exc:
            log.debug("Call log read failed: %s", exc)
            return []
        if not raw:
            return []
        try:
            parsed = json.loads(raw)
        except ValueError:
            return []
        if not isinstance(parsed, list):
            return []
        entries = []
        for item in parsed:
            entry = CallLogEntry.from_dict(item)
            if entry is not None:
                entries.append(entry)
        return entries

    def write(self, entries: List[CallLogEntry]) -> None:
        try:
            self.storage.set_item(CALL_LOG_STORAGE_KEY, json.dumps([e.to_dict() for e in entries]))
        except StorageError as exc:
            log.debug("Call log write failed: %s", exc)
            return
        self.events.dispatch(CALL_LOG_UPDATED_EVENT)

    def append(self, entry: CallLogEntry, current: List[CallLogEntry] | None = None) -> List[CallLogEntry]:
        base = list(current) if current is not None else self.read()
        entries = [entry, *base][: self.max_entries]
        self.write(entries)
        return entries

    def subscribe(self, fn: Callable[[List[CallLogEntry]], None]) -> Callable[[], None]:
        """Call ``fn(entries)`` after every write here or in another console process."""

        def on_updated(_detail: Any = None) -> None:
            fn(self.read())

        def on_storage(detail: Any = None) -> None:
            key = detail.get("key") if isinstance(detail, dict) else None
            if key is None or key == CALL_LOG_STORAGE_KEY:
                fn(self.read())

        self.events.add_listener(CALL_LOG_UPDATED_EVENT, on_updated)
        self.events.add_listener(STORAGE_EVENT, on_storage)

        def unsubscribe() -> None:
            self.events.remove_listener(CALL_LOG_UPDATED_EVENT, on_updated)
            self.events.remove_listener(STORAGE_EVENT, on_storage)

        return unsubscribe
