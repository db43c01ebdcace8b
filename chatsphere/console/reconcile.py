import logging
from typing import Any, Dict, Optional, Tuple

from .cache import QueryCache
from .calls import CallController
from .unread import CONVERSATIONS_KEY, UnreadCounts

log = logging.getLogger(__name__)

PINS_KEY = ("/api/conversations/pins",)


def conversation_list_key(archived: bool) -> tuple:
    return ("/api/conversations", {"archived": bool(archived)})


def messages_key(conversation_id: str) -> tuple:
    return ("/api/conversations", conversation_id, "messages")


_MESSAGE_CHANGED = (
    "invalidate_conversations",
    "refetch_conversation_partitions",
    "invalidate_messages",
)

# Push event -> cache/state effects, applied in order.
EVENT_POLICIES: Dict[str, Tuple[str, ...]] = {
    "message_incoming": ("increment_unread",) + _MESSAGE_CHANGED,
    "message_outgoing": _MESSAGE_CHANGED,
    "message_media_updated": _MESSAGE_CHANGED,
    "message_status": ("invalidate_messages",),
    "message_deleted": ("invalidate_conversations", "invalidate_messages"),
    "call_incoming": ("ring_incoming_call",),
    "call_ended": ("end_remote_call",),
}


def _conversation_id(data: dict) -> Optional[str]:
    cid = data.get("conversationId")
    return cid if isinstance(cid, str) and cid else None


class EventReconciler:
    def __init__(self, cache: QueryCache, unread: UnreadCounts, calls: CallController):
        self.cache = cache
        self.unread = unread
        self.calls = calls

    async def dispatch(self, event: str, data: Any) -> Tuple[str, ...]:
        """Apply the policy for ``event``; returns the effects that ran."""
        policy = EVENT_POLICIES.get(event)
        if policy is None:
            log.debug("Ignoring unknown event %s", event)
            return ()
        payload = data if isinstance(data, dict) else {}
        with self.cache.batch():
            for effect in policy:
                await getattr(self, f"_{effect}")(payload)
        return policy

    async def _invalidate_conversations(self, data: dict) -> None:
        self.cache.invalidate(CONVERSATIONS_KEY)

    async def _refetch_conversation_partitions(self, data: dict) -> None:
        await self.cache.refetch(conversation_list_key(False), exact=True)
        await self.cache.refetch(conversation_list_key(True), exact=True)

    async def _invalidate_messages(self, data: dict) -> None:
        cid = _conversation_id(data)
        if cid:
            self.cache.invalidate(messages_key(cid))

    async def _increment_unread(self, data: dict) -> None:
        cid = _conversation_id(data)
        if cid:
            self.unread.increment_unread(cid)

    async def _ring_incoming_call(self, data: dict) -> None:
        self.calls.receive_incoming(data)

    async def _end_remote_call(self, data: dict) -> None:
        self.calls.remote_end(data.get("callId"))
