import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional

from .. import config
from .api import ConsoleApi, MutationError
from .cache import QueryCache
from .call_log import CallLogEntry, CallLogStore
from .calls import CallController, CallRejected, CallState, now_ms
from .channel import NotificationChannel, channel_url
from .reconcile import PINS_KEY, EventReconciler, conversation_list_key, messages_key
from .storage import FileStorage, LocalStorage, RedisStorageBridge, StorageEvents
from .unread import CONVERSATIONS_KEY, UnreadCounts

log = logging.getLogger(__name__)


@dataclass
class Notice:
    title: str
    description: str
    variant: str = "default"


class ConsoleSession:
    """One operator's console: cached server state, live updates and the call slot."""

    def __init__(
        self,
        api: ConsoleApi,
        storage: LocalStorage | None = None,
        events: StorageEvents | None = None,
        *,
        redis_client=None,
        clock: Callable[[], int] = now_ms,
        ws_url: str | None = None,
        connector=None,
        reconnect_delay: float | None = None,
    ):
        self.api = api
        self.events = events or StorageEvents()
        storage = storage if storage is not None else FileStorage()
        self.bridge: Optional[RedisStorageBridge] = None
        if redis_client is not None:
            self.bridge = RedisStorageBridge(storage, self.events, redis_client)
            storage = self.bridge
        self.storage = storage
        self.cache = QueryCache()
        self.unread = UnreadCounts(self.storage, self.cache)
        self.call_log = CallLogStore(self.storage, self.events)
        self.calls = CallController(self.call_log, clock=clock)
        self.reconciler = EventReconciler(self.cache, self.unread, self.calls)
        self.channel = NotificationChannel(
            ws_url or channel_url(api.base_url, api.token),
            self.reconciler.dispatch,
            reconnect_delay=reconnect_delay,
            connector=connector,
        )
        self.notices: List[Notice] = []
        self.call_logs: List[CallLogEntry] = self.call_log.read()
        self._unsubscribe_call_log = self.call_log.subscribe(self._sync_call_logs)
        self._bridge_task: Optional[asyncio.Task] = None

        for archived in (False, True):
            self.cache.register(conversation_list_key(archived), self._conversation_fetcher(archived))
        self.cache.register(PINS_KEY, self.api.list_pins)

    def _conversation_fetcher(self, archived: bool):
        async def fetch():
            return await self.api.list_conversations(archived=archived)

        return fetch

    def _sync_call_logs(self, entries: List[CallLogEntry]) -> None:
        self.call_logs = entries

    def notify(self, title: str, description: str, variant: str = "default") -> None:
        self.notices.append(Notice(title, description, variant))

    # ── lifecycle ──
    async def start(self) -> None:
        if self.bridge is not None:
            self._bridge_task = asyncio.create_task(self.bridge.listen())
        await self.cache.refetch(CONVERSATIONS_KEY, exact=False)
        await self.cache.refetch(PINS_KEY)
        self.channel.start()

    async def close(self) -> None:
        await self.channel.close()
        if self._bridge_task is not None:
            self._bridge_task.cancel()
            await asyncio.gather(self._bridge_task, return_exceptions=True)
            self._bridge_task = None
        self._unsubscribe_call_log()
        await self.cache.drain()

    # ── reads ──
    @property
    def selected_conversation_id(self) -> Optional[str]:
        return self.unread.selected_conversation_id

    def conversations(self, archived: bool = False) -> List[dict]:
        data = self.cache.get(conversation_list_key(archived)) or {}
        return self.unread.overlay(data.get("items") or [])

    def pinned_ids(self) -> List[str]:
        data = self.cache.get(PINS_KEY) or {}
        return [p.get("conversationId") for p in data.get("pins") or [] if isinstance(p, dict)]

    def messages(self, conversation_id: str) -> List[dict]:
        data = self.cache.get(messages_key(conversation_id)) or {}
        return list(data.get("items") or [])

    def find_conversation(self, conversation_id: str | None = None, phone: str | None = None) -> Optional[dict]:
        for archived in (False, True):
            for conv in (self.cache.get(conversation_list_key(archived)) or {}).get("items") or []:
                if conversation_id and conv.get("id") == conversation_id:
                    return conv
                if phone and conv.get("phone") == phone:
                    return conv
        return None

    # ── operator actions ──
    async def select_conversation(self, conversation_id: Optional[str]) -> None:
        previous = self.selected_conversation_id
        if previous and previous != conversation_id:
            # Only the open conversation's messages are refetched on push events.
            self.cache.unregister(messages_key(previous))
        self.unread.select(conversation_id)
        if not conversation_id:
            return
        key = messages_key(conversation_id)
        if not self.cache.is_registered(key):

            async def fetch():
                return await self.api.list_messages(conversation_id)

            self.cache.register(key, fetch)
        try:
            await self.cache.fetch(key)
        except MutationError as exc:
            log.warning("Loading messages for %s failed: %s", conversation_id, exc.message)

    async def send_message(
        self,
        body: str,
        media_url: str | None = None,
        reply_to_message_id: str | None = None,
    ) -> Optional[dict]:
        conversation_id = self.selected_conversation_id
        conversation = self.find_conversation(conversation_id) if conversation_id else None
        if not conversation:
            raise ValueError("No conversation selected")

        key = messages_key(conversation["id"])
        pending = {
            "id": f"temp-{uuid.uuid4().hex}",
            "conversationId": conversation["id"],
            "direction": "outbound",
            "body": body,
            "media": {"type": "document", "status": "pending", "origin": "upload", "url": media_url} if media_url else None,
            "status": "pending",
            "replyToMessageId": reply_to_message_id,
            "createdAt": datetime.now(timezone.utc).isoformat(),
        }
        current = self.cache.get(key) or {"items": [], "total": 0}
        self.cache.set(key, {**current, "items": [*(current.get("items") or []), pending]})

        try:
            result = await self.api.send_message(
                conversation_id=conversation["id"],
                to=conversation.get("phone"),
                body=body,
                media_url=media_url,
                reply_to_message_id=reply_to_message_id,
            )
        except MutationError as exc:
            self.notify("Failed to send message", exc.message, "destructive")
            self.cache.invalidate(CONVERSATIONS_KEY)
            return None

        message = result.get("message") if isinstance(result, dict) else None
        if message:
            latest = self.cache.get(key) or {"items": []}
            items = [message if m.get("id") == pending["id"] else m for m in latest.get("items") or []]
            self.cache.set(key, {**latest, "items": items})
        self.cache.invalidate(CONVERSATIONS_KEY)
        return message

    async def archive(self, conversation_id: str, archived: bool) -> bool:
        source_key = conversation_list_key(not archived)
        target_key = conversation_list_key(archived)
        source = self.cache.get(source_key) or {"items": [], "total": 0}
        moved = [c for c in source.get("items") or [] if c.get("id") == conversation_id]
        if moved:
            self.cache.set(source_key, {
                **source,
                "items": [c for c in source["items"] if c.get("id") != conversation_id],
                "total": max(0, int(source.get("total") or 0) - 1),
            })
            target = self.cache.get(target_key) or {"items": [], "total": 0}
            self.cache.set(target_key, {
                **target,
                "items": [{**moved[0], "archived": archived}, *(target.get("items") or [])],
                "total": int(target.get("total") or 0) + 1,
            })

        try:
            await self.api.archive(conversation_id, archived)
        except MutationError as exc:
            self.notify("Failed to archive conversation", exc.message, "destructive")
            self.cache.invalidate(CONVERSATIONS_KEY)
            return False

        if self.selected_conversation_id == conversation_id:
            await self.select_conversation(None)
        self.cache.invalidate(CONVERSATIONS_KEY)
        if archived:
            self.notify("Conversation archived", "The conversation has been moved to archived")
        else:
            self.notify("Conversation unarchived", "The conversation has been restored to active")
        return True

    async def set_pinned(self, conversation_id: str, pinned: bool) -> bool:
        pinned_ids = self.pinned_ids()
        if pinned and conversation_id not in pinned_ids and len(pinned_ids) >= config.MAX_PINNED_CONVERSATIONS:
            self.notify(
                "Pin limit reached",
                f"You can only pin up to {config.MAX_PINNED_CONVERSATIONS} chats.",
                "destructive",
            )
            return False

        current = (self.cache.get(PINS_KEY) or {}).get("pins") or []
        others = [p for p in current if isinstance(p, dict) and p.get("conversationId") != conversation_id]
        if pinned:
            optimistic = [{"conversationId": conversation_id, "pinnedAt": datetime.now(timezone.utc).isoformat()}, *others]
        else:
            optimistic = others
        self.cache.set(PINS_KEY, {"pins": optimistic})

        try:
            result = await self.api.set_pinned(conversation_id, pinned)
        except MutationError as exc:
            self.notify("Unable to update pin", exc.message, "destructive")
            self.cache.invalidate(PINS_KEY)
            return False

        if isinstance(result, dict) and isinstance(result.get("pins"), list):
            self.cache.set(PINS_KEY, {"pins": result["pins"]})
        else:
            self.cache.invalidate(PINS_KEY)
        self.cache.invalidate(CONVERSATIONS_KEY)
        return True

    async def delete_message(self, message_id: str) -> bool:
        try:
            result = await self.api.delete_message(message_id)
        except MutationError as exc:
            self.notify("Failed to delete message", exc.message, "destructive")
            return False
        conversation_id = result.get("conversationId") if isinstance(result, dict) else None
        if conversation_id:
            self.cache.invalidate(messages_key(conversation_id))
        self.cache.invalidate(CONVERSATIONS_KEY)
        self.notify("Message deleted", "The message has been removed.")
        return True

    # ── calls ──
    def start_call(self, conversation: dict) -> Optional[CallState]:
        try:
            return self.calls.start_outgoing_call(conversation)
        except CallRejected as exc:
            self.notify(exc.title, exc.description, "destructive")
            return None

    def answer_call(self) -> Optional[CallState]:
        return self.calls.answer()

    def end_call(self, reason: str) -> Optional[CallLogEntry]:
        return self.calls.end(reason)

    def dismiss_call(self) -> Optional[CallLogEntry]:
        return self.calls.dismiss()

    async def open_chat_from_call(self) -> Optional[str]:
        call = self.calls.active
        if call is None:
            return None
        conversation_id = call.conversation_id
        if not conversation_id:
            match = self.find_conversation(phone=call.phone)
            conversation_id = match.get("id") if match else None
        if conversation_id:
            await self.select_conversation(conversation_id)
        return conversation_id

    async def handle_event(self, event: str, data: Any) -> Any:
        """Feed one push frame through reconciliation (what the channel does per frame)."""
        return await self.reconciler.dispatch(event, data)
