import asyncio
import logging
import mimetypes
import uuid
from typing import Any, Dict, List, Optional

import aiofiles
import httpx

from . import config
from .db import DatabaseManager
from .hub import ConnectionManager, vlog
from .messenger import MessengerError, MessengerNotConfigured, WhatsAppMessenger
from .models import MessageMedia, media_type_for_mime

log = logging.getLogger(__name__)

_MEDIA_KINDS = ("image", "video", "audio", "document", "sticker", "voice")
_SNIPPET_LEN = 120


class SendError(Exception):
    """Outbound send rejected before anything was stored (bad target, unknown reply)."""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.status_code = status_code


def _snippet(text: Optional[str]) -> Optional[str]:
    if not text:
        return None
    t = " ".join(str(text).split())
    return t if len(t) <= _SNIPPET_LEN else t[: _SNIPPET_LEN - 1] + "…"


def _inbound_body(message: dict) -> Optional[str]:
    mtype = message.get("type")
    if mtype == "text":
        return (message.get("text") or {}).get("body")
    if mtype in _MEDIA_KINDS:
        return (message.get(mtype) or {}).get("caption")
    if mtype == "button":
        return (message.get("button") or {}).get("text")
    if mtype == "interactive":
        inter = message.get("interactive") or {}
        reply = inter.get("button_reply") or inter.get("list_reply") or {}
        return reply.get("title")
    if mtype == "reaction":
        return (message.get("reaction") or {}).get("emoji")
    if mtype == "location":
        loc = message.get("location") or {}
        return loc.get("name") or f"{loc.get('latitude')},{loc.get('longitude')}"
    return None


class MessageProcessor:
    """Turns webhook payloads and operator sends into store writes plus push events."""

    def __init__(self, connection_manager: ConnectionManager, db_manager: DatabaseManager, messenger: WhatsAppMessenger):
        self.connection_manager = connection_manager
        self.db_manager = db_manager
        self.messenger = messenger
        self._media_tasks: set[asyncio.Task] = set()

    # ── inbound ──
    async def process_incoming_message(self, webhook_data: dict) -> None:
        for entry in webhook_data.get("entry") or []:
            for change in (entry or {}).get("changes") or []:
                value = (change or {}).get("value") or {}
                contacts = {
                    str(c.get("wa_id") or ""): ((c.get("profile") or {}).get("name") or None)
                    for c in value.get("contacts") or []
                    if isinstance(c, dict)
                }
                for message in value.get("messages") or []:
                    await self._handle_incoming_message(message, contacts)
                if value.get("statuses"):
                    await self._handle_status_updates(value["statuses"])
                if value.get("calls"):
                    await self._handle_call_events(value["calls"], contacts)

    async def _handle_incoming_message(self, message: dict, contacts: Dict[str, Optional[str]]) -> Optional[dict]:
        phone = str(message.get("from") or "").strip()
        if not phone:
            return None
        provider_id = message.get("id")
        if provider_id and await self.db_manager.get_message_by_provider_id(provider_id):
            vlog(f"Duplicate inbound message {provider_id} ignored")
            return None

        conversation = await self.db_manager.upsert_conversation_by_phone(phone, contacts.get(phone))
        reply_to = None
        context_id = (message.get("context") or {}).get("id")
        if context_id:
            target = await self.db_manager.get_message_by_provider_id(context_id)
            reply_to = target["id"] if target else None

        media = None
        mtype = message.get("type")
        if mtype in _MEDIA_KINDS:
            info = message.get(mtype) or {}
            media = MessageMedia(
                type="audio" if mtype == "voice" else ("image" if mtype == "sticker" else mtype),
                status="pending",
                origin="whatsapp",
                provider_media_id=info.get("id"),
                mime_type=info.get("mime_type"),
                filename=info.get("filename"),
            ).to_dict()

        body = _inbound_body(message)
        saved = await self.db_manager.create_message(
            conversation["id"],
            "inbound",
            body,
            media=media,
            provider_message_id=provider_id,
            status="received",
            raw=message,
            reply_to_message_id=reply_to,
        )
        await self.db_manager.update_conversation_last_at(conversation["id"])
        await self.db_manager.update_conversation_metadata(
            conversation["id"],
            last_message=_snippet(body) or (f"[{media['type']}]" if media else None),
            unread_delta=1,
        )
        await self.connection_manager.broadcast("message_incoming", saved)

        if media and media.get("providerMediaId"):
            task = asyncio.create_task(self._fetch_inbound_media(saved))
            self._media_tasks.add(task)
            task.add_done_callback(self._media_tasks.discard)
        return saved

    async def _fetch_inbound_media(self, message: dict) -> None:
        """Download inbound media into MEDIA_DIR and announce the new status."""
        media = MessageMedia.from_raw(message.get("media"))
        if media is None or not media.provider_media_id:
            return
        try:
            content, mime = await self.messenger.download_media(media.provider_media_id)
            ext = mimetypes.guess_extension((mime or "").split(";")[0].strip()) or ""
            relative = f"inbound/{uuid.uuid4().hex}{ext}"
            target = config.MEDIA_DIR / relative
            target.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(target, "wb") as fh:
                await fh.write(content)
            media.status = "ready"
            media.mime_type = media.mime_type or mime or None
            media.size_bytes = len(content)
            media.url = f"/media/{relative}"
        except MessengerNotConfigured:
            vlog("Inbound media left pending: messenger not configured")
            return
        except Exception as exc:
            log.warning("Inbound media download failed message=%s: %s", message.get("id"), exc)
            media.status = "failed"
            media.extra["downloadError"] = str(exc)
        updated = await self.db_manager.update_message_media(message["id"], media.to_dict())
        if updated:
            await self.connection_manager.broadcast("message_media_updated", updated)

    async def _handle_status_updates(self, statuses: List[dict]) -> None:
        for status in statuses:
            provider_id = (status or {}).get("id")
            state = (status or {}).get("status")
            if not provider_id or not state:
                continue
            updated = await self.db_manager.update_message_status(provider_id, state)
            if updated:
                await self.connection_manager.broadcast(
                    "message_status",
                    {"id": updated["id"], "conversationId": updated["conversationId"], "status": state},
                )

    async def _handle_call_events(self, calls: List[dict], contacts: Dict[str, Optional[str]]) -> None:
        for call in calls:
            if not isinstance(call, dict):
                continue
            event = str(call.get("event") or "").lower()
            call_id = call.get("id")
            if event == "connect":
                phone = str(call.get("from") or "").strip()
                conversation = await self.db_manager.get_conversation_by_phone(phone) if phone else None
                payload: Dict[str, Any] = {"callId": call_id, "phone": phone}
                display_name = contacts.get(phone) or (conversation or {}).get("displayName")
                if display_name:
                    payload["displayName"] = display_name
                if conversation:
                    payload["conversationId"] = conversation["id"]
                await self.connection_manager.broadcast("call_incoming", payload)
            elif event == "terminate":
                await self.connection_manager.broadcast("call_ended", {"callId": call_id} if call_id else {})
            else:
                vlog(f"Unhandled call event {event!r}")

    # ── outbound ──
    async def process_outgoing_message(
        self,
        *,
        conversation_id: str | None = None,
        to: str | None = None,
        body: str | None = None,
        media_url: str | None = None,
        media_type: str | None = None,
        reply_to_message_id: str | None = None,
        sent_by_user_id: str | None = None,
    ) -> dict:
        conversation = None
        if conversation_id:
            conversation = await self.db_manager.get_conversation(conversation_id)
            if not conversation:
                raise SendError("Conversation not found.", 404)
        elif to and to.strip():
            conversation = await self.db_manager.upsert_conversation_by_phone(to.strip())
        else:
            raise SendError("conversationId or to is required.")
        if not (body or "").strip() and not media_url:
            raise SendError("Message body or media is required.")

        reply_target = None
        if reply_to_message_id:
            reply_target = await self.db_manager.get_message(reply_to_message_id)
            if not reply_target or reply_target["conversationId"] != conversation["id"]:
                raise SendError("Reply target not found in this conversation.")

        media = None
        if media_url:
            media = MessageMedia(
                type=media_type or media_type_for_mime(mimetypes.guess_type(media_url)[0] or "application/octet-stream"),
                status="ready",
                origin="upload",
                url=media_url,
            ).to_dict()

        status = "sent"
        provider_id = None
        try:
            if media:
                provider_id = await self.messenger.send_media_message(conversation["phone"], media["type"], media_url, body)
            else:
                provider_id = await self.messenger.send_text_message(
                    conversation["phone"],
                    body or "",
                    (reply_target or {}).get("providerMessageId"),
                )
        except MessengerNotConfigured:
            status = "pending"
        except MessengerError as exc:
            log.warning("Failed to send via provider, saving locally: %s", exc)
            status = "failed"
        except httpx.HTTPError as exc:
            log.warning("Failed to send via provider, saving locally: %s", exc)
            status = "failed"

        saved = await self.db_manager.create_message(
            conversation["id"],
            "outbound",
            body,
            media=media,
            provider_message_id=provider_id,
            status=status,
            reply_to_message_id=reply_target["id"] if reply_target else None,
            sent_by_user_id=sent_by_user_id,
        )
        await self.db_manager.update_conversation_last_at(conversation["id"])
        await self.db_manager.update_conversation_metadata(
            conversation["id"],
            last_message=_snippet(body) or (f"[{media['type']}]" if media else None),
        )
        await self.connection_manager.broadcast("message_outgoing", saved)
        return saved
