"""Schema-flexible blobs attached to conversations and messages.

Both are stored as JSON text and may have been written by older code, the
webhook processor or a hand-edited row, so every read goes through
``from_raw`` which never trusts the shape: non-dict input becomes an empty
model, known keys with the wrong type are dropped and unknown keys are kept in
``extra`` so a round-trip does not lose data.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

MEDIA_TYPES = ("image", "video", "audio", "document", "unknown")
MEDIA_STATUSES = ("pending", "processing", "ready", "failed")
MEDIA_ORIGINS = ("whatsapp", "upload", "system", "unknown")


def _load(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", "ignore")
    if isinstance(raw, str):
        try:
            raw = json.loads(raw) if raw.strip() else {}
        except Exception:
            return {}
    return dict(raw) if isinstance(raw, dict) else {}


def _str_or_none(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


def _int_or_none(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


@dataclass
class ConversationMetadata:
    last_message: Optional[str] = None
    unread_count: int = 0
    muted: bool = False
    labels: List[str] = field(default_factory=list)
    extra: Dict[str, Any] = field(default_factory=dict)

    _KNOWN = ("lastMessage", "unreadCount", "muted", "labels")

    @classmethod
    def from_raw(cls, raw: Any) -> "ConversationMetadata":
        data = _load(raw)
        unread = _int_or_none(data.get("unreadCount"))
        labels = data.get("labels")
        return cls(
            last_message=_str_or_none(data.get("lastMessage")),
            unread_count=max(0, unread) if unread is not None else 0,
            muted=data.get("muted") is True,
            labels=[x for x in labels if isinstance(x, str)] if isinstance(labels, list) else [],
            extra={k: v for k, v in data.items() if k not in cls._KNOWN},
        )

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = dict(self.extra)
        if self.last_message is not None:
            out["lastMessage"] = self.last_message
        out["unreadCount"] = int(self.unread_count)
        if self.muted:
            out["muted"] = True
        if self.labels:
            out["labels"] = list(self.labels)
        return out


@dataclass
class MessageMedia:
    type: str = "unknown"
    status: str = "pending"
    origin: str = "unknown"
    provider_media_id: Optional[str] = None
    mime_type: Optional[str] = None
    filename: Optional[str] = None
    size_bytes: Optional[int] = None
    url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    _KNOWN = (
        "type",
        "status",
        "origin",
        "providerMediaId",
        "mimeType",
        "filename",
        "sizeBytes",
        "url",
        "thumbnailUrl",
    )

    @classmethod
    def from_raw(cls, raw: Any) -> Optional["MessageMedia"]:
        """Return ``None`` when the row carries no media at all."""
        if raw is None:
            return None
        data = _load(raw)
        if not data:
            return None
        mtype = data.get("type")
        status = data.get("status")
        origin = data.get("origin")
        return cls(
            type=mtype if mtype in MEDIA_TYPES else "unknown",
            status=status if status in MEDIA_STATUSES else "pending",
            origin=origin if origin in MEDIA_ORIGINS else "unknown",
            provider_media_id=_str_or_none(data.get("providerMediaId")),
            mime_type=_str_or_none(data.get("mimeType")),
            filename=_str_or_none(data.get("filename")),
            size_bytes=_int_or_none(data.get("sizeBytes")),
            url=_str_or_none(data.get("url")),
            thumbnail_url=_str_or_none(data.get("thumbnailUrl")),
            extra={k: v for k, v in data.items() if k not in cls._KNOWN},
        )

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = dict(self.extra)
        out.update({"type": self.type, "status": self.status, "origin": self.origin})
        optional = {
            "providerMediaId": self.provider_media_id,
            "mimeType": self.mime_type,
            "filename": self.filename,
            "sizeBytes": self.size_bytes,
            "url": self.url,
            "thumbnailUrl": self.thumbnail_url,
        }
        out.update({k: v for k, v in optional.items() if v is not None})
        return out


def media_type_for_mime(mime: Optional[str]) -> str:
    m = str(mime or "").lower()
    if m.startswith("image/"):
        return "image"
    if m.startswith("video/"):
        return "video"
    if m.startswith("audio/"):
        return "audio"
    if m:
        return "document"
    return "unknown"
