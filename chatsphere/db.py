import json
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiosqlite

from . import config
from .models import ConversationMetadata, MessageMedia

log = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _new_id() -> str:
    return str(uuid.uuid4())


def _json_or_none(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=False)


def _parse_json(raw: Any) -> Any:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except Exception:
        return None


def conversation_from_row(row: Any) -> dict:
    r = dict(row)
    return {
        "id": r["id"],
        "phone": r["phone"],
        "displayName": r.get("display_name"),
        "metadata": ConversationMetadata.from_raw(r.get("metadata")).to_dict(),
        "archived": bool(r.get("archived")),
        "createdByUserId": r.get("created_by_user_id"),
        "lastAt": r.get("last_at"),
        "createdAt": r.get("created_at"),
        "updatedAt": r.get("updated_at"),
    }


def message_from_row(row: Any) -> dict:
    r = dict(row)
    media = MessageMedia.from_raw(r.get("media"))
    out = {
        "id": r["id"],
        "conversationId": r["conversation_id"],
        "direction": r["direction"],
        "body": r.get("body"),
        "media": media.to_dict() if media else None,
        "providerMessageId": r.get("provider_message_id"),
        "status": r.get("status"),
        "replyToMessageId": r.get("reply_to_message_id"),
        "sentByUserId": r.get("sent_by_user_id"),
        "createdAt": r.get("created_at"),
    }
    if "sender_name" in r:
        out["senderName"] = r.get("sender_name")
    return out


def user_from_row(row: Any) -> dict:
    r = dict(row)
    return {
        "id": r["id"],
        "username": r["username"],
        "role": r.get("role") or "user",
        "createdAt": r.get("created_at"),
    }


class DatabaseManager:
    """SQLite store for the operator console."""

    def __init__(self, db_path: str | None = None):
        self.db_path = db_path or config.DB_PATH
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

    # ── basic connection helper ──
    @asynccontextmanager
    async def _conn(self):
        # `timeout` is in seconds and controls how long SQLite waits to acquire locks.
        timeout_s = max(0.1, float(config.SQLITE_BUSY_TIMEOUT_MS) / 1000.0)
        async with aiosqlite.connect(self.db_path, timeout=timeout_s) as db:
            db.row_factory = aiosqlite.Row
            await db.execute("PRAGMA foreign_keys = ON")
            await db.execute(f"PRAGMA busy_timeout = {int(config.SQLITE_BUSY_TIMEOUT_MS)}")
            yield db

    async def _fetchone(self, query: str, params: tuple = ()) -> Optional[aiosqlite.Row]:
        async with self._conn() as db:
            cur = await db.execute(query, params)
            return await cur.fetchone()

    async def _fetchall(self, query: str, params: tuple = ()) -> list:
        async with self._conn() as db:
            cur = await db.execute(query, params)
            return list(await cur.fetchall())

    async def _execute(self, query: str, params: tuple = ()) -> int:
        async with self._conn() as db:
            cur = await db.execute(query, params)
            await db.commit()
            return cur.rowcount

    async def ping(self) -> bool:
        """Lightweight DB connectivity check (used by /health)."""
        try:
            row = await self._fetchone("SELECT 1")
            return bool(row[0]) if row else False
        except Exception:
            return False

    # ── schema ──
    async def init_db(self):
        async with self._conn() as db:
            await db.executescript(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id            TEXT PRIMARY KEY,
                    username      TEXT NOT NULL UNIQUE,
                    password_hash TEXT NOT NULL,
                    role          TEXT NOT NULL DEFAULT 'user',
                    created_at    TEXT
                );

                CREATE TABLE IF NOT EXISTS conversations (
                    id                 TEXT PRIMARY KEY,
                    phone              TEXT NOT NULL UNIQUE,
                    display_name       TEXT,
                    metadata           TEXT,
                    archived           INTEGER NOT NULL DEFAULT 0,
                    created_by_user_id TEXT,
                    last_at            TEXT,
                    created_at         TEXT,
                    updated_at         TEXT
                );

                CREATE TABLE IF NOT EXISTS messages (
                    id                  TEXT PRIMARY KEY,
                    conversation_id     TEXT NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
                    direction           TEXT NOT NULL,
                    body                TEXT,
                    media               TEXT,
                    provider_message_id TEXT,
                    status              TEXT NOT NULL DEFAULT 'received',
                    raw                 TEXT,
                    reply_to_message_id TEXT REFERENCES messages(id) ON DELETE SET NULL,
                    sent_by_user_id     TEXT,
                    created_at          TEXT
                );

                CREATE TABLE IF NOT EXISTS conversation_pins (
                    user_id         TEXT NOT NULL,
                    conversation_id TEXT NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
                    pinned_at       TEXT NOT NULL,
                    PRIMARY KEY (user_id, conversation_id)
                );

                CREATE TABLE IF NOT EXISTS webhook_events (
                    id         TEXT PRIMARY KEY,
                    headers    TEXT,
                    query      TEXT,
                    body       TEXT,
                    response   TEXT,
                    created_at TEXT
                );

                CREATE TABLE IF NOT EXISTS user_activity (
                    user_id        TEXT NOT NULL,
                    day            TEXT NOT NULL,
                    active_seconds INTEGER NOT NULL DEFAULT 0,
                    last_seen_at   TEXT,
                    PRIMARY KEY (user_id, day)
                );

                CREATE TABLE IF NOT EXISTS ready_messages (
                    id                 TEXT PRIMARY KEY,
                    name               TEXT NOT NULL,
                    body               TEXT NOT NULL,
                    is_active          INTEGER NOT NULL DEFAULT 1,
                    created_by_user_id TEXT,
                    created_at         TEXT,
                    updated_at         TEXT
                );

                CREATE TABLE IF NOT EXISTS app_settings (
                    key        TEXT PRIMARY KEY,
                    value      TEXT,
                    updated_at TEXT
                );

                CREATE INDEX IF NOT EXISTS idx_messages_conversation_created
                    ON messages (conversation_id, created_at);
                CREATE INDEX IF NOT EXISTS idx_messages_provider_id
                    ON messages (provider_message_id);
                CREATE INDEX IF NOT EXISTS idx_conversations_archived_last
                    ON conversations (archived, last_at);
                """
            )
            await db.commit()

    # ── users ──
    async def create_user(self, username: str, password_hash: str, role: str = "user") -> dict:
        uid = _new_id()
        await self._execute(
            "INSERT INTO users (id, username, password_hash, role, created_at) VALUES (?, ?, ?, ?, ?)",
            (uid, username, password_hash, role, _now_iso()),
        )
        return await self.get_user(uid)  # type: ignore[return-value]

    async def get_user(self, user_id: str) -> Optional[dict]:
        row = await self._fetchone("SELECT * FROM users WHERE id = ?", (user_id,))
        return user_from_row(row) if row else None

    async def get_user_auth_record(self, username: str) -> Optional[dict]:
        """Return the user including its password hash (login only)."""
        row = await self._fetchone("SELECT * FROM users WHERE username = ?", (username,))
        if not row:
            return None
        out = user_from_row(row)
        out["passwordHash"] = row["password_hash"]
        return out

    async def list_users(self) -> List[dict]:
        rows = await self._fetchall("SELECT * FROM users ORDER BY created_at")
        return [user_from_row(r) for r in rows]

    async def update_user(self, user_id: str, *, username: str | None = None, role: str | None = None, password_hash: str | None = None) -> Optional[dict]:
        sets: List[str] = []
        params: List[Any] = []
        if username is not None:
            sets.append("username = ?")
            params.append(username)
        if role is not None:
            sets.append("role = ?")
            params.append(role)
        if password_hash is not None:
            sets.append("password_hash = ?")
            params.append(password_hash)
        if sets:
            await self._execute(f"UPDATE users SET {', '.join(sets)} WHERE id = ?", (*params, user_id))
        return await self.get_user(user_id)

    async def delete_user(self, user_id: str) -> None:
        await self._execute("DELETE FROM users WHERE id = ?", (user_id,))

    # ── conversations ──
    async def get_conversations(
        self,
        page: int = 1,
        page_size: int = 20,
        archived: bool = False,
        search: str | None = None,
    ) -> dict:
        page = max(1, int(page or 1))
        page_size = max(1, min(200, int(page_size or 20)))
        where = "archived = ?"
        params: List[Any] = [1 if archived else 0]
        q = (search or "").strip()
        if q:
            where += " AND (phone LIKE ? OR COALESCE(display_name, '') LIKE ?)"
            params += [f"%{q}%", f"%{q}%"]
        rows = await self._fetchall(
            f"SELECT * FROM conversations WHERE {where} "
            "ORDER BY COALESCE(last_at, '') DESC, created_at DESC LIMIT ? OFFSET ?",
            (*params, page_size, (page - 1) * page_size),
        )
        total_row = await self._fetchone(f"SELECT COUNT(*) FROM conversations WHERE {where}", tuple(params))
        return {
            "items": [conversation_from_row(r) for r in rows],
            "total": int(total_row[0]) if total_row else 0,
        }

    async def get_conversation(self, conversation_id: str) -> Optional[dict]:
        row = await self._fetchone("SELECT * FROM conversations WHERE id = ?", (conversation_id,))
        return conversation_from_row(row) if row else None

    async def get_conversation_by_phone(self, phone: str) -> Optional[dict]:
        row = await self._fetchone("SELECT * FROM conversations WHERE phone = ?", (phone,))
        return conversation_from_row(row) if row else None

    async def create_conversation(self, phone: str, display_name: str | None = None, created_by_user_id: str | None = None) -> dict:
        cid = _new_id()
        now = _now_iso()
        await self._execute(
            "INSERT INTO conversations (id, phone, display_name, metadata, archived, created_by_user_id, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, 0, ?, ?, ?)",
            (cid, phone, display_name, _json_or_none({}), created_by_user_id, now, now),
        )
        return await self.get_conversation(cid)  # type: ignore[return-value]

    async def upsert_conversation_by_phone(self, phone: str, display_name: str | None = None) -> dict:
        """Return the conversation for ``phone``, creating it if needed; fills a missing display name."""
        existing = await self.get_conversation_by_phone(phone)
        if not existing:
            return await self.create_conversation(phone, display_name)
        if display_name and not existing.get("displayName"):
            await self._execute(
                "UPDATE conversations SET display_name = ?, updated_at = ? WHERE id = ?",
                (display_name, _now_iso(), existing["id"]),
            )
            existing["displayName"] = display_name
        return existing

    async def update_conversation_last_at(self, conversation_id: str) -> None:
        now = _now_iso()
        await self._execute(
            "UPDATE conversations SET last_at = ?, updated_at = ? WHERE id = ?",
            (now, now, conversation_id),
        )

    async def set_conversation_archived(self, conversation_id: str, archived: bool) -> Optional[dict]:
        await self._execute(
            "UPDATE conversations SET archived = ?, updated_at = ? WHERE id = ?",
            (1 if archived else 0, _now_iso(), conversation_id),
        )
        return await self.get_conversation(conversation_id)

    async def delete_conversation(self, conversation_id: str) -> None:
        await self._execute("DELETE FROM conversations WHERE id = ?", (conversation_id,))

    async def update_conversation_metadata(self, conversation_id: str, **changes: Any) -> Optional[dict]:
        """Merge known metadata fields (``last_message``, ``unread_delta``, ``unread_count``)."""
        async with self._conn() as db:
            cur = await db.execute("SELECT metadata FROM conversations WHERE id = ?", (conversation_id,))
            row = await cur.fetchone()
            if not row:
                return None
            meta = ConversationMetadata.from_raw(row[0])
            if "last_message" in changes:
                meta.last_message = changes["last_message"]
            if "unread_count" in changes:
                meta.unread_count = max(0, int(changes["unread_count"]))
            if "unread_delta" in changes:
                meta.unread_count = max(0, meta.unread_count + int(changes["unread_delta"]))
            await db.execute(
                "UPDATE conversations SET metadata = ? WHERE id = ?",
                (_json_or_none(meta.to_dict()), conversation_id),
            )
            await db.commit()
            return meta.to_dict()

    async def clear_conversation_unread(self, conversation_id: str) -> None:
        await self.update_conversation_metadata(conversation_id, unread_count=0)

    # ── messages ──
    async def get_messages(self, conversation_id: str, page: int = 1, page_size: int = 50) -> dict:
        """Newest-first window on the DB side, returned in chronological order for display."""
        page = max(1, int(page or 1))
        page_size = max(1, min(500, int(page_size or 50)))
        rows = await self._fetchall(
            "SELECT m.*, u.username AS sender_name FROM messages m "
            "LEFT JOIN users u ON u.id = m.sent_by_user_id "
            "WHERE m.conversation_id = ? ORDER BY m.created_at DESC LIMIT ? OFFSET ?",
            (conversation_id, page_size, (page - 1) * page_size),
        )
        total_row = await self._fetchone("SELECT COUNT(*) FROM messages WHERE conversation_id = ?", (conversation_id,))
        return {
            "items": [message_from_row(r) for r in rows][::-1],
            "total": int(total_row[0]) if total_row else 0,
        }

    async def create_message(
        self,
        conversation_id: str,
        direction: str,
        body: str | None = None,
        *,
        media: dict | None = None,
        provider_message_id: str | None = None,
        status: str = "received",
        raw: Any = None,
        reply_to_message_id: str | None = None,
        sent_by_user_id: str | None = None,
    ) -> dict:
        mid = _new_id()
        await self._execute(
            "INSERT INTO messages (id, conversation_id, direction, body, media, provider_message_id, status, raw, "
            "reply_to_message_id, sent_by_user_id, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                mid,
                conversation_id,
                direction,
                body,
                _json_or_none(media),
                provider_message_id,
                status,
                _json_or_none(raw),
                reply_to_message_id,
                sent_by_user_id,
                _now_iso(),
            ),
        )
        return await self.get_message(mid)  # type: ignore[return-value]

    async def get_message(self, message_id: str) -> Optional[dict]:
        row = await self._fetchone(
            "SELECT m.*, u.username AS sender_name FROM messages m "
            "LEFT JOIN users u ON u.id = m.sent_by_user_id WHERE m.id = ?",
            (message_id,),
        )
        return message_from_row(row) if row else None

    async def get_message_by_provider_id(self, provider_message_id: str) -> Optional[dict]:
        row = await self._fetchone("SELECT * FROM messages WHERE provider_message_id = ?", (provider_message_id,))
        return message_from_row(row) if row else None

    async def update_message_status(self, provider_message_id: str, status: str) -> Optional[dict]:
        msg = await self.get_message_by_provider_id(provider_message_id)
        if not msg:
            return None
        await self._execute("UPDATE messages SET status = ? WHERE id = ?", (status, msg["id"]))
        msg["status"] = status
        return msg

    async def update_message_media(self, message_id: str, media: dict | None) -> Optional[dict]:
        await self._execute("UPDATE messages SET media = ? WHERE id = ?", (_json_or_none(media), message_id))
        return await self.get_message(message_id)

    async def delete_message(self, message_id: str) -> Optional[dict]:
        """Hard delete. Returns ``{id, conversationId}`` of the removed row or ``None``."""
        row = await self._fetchone("SELECT id, conversation_id FROM messages WHERE id = ?", (message_id,))
        if not row:
            return None
        await self._execute("DELETE FROM messages WHERE id = ?", (message_id,))
        return {"id": row["id"], "conversationId": row["conversation_id"]}

    # ── pins ──
    async def get_pinned_conversations(self, user_id: str) -> List[dict]:
        rows = await self._fetchall(
            "SELECT conversation_id, pinned_at FROM conversation_pins WHERE user_id = ? ORDER BY pinned_at DESC",
            (user_id,),
        )
        return [{"conversationId": r["conversation_id"], "pinnedAt": r["pinned_at"]} for r in rows]

    async def pin_conversation(self, user_id: str, conversation_id: str) -> None:
        await self._execute(
            "INSERT INTO conversation_pins (user_id, conversation_id, pinned_at) VALUES (?, ?, ?) "
            "ON CONFLICT(user_id, conversation_id) DO NOTHING",
            (user_id, conversation_id, _now_iso()),
        )

    async def unpin_conversation(self, user_id: str, conversation_id: str) -> None:
        await self._execute(
            "DELETE FROM conversation_pins WHERE user_id = ? AND conversation_id = ?",
            (user_id, conversation_id),
        )

    async def is_conversation_pinned(self, user_id: str, conversation_id: str) -> bool:
        row = await self._fetchone(
            "SELECT 1 FROM conversation_pins WHERE user_id = ? AND conversation_id = ?",
            (user_id, conversation_id),
        )
        return row is not None

    async def count_pinned_conversations(self, user_id: str) -> int:
        row = await self._fetchone("SELECT COUNT(*) FROM conversation_pins WHERE user_id = ?", (user_id,))
        return int(row[0]) if row else 0

    # ── webhook diagnostics ──
    async def log_webhook_event(self, *, headers: dict, query: dict, body: Any, response: Any = None) -> str:
        eid = _new_id()
        await self._execute(
            "INSERT INTO webhook_events (id, headers, query, body, response, created_at) VALUES (?, ?, ?, ?, ?, ?)",
            (eid, _json_or_none(headers), _json_or_none(query), _json_or_none(body), _json_or_none(response), _now_iso()),
        )
        return eid

    async def get_webhook_events(self, limit: int = 200) -> List[dict]:
        rows = await self._fetchall(
            "SELECT * FROM webhook_events ORDER BY created_at DESC LIMIT ?",
            (max(1, min(1000, int(limit or 200))),),
        )
        return [
            {
                "id": r["id"],
                "headers": _parse_json(r["headers"]) or {},
                "query": _parse_json(r["query"]) or {},
                "body": _parse_json(r["body"]),
                "response": _parse_json(r["response"]),
                "createdAt": r["created_at"],
            }
            for r in rows
        ]

    async def delete_webhook_event(self, event_id: str) -> None:
        await self._execute("DELETE FROM webhook_events WHERE id = ?", (event_id,))

    async def delete_webhook_events(self) -> None:
        await self._execute("DELETE FROM webhook_events")

    # ── app settings ──
    async def get_setting(self, key: str) -> Any:
        """JSON value stored under ``key``, or None."""
        row = await self._fetchone("SELECT value FROM app_settings WHERE key = ?", (key,))
        return _parse_json(row["value"]) if row else None

    async def set_setting(self, key: str, value: Any) -> None:
        await self._execute(
            "INSERT INTO app_settings (key, value, updated_at) VALUES (?, ?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at",
            (key, json.dumps(value, ensure_ascii=False), _now_iso()),
        )

    # ── activity ──
    async def record_user_activity(self, user_id: str, now: datetime | None = None) -> None:
        now = now or datetime.now(timezone.utc)
        day = now.date().isoformat()
        async with self._conn() as db:
            cur = await db.execute(
                "SELECT active_seconds, last_seen_at FROM user_activity WHERE user_id = ? AND day = ?",
                (user_id, day),
            )
            row = await cur.fetchone()
            if not row:
                await db.execute(
                    "INSERT INTO user_activity (user_id, day, active_seconds, last_seen_at) VALUES (?, ?, 0, ?)",
                    (user_id, day, now.isoformat()),
                )
                await db.commit()
                return
            increment = 0
            try:
                last_seen = datetime.fromisoformat(row["last_seen_at"]) if row["last_seen_at"] else None
            except ValueError:
                last_seen = None
            if last_seen is not None:
                delta = (now - last_seen).total_seconds()
                if 0 < delta <= config.ACTIVITY_MAX_IDLE_SECONDS:
                    increment = int(delta)
            await db.execute(
                "UPDATE user_activity SET active_seconds = ?, last_seen_at = ? WHERE user_id = ? AND day = ?",
                (int(row["active_seconds"] or 0) + increment, now.isoformat(), user_id, day),
            )
            await db.commit()

    # ── ready messages ──
    async def get_ready_messages(self, active_only: bool = True) -> List[dict]:
        query = "SELECT * FROM ready_messages"
        if active_only:
            query += " WHERE is_active = 1"
        rows = await self._fetchall(query + " ORDER BY name")
        return [
            {
                "id": r["id"],
                "name": r["name"],
                "body": r["body"],
                "isActive": bool(r["is_active"]),
                "createdByUserId": r["created_by_user_id"],
                "createdAt": r["created_at"],
                "updatedAt": r["updated_at"],
            }
            for r in rows
        ]

    async def create_ready_message(self, name: str, body: str, is_active: bool = True, created_by_user_id: str | None = None) -> dict:
        rid = _new_id()
        now = _now_iso()
        await self._execute(
            "INSERT INTO ready_messages (id, name, body, is_active, created_by_user_id, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (rid, name, body, 1 if is_active else 0, created_by_user_id, now, now),
        )
        return next(m for m in await self.get_ready_messages(active_only=False) if m["id"] == rid)

    async def update_ready_message(self, ready_id: str, *, name: str | None = None, body: str | None = None, is_active: bool | None = None) -> Optional[dict]:
        sets: List[str] = ["updated_at = ?"]
        params: List[Any] = [_now_iso()]
        if name is not None:
            sets.append("name = ?")
            params.append(name)
        if body is not None:
            sets.append("body = ?")
            params.append(body)
        if is_active is not None:
            sets.append("is_active = ?")
            params.append(1 if is_active else 0)
        changed = await self._execute(f"UPDATE ready_messages SET {', '.join(sets)} WHERE id = ?", (*params, ready_id))
        if not changed:
            return None
        return next((m for m in await self.get_ready_messages(active_only=False) if m["id"] == ready_id), None)

    async def delete_ready_message(self, ready_id: str) -> None:
        await self._execute("DELETE FROM ready_messages WHERE id = ?", (ready_id,))

    # ── statistics ──
    async def get_statistics(self) -> dict:
        async with self._conn() as db:
            async def scalar(query: str, params: tuple = ()) -> int:
                cur = await db.execute(query, params)
                row = await cur.fetchone()
                return int(row[0] or 0) if row else 0

            total_conversations = await scalar("SELECT COUNT(*) FROM conversations")
            total_messages = await scalar("SELECT COUNT(*) FROM messages")
            incoming = await scalar("SELECT COUNT(*) FROM messages WHERE direction = 'inbound'")
            outgoing = await scalar("SELECT COUNT(*) FROM messages WHERE direction = 'outbound'")

            cur = await db.execute(
                "SELECT c.phone, c.display_name, COUNT(m.id) AS message_count FROM conversations c "
                "LEFT JOIN messages m ON m.conversation_id = c.id "
                "GROUP BY c.id ORDER BY message_count DESC LIMIT 5"
            )
            top = [
                {"phone": r["phone"], "displayName": r["display_name"], "messageCount": int(r["message_count"])}
                for r in await cur.fetchall()
            ]

            since = (datetime.now(timezone.utc) - timedelta(days=7)).isoformat()
            cur = await db.execute(
                "SELECT substr(created_at, 1, 10) AS day, "
                "SUM(CASE WHEN direction = 'inbound' THEN 1 ELSE 0 END) AS incoming, "
                "SUM(CASE WHEN direction = 'outbound' THEN 1 ELSE 0 END) AS outgoing "
                "FROM messages WHERE created_at >= ? GROUP BY day ORDER BY day",
                (since,),
            )
            by_day = [
                {"date": r["day"], "incoming": int(r["incoming"] or 0), "outgoing": int(r["outgoing"] or 0)}
                for r in await cur.fetchall()
            ]

            cur = await db.execute(
                "SELECT m.id, m.direction, m.body, m.created_at, c.phone, c.display_name FROM messages m "
                "LEFT JOIN conversations c ON c.id = m.conversation_id ORDER BY m.created_at DESC LIMIT 10"
            )
            recent = [
                {
                    "id": r["id"],
                    "direction": r["direction"],
                    "body": r["body"],
                    "createdAt": r["created_at"],
                    "phone": r["phone"],
                    "displayName": r["display_name"],
                }
                for r in await cur.fetchall()
            ]

            week_start = (datetime.now(timezone.utc).date() - timedelta(days=6)).isoformat()
            cur = await db.execute(
                "SELECT u.id, u.username, u.role, "
                "(SELECT COUNT(*) FROM messages m WHERE m.sent_by_user_id = u.id) AS total_messages, "
                "(SELECT COUNT(*) FROM messages m WHERE m.sent_by_user_id = u.id AND m.media IS NOT NULL) AS media_messages, "
                "(SELECT COUNT(*) FROM messages m WHERE m.sent_by_user_id = u.id AND m.reply_to_message_id IS NOT NULL) AS replies_sent, "
                "(SELECT COUNT(DISTINCT m.conversation_id) FROM messages m WHERE m.sent_by_user_id = u.id) AS conversations_touched, "
                "(SELECT MAX(m.created_at) FROM messages m WHERE m.sent_by_user_id = u.id) AS last_sent_at, "
                "(SELECT COALESCE(SUM(a.active_seconds), 0) FROM user_activity a WHERE a.user_id = u.id AND a.day >= ?) AS active_seconds "
                "FROM users u ORDER BY u.username",
                (week_start,),
            )
            users = [
                {
                    "id": r["id"],
                    "username": r["username"],
                    "role": r["role"],
                    "totalMessages": int(r["total_messages"] or 0),
                    "mediaMessages": int(r["media_messages"] or 0),
                    "repliesSent": int(r["replies_sent"] or 0),
                    "conversationsTouched": int(r["conversations_touched"] or 0),
                    "lastSentAt": r["last_sent_at"],
                    "activeSecondsLast7Days": int(r["active_seconds"] or 0),
                }
                for r in await cur.fetchall()
            ]

        return {
            "totalConversations": total_conversations,
            "totalMessages": total_messages,
            "incomingMessages": incoming,
            "outgoingMessages": outgoing,
            "topConversations": top,
            "messagesByDay": by_day,
            "recentActivity": recent,
            "users": users,
        }
