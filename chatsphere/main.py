import asyncio
import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import aiofiles
import aiofiles.os
from fastapi import Body, Depends, FastAPI, File, HTTPException, Request, UploadFile, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from prometheus_fastapi_instrumentator import Instrumentator
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.requests import Request as StarletteRequest
from starlette.responses import Response as StarletteResponse

from . import app_settings, config
from .app_settings import TemplateCatalog, TemplateError
from .auth import (
    ANONYMOUS_ADMIN,
    get_current_user,
    hash_password,
    issue_access_token,
    parse_access_token,
    require_admin,
    token_from_headers,
    verify_password,
    websocket_user,
)
from .db import DatabaseManager
from .hub import ConnectionManager, RedisManager, vlog
from .messenger import WhatsAppMessenger
from .observability.context import request_scope
from .observability.logging import configure_logging
from .processor import MessageProcessor, SendError
from .webhook import WebhookRuntime, create_webhook_router, start_webhook_workers, stop_webhook_workers

configure_logging(config.LOG_LEVEL, verbose=config.LOG_VERBOSE)

log = logging.getLogger(__name__)

# Global instances
connection_manager = ConnectionManager()
redis_manager = RedisManager()
connection_manager.redis_manager = redis_manager
db_manager = DatabaseManager(config.DB_PATH)
messenger = WhatsAppMessenger()
message_processor = MessageProcessor(connection_manager, db_manager, messenger)

webhook_runtime = WebhookRuntime(
    db_manager=db_manager,
    message_processor=message_processor,
    webhook_queue=asyncio.Queue(maxsize=max(1, config.WEBHOOK_QUEUE_MAXSIZE)),
    vlog=vlog,
    verify_token=config.VERIFY_TOKEN,
    meta_app_secret=config.META_APP_SECRET,
    workers=config.WEBHOOK_WORKERS,
    processing_timeout_seconds=config.WEBHOOK_PROCESSING_TIMEOUT_SECONDS,
)

_background_tasks: list[asyncio.Task] = []

# FastAPI app
app = FastAPI(title="chatsphere")
app.include_router(create_webhook_router(webhook_runtime))


# ── Error shape: every HTTP error is {"error": message} ───────────
@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)}, headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    where = ".".join(str(p) for p in (first.get("loc") or ())[1:])
    message = f"{where}: {first.get('msg')}" if where else str(first.get("msg") or "Invalid request")
    return JSONResponse(status_code=422, content={"error": message})


# ── Request context: request_id + operator (for tracing) ──────────
@app.middleware("http")
async def request_context_middleware(request: StarletteRequest, call_next):
    if config.DISABLE_AUTH:
        operator = ANONYMOUS_ADMIN["username"]
    else:
        user = parse_access_token(token_from_headers(request.headers, request.cookies, request.query_params) or "")
        operator = (user or {}).get("username")
    with request_scope(request.headers.get("x-request-id"), operator) as rid:
        try:
            resp: StarletteResponse = await call_next(request)
        except Exception:
            log.exception("Unhandled error while serving %s %s", request.method, request.url.path)
            return JSONResponse(status_code=500, content={"error": "Internal server error"}, headers={"X-Request-Id": rid})
        resp.headers["X-Request-Id"] = rid
        return resp


# Expose Prometheus metrics
Instrumentator().instrument(app).expose(app, endpoint="/metrics")

# Mount the media directory to serve uploaded and downloaded files
config.MEDIA_DIR.mkdir(parents=True, exist_ok=True)
app.mount("/media", StaticFiles(directory=str(config.MEDIA_DIR)), name="media")


@app.on_event("startup")
async def startup():
    # The queue binds to the running loop on first use, so build it per startup.
    webhook_runtime.webhook_queue = asyncio.Queue(maxsize=max(1, config.WEBHOOK_QUEUE_MAXSIZE))
    await db_manager.init_db()
    await _seed_admin()
    webhook_runtime.public_path = (await app_settings.get_webhook_settings(db_manager))["path"]
    await redis_manager.connect()
    if redis_manager.redis_client is not None and config.ENABLE_WS_PUBSUB:
        _background_tasks.append(asyncio.create_task(redis_manager.subscribe_ws_events(connection_manager)))
    await start_webhook_workers(webhook_runtime)
    if not messenger.configured:
        log.warning("WhatsApp credentials missing; outbound messages will be stored as pending")


@app.on_event("shutdown")
async def shutdown():
    await stop_webhook_workers(webhook_runtime)
    for task in _background_tasks:
        task.cancel()
    await asyncio.gather(*_background_tasks, return_exceptions=True)
    _background_tasks.clear()
    await redis_manager.close()


async def _seed_admin() -> None:
    username = config.ADMIN_USERNAME
    if not username or not config.ADMIN_PASSWORD:
        return
    if await db_manager.get_user_auth_record(username):
        return
    await db_manager.create_user(username, hash_password(config.ADMIN_PASSWORD), "admin")
    log.info("Seeded admin user %s", username)


# ── Health ─────────────────────────────────────────────────────────
@app.get("/health")
async def health_check():
    """Health check endpoint"""
    db_ok = False
    try:
        db_ok = await asyncio.wait_for(db_manager.ping(), timeout=config.HEALTH_DB_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        db_ok = False
    return {
        "status": "healthy" if db_ok else "degraded",
        "redis": "connected" if redis_manager.redis_client else "disconnected",
        "db": {"ok": bool(db_ok)},
        "websockets": connection_manager.connection_count(),
        "whatsapp": {"configured": messenger.configured},
        "webhook": {
            "backend": webhook_runtime.backend_name(),
            "queue_size": webhook_runtime.webhook_queue.qsize(),
            "queue_maxsize": webhook_runtime.webhook_queue.maxsize,
        },
    }


# ── Push channel ───────────────────────────────────────────────────
@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """Server-to-client event stream: frames are ``{event, data}``."""
    user = websocket_user(websocket)
    if not user:
        log.warning("WS auth failed: missing/invalid token (cookie_name=%s)", config.ACCESS_COOKIE_NAME)
        await websocket.accept()
        await websocket.close(code=4401)
        return

    await connection_manager.connect(websocket, client_info={"operator": user.get("username")})
    try:
        # The console sends nothing after the handshake; drain until it goes away.
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        connection_manager.disconnect(websocket)


# ── Auth ───────────────────────────────────────────────────────────
@app.post("/api/auth/login")
async def login(payload: dict = Body(...)):
    username = str(payload.get("username") or "").strip()
    password = str(payload.get("password") or "")
    if not username or not password:
        raise HTTPException(status_code=400, detail="Username and password are required")
    record = await db_manager.get_user_auth_record(username)
    if not record or not verify_password(password, record["passwordHash"]):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    user = {k: v for k, v in record.items() if k != "passwordHash"}
    token = issue_access_token(user)
    response = JSONResponse({"user": user, "token": token})
    response.set_cookie(
        config.ACCESS_COOKIE_NAME,
        token,
        max_age=int(config.ACCESS_TOKEN_TTL_SECONDS),
        httponly=True,
        samesite="lax",
    )
    return response


@app.get("/api/auth/me")
async def me(user: dict = Depends(get_current_user)):
    return {"user": user}


# ── Conversations ──────────────────────────────────────────────────
def _parse_bool(value, field: str) -> bool:
    if isinstance(value, bool):
        return value
    raise HTTPException(status_code=400, detail=f"{field} must be a boolean")


@app.get("/api/conversations")
async def list_conversations(
    archived: bool = False,
    page: int = 1,
    page_size: int = 20,
    search: Optional[str] = None,
    _: dict = Depends(get_current_user),
):
    return await db_manager.get_conversations(page=page, page_size=page_size, archived=archived, search=search)


@app.post("/api/conversations")
async def create_conversation(payload: dict = Body(...), user: dict = Depends(get_current_user)):
    phone = str(payload.get("phone") or "").strip()
    if not phone:
        raise HTTPException(status_code=400, detail="Phone number is required")
    display_name = str(payload.get("displayName") or "").strip() or None
    existing = await db_manager.get_conversation_by_phone(phone)
    if existing:
        return {"conversation": existing, "created": False}
    conversation = await db_manager.create_conversation(phone, display_name, created_by_user_id=user.get("id"))
    return {"conversation": conversation, "created": True}


@app.get("/api/conversations/pins")
async def list_pins(user: dict = Depends(get_current_user)):
    return {"pins": await db_manager.get_pinned_conversations(user["id"])}


@app.patch("/api/conversations/{conversation_id}/archive")
async def archive_conversation(conversation_id: str, payload: dict = Body(...), _: dict = Depends(get_current_user)):
    archived = _parse_bool(payload.get("archived"), "archived")
    if not await db_manager.get_conversation(conversation_id):
        raise HTTPException(status_code=404, detail="Conversation not found")
    conversation = await db_manager.set_conversation_archived(conversation_id, archived)
    return {"conversation": conversation}


@app.delete("/api/conversations/{conversation_id}")
async def delete_conversation(conversation_id: str, _: dict = Depends(require_admin)):
    if not await db_manager.get_conversation(conversation_id):
        raise HTTPException(status_code=404, detail="Conversation not found")
    await db_manager.delete_conversation(conversation_id)
    return {"ok": True}


@app.get("/api/conversations/{conversation_id}/messages")
async def list_messages(
    conversation_id: str,
    page: int = 1,
    page_size: int = 50,
    _: dict = Depends(get_current_user),
):
    if not await db_manager.get_conversation(conversation_id):
        raise HTTPException(status_code=404, detail="Conversation not found")
    result = await db_manager.get_messages(conversation_id, page=page, page_size=page_size)
    await db_manager.clear_conversation_unread(conversation_id)
    return result


@app.post("/api/conversations/{conversation_id}/pin")
async def pin_conversation(conversation_id: str, payload: dict = Body(...), user: dict = Depends(get_current_user)):
    pinned = _parse_bool(payload.get("pinned"), "pinned")
    if not await db_manager.get_conversation(conversation_id):
        raise HTTPException(status_code=404, detail="Conversation not found")
    if pinned:
        already = await db_manager.is_conversation_pinned(user["id"], conversation_id)
        if not already and await db_manager.count_pinned_conversations(user["id"]) >= config.MAX_PINNED_CONVERSATIONS:
            raise HTTPException(
                status_code=400,
                detail=f"You can only pin up to {config.MAX_PINNED_CONVERSATIONS} chats.",
            )
        await db_manager.pin_conversation(user["id"], conversation_id)
    else:
        await db_manager.unpin_conversation(user["id"], conversation_id)
    return {"pinned": pinned, "pins": await db_manager.get_pinned_conversations(user["id"])}


# ── Messages ───────────────────────────────────────────────────────
@app.post("/api/message/send")
async def send_message(payload: dict = Body(...), user: dict = Depends(get_current_user)):
    try:
        message = await message_processor.process_outgoing_message(
            conversation_id=payload.get("conversationId"),
            to=payload.get("to"),
            body=payload.get("body"),
            media_url=payload.get("media_url") or payload.get("mediaUrl"),
            media_type=payload.get("media_type") or payload.get("mediaType"),
            reply_to_message_id=payload.get("replyToMessageId"),
            sent_by_user_id=user.get("id"),
        )
    except SendError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc))
    return {"ok": message["status"] != "failed", "message": message}


@app.delete("/api/messages/{message_id}")
async def delete_message(message_id: str, _: dict = Depends(require_admin)):
    deleted = await db_manager.delete_message(message_id)
    if not deleted:
        raise HTTPException(status_code=404, detail="Message not found")
    await connection_manager.broadcast("message_deleted", deleted)
    return {"ok": True, **deleted}


# ── Uploads ────────────────────────────────────────────────────────
UPLOAD_CHUNK_SIZE = 1024 * 1024


@app.post("/api/upload")
async def upload_file(request: Request, file: Optional[UploadFile] = File(None), _: dict = Depends(get_current_user)):
    """Stream an operator attachment into MEDIA_DIR and return its URLs."""
    if file is None or not file.filename:
        raise HTTPException(status_code=400, detail="No file uploaded")

    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
    suffix = Path(file.filename).suffix or ".bin"
    relative = f"uploads/{timestamp}_{uuid.uuid4().hex[:8]}{suffix}"
    file_path = config.MEDIA_DIR / relative
    file_path.parent.mkdir(parents=True, exist_ok=True)

    limit = int(config.UPLOAD_MAX_BYTES)
    written = 0
    try:
        async with aiofiles.open(file_path, "wb") as f:
            while True:
                chunk = await file.read(UPLOAD_CHUNK_SIZE)
                if not chunk:
                    break
                written += len(chunk)
                if written > limit:
                    raise HTTPException(status_code=413, detail="File too large")
                await f.write(chunk)
    except Exception:
        await aiofiles.os.remove(file_path)
        raise
    if not written:
        await aiofiles.os.remove(file_path)
        raise HTTPException(status_code=400, detail="No file uploaded")

    url = f"/media/{relative}"
    return {
        "url": url,
        "publicUrl": str(request.base_url).rstrip("/") + url,
        "relativePath": relative,
    }


# ── Ready messages ─────────────────────────────────────────────────
@app.get("/api/ready-messages")
async def list_ready_messages(_: dict = Depends(get_current_user)):
    return {"items": await db_manager.get_ready_messages(active_only=True)}


@app.get("/api/admin/ready-messages")
async def admin_list_ready_messages(_: dict = Depends(require_admin)):
    return {"items": await db_manager.get_ready_messages(active_only=False)}


@app.post("/api/admin/ready-messages")
async def admin_create_ready_message(payload: dict = Body(...), user: dict = Depends(require_admin)):
    name = str(payload.get("name") or "").strip()
    body = str(payload.get("body") or "").strip()
    if not name or not body:
        raise HTTPException(status_code=400, detail="Name and body are required")
    item = await db_manager.create_ready_message(
        name,
        body,
        is_active=bool(payload.get("isActive", True)),
        created_by_user_id=user.get("id"),
    )
    return {"item": item}


@app.patch("/api/admin/ready-messages/{ready_id}")
async def admin_update_ready_message(ready_id: str, payload: dict = Body(...), _: dict = Depends(require_admin)):
    item = await db_manager.update_ready_message(
        ready_id,
        name=payload.get("name"),
        body=payload.get("body"),
        is_active=payload.get("isActive"),
    )
    if not item:
        raise HTTPException(status_code=404, detail="Ready message not found")
    return {"item": item}


@app.delete("/api/admin/ready-messages/{ready_id}")
async def admin_delete_ready_message(ready_id: str, _: dict = Depends(require_admin)):
    await db_manager.delete_ready_message(ready_id)
    return {"ok": True}


# ── Users (admin) ──────────────────────────────────────────────────
@app.get("/api/admin/users")
async def admin_list_users(_: dict = Depends(require_admin)):
    return {"users": await db_manager.list_users()}


@app.post("/api/admin/users")
async def admin_create_user(payload: dict = Body(...), _: dict = Depends(require_admin)):
    username = str(payload.get("username") or "").strip()
    password = str(payload.get("password") or "")
    role = str(payload.get("role") or "user")
    if not username or not password:
        raise HTTPException(status_code=400, detail="Username and password are required")
    if role not in ("admin", "user"):
        raise HTTPException(status_code=400, detail="Role must be admin or user")
    if await db_manager.get_user_auth_record(username):
        raise HTTPException(status_code=409, detail="Username already exists")
    return {"user": await db_manager.create_user(username, hash_password(password), role)}


@app.patch("/api/admin/users/{user_id}")
async def admin_update_user(user_id: str, payload: dict = Body(...), _: dict = Depends(require_admin)):
    role = payload.get("role")
    if role is not None and role not in ("admin", "user"):
        raise HTTPException(status_code=400, detail="Role must be admin or user")
    password = payload.get("password")
    user = await db_manager.update_user(
        user_id,
        username=(str(payload["username"]).strip() or None) if payload.get("username") else None,
        role=role,
        password_hash=hash_password(str(password)) if password else None,
    )
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return {"user": user}


@app.delete("/api/admin/users/{user_id}")
async def admin_delete_user(user_id: str, current: dict = Depends(require_admin)):
    if user_id == current.get("id"):
        raise HTTPException(status_code=400, detail="You cannot delete your own account")
    await db_manager.delete_user(user_id)
    return {"ok": True}


# ── Admin settings ─────────────────────────────────────────────────
@app.get("/api/admin/webhook-config")
async def get_webhook_config(_: dict = Depends(require_admin)):
    return {"config": await app_settings.get_webhook_settings(db_manager)}


@app.put("/api/admin/webhook-config")
async def update_webhook_config(payload: dict = Body(...), _: dict = Depends(require_admin)):
    path = payload.get("path")
    if not isinstance(path, str) or not path.strip():
        raise HTTPException(status_code=400, detail="Path is required.")
    settings = await app_settings.set_webhook_path(db_manager, path)
    webhook_runtime.public_path = settings["path"]
    log.info("Webhook path set to %s", settings["path"])
    return {"config": settings}


@app.get("/api/admin/api-controls")
async def get_api_controls(_: dict = Depends(require_admin)):
    return await app_settings.get_api_controls(db_manager)


@app.post("/api/admin/api-controls")
async def update_api_controls(payload: dict = Body(...), _: dict = Depends(require_admin)):
    return await app_settings.update_api_controls(db_manager, payload)


# ── Message templates ──────────────────────────────────────────────
@app.get("/api/templates")
async def list_templates(_: dict = Depends(get_current_user)):
    return {"items": await TemplateCatalog(db_manager).available()}


@app.get("/api/admin/templates")
async def admin_list_templates(_: dict = Depends(require_admin)):
    return {"items": await TemplateCatalog(db_manager).items()}


@app.post("/api/admin/templates", status_code=201)
async def admin_create_template(payload: dict = Body(...), _: dict = Depends(require_admin)):
    try:
        item = await TemplateCatalog(db_manager).create(payload)
    except TemplateError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message)
    return {"item": item}


@app.patch("/api/admin/templates/{template_id:path}")
async def admin_update_template(template_id: str, payload: dict = Body(...), _: dict = Depends(require_admin)):
    try:
        item = await TemplateCatalog(db_manager).update(template_id, payload)
    except TemplateError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message)
    return {"item": item}


@app.delete("/api/admin/templates/{template_id:path}")
async def admin_delete_template(template_id: str, _: dict = Depends(require_admin)):
    try:
        await TemplateCatalog(db_manager).delete(template_id)
    except TemplateError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message)
    return {"ok": True}


# ── Webhook diagnostics ────────────────────────────────────────────
@app.get("/api/webhooks/events")
async def list_webhook_events(limit: int = 200, _: dict = Depends(require_admin)):
    return {"events": await db_manager.get_webhook_events(limit=limit)}


@app.delete("/api/webhooks/events/{event_id}")
async def delete_webhook_event(event_id: str, _: dict = Depends(require_admin)):
    await db_manager.delete_webhook_event(event_id)
    return {"ok": True}


@app.delete("/api/webhooks/events")
async def delete_webhook_events(_: dict = Depends(require_admin)):
    await db_manager.delete_webhook_events()
    return {"ok": True}


# ── Activity + statistics ──────────────────────────────────────────
@app.post("/api/activity/ping")
async def activity_ping(user: dict = Depends(get_current_user)):
    await db_manager.record_user_activity(user["id"])
    return {"ok": True}


@app.get("/api/statistics")
async def statistics(_: dict = Depends(get_current_user)):
    return await db_manager.get_statistics()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("chatsphere.main:app", host="0.0.0.0", port=config.PORT)
