from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import logging
import time
import uuid

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from ..app_settings import get_api_controls, normalize_webhook_path
from .runtime import WebhookRuntime

log = logging.getLogger(__name__)

_LOGGED_HEADERS = ("content-type", "user-agent", "x-hub-signature-256")


def signature_ok(secret: str, body: bytes, header: str) -> bool:
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    presented = header.split("=", 1)[1] if "=" in header else header
    return bool(presented) and hmac.compare_digest(presented, expected)


def create_webhook_router(rt: WebhookRuntime) -> APIRouter:
    router = APIRouter()

    async def verify(request: Request):
        params = dict(request.query_params)
        mode = params.get("hub.mode")
        token = params.get("hub.verify_token")
        challenge = params.get("hub.challenge")

        rt.vlog(f"Webhook verification: mode={mode}, challenge={challenge}")
        if mode == "subscribe" and token and rt.verify_token and token == rt.verify_token and challenge:
            rt.vlog("Webhook verified successfully")
            return PlainTextResponse(challenge)
        rt.vlog("Webhook verification failed")
        return PlainTextResponse("Verification failed", status_code=403)

    async def receive(request: Request):
        """WhatsApp webhook endpoint (ingress). ACKs fast and hands the payload to workers."""
        body_bytes = await request.body()
        if rt.meta_app_secret:
            if not signature_ok(rt.meta_app_secret, body_bytes, request.headers.get("X-Hub-Signature-256", "")):
                rt.vlog("Invalid webhook signature")
                return PlainTextResponse("Invalid signature", status_code=401)
        try:
            data = json.loads(body_bytes.decode("utf-8") or "{}")
        except ValueError:
            return PlainTextResponse("Bad Request", status_code=400)
        if not isinstance(data, dict):
            return PlainTextResponse("Bad Request", status_code=400)

        try:
            await rt.db_manager.log_webhook_event(
                headers={k: v for k, v in request.headers.items() if k.lower() in _LOGGED_HEADERS},
                query=dict(request.query_params),
                body=data,
                response={"ok": True},
            )
        except Exception as exc:
            # Diagnostics only; never block delivery on the event log.
            log.warning("Failed to record webhook event: %s", exc)

        try:
            rt.webhook_queue.put_nowait(data)
        except asyncio.QueueFull:
            log.error("Webhook queue full (maxsize=%s)", rt.webhook_queue.maxsize)
            return PlainTextResponse("Webhook queue full", status_code=503)
        return {"ok": True}

    router.add_api_route("/webhook", verify, methods=["GET"])
    router.add_api_route("/webhook", receive, methods=["POST"])

    @router.post("/webhook/test")
    async def test_webhook(request: Request):
        """Inject a plain inbound text message, processed inline (local testing)."""
        controls = await get_api_controls(rt.db_manager)
        if not controls.get("testWebhookEnabled"):
            return JSONResponse({"error": "Test webhooks are disabled"}, status_code=403)
        try:
            payload = await request.json()
        except ValueError:
            payload = None
        if not isinstance(payload, dict) or not str(payload.get("from") or "").strip():
            return JSONResponse({"error": "'from' (phone) is required"}, status_code=400)

        phone = str(payload["from"]).strip()
        value = {
            "messages": [{
                "from": phone,
                "id": f"test-{uuid.uuid4().hex}",
                "timestamp": str(int(time.time())),
                "type": "text",
                "text": {"body": str(payload.get("body") or "")},
            }],
        }
        if isinstance(payload.get("displayName"), str):
            value["contacts"] = [{"wa_id": phone, "profile": {"name": payload["displayName"]}}]
        await rt.message_processor.process_incoming_message({"entry": [{"changes": [{"value": value}]}]})
        return {"ok": True}

    # The admin-configured public path serves the same handlers as /webhook.
    @router.api_route("/webhook/{subpath:path}", methods=["GET", "POST"])
    async def configured_webhook(subpath: str, request: Request):
        if normalize_webhook_path("/webhook/" + subpath) != rt.public_path:
            return JSONResponse({"error": "Not Found"}, status_code=404)
        if request.method == "GET":
            return await verify(request)
        return await receive(request)

    return router
