import asyncio
import hashlib
import hmac
import json
import time

import pytest

from chatsphere import main


def _payload(*, messages=None, statuses=None, calls=None, contacts=None):
    value = {"messaging_product": "whatsapp"}
    if contacts is not None:
        value["contacts"] = contacts
    if messages is not None:
        value["messages"] = messages
    if statuses is not None:
        value["statuses"] = statuses
    if calls is not None:
        value["calls"] = calls
    return {"object": "whatsapp_business_account", "entry": [{"changes": [{"field": "messages", "value": value}]}]}


def _text(provider_id, phone="212600000009", body="Salam", **extra):
    return {"from": phone, "id": provider_id, "type": "text", "text": {"body": body}, **extra}


def _process(payload):
    asyncio.run(main.message_processor.process_incoming_message(payload))


class FakeMessenger:
    configured = True

    async def download_media(self, media_id):
        return b"jpeg-bytes", "image/jpeg"


def test_inbound_text_creates_conversation_and_message(db_manager, broadcasts):
    _process(_payload(
        contacts=[{"wa_id": "212600000009", "profile": {"name": "Yassine"}}],
        messages=[_text("wamid.1")],
    ))

    convs = asyncio.run(db_manager.get_conversations())
    assert convs["total"] == 1
    conv = convs["items"][0]
    assert conv["displayName"] == "Yassine"
    assert conv["metadata"]["unreadCount"] == 1
    assert conv["metadata"]["lastMessage"] == "Salam"
    assert conv["lastAt"]

    [(event, data)] = broadcasts
    assert event == "message_incoming"
    assert data["conversationId"] == conv["id"]
    assert data["direction"] == "inbound"
    assert data["body"] == "Salam"
    assert data["providerMessageId"] == "wamid.1"


def test_duplicate_deliveries_are_ignored(db_manager, broadcasts):
    _process(_payload(messages=[_text("wamid.1")]))
    _process(_payload(messages=[_text("wamid.1")]))
    conv = asyncio.run(db_manager.get_conversations())["items"][0]
    assert asyncio.run(db_manager.get_messages(conv["id"]))["total"] == 1
    assert conv["metadata"]["unreadCount"] == 1
    assert len(broadcasts) == 1


def test_context_reply_links_to_stored_message(db_manager, broadcasts):
    _process(_payload(messages=[_text("wamid.1")]))
    _process(_payload(messages=[_text("wamid.2", body="re", context={"id": "wamid.1"})]))
    first, second = (data for _, data in broadcasts)
    assert second["replyToMessageId"] == first["id"]


def test_status_updates_are_pushed(db_manager, broadcasts):
    _process(_payload(messages=[_text("wamid.1")]))
    message = broadcasts[0][1]
    broadcasts.clear()

    _process(_payload(statuses=[{"id": "wamid.1", "status": "read"}, {"id": "unknown", "status": "read"}]))
    assert broadcasts == [("message_status", {"id": message["id"], "conversationId": message["conversationId"], "status": "read"})]
    assert asyncio.run(db_manager.get_message(message["id"]))["status"] == "read"


def test_call_events(db_manager, broadcasts):
    conv = asyncio.run(db_manager.create_conversation("212600000009", "Yassine"))
    _process(_payload(calls=[
        {"id": "wacid.1", "from": "212600000009", "event": "connect"},
        {"id": "wacid.2", "from": "212699999999", "event": "connect"},
        {"id": "wacid.1", "event": "terminate"},
        {"id": "wacid.3", "event": "ringing"},
    ]))
    assert broadcasts == [
        ("call_incoming", {"callId": "wacid.1", "phone": "212600000009", "displayName": "Yassine", "conversationId": conv["id"]}),
        ("call_incoming", {"callId": "wacid.2", "phone": "212699999999"}),
        ("call_ended", {"callId": "wacid.1"}),
    ]


def test_inbound_media_is_downloaded(db_manager, broadcasts, monkeypatch):
    monkeypatch.setattr(main.message_processor, "messenger", FakeMessenger())

    async def scenario():
        await main.message_processor.process_incoming_message(_payload(messages=[{
            "from": "212600000009",
            "id": "wamid.img",
            "type": "image",
            "image": {"id": "media-1", "mime_type": "image/jpeg", "caption": "look"},
        }]))
        await asyncio.gather(*list(main.message_processor._media_tasks))

    asyncio.run(scenario())
    (first_event, incoming), (second_event, updated) = broadcasts
    assert first_event == "message_incoming"
    assert incoming["media"]["status"] == "pending"
    assert incoming["body"] == "look"
    assert second_event == "message_media_updated"
    assert updated["media"]["status"] == "ready"
    assert updated["media"]["url"].startswith("/media/inbound/")


def test_inbound_media_stays_pending_without_credentials(db_manager, broadcasts):
    async def scenario():
        await main.message_processor.process_incoming_message(_payload(messages=[{
            "from": "212600000009",
            "id": "wamid.voice",
            "type": "voice",
            "voice": {"id": "media-2", "mime_type": "audio/ogg"},
        }]))
        await asyncio.gather(*list(main.message_processor._media_tasks))

    asyncio.run(scenario())
    assert [e for e, _ in broadcasts] == ["message_incoming"]
    assert broadcasts[0][1]["media"]["type"] == "audio"
    assert broadcasts[0][1]["media"]["status"] == "pending"


def test_verification_handshake(client):
    ok = client.get("/webhook", params={"hub.mode": "subscribe", "hub.verify_token": "verify-me", "hub.challenge": "42"})
    assert ok.status_code == 200
    assert ok.text == "42"

    bad = client.get("/webhook", params={"hub.mode": "subscribe", "hub.verify_token": "nope", "hub.challenge": "42"})
    assert bad.status_code == 403


def test_post_is_acked_then_processed(client, broadcasts):
    res = client.post("/webhook", json=_payload(messages=[_text("wamid.queued")]))
    assert res.status_code == 200
    assert res.json() == {"ok": True}

    deadline = time.monotonic() + 5
    while time.monotonic() < deadline:
        if client.get("/api/conversations").json()["total"]:
            break
        time.sleep(0.05)
    assert client.get("/api/conversations").json()["total"] == 1

    events = client.get("/api/webhooks/events").json()["events"]
    assert len(events) == 1
    assert events[0]["body"]["object"] == "whatsapp_business_account"
    assert client.delete("/api/webhooks/events").json() == {"ok": True}
    assert client.get("/api/webhooks/events").json()["events"] == []


def test_post_rejects_malformed_bodies(client):
    assert client.post("/webhook", content=b"{nope", headers={"Content-Type": "application/json"}).status_code == 400
    assert client.post("/webhook", json=[1, 2]).status_code == 400


@pytest.fixture
def signed(monkeypatch):
    monkeypatch.setattr(main.webhook_runtime, "meta_app_secret", "app-secret")
    return "app-secret"


def test_signature_is_enforced_when_secret_set(client, signed):
    body = json.dumps(_payload(statuses=[])).encode()
    assert client.post("/webhook", content=body).status_code == 401

    digest = hmac.new(signed.encode(), body, hashlib.sha256).hexdigest()
    res = client.post("/webhook", content=body, headers={"X-Hub-Signature-256": f"sha256={digest}"})
    assert res.status_code == 200
