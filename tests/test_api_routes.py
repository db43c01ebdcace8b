import asyncio

from chatsphere import config, main


def _create(client, phone="212600000001", name=None):
    res = client.post("/api/conversations", json={"phone": phone, "displayName": name})
    assert res.status_code == 200, res.text
    return res.json()["conversation"]


def test_health(client):
    res = client.get("/health")
    assert res.status_code == 200
    data = res.json()
    assert data["status"] == "healthy"
    assert data["db"] == {"ok": True}
    assert data["redis"] == "disconnected"
    assert data["whatsapp"] == {"configured": False}
    assert data["webhook"]["backend"] == "memory"
    assert res.headers["X-Request-Id"]


def test_request_id_is_echoed(client):
    res = client.get("/health", headers={"X-Request-Id": "req-123"})
    assert res.headers["X-Request-Id"] == "req-123"


def test_me_with_auth_disabled(client):
    assert client.get("/api/auth/me").json() == {"user": {"id": "admin", "username": "admin", "role": "admin"}}


def test_create_conversation_is_idempotent_per_phone(client):
    first = client.post("/api/conversations", json={"phone": " 212600000001 ", "displayName": "Sam"}).json()
    assert first["created"] is True
    assert first["conversation"]["phone"] == "212600000001"
    assert first["conversation"]["displayName"] == "Sam"
    assert first["conversation"]["archived"] is False

    again = client.post("/api/conversations", json={"phone": "212600000001"}).json()
    assert again["created"] is False
    assert again["conversation"]["id"] == first["conversation"]["id"]


def test_create_conversation_requires_phone(client):
    res = client.post("/api/conversations", json={"phone": "  "})
    assert res.status_code == 400
    assert res.json() == {"error": "Phone number is required"}


def test_archive_moves_between_partitions(client):
    conv = _create(client)
    res = client.patch(f"/api/conversations/{conv['id']}/archive", json={"archived": True})
    assert res.status_code == 200
    assert res.json()["conversation"]["archived"] is True

    active = client.get("/api/conversations", params={"archived": "false"}).json()
    archived = client.get("/api/conversations", params={"archived": "true"}).json()
    assert active == {"items": [], "total": 0}
    assert [c["id"] for c in archived["items"]] == [conv["id"]]


def test_archive_validation(client):
    conv = _create(client)
    res = client.patch(f"/api/conversations/{conv['id']}/archive", json={"archived": "yes"})
    assert res.status_code == 400
    assert res.json() == {"error": "archived must be a boolean"}

    res = client.patch("/api/conversations/missing/archive", json={"archived": True})
    assert res.status_code == 404
    assert res.json() == {"error": "Conversation not found"}


def test_conversation_search(client):
    _create(client, "212600000001", "Alice")
    _create(client, "212600000002", "Bob")
    found = client.get("/api/conversations", params={"search": "bob"}).json()
    assert [c["displayName"] for c in found["items"]] == ["Bob"]


def test_pin_cap(client):
    ids = [_create(client, f"2126000000{i:02d}")["id"] for i in range(config.MAX_PINNED_CONVERSATIONS + 1)]
    for cid in ids[:-1]:
        res = client.post(f"/api/conversations/{cid}/pin", json={"pinned": True})
        assert res.status_code == 200
        assert res.json()["pinned"] is True

    res = client.post(f"/api/conversations/{ids[-1]}/pin", json={"pinned": True})
    assert res.status_code == 400
    assert res.json() == {"error": "You can only pin up to 10 chats."}

    # re-pinning an already pinned chat is not a new pin
    assert client.post(f"/api/conversations/{ids[0]}/pin", json={"pinned": True}).status_code == 200

    res = client.post(f"/api/conversations/{ids[0]}/pin", json={"pinned": False})
    assert res.status_code == 200
    assert ids[0] not in [p["conversationId"] for p in res.json()["pins"]]
    assert len(client.get("/api/conversations/pins").json()["pins"]) == config.MAX_PINNED_CONVERSATIONS - 1


def test_send_without_provider_is_stored_pending(client, broadcasts):
    conv = _create(client)
    res = client.post("/api/message/send", json={"conversationId": conv["id"], "body": "Hello there"})
    assert res.status_code == 200
    data = res.json()
    assert data["ok"] is True
    message = data["message"]
    assert message["status"] == "pending"
    assert message["direction"] == "outbound"
    assert message["sentByUserId"] == "admin"
    assert broadcasts == [("message_outgoing", message)]

    listed = client.get("/api/conversations").json()["items"][0]
    assert listed["metadata"]["lastMessage"] == "Hello there"


def test_send_by_phone_creates_conversation(client, broadcasts):
    res = client.post("/api/message/send", json={"to": "212611111111", "body": "hi"})
    assert res.status_code == 200
    conv = client.get("/api/conversations").json()["items"][0]
    assert conv["phone"] == "212611111111"
    assert res.json()["message"]["conversationId"] == conv["id"]


def test_send_validation(client, broadcasts):
    conv = _create(client)
    cases = [
        ({"conversationId": "missing", "body": "x"}, 404, "Conversation not found."),
        ({"body": "x"}, 400, "conversationId or to is required."),
        ({"conversationId": conv["id"], "body": "  "}, 400, "Message body or media is required."),
        ({"conversationId": conv["id"], "body": "x", "replyToMessageId": "nope"}, 400, "Reply target not found in this conversation."),
    ]
    for payload, status, error in cases:
        res = client.post("/api/message/send", json=payload)
        assert res.status_code == status
        assert res.json() == {"error": error}
    assert broadcasts == []


def test_reply_and_media_send(client, broadcasts):
    conv = _create(client)
    first = client.post("/api/message/send", json={"conversationId": conv["id"], "body": "one"}).json()["message"]
    reply = client.post(
        "/api/message/send",
        json={"conversationId": conv["id"], "body": "two", "replyToMessageId": first["id"]},
    ).json()["message"]
    assert reply["replyToMessageId"] == first["id"]

    media = client.post(
        "/api/message/send",
        json={"conversationId": conv["id"], "media_url": "/media/uploads/a.png", "media_type": "image"},
    ).json()["message"]
    assert media["media"]["type"] == "image"
    assert media["media"]["url"] == "/media/uploads/a.png"


def test_messages_listing_clears_server_unread(client, db_manager):
    conv = _create(client)
    asyncio.run(db_manager.update_conversation_metadata(conv["id"], unread_delta=3))
    assert client.get("/api/conversations").json()["items"][0]["metadata"]["unreadCount"] == 3

    res = client.get(f"/api/conversations/{conv['id']}/messages")
    assert res.status_code == 200
    assert res.json() == {"items": [], "total": 0}
    assert client.get("/api/conversations").json()["items"][0]["metadata"]["unreadCount"] == 0

    assert client.get("/api/conversations/missing/messages").status_code == 404


def test_delete_message_broadcasts(client, broadcasts):
    conv = _create(client)
    message = client.post("/api/message/send", json={"conversationId": conv["id"], "body": "oops"}).json()["message"]
    broadcasts.clear()

    res = client.delete(f"/api/messages/{message['id']}")
    assert res.status_code == 200
    assert res.json() == {"ok": True, "id": message["id"], "conversationId": conv["id"]}
    assert broadcasts == [("message_deleted", {"id": message["id"], "conversationId": conv["id"]})]
    assert client.get(f"/api/conversations/{conv['id']}/messages").json()["total"] == 0

    res = client.delete(f"/api/messages/{message['id']}")
    assert res.status_code == 404
    assert res.json() == {"error": "Message not found"}


def test_delete_conversation(client):
    conv = _create(client)
    assert client.delete(f"/api/conversations/{conv['id']}").json() == {"ok": True}
    assert client.get("/api/conversations").json()["total"] == 0
    assert client.delete(f"/api/conversations/{conv['id']}").status_code == 404


def test_upload_requires_a_file(client):
    res = client.post("/api/upload")
    assert res.status_code == 400
    assert res.json() == {"error": "No file uploaded"}

    res = client.post("/api/upload", files={"file": ("empty.txt", b"", "text/plain")})
    assert res.status_code == 400


def test_upload_stores_file_under_media(client):
    res = client.post("/api/upload", files={"file": ("photo.png", b"\x89PNG data", "image/png")})
    assert res.status_code == 200
    data = res.json()
    assert data["url"].startswith("/media/uploads/")
    assert data["url"].endswith(".png")
    assert data["publicUrl"].endswith(data["url"])
    assert (config.MEDIA_DIR / data["relativePath"]).read_bytes() == b"\x89PNG data"

    served = client.get(data["url"])
    assert served.status_code == 200
    assert served.content == b"\x89PNG data"


def test_upload_size_limit(client, monkeypatch):
    monkeypatch.setattr(config, "UPLOAD_MAX_BYTES", 4)
    res = client.post("/api/upload", files={"file": ("big.bin", b"12345", "application/octet-stream")})
    assert res.status_code == 413
    assert res.json() == {"error": "File too large"}


def test_upload_is_written_in_chunks_and_oversize_leaves_nothing(client, monkeypatch):
    monkeypatch.setattr(main, "UPLOAD_CHUNK_SIZE", 2)
    monkeypatch.setattr(config, "UPLOAD_MAX_BYTES", 5)
    uploads = config.MEDIA_DIR / "uploads"
    before = set(uploads.iterdir()) if uploads.exists() else set()

    ok = client.post("/api/upload", files={"file": ("note.txt", b"12345", "text/plain")})
    assert ok.status_code == 200
    assert (config.MEDIA_DIR / ok.json()["relativePath"]).read_bytes() == b"12345"

    res = client.post("/api/upload", files={"file": ("big.txt", b"123456", "text/plain")})
    assert res.status_code == 413
    assert set(uploads.iterdir()) - before == {config.MEDIA_DIR / ok.json()["relativePath"]}


def test_ready_messages(client):
    res = client.post("/api/admin/ready-messages", json={"name": "Greeting", "body": "Hello!"})
    assert res.status_code == 200
    item = res.json()["item"]
    hidden = client.post("/api/admin/ready-messages", json={"name": "Old", "body": "Bye", "isActive": False}).json()["item"]

    assert [i["id"] for i in client.get("/api/ready-messages").json()["items"]] == [item["id"]]
    assert len(client.get("/api/admin/ready-messages").json()["items"]) == 2

    updated = client.patch(f"/api/admin/ready-messages/{hidden['id']}", json={"isActive": True}).json()["item"]
    assert updated["isActive"] is True
    assert len(client.get("/api/ready-messages").json()["items"]) == 2

    assert client.delete(f"/api/admin/ready-messages/{item['id']}").json() == {"ok": True}
    assert client.patch(f"/api/admin/ready-messages/{item['id']}", json={"name": "x"}).status_code == 404
    assert client.post("/api/admin/ready-messages", json={"name": "x"}).status_code == 400


def test_admin_users_and_login(client):
    res = client.post("/api/admin/users", json={"username": "agent", "password": "s3cret", "role": "user"})
    assert res.status_code == 200
    user = res.json()["user"]
    assert user["username"] == "agent"
    assert "passwordHash" not in user

    assert client.post("/api/admin/users", json={"username": "agent", "password": "x"}).status_code == 409
    assert client.post("/api/admin/users", json={"username": "x", "password": "x", "role": "root"}).status_code == 400
    assert client.post("/api/admin/users", json={"username": "", "password": "x"}).status_code == 400

    login = client.post("/api/auth/login", json={"username": "agent", "password": "s3cret"})
    assert login.status_code == 200
    assert login.json()["user"]["username"] == "agent"
    assert login.json()["token"]
    assert config.ACCESS_COOKIE_NAME in login.cookies

    bad = client.post("/api/auth/login", json={"username": "agent", "password": "wrong"})
    assert bad.status_code == 401
    assert bad.json() == {"error": "Invalid credentials"}

    promoted = client.patch(f"/api/admin/users/{user['id']}", json={"role": "admin"}).json()["user"]
    assert promoted["role"] == "admin"
    assert any(u["id"] == user["id"] for u in client.get("/api/admin/users").json()["users"])

    assert client.delete("/api/admin/users/admin").status_code == 400
    assert client.delete(f"/api/admin/users/{user['id']}").json() == {"ok": True}
    assert client.patch(f"/api/admin/users/{user['id']}", json={"role": "user"}).status_code == 404


def test_activity_and_statistics(client, broadcasts):
    assert client.post("/api/activity/ping").json() == {"ok": True}
    conv = _create(client)
    client.post("/api/message/send", json={"conversationId": conv["id"], "body": "hi"})

    stats = client.get("/api/statistics").json()
    assert stats["totalConversations"] == 1
    assert stats["totalMessages"] == 1
    assert stats["outgoingMessages"] == 1
    assert stats["incomingMessages"] == 0
    assert stats["recentActivity"][0]["body"] == "hi"


def test_validation_errors_use_error_shape(client):
    res = client.get("/api/conversations", params={"page": "first"})
    assert res.status_code == 422
    assert set(res.json()) == {"error"}


def test_unknown_route_uses_error_shape(client):
    res = client.get("/api/nothing-here")
    assert res.status_code == 404
    assert res.json() == {"error": "Not Found"}


def test_media_type_is_inferred_from_url(client, broadcasts):
    conv = _create(client)
    message = client.post(
        "/api/message/send",
        json={"conversationId": conv["id"], "media_url": "/media/uploads/invoice.pdf", "body": "your invoice"},
    ).json()["message"]
    assert message["media"]["type"] == "document"
    clip = client.post(
        "/api/message/send",
        json={"conversationId": conv["id"], "media_url": "/media/uploads/clip.mp4"},
    ).json()["message"]
    assert clip["media"]["type"] == "video"
