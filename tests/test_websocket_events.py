from chatsphere import config


def test_ws_receives_push_frames(client):
    conv = client.post("/api/conversations", json={"phone": "212600000077"}).json()["conversation"]
    with client.websocket_connect("/ws") as ws:
        sent = client.post("/api/message/send", json={"conversationId": conv["id"], "body": "hello"}).json()["message"]
        frame = ws.receive_json()
        assert frame == {"event": "message_outgoing", "data": sent}

        client.delete(f"/api/messages/{sent['id']}")
        frame = ws.receive_json()
        assert frame == {"event": "message_deleted", "data": {"id": sent["id"], "conversationId": conv["id"]}}


def test_ws_rejects_missing_token_when_auth_enabled(client, monkeypatch):
    monkeypatch.setattr(config, "DISABLE_AUTH", False)
    with client.websocket_connect("/ws") as ws:
        message = ws.receive()
        assert message["type"] == "websocket.close"
        assert message["code"] == 4401
