import asyncio
import json

import httpx
import pytest

from chatsphere.console.uploads import (
    UploadAborted,
    UploadInvalidResponse,
    UploadNetworkError,
    UploadRejected,
    read_error_message,
    upload_file,
)


def _run_upload(handler, source, **kwargs):
    async def scenario():
        async with httpx.AsyncClient(base_url="http://console.test", transport=httpx.MockTransport(handler)) as client:
            return await upload_file(client, source, **kwargs)

    return asyncio.run(scenario())


def test_upload_reports_progress_and_returns_payload():
    seen = {}
    progress = []

    async def handler(request):
        body = await request.aread()
        seen["path"] = request.url.path
        seen["type"] = request.headers["content-type"]
        seen["body"] = body
        return httpx.Response(200, json={"url": "/media/uploads/1_ab.png", "publicUrl": "/media/uploads/1_ab.png"})

    payload = _run_upload(
        handler,
        b"\x89PNG" * 50_000,
        filename="photo.png",
        on_progress=progress.append,
    )

    assert payload["url"] == "/media/uploads/1_ab.png"
    assert seen["path"] == "/api/upload"
    assert seen["type"].startswith("multipart/form-data; boundary=")
    assert b'name="file"; filename="photo.png"' in seen["body"]
    assert b"Content-Type: image/png" in seen["body"]
    assert progress[-1] == 100
    assert progress == sorted(progress)
    assert len(progress) > 1


def test_upload_from_path(tmp_path):
    path = tmp_path / "notes.txt"
    path.write_bytes(b"hello")

    async def handler(request):
        body = await request.aread()
        assert b'filename="notes.txt"' in body
        assert b"hello" in body
        return httpx.Response(201, json={"url": "/media/uploads/notes.txt"})

    assert _run_upload(handler, path)["url"] == "/media/uploads/notes.txt"


@pytest.mark.parametrize(
    "response,message",
    [
        (httpx.Response(413, json={"error": "File too large"}), "File too large"),
        (httpx.Response(500, text="gateway exploded"), "gateway exploded"),
        (httpx.Response(400), "Upload failed."),
    ],
)
def test_rejected_upload_surfaces_server_message(response, message):
    async def handler(request):
        await request.aread()
        return response

    with pytest.raises(UploadRejected) as exc:
        _run_upload(handler, b"x", filename="a.bin")
    assert exc.value.message == message
    assert exc.value.status == response.status_code


@pytest.mark.parametrize("response", [httpx.Response(200, text="<html>"), httpx.Response(200, json={"ok": True})])
def test_success_without_url_is_invalid(response):
    async def handler(request):
        await request.aread()
        return response

    with pytest.raises(UploadInvalidResponse, match="Invalid server response."):
        _run_upload(handler, b"x", filename="a.bin")


def test_network_failure():
    async def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(UploadNetworkError, match="Network error while uploading file."):
        _run_upload(handler, b"x", filename="a.bin")


def test_pre_aborted_upload_sends_nothing():
    calls = []

    async def handler(request):
        calls.append(request)
        return httpx.Response(200, json={"url": "/x"})

    async def scenario():
        abort = asyncio.Event()
        abort.set()
        async with httpx.AsyncClient(base_url="http://console.test", transport=httpx.MockTransport(handler)) as client:
            await upload_file(client, b"x", filename="a.bin", abort=abort)

    with pytest.raises(UploadAborted, match="Upload aborted"):
        asyncio.run(scenario())
    assert calls == []


def test_abort_while_in_flight():
    async def handler(request):
        await request.aread()
        await asyncio.sleep(5)
        return httpx.Response(200, json={"url": "/x"})

    async def scenario():
        abort = asyncio.Event()
        asyncio.get_running_loop().call_later(0.05, abort.set)
        async with httpx.AsyncClient(base_url="http://console.test", transport=httpx.MockTransport(handler)) as client:
            await upload_file(client, b"x", filename="a.bin", abort=abort)

    with pytest.raises(UploadAborted):
        asyncio.run(scenario())


def test_in_memory_upload_needs_a_filename():
    with pytest.raises(ValueError):
        _run_upload(lambda request: httpx.Response(200), b"x")


def test_read_error_message():
    assert read_error_message(json.dumps({"error": "No file uploaded"})) == "No file uploaded"
    assert read_error_message(json.dumps({"detail": "x"})) == json.dumps({"detail": "x"})
    assert read_error_message("") == "Upload failed."
