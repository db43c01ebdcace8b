import asyncio
import json
import logging
import mimetypes
from pathlib import Path
from typing import AsyncIterator, Callable, Optional

import aiofiles
import httpx

log = logging.getLogger(__name__)

UPLOAD_ENDPOINT = "/api/upload"
CHUNK_SIZE = 64 * 1024


class UploadError(Exception):
    pass


class UploadAborted(UploadError):
    pass


class UploadNetworkError(UploadError):
    pass


class UploadRejected(UploadError):
    def __init__(self, status: int, message: str):
        super().__init__(message)
        self.status = status
        self.message = message


class UploadInvalidResponse(UploadError):
    pass


def read_error_message(text: str) -> str:
    try:
        parsed = json.loads(text)
    except ValueError:
        parsed = None
    if isinstance(parsed, dict) and parsed.get("error"):
        return str(parsed["error"])
    return text or "Upload failed."


async def _read_source(source: bytes | str | Path) -> bytes:
    if isinstance(source, (bytes, bytearray)):
        return bytes(source)
    async with aiofiles.open(source, "rb") as f:
        return await f.read()


def _encode(data: bytes, filename: str, content_type: str | None) -> tuple[bytes, str]:
    """Multipart body with a single ``file`` part, plus its Content-Type header."""
    ctype = content_type or mimetypes.guess_type(filename)[0] or "application/octet-stream"
    request = httpx.Request("POST", "http://upload.local/", files={"file": (filename, data, ctype)})
    return request.read(), request.headers["Content-Type"]


async def upload_file(
    client: httpx.AsyncClient,
    source: bytes | str | Path,
    *,
    filename: str | None = None,
    content_type: str | None = None,
    on_progress: Callable[[int], None] | None = None,
    abort: asyncio.Event | None = None,
    endpoint: str = UPLOAD_ENDPOINT,
) -> dict:
    """POST ``source`` as multipart ``file``; resolves with the server's ``{url, ...}``.

    ``on_progress`` receives integer percentages as the body is streamed out.
    Setting ``abort`` cancels the request and raises ``UploadAborted``.
    """
    if abort is not None and abort.is_set():
        raise UploadAborted("Upload aborted")
    if filename is None:
        if isinstance(source, (bytes, bytearray)):
            raise ValueError("filename is required for in-memory uploads")
        filename = Path(source).name
    body, multipart_type = _encode(await _read_source(source), filename, content_type)
    total = len(body)

    async def stream() -> AsyncIterator[bytes]:
        sent = 0
        last = -1
        for start in range(0, total, CHUNK_SIZE):
            chunk = body[start : start + CHUNK_SIZE]
            yield chunk
            sent += len(chunk)
            percent = int(sent * 100 / total + 0.5) if total else 100
            if on_progress is not None and percent != last:
                last = percent
                on_progress(percent)

    headers = {"Content-Type": multipart_type, "Content-Length": str(total)}
    send = asyncio.ensure_future(client.post(endpoint, content=stream(), headers=headers))
    try:
        if abort is not None:
            aborted = asyncio.ensure_future(abort.wait())
            try:
                done, _ = await asyncio.wait({send, aborted}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                aborted.cancel()
            if send not in done:
                raise UploadAborted("Upload aborted")
        response: httpx.Response = await send
    except httpx.TransportError as exc:
        log.warning("Upload of %s failed: %s", filename, exc)
        raise UploadNetworkError("Network error while uploading file.") from exc
    finally:
        if not send.done():
            send.cancel()
            await asyncio.gather(send, return_exceptions=True)

    if 200 <= response.status_code < 300:
        try:
            payload = response.json()
        except ValueError as exc:
            raise UploadInvalidResponse("Invalid server response.") from exc
        if not isinstance(payload, dict) or not payload.get("url"):
            raise UploadInvalidResponse("Invalid server response.")
        return payload
    raise UploadRejected(response.status_code, read_error_message(response.text))
