import logging
from typing import Any, Optional

import httpx

from .. import config
from .uploads import upload_file

log = logging.getLogger(__name__)


class MutationError(Exception):
    def __init__(self, message: str, status: int = 0):
        super().__init__(message)
        self.message = message
        self.status = status


def error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        data = None
    if isinstance(data, dict) and data.get("error"):
        return str(data["error"])
    return response.text or f"Request failed with status {response.status_code}"


class ConsoleApi:
    """REST client for the console. Every non-2xx reply becomes ``MutationError``."""

    def __init__(
        self,
        base_url: str | None = None,
        token: str | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 30.0,
    ):
        self.base_url = (base_url or config.CONSOLE_BASE_URL).rstrip("/")
        self.token = token
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            transport=transport,
            timeout=httpx.Timeout(timeout),
        )

    async def aclose(self) -> None:
        await self.client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = await self.client.request(method, path, **kwargs)
        except httpx.TransportError as exc:
            log.warning("%s %s failed: %s", method, path, exc)
            raise MutationError(str(exc) or "Network error", 0) from exc
        if response.status_code < 200 or response.status_code >= 300:
            raise MutationError(error_message(response), response.status_code)
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            log.warning("%s %s returned a non-JSON body", method, path)
            raise MutationError("Invalid server response", response.status_code) from exc

    # ── queries ──
    async def list_conversations(self, archived: bool = False, page: int = 1, page_size: int = 50, search: str | None = None) -> dict:
        params: dict = {"archived": str(bool(archived)).lower(), "page": page, "page_size": page_size}
        if search:
            params["search"] = search
        return await self._request("GET", "/api/conversations", params=params)

    async def list_messages(self, conversation_id: str, page: int = 1, page_size: int = 50) -> dict:
        return await self._request(
            "GET",
            f"/api/conversations/{conversation_id}/messages",
            params={"page": page, "page_size": page_size},
        )

    async def list_pins(self) -> dict:
        return await self._request("GET", "/api/conversations/pins")

    async def list_ready_messages(self) -> dict:
        return await self._request("GET", "/api/ready-messages")

    # ── mutations ──
    async def create_conversation(self, phone: str, display_name: str | None = None) -> dict:
        return await self._request("POST", "/api/conversations", json={"phone": phone, "displayName": display_name})

    async def send_message(
        self,
        *,
        conversation_id: str | None = None,
        to: str | None = None,
        body: str | None = None,
        media_url: str | None = None,
        reply_to_message_id: Optional[str] = None,
    ) -> dict:
        payload = {
            "conversationId": conversation_id,
            "to": to,
            "body": body,
            "media_url": media_url,
            "replyToMessageId": reply_to_message_id,
        }
        return await self._request("POST", "/api/message/send", json={k: v for k, v in payload.items() if v is not None})

    async def archive(self, conversation_id: str, archived: bool) -> dict:
        return await self._request("PATCH", f"/api/conversations/{conversation_id}/archive", json={"archived": bool(archived)})

    async def set_pinned(self, conversation_id: str, pinned: bool) -> dict:
        return await self._request("POST", f"/api/conversations/{conversation_id}/pin", json={"pinned": bool(pinned)})

    async def delete_message(self, message_id: str) -> dict:
        return await self._request("DELETE", f"/api/messages/{message_id}")

    async def delete_conversation(self, conversation_id: str) -> dict:
        return await self._request("DELETE", f"/api/conversations/{conversation_id}")

    async def activity_ping(self) -> dict:
        return await self._request("POST", "/api/activity/ping")

    async def upload(self, source, **kwargs: Any) -> dict:
        return await upload_file(self.client, source, **kwargs)
