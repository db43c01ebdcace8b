import logging
from typing import Optional

import httpx

from . import config

log = logging.getLogger(__name__)


class MessengerError(Exception):
    pass


class MessengerNotConfigured(MessengerError):
    pass


class WhatsAppMessenger:
    """Thin WhatsApp Cloud API client (send text/media, download inbound media)."""

    def __init__(
        self,
        access_token: str | None = None,
        phone_number_id: str | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        # Only fall back to env when the param is None; an empty string means "not configured".
        self.access_token = (config.WHATSAPP_ACCESS_TOKEN if access_token is None else str(access_token or "")).strip()
        self.phone_number_id = (config.WHATSAPP_PHONE_NUMBER_ID if phone_number_id is None else str(phone_number_id or "")).strip()
        self._transport = transport
        self.graph_url = f"https://graph.facebook.com/{config.WHATSAPP_API_VERSION}"
        self.headers = {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }

    @property
    def configured(self) -> bool:
        return bool(self.access_token and self.phone_number_id)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(float(config.WHATSAPP_HTTP_TIMEOUT_SECONDS)),
            transport=self._transport,
        )

    async def _make_request(self, endpoint: str, data: dict) -> dict:
        if not self.configured:
            raise MessengerNotConfigured("WhatsApp credentials are not configured")
        url = f"{self.graph_url}/{self.phone_number_id}/{endpoint}"
        async with self._client() as client:
            response = await client.post(url, json=data, headers=self.headers)
        if response.status_code < 200 or response.status_code >= 300:
            log.error("WhatsApp API request to %s failed status=%s body=%s", endpoint, response.status_code, response.text)
            raise MessengerError(f"WhatsApp API request failed with status {response.status_code}")
        return response.json()

    @staticmethod
    def _message_id(result: dict) -> Optional[str]:
        try:
            return str((result.get("messages") or [{}])[0].get("id") or "") or None
        except Exception:
            return None

    async def send_text_message(self, to: str, body: str, context_message_id: str | None = None) -> Optional[str]:
        """Send a text message; returns the provider message id."""
        payload = {
            "messaging_product": "whatsapp",
            "to": to,
            "type": "text",
            "text": {"body": body},
        }
        if context_message_id:
            payload["context"] = {"message_id": context_message_id}
        return self._message_id(await self._make_request("messages", payload))

    async def send_media_message(self, to: str, media_type: str, link: str, caption: str | None = None) -> Optional[str]:
        media: dict = {"link": link}
        if caption and media_type in ("image", "video", "document"):
            media["caption"] = caption
        payload = {
            "messaging_product": "whatsapp",
            "to": to,
            "type": media_type,
            media_type: media,
        }
        return self._message_id(await self._make_request("messages", payload))

    async def download_media(self, media_id: str) -> tuple[bytes, str]:
        """Return ``(content, mime_type)`` for an inbound media id."""
        if not self.configured:
            raise MessengerNotConfigured("WhatsApp credentials are not configured")
        async with self._client() as client:
            info = await client.get(f"{self.graph_url}/{media_id}", headers=self.headers)
            if info.status_code != 200:
                raise MessengerError(f"Failed to get media info: {info.text}")
            media_url = (info.json() or {}).get("url")
            if not media_url:
                raise MessengerError("No media URL in response")
            media_response = await client.get(media_url, headers=self.headers)
            if media_response.status_code != 200:
                raise MessengerError(f"Failed to download media: {media_response.text}")
            return media_response.content, media_response.headers.get("Content-Type", "")
