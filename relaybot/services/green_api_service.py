from typing import Any, Optional

import httpx

from relaybot.config import settings
from relaybot.errors import TransportError
from relaybot.logging_config import get_logger

logger = get_logger("green_api_service")


class GreenApiClient:
    """Async client for the Green API WhatsApp gateway."""

    URL_TEMPLATE = "{base}/waInstance{instance}/{method}/{token}"

    def __init__(
        self,
        id_instance: Optional[str] = None,
        api_token: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.id_instance = id_instance or settings.green_api_id_instance
        self.api_token = api_token or settings.green_api_token_instance
        self.base_url = (base_url or settings.green_api_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.green_api_timeout_seconds

    def _url(self, method: str) -> str:
        return self.URL_TEMPLATE.format(
            base=self.base_url, instance=self.id_instance, method=method, token=self.api_token
        )

    async def _make_request(self, method: str, data: Optional[dict] = None, http_method: str = "POST") -> Any:
        if not self.id_instance or not self.api_token:
            raise TransportError("Green API credentials are not configured")

        url = self._url(method)
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                if http_method == "GET":
                    response = await client.get(url)
                else:
                    response = await client.post(url, json=data or {})
        except httpx.HTTPError as e:
            logger.error(f"Green API {method} request failed: {e}")
            raise TransportError(f"{method} failed: {e}") from e

        if response.status_code >= 400:
            logger.error(
                f"Green API {method} error",
                extra={"context": {"status": response.status_code, "body": response.text[:200]}},
            )
            raise TransportError(f"{method} returned {response.status_code}")
        return response.json() if response.content else {}

    async def send_text(self, chat_id: str, message: str, quoted_message_id: Optional[str] = None) -> dict:
        data = {"chatId": chat_id, "message": message}
        if quoted_message_id:
            data["quotedMessageId"] = quoted_message_id
        return await self._make_request("sendMessage", data)

    async def send_file(
        self,
        chat_id: str,
        url: str,
        file_name: str,
        caption: str = "",
        quoted_message_id: Optional[str] = None,
    ) -> dict:
        data = {"chatId": chat_id, "urlFile": url, "fileName": file_name, "caption": caption or ""}
        if quoted_message_id:
            data["quotedMessageId"] = quoted_message_id
        return await self._make_request("sendFileByUrl", data)

    async def send_poll(self, chat_id: str, message: str, options: list[str], multiple_answers: bool = False) -> dict:
        data = {
            "chatId": chat_id,
            "message": message,
            "options": [{"optionName": option} for option in options],
            "multipleAnswers": multiple_answers,
        }
        return await self._make_request("sendPoll", data)

    async def send_location(
        self,
        chat_id: str,
        latitude: float,
        longitude: float,
        name: str = "",
        address: str = "",
    ) -> dict:
        data = {
            "chatId": chat_id,
            "latitude": latitude,
            "longitude": longitude,
            "nameLocation": name,
            "address": address,
        }
        return await self._make_request("sendLocation", data)

    async def get_message(self, chat_id: str, id_message: str) -> Optional[dict]:
        """Fetch the full stored copy of a message, or None if Green API has no record."""
        result = await self._make_request("getMessage", {"chatId": chat_id, "idMessage": id_message})
        return result or None

    async def get_contacts(self) -> list[dict]:
        result = await self._make_request("getContacts", http_method="GET")
        return result if isinstance(result, list) else []

    async def download_file(self, url: str) -> bytes:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
                response = await client.get(url)
        except httpx.HTTPError as e:
            raise TransportError(f"download failed: {e}") from e
        if response.status_code >= 400:
            raise TransportError(f"download returned {response.status_code}")
        return response.content
