"""
Push gateway client for the Expo push service.

One HTTP POST per notification. The response is logged but never inspected
for per-ticket errors: delivery is best effort and nothing in the engine waits
on it.
"""

from typing import Any

import httpx
from loguru import logger

from chat_sync.backend.push import PushGateway
from chat_sync.config import SyncSettings, get_settings
from chat_sync.errors import NetworkError


class ExpoPushGateway(PushGateway):
    def __init__(
        self,
        url: str | None = None,
        client: httpx.AsyncClient | None = None,
        settings: SyncSettings | None = None,
    ) -> None:
        settings = settings or get_settings()
        self.url = url or settings.push_url
        self._client = client or httpx.AsyncClient(timeout=settings.push_timeout)

    async def send(self, token: str, title: str, body: str, data: dict[str, Any]) -> None:
        payload = {
            "to": token,
            "sound": "default",
            "title": title,
            "body": body,
            "data": data,
            "badge": 1,
        }
        try:
            response = await self._client.post(
                self.url,
                json=payload,
                headers={
                    "Accept": "application/json",
                    "Accept-encoding": "gzip, deflate",
                    "Content-Type": "application/json",
                },
            )
        except httpx.TransportError as exc:
            raise NetworkError(f"Push gateway unreachable: {exc}") from exc
        if response.status_code != 200:
            raise NetworkError(f"Push gateway error ({response.status_code}): {response.text[:200]}")
        logger.debug(f"Push notification accepted: {response.text[:200]}")

    async def aclose(self) -> None:
        await self._client.aclose()
