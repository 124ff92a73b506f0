"""
Object storage client for a Supabase-style storage REST API.

Uploads go to 'POST /storage/v1/object/<bucket>/<path>' with 'x-upsert: true'
so a retried upload of the same path overwrites instead of failing with a
conflict. Public URLs are built locally, without a round trip, from the public
object endpoint. Transport failures and HTTP error statuses are converted to
the 'chat_sync.errors' taxonomy here, at the boundary.
"""

from typing import Any
from urllib.parse import quote

import httpx
from loguru import logger

from chat_sync.backend.storage import ObjectStorage
from chat_sync.config import SyncSettings, get_settings
from chat_sync.errors import NetworkError, StorageError, StoragePermissionError

_PERMISSION_STATUSES = {401, 403}


class SupabaseStorage(ObjectStorage):
    """
    'ObjectStorage' bound to one bucket of a hosted storage service.

    Attributes:
        base_url: Project URL, e.g. 'https://<project>.supabase.co'.
        bucket: Bucket all paths are relative to.
    """

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        bucket: str | None = None,
        client: httpx.AsyncClient | None = None,
        settings: SyncSettings | None = None,
    ) -> None:
        settings = settings or get_settings()
        self.base_url = (base_url or settings.storage_url).rstrip("/")
        self.bucket = bucket or settings.storage_bucket
        self._api_key = api_key if api_key is not None else settings.storage_api_key
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(60.0, connect=15.0))

    def _headers(self, **extra: str) -> dict[str, str]:
        headers = {"apikey": self._api_key, "Authorization": f"Bearer {self._api_key}"}
        headers.update(extra)
        return headers

    def _object_url(self, path: str) -> str:
        return f"{self.base_url}/storage/v1/object/{self.bucket}/{quote(path)}"

    async def put(self, path: str, data: bytes, content_type: str, upsert: bool = True) -> str:
        try:
            response = await self._client.post(
                self._object_url(path),
                content=data,
                headers=self._headers(**{"Content-Type": content_type, "x-upsert": "true" if upsert else "false"}),
            )
        except httpx.TransportError as exc:
            raise NetworkError(f"Upload of {path} interrupted: {exc}") from exc
        self._raise_for_status(response, f"upload {path}")
        logger.debug(f"Stored {len(data)} bytes at {self.bucket}/{path}")
        return path

    async def get_public_url(self, path: str) -> str:
        return f"{self.base_url}/storage/v1/object/public/{self.bucket}/{quote(path)}"

    async def delete(self, path: str) -> bool:
        try:
            response = await self._client.request(
                "DELETE",
                f"{self.base_url}/storage/v1/object/{self.bucket}",
                json={"prefixes": [path]},
                headers=self._headers(),
            )
        except httpx.TransportError as exc:
            raise NetworkError(f"Delete of {path} interrupted: {exc}") from exc
        if response.status_code == 404:
            return False
        self._raise_for_status(response, f"delete {path}")
        removed = response.json() if response.content else []
        return bool(removed)

    async def aclose(self) -> None:
        await self._client.aclose()

    @staticmethod
    def _raise_for_status(response: httpx.Response, action: str) -> None:
        if response.is_success:
            return
        detail = _error_detail(response)
        # The storage API reports policy violations as 400 with the real status in the body.
        status = str(detail.get("statusCode", response.status_code))
        message = detail.get("message") or detail.get("error") or response.text[:200]
        if response.status_code in _PERMISSION_STATUSES or status in {"401", "403"}:
            raise StoragePermissionError(f"Storage refused to {action}: {message}")
        raise StorageError(f"Storage failed to {action} ({response.status_code}): {message}")


def _error_detail(response: httpx.Response) -> dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}
