"""
Attachment uploads to object storage.

'AttachmentUploader.upload' stores a blob under
'<conversation_id>/<timestamp_ms>_<name>' and returns an 'Attachment' with the
public URL and descriptive metadata. Failures are reported as 'UploadError'
tagged with the stage that failed:

    permission   storage refused the request; terminal.
    transfer     the bytes did not make it; retryable.
    commit       the bytes were accepted but could not be persisted or
                 resolved to a public URL; retryable.

A failed upload leaves a reservation per '(conversation_id, sha256(blob))'.
Retrying the same blob reuses the reserved path (uploads always upsert, so
this is idempotent) and skips the transfer when the bytes are known to be
stored already. Successful uploads release their reservation: sending the same
file twice creates two blobs, each owned by its own message.
"""

import hashlib
import re
from urllib.parse import unquote

from loguru import logger
from pydantic import BaseModel

from chat_sync.backend.storage import ObjectStorage
from chat_sync.config import SyncSettings, get_settings
from chat_sync.data_models.message import Attachment, AttachmentMetadata, AttachmentType
from chat_sync.errors import (
    ChatSyncError,
    ChatValidationError,
    NetworkError,
    StorageError,
    StoragePermissionError,
    UploadError,
    UploadStage,
)
from chat_sync.utils.time import get_current_timestamp, to_milliseconds

DEFAULT_NAMES = {
    AttachmentType.IMAGE: "media.jpg",
    AttachmentType.VIDEO: "media.mp4",
    AttachmentType.AUDIO: "voice.m4a",
    AttachmentType.FILE: "file",
}

_UNSAFE_NAME_CHARS = re.compile(r"[/\\\x00-\x1f]+")


class UploadReservation(BaseModel):
    path: str
    persisted: bool = False


class AttachmentUploader:
    """
    Uploads attachment blobs and deletes them with their message.

    Attributes:
        storage: The object storage the blobs live in.
        reservations: Paths reserved by uploads that have not completed yet,
            keyed by '(conversation_id, sha256 hex digest)'.
    """

    def __init__(self, storage: ObjectStorage, settings: SyncSettings | None = None) -> None:
        self.storage = storage
        self.settings = settings or get_settings()
        self.reservations: dict[tuple[str, str], UploadReservation] = {}

    def build_path(self, conversation_id: str, content_type: str, name: str | None = None) -> str:
        file_name = _sanitize(name) if name else ""
        if not file_name:
            file_name = DEFAULT_NAMES[AttachmentType.from_content_type(content_type)]
        return f"{conversation_id}/{to_milliseconds(get_current_timestamp())}_{file_name}"

    async def upload(
        self,
        blob: bytes,
        conversation_id: str,
        content_type: str,
        name: str | None = None,
        duration: float | None = None,
    ) -> Attachment:
        if not blob:
            raise ChatValidationError("Cannot upload an empty attachment")

        key = (conversation_id, hashlib.sha256(blob).hexdigest())
        reservation = self.reservations.get(key)
        if reservation is None:
            reservation = UploadReservation(path=self.build_path(conversation_id, content_type, name))
            self.reservations[key] = reservation
        else:
            logger.info(f"Retrying upload to reserved path {reservation.path}")

        if reservation.persisted:
            logger.debug(f"Bytes for {reservation.path} already stored, skipping transfer")
        else:
            await self._transfer(reservation.path, blob, content_type)
            reservation.persisted = True

        try:
            url = await self.storage.get_public_url(reservation.path)
        except ChatSyncError as exc:
            raise UploadError(f"Could not resolve a public URL for {reservation.path}: {exc}", UploadStage.COMMIT) from exc

        del self.reservations[key]
        logger.info(f"Uploaded {len(blob)} bytes to {reservation.path}")
        return Attachment(
            url=url,
            type=AttachmentType.from_content_type(content_type),
            metadata=AttachmentMetadata(
                name=name or reservation.path.rsplit("/", 1)[-1].split("_", 1)[-1],
                size=len(blob),
                content_type=content_type,
                duration=duration,
                storage_path=reservation.path,
            ),
        )

    async def _transfer(self, path: str, blob: bytes, content_type: str) -> None:
        try:
            await self.storage.put(path, blob, content_type, upsert=True)
        except StoragePermissionError as exc:
            raise UploadError(f"Storage refused the upload: {exc}", UploadStage.PERMISSION) from exc
        except NetworkError as exc:
            raise UploadError(f"Upload interrupted: {exc}", UploadStage.TRANSFER) from exc
        except StorageError as exc:
            raise UploadError(f"Storage failed to persist the upload: {exc}", UploadStage.COMMIT) from exc

    async def delete(self, attachment: Attachment) -> bool:
        """Remove the blob behind 'attachment'. A blob that is already gone is not an error."""
        path = attachment.metadata.storage_path or self.path_from_url(attachment.url)
        if path is None:
            logger.warning(f"Cannot derive a storage path from {attachment.url}, blob left in place")
            return False
        removed = await self.storage.delete(path)
        if not removed:
            logger.debug(f"Blob {path} was already gone")
        return removed

    def path_from_url(self, url: str) -> str | None:
        marker = f"/{self.settings.storage_bucket}/"
        if marker not in url:
            return None
        return unquote(url.split(marker, 1)[1].split("?", 1)[0]) or None


def _sanitize(name: str) -> str:
    return _UNSAFE_NAME_CHARS.sub("_", name).strip(" ._")
