"""
Message data model and storage interface.

A 'Message' belongs to exactly one conversation and carries text, an
attachment, or both. Rows coming from the relational store are flat
('attachment_url', 'attachment_type', 'attachment_metadata'); 'from_row' and
'to_row' translate between that shape and the nested model so nothing outside
this module touches raw row dictionaries.

'id' is assigned by the store. Optimistic local copies have no 'id' until the
server echo arrives; they are recognised by 'correlation_key', a
client-generated key that is written through with the row and echoed back.

The 'MessageDatabase' ABC is the pluggable storage backend. Concrete
implementation: 'InMemoryMessageDatabase'.
"""

from abc import ABC, abstractmethod
from collections.abc import Mapping
from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, field_validator, model_validator

from chat_sync.utils.time import ensure_aware

MESSAGE_ROW_KEYS = frozenset({"id", "conversation_id", "sender_id", "created_at"})


class MessageStatus(StrEnum):
    """
    Delivery status, ordered: pending < sent < delivered < read.

    'DELETED' is the terminal state of the delivery state machine. It is never
    stored on a row: a deleted message is removed from the store.
    """

    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    DELETED = "deleted"


_STATUS_RANK = {
    MessageStatus.PENDING: 0,
    MessageStatus.SENT: 1,
    MessageStatus.DELIVERED: 2,
    MessageStatus.READ: 3,
    MessageStatus.DELETED: 4,
}


def status_rank(status: MessageStatus) -> int:
    return _STATUS_RANK[MessageStatus(status)]


class AttachmentType(StrEnum):
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    FILE = "file"

    @classmethod
    def from_content_type(cls, content_type: str) -> "AttachmentType":
        major = content_type.split("/", 1)[0].lower()
        match major:
            case "image":
                return cls.IMAGE
            case "video":
                return cls.VIDEO
            case "audio":
                return cls.AUDIO
            case _:
                return cls.FILE


class AttachmentMetadata(BaseModel):
    """
    Descriptive data for an uploaded blob.

    Attributes:
        name: Original file name shown to the user.
        size: Size in bytes.
        content_type: MIME type the blob was uploaded with.
        duration: Length in seconds, for audio and video only.
        storage_path: Object-storage path of the blob, used to delete it
            together with the owning message.
    """

    name: str = ""
    size: int | None = None
    content_type: str = "application/octet-stream"
    duration: float | None = None
    storage_path: str | None = None


class Attachment(BaseModel):
    url: str
    type: AttachmentType
    metadata: AttachmentMetadata = AttachmentMetadata()


class Message(BaseModel):
    """
    A single chat message.

    'sender_name' is not a column: it is resolved by the reconciler from the
    users table and cached for the lifetime of a conversation session.
    """

    id: str | None = None
    conversation_id: str
    sender_id: str
    text: str | None = None
    attachment: Attachment | None = None
    created_at: datetime
    status: MessageStatus = MessageStatus.PENDING
    correlation_key: str | None = None
    sender_name: str | None = None

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        if isinstance(value, int):
            return str(value)
        return value

    @field_validator("created_at")
    @classmethod
    def _aware_timestamp(cls, value: datetime) -> datetime:
        return ensure_aware(value)

    @model_validator(mode="after")
    def _has_content(self) -> "Message":
        if not self.has_text and self.attachment is None:
            raise ValueError("A message needs text, an attachment, or both")
        return self

    @property
    def has_text(self) -> bool:
        return bool(self.text and self.text.strip())

    @property
    def is_confirmed(self) -> bool:
        return self.id is not None

    def sort_key(self) -> tuple[datetime, int, tuple[int, int, str]]:
        """Order by creation time, then identifier. Unconfirmed copies sort after confirmed ones."""
        return self.created_at, int(self.id is None), _id_key(self.id)

    def preview(self, media_placeholder: str = "[Media]") -> str:
        return self.text.strip() if self.text and self.text.strip() else media_placeholder

    def to_row(self) -> dict[str, Any]:
        row: dict[str, Any] = {
            "conversation_id": self.conversation_id,
            "sender_id": self.sender_id,
            "text": self.text,
            "attachment_url": self.attachment.url if self.attachment else None,
            "attachment_type": self.attachment.type.value if self.attachment else None,
            "attachment_metadata": self.attachment.metadata.model_dump() if self.attachment else None,
            "created_at": self.created_at.isoformat(),
            "status": self.status.value,
            "correlation_key": self.correlation_key,
        }
        if self.id is not None:
            row["id"] = self.id
        return row

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Message":
        """Validate a 'messages' row. Raises 'pydantic.ValidationError' on malformed rows."""
        attachment = None
        if row.get("attachment_url"):
            attachment = Attachment(
                url=row["attachment_url"],
                type=row.get("attachment_type") or AttachmentType.FILE,
                metadata=AttachmentMetadata.model_validate(row.get("attachment_metadata") or {}),
            )
        return cls(
            id=row.get("id"),
            conversation_id=row.get("conversation_id"),
            sender_id=row.get("sender_id"),
            text=row.get("text"),
            attachment=attachment,
            created_at=row.get("created_at"),
            status=row.get("status") or MessageStatus.SENT,
            correlation_key=row.get("correlation_key"),
        )

    @staticmethod
    def is_complete_row(row: Mapping[str, Any]) -> bool:
        return MESSAGE_ROW_KEYS.issubset(row)


def _id_key(message_id: str | None) -> tuple[int, int, str]:
    # Numeric identifiers compare numerically, everything else lexically.
    if message_id is None:
        return 2, 0, ""
    if message_id.isdigit():
        return 0, int(message_id), ""
    return 1, 0, message_id


class MessageDatabase(ABC):
    """
    Abstract repository for 'Message' records.

    'create_message' must be idempotent per 'correlation_key': writing the same
    optimistic message twice (a retry after a lost response) returns the row
    created by the first write instead of inserting a second one.
    """

    @abstractmethod
    async def create_message(self, message: Message) -> Message:
        pass

    @abstractmethod
    async def get_messages_by_conversation_id(self, conversation_id: str) -> list[Message]:
        pass

    @abstractmethod
    async def get_message_by_id(self, message_id: str) -> Message | None:
        pass

    @abstractmethod
    async def advance_status_for_recipient(
        self, conversation_id: str, recipient_id: str, status: MessageStatus
    ) -> list[Message]:
        """Move every message in the conversation not sent by 'recipient_id' forward to 'status'.

        One write for the whole conversation. Messages already at or past
        'status' are left untouched. Returns the updated messages.
        """
        pass

    @abstractmethod
    async def delete_message(self, message_id: str) -> bool:
        pass
