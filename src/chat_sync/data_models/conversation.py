"""
Conversation data model and storage interface.

A conversation is always between exactly two participants and there is at
most one conversation per unordered participant pair. 'last_message' is a
denormalized preview of the newest message, refreshed on every send so the
conversation list never has to read the message log.

The 'ConversationDatabase' ABC is the pluggable storage backend. Concrete
implementation: 'InMemoryConversationDatabase'.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

from pydantic import BaseModel, field_validator, model_validator

from chat_sync.utils.time import ensure_aware


class Conversation(BaseModel):
    id: str
    participant_a: str
    participant_b: str
    last_message: str = ""
    created_at: datetime | None = None
    updated_at: datetime

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        return str(value) if isinstance(value, int) else value

    @field_validator("last_message", mode="before")
    @classmethod
    def _empty_preview(cls, value: Any) -> Any:
        return value or ""

    @field_validator("created_at", "updated_at")
    @classmethod
    def _aware_timestamp(cls, value: datetime | None) -> datetime | None:
        return ensure_aware(value) if value else value

    @model_validator(mode="after")
    def _distinct_participants(self) -> "Conversation":
        if self.participant_a == self.participant_b:
            raise ValueError("A conversation needs two distinct participants")
        return self

    @property
    def participants(self) -> frozenset[str]:
        return frozenset((self.participant_a, self.participant_b))

    @property
    def sort_timestamp(self) -> datetime:
        """'updated_at' once a message exists, otherwise the creation time."""
        if not self.last_message and self.created_at is not None:
            return self.created_at
        return self.updated_at

    def involves(self, user_id: str) -> bool:
        return user_id in self.participants

    def other_participant(self, user_id: str) -> str:
        if user_id == self.participant_a:
            return self.participant_b
        if user_id == self.participant_b:
            return self.participant_a
        raise ValueError(f"User {user_id} is not a participant of conversation {self.id}")


class ConversationDatabase(ABC):
    """Abstract repository for 'Conversation' records."""

    @abstractmethod
    async def create_conversation(self, conversation: Conversation) -> Conversation:
        """Persist 'conversation'. Raises 'ConflictError' if the participant pair already has one."""
        pass

    @abstractmethod
    async def get_conversation_by_id(self, conversation_id: str) -> Conversation | None:
        pass

    @abstractmethod
    async def get_conversation_by_participants(self, user_id: str, other_user_id: str) -> Conversation | None:
        """Return the conversation between exactly these two users, in either order."""
        pass

    @abstractmethod
    async def get_conversations_by_user_id(self, user_id: str) -> list[Conversation]:
        pass

    @abstractmethod
    async def update_conversation(self, conversation: Conversation) -> Conversation:
        pass

    @abstractmethod
    async def delete_conversation(self, conversation_id: str) -> bool:
        pass
