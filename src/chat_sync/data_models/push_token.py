"""
Push token data model and storage interface.

One token per user; saving a new token replaces the previous one.

Concrete implementation: 'InMemoryPushTokenDatabase'.
"""

from abc import ABC, abstractmethod
from datetime import datetime

from pydantic import BaseModel


class PushToken(BaseModel):
    user_id: str
    push_token: str
    updated_at: datetime


class PushTokenDatabase(ABC):
    """Abstract repository for 'PushToken' records."""

    @abstractmethod
    async def save_push_token(self, token: PushToken) -> PushToken:
        pass

    @abstractmethod
    async def get_push_token(self, user_id: str) -> PushToken | None:
        pass
