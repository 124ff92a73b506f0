"""
User data model and storage interface.

Users are owned by the identity provider; the engine only reads them to
resolve display names and photos, and to search for people to start a
conversation with.

Concrete implementation: 'InMemoryUserDatabase'.
"""

from abc import ABC, abstractmethod

from pydantic import BaseModel


class User(BaseModel):
    id: str
    username: str
    email: str | None = None
    profile_photo: str | None = None


class UserDatabase(ABC):
    """Abstract repository for 'User' records."""

    @abstractmethod
    async def get_user_by_id(self, user_id: str) -> User | None:
        pass

    @abstractmethod
    async def get_users_by_ids(self, user_ids: list[str]) -> list[User]:
        """Batched lookup. Unknown ids are silently absent from the result."""
        pass

    @abstractmethod
    async def search_users(self, query: str, exclude_user_id: str, limit: int) -> list[User]:
        """Case-insensitive substring search on 'username', never returning 'exclude_user_id'."""
        pass
