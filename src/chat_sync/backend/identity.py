"""
Identity provider abstraction.

Authentication itself is delegated to the hosted identity service; the engine
only needs to know who the current user is. 'get_current_user' raises
'AuthError' when nobody is signed in, which the UI turns into a redirect to the
sign-in screen.

Concrete implementation: 'StaticIdentityProvider'.
"""

from abc import ABC, abstractmethod

from pydantic import BaseModel


class CurrentUser(BaseModel):
    id: str
    email: str | None = None


class IdentityProvider(ABC):
    @abstractmethod
    async def get_current_user(self) -> CurrentUser:
        """Return the signed-in user. Raise 'AuthError' if the session is missing or expired."""
        pass
