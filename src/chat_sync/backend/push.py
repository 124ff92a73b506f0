"""
Push gateway abstraction.

Delivery is best effort: the engine fires a notification and never waits for,
or reports, its delivery.

Concrete implementations: 'ExpoPushGateway', 'InMemoryPushGateway'.
"""

from abc import ABC, abstractmethod
from typing import Any


class PushGateway(ABC):
    @abstractmethod
    async def send(self, token: str, title: str, body: str, data: dict[str, Any]) -> None:
        pass
