"""
Change-feed subscription abstractions.

A 'ChangeFeed' pushes row-level 'ChangeEvent' notifications for rows matching
a 'ChangeFilter'. The transport gives no ordering guarantee and may deliver the
same event more than once; consumers must be idempotent.

'on_error' is invoked by the transport when an established channel breaks
(timeout, closed socket). The subscription is dead after that and the consumer
is expected to subscribe again.

Concrete implementation: 'InMemoryChangeFeed'.
"""

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable

from pydantic import BaseModel, Field

from chat_sync.data_models.change_event import ChangeEvent, ChangeEventType

EventHandler = Callable[[ChangeEvent], Awaitable[None]]
ErrorHandler = Callable[[Exception], Awaitable[None]]


class ChangeFilter(BaseModel):
    """
    Server-side row filter.

    An event matches when it comes from 'table' and any of 'columns' holds one
    of 'values'. With no columns every event of the table matches. Delete events
    whose old row carries none of the filter columns (only the primary key) are
    let through, since the transport cannot evaluate the filter for them.
    """

    table: str
    columns: list[str] = Field(default_factory=list)
    values: list[str] = Field(default_factory=list)

    def matches(self, event: ChangeEvent) -> bool:
        if event.table != self.table:
            return False
        if not self.columns:
            return True
        present = [event.value(column) for column in self.columns if event.value(column) is not None]
        if not present:
            return event.event_type == ChangeEventType.DELETE
        return any(str(value) in self.values for value in present)


class Subscription(ABC):
    @abstractmethod
    async def unsubscribe(self) -> None:
        pass


class ChangeFeed(ABC):
    @abstractmethod
    async def subscribe(
        self,
        change_filter: ChangeFilter,
        on_event: EventHandler,
        on_error: ErrorHandler | None = None,
    ) -> Subscription:
        """Open a channel for 'change_filter'. Raise 'NetworkError' if it cannot be established."""
        pass
