r"""
Supervised change-feed subscription.

'RealtimeChannel' owns one subscription and its lifecycle:

    unsubscribed -> subscribing -> subscribed -> unsubscribed   (close)
                                       \-> error -> subscribing  (transport failure)

On a transport failure the channel moves to 'error', releases the dead
subscription (best effort, like 'close') and resubscribes in the background
with exponential backoff, up to 'resubscribe_attempts' times. After a
successful resubscription 'on_resubscribed' runs so the owner can re-fetch
whatever it missed while the channel was down.

Closing is idempotent and never raises: a failed unsubscribe leaks a server
side channel, which is logged, but must not break the caller tearing down a
view. Events that arrive after 'close' are dropped.
"""

import asyncio
from collections.abc import Awaitable, Callable
from contextlib import suppress
from enum import StrEnum

from loguru import logger

from chat_sync.backend.change_feed import ChangeFeed, ChangeFilter, EventHandler, Subscription
from chat_sync.config import SyncSettings, get_settings
from chat_sync.data_models.change_event import ChangeEvent
from chat_sync.errors import ChatSyncError, NetworkError
from chat_sync.utils.retry import backoff_delay


class ChannelState(StrEnum):
    UNSUBSCRIBED = "unsubscribed"
    SUBSCRIBING = "subscribing"
    SUBSCRIBED = "subscribed"
    ERROR = "error"


class RealtimeChannel:
    def __init__(
        self,
        feed: ChangeFeed,
        change_filter: ChangeFilter,
        on_event: EventHandler,
        on_resubscribed: Callable[[], Awaitable[None]] | None = None,
        settings: SyncSettings | None = None,
        name: str = "channel",
    ) -> None:
        self.feed = feed
        self.change_filter = change_filter
        self.on_event = on_event
        self.on_resubscribed = on_resubscribed
        self.settings = settings or get_settings()
        self.name = name
        self._state = ChannelState.UNSUBSCRIBED
        self._subscription: Subscription | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._closed = True

    @property
    def state(self) -> ChannelState:
        return self._state

    async def open(self) -> bool:
        """Subscribe. On failure the channel keeps retrying in the background and False is returned."""
        if self._state == ChannelState.SUBSCRIBED:
            return True
        self._closed = False
        try:
            await self._subscribe()
        except NetworkError as exc:
            logger.warning(f"{self.name}: subscription failed ({exc}), retrying in the background")
            self._state = ChannelState.ERROR
            self._schedule_reconnect()
            return False
        return True

    async def join(self) -> None:
        """Wait for a background resubscription, if one is running."""
        task = self._reconnect_task
        if task is not None and task is not asyncio.current_task():
            await task

    async def close(self) -> None:
        self._closed = True
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task

        subscription, self._subscription = self._subscription, None
        await self._release(subscription)
        self._state = ChannelState.UNSUBSCRIBED

    async def _subscribe(self) -> None:
        self._state = ChannelState.SUBSCRIBING
        self._subscription = await self.feed.subscribe(self.change_filter, self._dispatch, self._on_error)
        self._state = ChannelState.SUBSCRIBED
        logger.info(f"{self.name}: subscribed to {self.change_filter.table}")

    async def _dispatch(self, event: ChangeEvent) -> None:
        if self._closed:
            logger.debug(f"{self.name}: dropping {event.event_type} event received after close")
            return
        await self.on_event(event)

    async def _on_error(self, error: Exception) -> None:
        if self._closed:
            return
        logger.warning(f"{self.name}: channel error: {error}")
        subscription, self._subscription = self._subscription, None
        self._state = ChannelState.ERROR
        await self._release(subscription)
        self._schedule_reconnect()

    async def _release(self, subscription: Subscription | None) -> None:
        if subscription is None:
            return
        try:
            await subscription.unsubscribe()
        except ChatSyncError as exc:
            logger.warning(f"{self.name}: unsubscribe failed, channel may leak: {exc}")
        else:
            logger.info(f"{self.name}: unsubscribed")

    def _schedule_reconnect(self) -> None:
        if self._reconnect_task is None or self._reconnect_task.done():
            self._reconnect_task = asyncio.create_task(self._reconnect())

    async def _reconnect(self) -> None:
        attempts = self.settings.resubscribe_attempts
        for attempt in range(1, attempts + 1):
            await asyncio.sleep(backoff_delay(attempt, self.settings.backoff_base, self.settings.backoff_max))
            if self._closed:
                return
            try:
                await self._subscribe()
            except NetworkError as exc:
                self._state = ChannelState.ERROR
                logger.warning(f"{self.name}: resubscribe attempt {attempt}/{attempts} failed: {exc}")
                continue
            if self.on_resubscribed is not None:
                try:
                    await self.on_resubscribed()
                except ChatSyncError as exc:
                    logger.warning(f"{self.name}: catch-up after resubscribe failed: {exc}")
            return
        logger.error(f"{self.name}: giving up after {attempts} resubscribe attempts")
