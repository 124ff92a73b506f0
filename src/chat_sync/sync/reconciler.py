"""
Realtime reconciler for one conversation.

Applies change-feed events for the conversation's 'messages' rows to a
'MessageStore'. The feed gives no ordering guarantee and may deliver an event
more than once, so every handler is an idempotent merge:

    insert   complete row -> resolve the sender name, 'reconcile_remote'.
    update   complete row -> 'reconcile_remote'; partial row carrying only
             'id' and 'status' -> 'apply_status_update'.
    delete   'remove' by id.

Events for another conversation are ignored and malformed rows are logged and
dropped. 'on_remote_insert' is awaited once for each message from the other
participant that the store had not seen before.

Sender names come from the users table through a per-session cache; names
missing from the cache are fetched in one batched lookup.

Besides the realtime channel a supervisory loop re-fetches the full history
every 'refetch_interval' seconds and merges it into the store. The interval
doubles, up to 'refetch_interval_max', while fetches fail or the channel is
down. A zero interval disables the loop.

A re-fetch also drops confirmed messages the server no longer has, which is
how deletions missed while the channel was down reach the store.
"""

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from contextlib import suppress

from loguru import logger
from pydantic import ValidationError

from chat_sync.backend.change_feed import ChangeFeed, ChangeFilter
from chat_sync.config import SyncSettings, get_settings
from chat_sync.data_models.change_event import ChangeEvent, ChangeEventType
from chat_sync.data_models.message import Message, MessageDatabase, MessageStatus
from chat_sync.data_models.user import UserDatabase
from chat_sync.errors import ChatSyncError, NetworkError
from chat_sync.sync.channel import ChannelState, RealtimeChannel
from chat_sync.sync.message_store import MessageStore
from chat_sync.utils.retry import retry_async

RemoteInsertHandler = Callable[[Message], Awaitable[None]]


class RealtimeReconciler:
    def __init__(
        self,
        conversation_id: str,
        viewer_id: str,
        store: MessageStore,
        feed: ChangeFeed,
        message_db: MessageDatabase,
        user_db: UserDatabase,
        settings: SyncSettings | None = None,
        on_remote_insert: RemoteInsertHandler | None = None,
    ) -> None:
        self.conversation_id = conversation_id
        self.viewer_id = viewer_id
        self.store = store
        self.message_db = message_db
        self.user_db = user_db
        self.settings = settings or get_settings()
        self.on_remote_insert = on_remote_insert
        self.channel = RealtimeChannel(
            feed,
            ChangeFilter(table="messages", columns=["conversation_id"], values=[conversation_id]),
            self.handle_event,
            on_resubscribed=self._catch_up,
            settings=self.settings,
            name=f"messages:{conversation_id}",
        )
        self._names: dict[str, str] = {}
        self._fallback_task: asyncio.Task[None] | None = None
        self.refetch_delay = self.settings.refetch_interval

    @property
    def state(self) -> ChannelState:
        return self.channel.state

    async def start(self) -> None:
        await self.channel.open()
        if self.settings.refetch_interval > 0 and self._fallback_task is None:
            self._fallback_task = asyncio.create_task(self._fallback_loop())

    async def stop(self) -> None:
        task, self._fallback_task = self._fallback_task, None
        if task is not None:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        await self.channel.close()

    async def handle_event(self, event: ChangeEvent) -> None:
        logger.debug(f"{self.conversation_id}: {event.event_type} event for message {event.record_id}")
        match event.event_type:
            case ChangeEventType.INSERT:
                await self._on_insert(event)
            case ChangeEventType.UPDATE:
                await self._on_update(event)
            case ChangeEventType.DELETE:
                self._on_delete(event)

    async def refetch(self) -> int:
        """Bring the store in line with the full server history. Returns the number of entries that changed."""
        known = [m.id for m in self.store.snapshot() if m.id is not None]
        messages = await retry_async(
            lambda: self.message_db.get_messages_by_conversation_id(self.conversation_id),
            attempts=self.settings.max_attempts,
            base_delay=self.settings.backoff_base,
            max_delay=self.settings.backoff_max,
            description=f"fetch history of {self.conversation_id}",
        )
        messages = await self.resolve_sender_names(messages)
        changed = self.store.load(messages)
        removed = self.store.retain((m.id for m in messages if m.id is not None), candidates=known)
        return changed + len(removed)

    async def resolve_sender_names(self, messages: Iterable[Message]) -> list[Message]:
        messages = list(messages)
        missing = sorted({m.sender_id for m in messages if m.sender_name is None and m.sender_id not in self._names})
        if missing:
            try:
                users = await retry_async(
                    lambda: self.user_db.get_users_by_ids(missing),
                    attempts=self.settings.max_attempts,
                    base_delay=self.settings.backoff_base,
                    max_delay=self.settings.backoff_max,
                    description="resolve sender names",
                )
            except NetworkError as exc:
                logger.warning(f"Sender names unavailable, showing placeholders: {exc}")
            else:
                found = {user.id: user.username for user in users}
                for user_id in missing:
                    self._names[user_id] = found.get(user_id) or self.settings.unknown_sender_name

        unknown = self.settings.unknown_sender_name
        return [
            m if m.sender_name is not None else m.model_copy(update={"sender_name": self._names.get(m.sender_id, unknown)})
            for m in messages
        ]

    async def _on_insert(self, event: ChangeEvent) -> None:
        message = self._parse(event)
        if message is None:
            return
        is_new = self.store.get(message.id) is None and not self.store.is_deleted(message.id)
        [message] = await self.resolve_sender_names([message])
        stored = self.store.reconcile_remote(message)
        if is_new and stored.sender_id != self.viewer_id and self.on_remote_insert is not None:
            await self.on_remote_insert(stored)

    async def _on_update(self, event: ChangeEvent) -> None:
        if not self._belongs_here(event):
            return
        if Message.is_complete_row(event.row):
            message = self._parse(event)
            if message is None:
                return
            if self.store.get(message.id) is None:
                [message] = await self.resolve_sender_names([message])
            self.store.reconcile_remote(message)
            return

        message_id, status = event.record_id, event.row.get("status")
        if message_id is None or status is None:
            logger.warning(f"{self.conversation_id}: dropping update without id or status: {event.row}")
            return
        try:
            new_status = MessageStatus(status)
        except ValueError:
            logger.warning(f"{self.conversation_id}: dropping update with unknown status {status!r}")
            return
        self.store.apply_status_update(message_id, new_status)

    def _on_delete(self, event: ChangeEvent) -> None:
        if not self._belongs_here(event):
            return
        message_id = event.record_id
        if message_id is None:
            logger.warning(f"{self.conversation_id}: dropping delete without id")
            return
        self.store.remove(message_id)

    def _belongs_here(self, event: ChangeEvent) -> bool:
        conversation_id = event.value("conversation_id")
        if conversation_id is not None and str(conversation_id) != self.conversation_id:
            logger.debug(f"{self.conversation_id}: ignoring event for conversation {conversation_id}")
            return False
        return True

    def _parse(self, event: ChangeEvent) -> Message | None:
        if not self._belongs_here(event):
            return None
        if not Message.is_complete_row(event.row):
            logger.warning(f"{self.conversation_id}: dropping incomplete {event.event_type} row: {event.row}")
            return None
        try:
            message = Message.from_row(event.row)
        except ValidationError as exc:
            logger.warning(f"{self.conversation_id}: dropping malformed {event.event_type} row: {exc}")
            return None
        if message.id is None:
            logger.warning(f"{self.conversation_id}: dropping {event.event_type} row without id")
            return None
        return message

    async def _catch_up(self) -> None:
        changed = await self.refetch()
        logger.info(f"{self.conversation_id}: caught up after resubscribe, {changed} message(s) changed")

    async def _fallback_loop(self) -> None:
        self.refetch_delay = self.settings.refetch_interval
        while True:
            await asyncio.sleep(self.refetch_delay)
            try:
                await self.refetch()
            except ChatSyncError as exc:
                logger.warning(f"{self.conversation_id}: periodic re-fetch failed: {exc}")
                healthy = False
            else:
                healthy = self.channel.state == ChannelState.SUBSCRIBED
            if healthy:
                self.refetch_delay = self.settings.refetch_interval
            else:
                self.refetch_delay = min(self.refetch_delay * 2, self.settings.refetch_interval_max)
