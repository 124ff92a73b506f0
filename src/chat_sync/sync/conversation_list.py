"""
Conversation list aggregator.

Keeps the signed-in user's conversations as 'ConversationPreview' records:
the denormalized last message, the other participant's name and photo, and
the timestamp the list is sorted by (newest first). The list subscribes to
the 'conversations' table filtered to rows where the user is either
participant. Change notifications are only a trigger: the affected
conversation and its other participant are re-fetched instead of trusting the
payload, and delete events drop the entry.
"""

from collections.abc import AsyncGenerator, Callable
from datetime import datetime

from loguru import logger
from pydantic import BaseModel

from chat_sync.backend.change_feed import ChangeFeed, ChangeFilter
from chat_sync.config import SyncSettings, get_settings
from chat_sync.data_models.change_event import ChangeEvent, ChangeEventType
from chat_sync.data_models.conversation import Conversation, ConversationDatabase
from chat_sync.data_models.message import MessageDatabase, MessageStatus
from chat_sync.data_models.user import User, UserDatabase
from chat_sync.errors import ChatSyncError
from chat_sync.sync.channel import ChannelState, RealtimeChannel
from chat_sync.utils.observable import Observable
from chat_sync.utils.retry import retry_async
from chat_sync.utils.time import format_relative_date


class ConversationPreview(BaseModel):
    conversation_id: str
    other_user_id: str
    other_username: str
    other_profile_photo: str | None = None
    last_message: str
    has_messages: bool
    updated_at: datetime
    sort_timestamp: datetime


PreviewSnapshot = tuple[ConversationPreview, ...]


class ConversationListAggregator:
    """
    Observable, sorted list of the user's conversations.

    With a 'message_db', every conversation change that carries a new preview
    also writes a batched 'delivered' receipt for the user's unacknowledged
    incoming messages in that conversation.
    """

    def __init__(
        self,
        user_id: str,
        conversation_db: ConversationDatabase,
        user_db: UserDatabase,
        feed: ChangeFeed,
        message_db: MessageDatabase | None = None,
        settings: SyncSettings | None = None,
    ) -> None:
        self.user_id = user_id
        self.conversation_db = conversation_db
        self.user_db = user_db
        self.message_db = message_db
        self.settings = settings or get_settings()
        self.channel = RealtimeChannel(
            feed,
            ChangeFilter(table="conversations", columns=["participant_a", "participant_b"], values=[user_id]),
            self.handle_event,
            on_resubscribed=self.refresh,
            settings=self.settings,
            name=f"conversations:{user_id}",
        )
        self._previews: dict[str, ConversationPreview] = {}
        self._snapshots: Observable[PreviewSnapshot] = Observable(())

    @property
    def state(self) -> ChannelState:
        return self.channel.state

    async def start(self) -> None:
        await self.channel.open()
        await self.refresh()

    async def stop(self) -> None:
        await self.channel.close()

    async def refresh(self) -> None:
        conversations = await self._retry(
            lambda: self.conversation_db.get_conversations_by_user_id(self.user_id), "load conversations"
        )
        other_ids = sorted({c.other_participant(self.user_id) for c in conversations})
        users = await self._retry(lambda: self.user_db.get_users_by_ids(other_ids), "load participants") if other_ids else []
        by_id = {user.id: user for user in users}
        self._previews = {
            c.id: self._build_preview(c, by_id.get(c.other_participant(self.user_id))) for c in conversations
        }
        self._publish()
        logger.info(f"Loaded {len(self._previews)} conversation(s) for {self.user_id}")

    async def handle_event(self, event: ChangeEvent) -> None:
        conversation_id = event.record_id
        if conversation_id is None:
            logger.warning(f"Dropping conversation {event.event_type} event without id")
            return
        if event.event_type == ChangeEventType.DELETE:
            self._drop(conversation_id)
            return

        try:
            conversation = await self._retry(
                lambda: self.conversation_db.get_conversation_by_id(conversation_id), f"load {conversation_id}"
            )
            if conversation is None or not conversation.involves(self.user_id):
                self._drop(conversation_id)
                return
            other = await self._retry(
                lambda: self.user_db.get_user_by_id(conversation.other_participant(self.user_id)), "load participant"
            )
        except ChatSyncError as exc:
            logger.warning(f"Could not refresh conversation {conversation_id}: {exc}")
            return

        previous = self._previews.get(conversation_id)
        preview = self._build_preview(conversation, other)
        if preview == previous:
            return
        self._previews[conversation_id] = preview
        self._publish()
        if preview.has_messages and (previous is None or previous.last_message != preview.last_message):
            await self._acknowledge(conversation_id)

    @property
    def previews(self) -> list[ConversationPreview]:
        return sorted(self._previews.values(), key=lambda p: p.sort_timestamp, reverse=True)

    def snapshot(self) -> PreviewSnapshot:
        return self._snapshots.value

    def subscribe(self, callback: Callable[[PreviewSnapshot], None]) -> Callable[[], None]:
        return self._snapshots.subscribe(callback)

    def watch(self) -> AsyncGenerator[PreviewSnapshot, None]:
        return self._snapshots.watch()

    def search(self, query: str) -> list[ConversationPreview]:
        needle = query.strip().lower()
        if not needle:
            return self.previews
        return [p for p in self.previews if needle in p.other_username.lower()]

    @staticmethod
    def format_timestamp(value: ConversationPreview | datetime, now: datetime | None = None) -> str:
        timestamp = value.sort_timestamp if isinstance(value, ConversationPreview) else value
        return format_relative_date(timestamp, now)

    def _build_preview(self, conversation: Conversation, other: User | None) -> ConversationPreview:
        other_id = conversation.other_participant(self.user_id)
        return ConversationPreview(
            conversation_id=conversation.id,
            other_user_id=other_id,
            other_username=other.username if other else self.settings.unknown_sender_name,
            other_profile_photo=other.profile_photo if other else None,
            last_message=conversation.last_message or self.settings.empty_preview,
            has_messages=bool(conversation.last_message),
            updated_at=conversation.updated_at,
            sort_timestamp=conversation.sort_timestamp,
        )

    def _drop(self, conversation_id: str) -> None:
        if self._previews.pop(conversation_id, None) is not None:
            self._publish()

    async def _acknowledge(self, conversation_id: str) -> None:
        if self.message_db is None:
            return
        try:
            await self.message_db.advance_status_for_recipient(conversation_id, self.user_id, MessageStatus.DELIVERED)
        except ChatSyncError as exc:
            logger.warning(f"Delivery receipts for {conversation_id} not written: {exc}")

    def _publish(self) -> None:
        self._snapshots.publish(tuple(self.previews))

    async def _retry(self, operation, description: str):
        return await retry_async(
            operation,
            attempts=self.settings.max_attempts,
            base_delay=self.settings.backoff_base,
            max_delay=self.settings.backoff_max,
            description=description,
        )
