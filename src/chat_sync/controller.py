"""
Chat sync controller (Facade).

'ChatSyncController' is the single entry point for the UI layer. It wires the
pluggable backend collaborators (identity, repositories, change feed, object
storage, push gateway) into the sync components and owns their lifecycle:

    'open_conversation'  - returns the 'ConversationSession' of one
                           conversation. At most one session is open; opening
                           another closes (and unsubscribes) the previous one
                           first.
    'conversation_list'  - the lazily started 'ConversationListAggregator'.

Conversations are between exactly two users and there is at most one per
unordered pair: 'start_conversation' looks up the exact pair before creating,
and falls back to the existing row when a concurrent create wins the race.
"""

import asyncio

from loguru import logger

from chat_sync.backend.change_feed import ChangeFeed
from chat_sync.backend.identity import CurrentUser, IdentityProvider
from chat_sync.backend.push import PushGateway
from chat_sync.backend.storage import ObjectStorage
from chat_sync.config import SyncSettings, get_settings
from chat_sync.data_models.conversation import Conversation, ConversationDatabase
from chat_sync.data_models.message import MessageDatabase
from chat_sync.data_models.push_token import PushToken, PushTokenDatabase
from chat_sync.data_models.user import User, UserDatabase
from chat_sync.errors import AuthError, ChatSyncError, ChatValidationError, ConflictError, NotFoundError
from chat_sync.sync.attachments import AttachmentUploader
from chat_sync.sync.conversation_list import ConversationListAggregator
from chat_sync.sync.notifications import PushNotifier
from chat_sync.sync.session import ConversationSession
from chat_sync.utils.database import generate_uid
from chat_sync.utils.retry import retry_async
from chat_sync.utils.time import get_current_timestamp


class ChatSyncController:
    def __init__(
        self,
        identity: IdentityProvider,
        conversation_db: ConversationDatabase,
        message_db: MessageDatabase,
        user_db: UserDatabase,
        push_token_db: PushTokenDatabase,
        feed: ChangeFeed,
        storage: ObjectStorage,
        push_gateway: PushGateway | None = None,
        settings: SyncSettings | None = None,
    ):
        self.identity = identity
        self.conversation_db = conversation_db
        self.message_db = message_db
        self.user_db = user_db
        self.push_token_db = push_token_db
        self.feed = feed
        self.settings = settings or get_settings()
        self.uploader = AttachmentUploader(storage, self.settings)
        self.notifier = PushNotifier(push_gateway, push_token_db, self.settings) if push_gateway else None
        self._session: ConversationSession | None = None
        self._conversation_list: ConversationListAggregator | None = None
        self._lock = asyncio.Lock()

    @property
    def active_session(self) -> ConversationSession | None:
        return self._session

    async def current_user(self) -> CurrentUser:
        return await self.identity.get_current_user()

    async def start_conversation(self, other_user_id: str) -> Conversation:
        user = await self.current_user()
        if other_user_id == user.id:
            raise ChatValidationError("Cannot start a conversation with yourself")
        if await self.user_db.get_user_by_id(other_user_id) is None:
            raise NotFoundError(f"User {other_user_id} not found")

        existing = await self.conversation_db.get_conversation_by_participants(user.id, other_user_id)
        if existing is not None:
            return existing

        create_time = get_current_timestamp()
        try:
            conversation = await self.conversation_db.create_conversation(
                Conversation(
                    id=generate_uid(),
                    participant_a=user.id,
                    participant_b=other_user_id,
                    created_at=create_time,
                    updated_at=create_time,
                )
            )
        except ConflictError:
            existing = await self.conversation_db.get_conversation_by_participants(user.id, other_user_id)
            if existing is None:
                raise
            logger.info(f"Conversation with {other_user_id} was created concurrently, reusing {existing.id}")
            return existing
        logger.info(f"Started conversation {conversation.id} between {user.id} and {other_user_id}")
        return conversation

    async def open_conversation(self, conversation_id: str) -> ConversationSession:
        async with self._lock:
            user = await self.current_user()
            if self._session is not None and self._session.conversation_id == conversation_id and self._session.is_open:
                return self._session
            await self._close_session()

            conversation = await self.conversation_db.get_conversation_by_id(conversation_id)
            if conversation is None:
                raise NotFoundError(f"Conversation {conversation_id} not found")
            if not conversation.involves(user.id):
                raise AuthError(f"User {user.id} is not a participant of conversation {conversation_id}")

            session = ConversationSession(
                conversation,
                user.id,
                self.conversation_db,
                self.message_db,
                self.user_db,
                self.feed,
                self.uploader,
                notifier=self.notifier,
                settings=self.settings,
            )
            await session.open()
            self._session = session
            return session

    async def close_conversation(self) -> None:
        async with self._lock:
            await self._close_session()

    async def delete_conversation(self, conversation_id: str) -> bool:
        """Delete a conversation with its messages and their attachment blobs."""
        user = await self.current_user()
        conversation = await self.conversation_db.get_conversation_by_id(conversation_id)
        if conversation is None:
            return False
        if not conversation.involves(user.id):
            raise AuthError(f"User {user.id} cannot delete conversation {conversation_id}")

        if self._session is not None and self._session.conversation_id == conversation_id:
            await self.close_conversation()

        messages = await self._retry(
            lambda: self.message_db.get_messages_by_conversation_id(conversation_id), f"load {conversation_id}"
        )
        for message in messages:
            if message.attachment is not None:
                try:
                    await self.uploader.delete(message.attachment)
                except ChatSyncError as exc:
                    logger.warning(f"Attachment blob {message.attachment.url} not deleted: {exc}")
            await self._retry(
                lambda message_id=message.id: self.message_db.delete_message(message_id), f"delete message {message.id}"
            )
        deleted = await self._retry(
            lambda: self.conversation_db.delete_conversation(conversation_id), f"delete conversation {conversation_id}"
        )
        logger.info(f"Deleted conversation {conversation_id} and {len(messages)} message(s)")
        return deleted

    async def search_users(self, query: str, limit: int = 5) -> list[User]:
        query = query.strip()
        if not query:
            return []
        user = await self.current_user()
        return await self.user_db.search_users(query, exclude_user_id=user.id, limit=limit)

    async def conversation_list(self) -> ConversationListAggregator:
        if self._conversation_list is None:
            user = await self.current_user()
            aggregator = ConversationListAggregator(
                user.id,
                self.conversation_db,
                self.user_db,
                self.feed,
                message_db=self.message_db,
                settings=self.settings,
            )
            await aggregator.start()
            self._conversation_list = aggregator
        return self._conversation_list

    async def register_push_token(self, push_token: str) -> PushToken:
        user = await self.current_user()
        return await self.push_token_db.save_push_token(
            PushToken(user_id=user.id, push_token=push_token, updated_at=get_current_timestamp())
        )

    async def shutdown(self) -> None:
        await self.close_conversation()
        aggregator, self._conversation_list = self._conversation_list, None
        if aggregator is not None:
            await aggregator.stop()
        logger.info("Chat sync controller shut down")

    async def _close_session(self) -> None:
        session, self._session = self._session, None
        if session is not None:
            await session.close()

    async def _retry(self, operation, description: str):
        return await retry_async(
            operation,
            attempts=self.settings.max_attempts,
            base_delay=self.settings.backoff_base,
            max_delay=self.settings.backoff_max,
            description=description,
        )
