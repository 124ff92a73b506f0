from datetime import datetime, timedelta, timezone

import pytest

from chat_sync.backend.identity import CurrentUser
from chat_sync.backend.in_memory import (
    InMemoryChangeFeed,
    InMemoryConversationDatabase,
    InMemoryMessageDatabase,
    InMemoryObjectStorage,
    InMemoryPushGateway,
    InMemoryPushTokenDatabase,
    InMemoryUserDatabase,
    StaticIdentityProvider,
)
from chat_sync.config import SyncSettings
from chat_sync.controller import ChatSyncController
from chat_sync.data_models.conversation import Conversation
from chat_sync.data_models.message import Message, MessageStatus
from chat_sync.data_models.user import User
from chat_sync.sync.attachments import AttachmentUploader

BASE_TIME = datetime(2024, 3, 5, 12, 0, tzinfo=timezone.utc)


def make_message(
    message_id: str | None = "1",
    conversation_id: str = "c1",
    sender_id: str = "alice",
    text: str | None = "hello",
    seconds: int = 0,
    status: MessageStatus = MessageStatus.SENT,
    correlation_key: str | None = None,
) -> Message:
    return Message(
        id=message_id,
        conversation_id=conversation_id,
        sender_id=sender_id,
        text=text,
        created_at=BASE_TIME + timedelta(seconds=seconds),
        status=status,
        correlation_key=correlation_key,
    )


@pytest.fixture
def settings() -> SyncSettings:
    return SyncSettings(
        _env_file=None,
        backoff_base=0,
        backoff_max=0,
        refetch_interval=0,
        max_attempts=3,
        resubscribe_attempts=3,
    )


@pytest.fixture
def feed() -> InMemoryChangeFeed:
    return InMemoryChangeFeed()


@pytest.fixture
def message_db(feed) -> InMemoryMessageDatabase:
    return InMemoryMessageDatabase(feed)


@pytest.fixture
def conversation_db(feed) -> InMemoryConversationDatabase:
    return InMemoryConversationDatabase(feed)


@pytest.fixture
def user_db() -> InMemoryUserDatabase:
    return InMemoryUserDatabase(
        [
            User(id="alice", username="Alice", email="alice@example.com"),
            User(id="bob", username="Bob", email="bob@example.com", profile_photo="https://img.example.com/bob.png"),
            User(id="carol", username="Carol"),
            User(id="bobby", username="Bobby Tables"),
        ]
    )


@pytest.fixture
def push_token_db() -> InMemoryPushTokenDatabase:
    return InMemoryPushTokenDatabase()


@pytest.fixture
def storage() -> InMemoryObjectStorage:
    return InMemoryObjectStorage()


@pytest.fixture
def push_gateway() -> InMemoryPushGateway:
    return InMemoryPushGateway()


@pytest.fixture
def uploader(storage, settings) -> AttachmentUploader:
    return AttachmentUploader(storage, settings)


@pytest.fixture
async def conversation(conversation_db) -> Conversation:
    return await conversation_db.create_conversation(
        Conversation(id="c1", participant_a="alice", participant_b="bob", created_at=BASE_TIME, updated_at=BASE_TIME)
    )


def build_controller(user_id, feed, conversation_db, message_db, user_db, push_token_db, storage, push_gateway, settings):
    return ChatSyncController(
        StaticIdentityProvider(CurrentUser(id=user_id)),
        conversation_db,
        message_db,
        user_db,
        push_token_db,
        feed,
        storage,
        push_gateway=push_gateway,
        settings=settings,
    )


@pytest.fixture
async def alice(feed, conversation_db, message_db, user_db, push_token_db, storage, push_gateway, settings):
    controller = build_controller(
        "alice", feed, conversation_db, message_db, user_db, push_token_db, storage, push_gateway, settings
    )
    yield controller
    await controller.shutdown()


@pytest.fixture
async def bob(feed, conversation_db, message_db, user_db, push_token_db, storage, push_gateway, settings):
    controller = build_controller(
        "bob", feed, conversation_db, message_db, user_db, push_token_db, storage, push_gateway, settings
    )
    yield controller
    await controller.shutdown()
