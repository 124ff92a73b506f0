from chat_sync.data_models.change_event import ChangeEvent, ChangeEventType
from chat_sync.data_models.conversation import Conversation, ConversationDatabase
from chat_sync.data_models.message import (
    Attachment,
    AttachmentMetadata,
    AttachmentType,
    Message,
    MessageDatabase,
    MessageStatus,
    status_rank,
)
from chat_sync.data_models.push_token import PushToken, PushTokenDatabase
from chat_sync.data_models.user import User, UserDatabase

__all__ = [
    "Attachment",
    "AttachmentMetadata",
    "AttachmentType",
    "ChangeEvent",
    "ChangeEventType",
    "Conversation",
    "ConversationDatabase",
    "Message",
    "MessageDatabase",
    "MessageStatus",
    "status_rank",
    "PushToken",
    "PushTokenDatabase",
    "User",
    "UserDatabase",
]
