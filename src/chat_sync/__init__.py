"""
Client-side synchronization engine for one-to-one chat.

Wire the backend collaborators into the facade and drive everything from it:

    from chat_sync import ChatSyncController

    controller = ChatSyncController(identity, conversation_db, message_db, user_db, push_token_db, feed, storage)
    session = await controller.open_conversation(conversation_id)
    await session.send("hello")

In-memory backends for local runs and tests live in 'chat_sync.backend.in_memory'.
Call 'configure_logging()' once at startup to install the package log format.
"""

from chat_sync.config import SyncSettings, get_settings
from chat_sync.controller import ChatSyncController
from chat_sync.sync.conversation_list import ConversationListAggregator, ConversationPreview
from chat_sync.sync.session import AttachmentDraft, ConversationSession
from chat_sync.utils.logging import configure_logging

__all__ = [
    "AttachmentDraft",
    "ChatSyncController",
    "ConversationListAggregator",
    "ConversationPreview",
    "ConversationSession",
    "SyncSettings",
    "configure_logging",
    "get_settings",
]
