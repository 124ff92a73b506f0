from chat_sync.sync.attachments import AttachmentUploader
from chat_sync.sync.channel import ChannelState, RealtimeChannel
from chat_sync.sync.conversation_list import ConversationListAggregator, ConversationPreview
from chat_sync.sync.delivery import DeliveryStateMachine, Receipt
from chat_sync.sync.message_store import LocalEcho, MessageStore
from chat_sync.sync.notifications import PushNotifier
from chat_sync.sync.reconciler import RealtimeReconciler
from chat_sync.sync.session import AttachmentDraft, ConversationSession

__all__ = [
    "AttachmentDraft",
    "AttachmentUploader",
    "ChannelState",
    "ConversationListAggregator",
    "ConversationPreview",
    "ConversationSession",
    "DeliveryStateMachine",
    "LocalEcho",
    "MessageStore",
    "PushNotifier",
    "RealtimeChannel",
    "RealtimeReconciler",
    "Receipt",
]
