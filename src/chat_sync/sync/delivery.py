r"""
Delivery state machine.

Per-message status lifecycle:

    pending -> sent -> delivered -> read
        \________\__________\________\____> deleted   (sender only, terminal)

'pending' is the optimistic local state before the server round trip. 'sent'
follows a successful write. 'delivered' and 'read' are set by the recipient's
client, in batches scoped to a whole conversation: one write covers every
message the recipient has not yet acknowledged, instead of one round trip per
message.

Status only ever moves forward. A backward move is a 'ConflictError': the
store logs it as an anomaly and keeps the current status, which is what makes
replayed and out-of-order status events harmless.
"""

from collections.abc import Iterable
from enum import StrEnum

from chat_sync.data_models.message import Message, MessageStatus, status_rank
from chat_sync.errors import AuthError, ConflictError


class Receipt(StrEnum):
    """User-visible delivery indicator, derived per viewer and never stored."""

    NONE = "none"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"


class DeliveryStateMachine:
    def can_transition(self, current: MessageStatus, new: MessageStatus) -> bool:
        if current == MessageStatus.DELETED:
            return False
        if new == MessageStatus.DELETED:
            return True
        return status_rank(new) > status_rank(current)

    def advance(self, current: MessageStatus, new: MessageStatus) -> MessageStatus:
        """Return the status after applying 'new'. Re-applying the current status is a no-op."""
        if current == new and current != MessageStatus.DELETED:
            return current
        if not self.can_transition(current, new):
            raise ConflictError(f"Status cannot move from {current} to {new}")
        return new

    def authorize_delete(self, message: Message, actor_id: str) -> None:
        if message.sender_id != actor_id:
            raise AuthError(f"User {actor_id} cannot delete message {message.id} sent by {message.sender_id}")

    def receipt_for(self, message: Message, viewer_id: str) -> Receipt:
        if message.sender_id != viewer_id:
            return Receipt.NONE
        match message.status:
            case MessageStatus.SENT:
                return Receipt.SENT
            case MessageStatus.DELIVERED:
                return Receipt.DELIVERED
            case MessageStatus.READ:
                return Receipt.READ
            case _:
                return Receipt.NONE

    def select_for_receipt(self, messages: Iterable[Message], viewer_id: str, target: MessageStatus) -> list[str]:
        """Ids a batched 'delivered'/'read' write by 'viewer_id' would advance."""
        if target not in (MessageStatus.DELIVERED, MessageStatus.READ):
            raise ValueError(f"Receipts only advance to delivered or read, not {target}")
        return [
            message.id
            for message in messages
            if message.id is not None
            and message.sender_id != viewer_id
            and status_rank(MessageStatus.SENT) <= status_rank(message.status) < status_rank(target)
        ]
