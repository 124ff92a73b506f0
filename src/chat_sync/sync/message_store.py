"""
Ordered, deduplicated local cache of one conversation's messages.

'MessageStore' is the single owner of the message list a conversation view
renders. It merges three sources into one sequence ordered by
('created_at', 'id'):

    optimistic entries   'append_optimistic' adds a 'LocalEcho' with status
                         'pending' and no id, keyed by a correlation key.
    server echoes        'reconcile_remote' replaces the matching local echo in
                         place, or inserts the message at its sorted position.
    status updates       'apply_status_update' / 'apply_status_batch' advance
                         status monotonically.

Every merge is idempotent: replaying an insert or an update leaves the store
unchanged and publishes nothing. Removed ids are remembered, so a late or
replayed insert never brings a deleted message back, and a status update that
arrives before its row is held until the row shows up.

Each effective change publishes exactly one immutable snapshot, so a batch of
status updates is observed as one change.
"""

import bisect
from collections.abc import AsyncGenerator, Callable, Iterable
from datetime import timedelta

from loguru import logger
from pydantic import BaseModel

from chat_sync.data_models.message import Message, MessageStatus
from chat_sync.errors import ChatValidationError, ConflictError
from chat_sync.sync.delivery import DeliveryStateMachine
from chat_sync.utils.database import generate_uid
from chat_sync.utils.observable import Observable

Snapshot = tuple[Message, ...]


class LocalEcho(BaseModel):
    """
    An optimistic message waiting for its server echo.

    'failed' is set when the write-through gave up; the entry stays visible as
    'pending' so the UI can offer a retry.
    """

    correlation_key: str
    message: Message
    failed: bool = False


class MessageStore:
    """
    Local message list for one conversation.

    Attributes:
        conversation_id: The conversation every stored message belongs to.
        echo_match_window: Maximum distance between the timestamps of a local
            echo and a server message for the content-based fallback match.
    """

    def __init__(
        self,
        conversation_id: str,
        delivery: DeliveryStateMachine | None = None,
        echo_match_window: timedelta = timedelta(seconds=30),
    ) -> None:
        self.conversation_id = conversation_id
        self.delivery = delivery or DeliveryStateMachine()
        self.echo_match_window = echo_match_window
        self._entries: list[Message] = []
        self._echoes: dict[str, LocalEcho] = {}
        self._deleted: set[str] = set()
        self._early_status: dict[str, MessageStatus] = {}
        self._snapshots: Observable[Snapshot] = Observable(())

    def __len__(self) -> int:
        return len(self._entries)

    def snapshot(self) -> Snapshot:
        return self._snapshots.value

    def subscribe(self, callback: Callable[[Snapshot], None]) -> Callable[[], None]:
        return self._snapshots.subscribe(callback)

    def watch(self) -> AsyncGenerator[Snapshot, None]:
        return self._snapshots.watch()

    def get(self, message_id: str) -> Message | None:
        index = self._index_of_id(message_id)
        return None if index is None else self._entries[index]

    def is_deleted(self, message_id: str) -> bool:
        return message_id in self._deleted

    def echo(self, correlation_key: str) -> LocalEcho | None:
        return self._echoes.get(correlation_key)

    @property
    def pending_echoes(self) -> list[LocalEcho]:
        return list(self._echoes.values())

    def is_failed(self, message: Message) -> bool:
        echo = self._echoes.get(message.correlation_key or "")
        return message.id is None and echo is not None and echo.failed

    def append_optimistic(self, draft: Message) -> str:
        """Show 'draft' immediately as 'pending' and return its correlation key."""
        self._check_conversation(draft)
        key = draft.correlation_key or generate_uid()
        if key in self._echoes:
            return key
        message = draft.model_copy(update={"id": None, "status": MessageStatus.PENDING, "correlation_key": key})
        self._echoes[key] = LocalEcho(correlation_key=key, message=message)
        self._insert_sorted(message)
        self._publish()
        return key

    def reconcile_remote(self, server_message: Message) -> Message:
        """Merge a server-confirmed message and return the stored version."""
        changed, stored = self._reconcile(server_message)
        if changed:
            self._publish()
        return stored

    def load(self, messages: Iterable[Message]) -> int:
        """Merge a fetched history in one state change. Returns the number of entries that changed."""
        changed = sum(1 for message in messages if self._reconcile(message)[0])
        if changed:
            self._publish()
        return changed

    def apply_status_update(self, message_id: str, new_status: MessageStatus) -> bool:
        changed = self._apply_status(message_id, new_status)
        if changed:
            self._publish()
        return changed

    def apply_status_batch(self, message_ids: Iterable[str], new_status: MessageStatus) -> list[str]:
        changed = [message_id for message_id in message_ids if self._apply_status(message_id, new_status)]
        if changed:
            self._publish()
        return changed

    def remove(self, message_id: str) -> Message | None:
        """Delete a confirmed message locally. Removing an absent id is a no-op."""
        self._deleted.add(message_id)
        self._early_status.pop(message_id, None)
        index = self._index_of_id(message_id)
        if index is None:
            return None
        removed = self._entries.pop(index)
        self._publish()
        return removed

    def retain(self, message_ids: Iterable[str], candidates: Iterable[str]) -> list[str]:
        """
        Remove every id in 'candidates' that is missing from 'message_ids', in one state change.

        Used after a full history fetch: 'message_ids' is what the server still
        has and 'candidates' are the confirmed ids that were stored before the
        fetch started, so messages that arrived in the meantime are kept.
        """
        keep = set(message_ids)
        stale = [message_id for message_id in candidates if message_id not in keep]
        removed = []
        for message_id in stale:
            self._deleted.add(message_id)
            index = self._index_of_id(message_id)
            if index is not None:
                self._entries.pop(index)
                removed.append(message_id)
        if removed:
            logger.info(f"{self.conversation_id}: dropped {len(removed)} message(s) deleted on the server")
            self._publish()
        return removed

    def mark_failed(self, correlation_key: str, failed: bool = True) -> None:
        echo = self._echoes.get(correlation_key)
        if echo is None:
            logger.debug(f"No local echo {correlation_key} to flag, it was already reconciled")
            return
        echo.failed = failed
        self._publish()

    def discard_echo(self, correlation_key: str) -> bool:
        if not self._drop_echo(correlation_key):
            return False
        self._publish()
        return True

    def _reconcile(self, incoming: Message) -> tuple[bool, Message]:
        if incoming.id is None:
            raise ChatValidationError("Server messages must carry an id")
        self._check_conversation(incoming)

        if incoming.id in self._deleted:
            logger.warning(f"Ignoring message {incoming.id}, it was already deleted")
            echo = self._match_echo(incoming)
            return (echo is not None and self._drop_echo(echo.correlation_key)), incoming

        early = self._early_status.pop(incoming.id, None)
        if early is not None and self.delivery.can_transition(incoming.status, early):
            incoming = incoming.model_copy(update={"status": early})

        index = self._index_of_id(incoming.id)
        if index is not None:
            current = self._entries[index]
            merged = self._merge(current, incoming)
            if merged == current:
                return False, current
            self._replace(index, merged)
            return True, merged

        echo = self._match_echo(incoming)
        if echo is not None:
            del self._echoes[echo.correlation_key]
            merged = self._merge(echo.message, incoming)
            echo_index = self._index_of_echo(echo.correlation_key)
            if echo_index is None:
                self._insert_sorted(merged)
            else:
                self._replace(echo_index, merged)
            logger.debug(f"Local echo {echo.correlation_key} confirmed as message {incoming.id}")
            return True, merged

        self._insert_sorted(incoming)
        return True, incoming

    def _merge(self, current: Message, incoming: Message) -> Message:
        try:
            status = self.delivery.advance(current.status, incoming.status)
        except ConflictError as exc:
            logger.warning(f"Ignoring status anomaly on message {incoming.id}: {exc}")
            status = current.status
        return incoming.model_copy(
            update={
                "status": status,
                "sender_name": incoming.sender_name or current.sender_name,
                "correlation_key": incoming.correlation_key or current.correlation_key,
            }
        )

    def _apply_status(self, message_id: str, new_status: MessageStatus) -> bool:
        if message_id in self._deleted:
            logger.debug(f"Status update for deleted message {message_id} ignored")
            return False
        index = self._index_of_id(message_id)
        if index is None:
            held = self._early_status.get(message_id)
            if held is None or self.delivery.can_transition(held, new_status):
                self._early_status[message_id] = new_status
            logger.debug(f"Status {new_status} for unknown message {message_id} held until its row arrives")
            return False
        current = self._entries[index]
        if current.status == new_status:
            return False
        if not self.delivery.can_transition(current.status, new_status):
            logger.warning(f"Ignoring status anomaly on message {message_id}: {current.status} -> {new_status}")
            return False
        self._entries[index] = current.model_copy(update={"status": new_status})
        return True

    def _drop_echo(self, correlation_key: str) -> bool:
        echo = self._echoes.pop(correlation_key, None)
        if echo is None:
            return False
        index = self._index_of_echo(correlation_key)
        if index is not None:
            self._entries.pop(index)
        return True

    def _match_echo(self, incoming: Message) -> LocalEcho | None:
        if incoming.correlation_key:
            echo = self._echoes.get(incoming.correlation_key)
            if echo is not None and echo.message.sender_id == incoming.sender_id:
                return echo
            # A foreign correlation key belongs to another client's optimistic message.
            return None
        for echo in self._echoes.values():
            draft = echo.message
            if (
                draft.sender_id == incoming.sender_id
                and _same_content(draft, incoming)
                and abs(draft.created_at - incoming.created_at) <= self.echo_match_window
            ):
                return echo
        return None

    def _check_conversation(self, message: Message) -> None:
        if message.conversation_id != self.conversation_id:
            raise ChatValidationError(
                f"Message for conversation {message.conversation_id} offered to store of {self.conversation_id}"
            )

    def _index_of_id(self, message_id: str) -> int | None:
        return next((i for i, m in enumerate(self._entries) if m.id == message_id), None)

    def _index_of_echo(self, correlation_key: str) -> int | None:
        return next(
            (i for i, m in enumerate(self._entries) if m.id is None and m.correlation_key == correlation_key),
            None,
        )

    def _insert_sorted(self, message: Message) -> None:
        bisect.insort(self._entries, message, key=lambda m: m.sort_key())

    def _replace(self, index: int, message: Message) -> None:
        self._entries[index] = message
        before = self._entries[index - 1] if index > 0 else None
        after = self._entries[index + 1] if index + 1 < len(self._entries) else None
        in_order = (before is None or before.sort_key() <= message.sort_key()) and (
            after is None or message.sort_key() <= after.sort_key()
        )
        if not in_order:
            self._entries.pop(index)
            self._insert_sorted(message)

    def _publish(self) -> None:
        self._snapshots.publish(tuple(self._entries))


def _same_content(draft: Message, incoming: Message) -> bool:
    draft_url = draft.attachment.url if draft.attachment else None
    incoming_url = incoming.attachment.url if incoming.attachment else None
    return (draft.text or "").strip() == (incoming.text or "").strip() and draft_url == incoming_url
