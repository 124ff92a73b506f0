"""
In-memory implementations of every backend collaborator.

They model the hosted backend closely enough to run the whole engine locally:
the databases emit 'ChangeEvent' notifications through an 'InMemoryChangeFeed'
on every write, exactly like the realtime service does for Postgres rows, and
the storage keeps blobs in a dict.

Each implementation records the calls the engine makes ('put_calls',
'status_writes', 'lookups', ...) and exposes simple failure injection hooks
('fail_*' queues of exceptions raised by the next calls), so behaviour under
transport failures can be exercised without a network.
"""

from collections import deque
from collections.abc import Iterable
from typing import Any

from loguru import logger

from chat_sync.backend.change_feed import ChangeFeed, ChangeFilter, ErrorHandler, EventHandler, Subscription
from chat_sync.backend.identity import CurrentUser, IdentityProvider
from chat_sync.backend.push import PushGateway
from chat_sync.backend.storage import ObjectStorage
from chat_sync.data_models.change_event import ChangeEvent, ChangeEventType
from chat_sync.data_models.conversation import Conversation, ConversationDatabase
from chat_sync.data_models.message import Message, MessageDatabase, MessageStatus, status_rank
from chat_sync.data_models.push_token import PushToken, PushTokenDatabase
from chat_sync.data_models.user import User, UserDatabase
from chat_sync.errors import AuthError, ChatSyncError, ConflictError, NetworkError, NotFoundError, StorageError


def _raise_injected(failures: deque[ChatSyncError]) -> None:
    if failures:
        raise failures.popleft()


class _InMemorySubscription(Subscription):
    def __init__(
        self,
        feed: "InMemoryChangeFeed",
        change_filter: ChangeFilter,
        on_event: EventHandler,
        on_error: ErrorHandler | None,
    ) -> None:
        self.feed = feed
        self.change_filter = change_filter
        self.on_event = on_event
        self.on_error = on_error
        self.active = True

    async def unsubscribe(self) -> None:
        self.feed.unsubscribe_calls += 1
        _raise_injected(self.feed.fail_unsubscribe)
        self.active = False
        self.feed.detach(self)


class InMemoryChangeFeed(ChangeFeed):
    """
    Realtime feed that dispatches published events to matching subscriptions.

    With 'auto_deliver' disabled, published events are held in 'pending' until
    'flush' is called, which lets callers reorder or duplicate them first.
    """

    def __init__(self, auto_deliver: bool = True) -> None:
        self.auto_deliver = auto_deliver
        self.pending: list[ChangeEvent] = []
        self.subscriptions: list[_InMemorySubscription] = []
        self.subscribe_calls = 0
        self.unsubscribe_calls = 0
        self.fail_subscribe: deque[ChatSyncError] = deque()
        self.fail_unsubscribe: deque[ChatSyncError] = deque()

    async def subscribe(
        self,
        change_filter: ChangeFilter,
        on_event: EventHandler,
        on_error: ErrorHandler | None = None,
    ) -> Subscription:
        self.subscribe_calls += 1
        _raise_injected(self.fail_subscribe)
        subscription = _InMemorySubscription(self, change_filter, on_event, on_error)
        self.subscriptions.append(subscription)
        return subscription

    def detach(self, subscription: _InMemorySubscription) -> None:
        if subscription in self.subscriptions:
            self.subscriptions.remove(subscription)

    def active_subscriptions(self, table: str | None = None) -> list[_InMemorySubscription]:
        return [s for s in self.subscriptions if s.active and (table is None or s.change_filter.table == table)]

    async def publish(self, event: ChangeEvent) -> None:
        if self.auto_deliver:
            await self.dispatch(event)
        else:
            self.pending.append(event)

    async def flush(self) -> None:
        events, self.pending = self.pending, []
        for event in events:
            await self.dispatch(event)

    async def dispatch(self, event: ChangeEvent) -> None:
        for subscription in list(self.subscriptions):
            if subscription.active and subscription.change_filter.matches(event):
                await subscription.on_event(event)

    async def break_channels(self, error: Exception | None = None) -> None:
        """Kill every open channel and report 'error' to its owner, as a dropped socket would."""
        for subscription in list(self.subscriptions):
            subscription.active = False
            self.detach(subscription)
            if subscription.on_error is not None:
                await subscription.on_error(error or NetworkError("Realtime channel closed"))


class InMemoryMessageDatabase(MessageDatabase):
    def __init__(self, feed: InMemoryChangeFeed | None = None) -> None:
        self.feed = feed
        self.messages: dict[str, Message] = {}
        self.status_writes: list[tuple[str, str, MessageStatus, list[str]]] = []
        self.fail_writes: deque[ChatSyncError] = deque()
        self.fail_reads: deque[ChatSyncError] = deque()
        self._next_id = 1

    async def _publish(self, event_type: ChangeEventType, row: dict[str, Any], old_row: dict[str, Any] | None = None):
        if self.feed is not None:
            await self.feed.publish(ChangeEvent(event_type=event_type, table="messages", row=row, old_row=old_row))

    async def create_message(self, message: Message) -> Message:
        _raise_injected(self.fail_writes)
        if message.correlation_key:
            for existing in self.messages.values():
                if existing.correlation_key == message.correlation_key:
                    return existing
        status = MessageStatus.SENT if message.status == MessageStatus.PENDING else message.status
        stored = message.model_copy(update={"id": str(self._next_id), "status": status, "sender_name": None})
        self._next_id += 1
        self.messages[stored.id] = stored
        await self._publish(ChangeEventType.INSERT, stored.to_row())
        return stored

    async def get_messages_by_conversation_id(self, conversation_id: str) -> list[Message]:
        _raise_injected(self.fail_reads)
        messages = [m for m in self.messages.values() if m.conversation_id == conversation_id]
        return sorted(messages, key=lambda m: m.sort_key())

    async def get_message_by_id(self, message_id: str) -> Message | None:
        _raise_injected(self.fail_reads)
        return self.messages.get(message_id)

    async def advance_status_for_recipient(
        self, conversation_id: str, recipient_id: str, status: MessageStatus
    ) -> list[Message]:
        _raise_injected(self.fail_writes)
        updated: list[Message] = []
        for message in list(self.messages.values()):
            if message.conversation_id != conversation_id or message.sender_id == recipient_id:
                continue
            if status_rank(message.status) >= status_rank(status):
                continue
            self.messages[message.id] = message.model_copy(update={"status": status})
            updated.append(self.messages[message.id])
        self.status_writes.append((conversation_id, recipient_id, status, [m.id for m in updated]))
        for message in updated:
            await self._publish(ChangeEventType.UPDATE, message.to_row())
        return updated

    async def delete_message(self, message_id: str) -> bool:
        _raise_injected(self.fail_writes)
        message = self.messages.pop(message_id, None)
        if message is None:
            return False
        await self._publish(ChangeEventType.DELETE, {}, message.to_row())
        return True


class InMemoryConversationDatabase(ConversationDatabase):
    def __init__(self, feed: InMemoryChangeFeed | None = None) -> None:
        self.feed = feed
        self.conversations: dict[str, Conversation] = {}
        self.fail_writes: deque[ChatSyncError] = deque()
        self.fail_reads: deque[ChatSyncError] = deque()

    async def _publish(self, event_type: ChangeEventType, row: dict[str, Any], old_row: dict[str, Any] | None = None):
        if self.feed is not None:
            await self.feed.publish(ChangeEvent(event_type=event_type, table="conversations", row=row, old_row=old_row))

    async def create_conversation(self, conversation: Conversation) -> Conversation:
        _raise_injected(self.fail_writes)
        for existing in self.conversations.values():
            if existing.participants == conversation.participants:
                raise ConflictError(f"Conversation {existing.id} already exists for this pair")
        self.conversations[conversation.id] = conversation
        await self._publish(ChangeEventType.INSERT, conversation.model_dump(mode="json"))
        return conversation

    async def get_conversation_by_id(self, conversation_id: str) -> Conversation | None:
        _raise_injected(self.fail_reads)
        return self.conversations.get(conversation_id)

    async def get_conversation_by_participants(self, user_id: str, other_user_id: str) -> Conversation | None:
        _raise_injected(self.fail_reads)
        pair = frozenset((user_id, other_user_id))
        return next((c for c in self.conversations.values() if c.participants == pair), None)

    async def get_conversations_by_user_id(self, user_id: str) -> list[Conversation]:
        _raise_injected(self.fail_reads)
        conversations = [c for c in self.conversations.values() if c.involves(user_id)]
        return sorted(conversations, key=lambda c: c.sort_timestamp, reverse=True)

    async def update_conversation(self, conversation: Conversation) -> Conversation:
        _raise_injected(self.fail_writes)
        if conversation.id not in self.conversations:
            raise NotFoundError(f"Conversation {conversation.id} not found")
        self.conversations[conversation.id] = conversation
        await self._publish(ChangeEventType.UPDATE, conversation.model_dump(mode="json"))
        return conversation

    async def delete_conversation(self, conversation_id: str) -> bool:
        _raise_injected(self.fail_writes)
        conversation = self.conversations.pop(conversation_id, None)
        if conversation is None:
            return False
        await self._publish(ChangeEventType.DELETE, {}, conversation.model_dump(mode="json"))
        return True


class InMemoryUserDatabase(UserDatabase):
    def __init__(self, users: Iterable[User] = ()) -> None:
        self.users: dict[str, User] = {user.id: user for user in users}
        self.lookups: list[list[str]] = []
        self.fail_reads: deque[ChatSyncError] = deque()

    def add_user(self, user: User) -> User:
        self.users[user.id] = user
        return user

    async def get_user_by_id(self, user_id: str) -> User | None:
        _raise_injected(self.fail_reads)
        return self.users.get(user_id)

    async def get_users_by_ids(self, user_ids: list[str]) -> list[User]:
        _raise_injected(self.fail_reads)
        self.lookups.append(list(user_ids))
        return [self.users[user_id] for user_id in user_ids if user_id in self.users]

    async def search_users(self, query: str, exclude_user_id: str, limit: int) -> list[User]:
        _raise_injected(self.fail_reads)
        needle = query.lower()
        matches = [u for u in self.users.values() if u.id != exclude_user_id and needle in u.username.lower()]
        return sorted(matches, key=lambda u: u.username.lower())[:limit]


class InMemoryPushTokenDatabase(PushTokenDatabase):
    def __init__(self) -> None:
        self.tokens: dict[str, PushToken] = {}

    async def save_push_token(self, token: PushToken) -> PushToken:
        self.tokens[token.user_id] = token
        return token

    async def get_push_token(self, user_id: str) -> PushToken | None:
        return self.tokens.get(user_id)


class InMemoryObjectStorage(ObjectStorage):
    def __init__(self, public_base_url: str = "memory://chat-media") -> None:
        self.public_base_url = public_base_url.rstrip("/")
        self.objects: dict[str, tuple[bytes, str]] = {}
        self.put_calls: list[str] = []
        self.delete_calls: list[str] = []
        self.fail_put: deque[ChatSyncError] = deque()
        self.fail_public_url: deque[ChatSyncError] = deque()

    async def put(self, path: str, data: bytes, content_type: str, upsert: bool = True) -> str:
        self.put_calls.append(path)
        _raise_injected(self.fail_put)
        if not upsert and path in self.objects:
            raise StorageError(f"Object already exists at {path}")
        self.objects[path] = (data, content_type)
        return path

    async def get_public_url(self, path: str) -> str:
        _raise_injected(self.fail_public_url)
        return f"{self.public_base_url}/{path}"

    async def delete(self, path: str) -> bool:
        self.delete_calls.append(path)
        return self.objects.pop(path, None) is not None


class InMemoryPushGateway(PushGateway):
    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.fail_send: deque[ChatSyncError] = deque()

    async def send(self, token: str, title: str, body: str, data: dict[str, Any]) -> None:
        _raise_injected(self.fail_send)
        self.sent.append({"to": token, "title": title, "body": body, "data": data})


class StaticIdentityProvider(IdentityProvider):
    def __init__(self, user: CurrentUser | None = None) -> None:
        self.user = user

    async def get_current_user(self) -> CurrentUser:
        if self.user is None:
            raise AuthError("No user is signed in")
        return self.user

    def sign_out(self) -> None:
        logger.info("Signed out")
        self.user = None
