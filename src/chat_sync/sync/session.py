"""
Conversation session.

'ConversationSession' owns the 'MessageStore' and 'RealtimeReconciler' of one
conversation for the signed-in user, and is the only object a conversation
view talks to. It exposes the message list as observable snapshots and the
user actions as coroutines:

    open                   subscribe, fetch history, mark everything read.
    send                   upload attachments, show optimistic entries,
                           write them through and update the preview.
    retry / discard        second chance for a send that failed.
    delete_message         delete one of the user's own messages and its blob.
    mark_conversation_read batched read receipt.

Send pipeline: attachments are uploaded first, so a failed upload raises
'UploadError' without leaving anything in the list. Each attachment becomes
its own message with the text riding on the first one. Every message is
appended as a 'pending' local echo keyed by a correlation key, then inserted
with bounded retries. When the retries are exhausted the echo stays visible,
is flagged as failed, and 'NetworkError' is raised; 'retry' writes the same
row again, which the message database de-duplicates by correlation key.
"""

import asyncio
from collections.abc import AsyncGenerator, Callable, Iterable
from datetime import timedelta

from loguru import logger
from pydantic import BaseModel

from chat_sync.backend.change_feed import ChangeFeed
from chat_sync.config import SyncSettings, get_settings
from chat_sync.data_models.conversation import Conversation, ConversationDatabase
from chat_sync.data_models.message import Attachment, Message, MessageDatabase, MessageStatus
from chat_sync.data_models.user import UserDatabase
from chat_sync.errors import AuthError, ChatSyncError, ChatValidationError, NetworkError
from chat_sync.sync.attachments import AttachmentUploader
from chat_sync.sync.delivery import DeliveryStateMachine, Receipt
from chat_sync.sync.message_store import MessageStore, Snapshot
from chat_sync.sync.notifications import PushNotifier
from chat_sync.sync.reconciler import RealtimeReconciler
from chat_sync.utils.database import generate_uid
from chat_sync.utils.retry import retry_async
from chat_sync.utils.time import get_current_timestamp


class AttachmentDraft(BaseModel):
    """
    A file picked by the user, not uploaded yet.

    Attributes:
        data: The raw bytes.
        content_type: MIME type, which also decides the attachment type.
        name: Original file name, if the picker provided one.
        duration: Length in seconds for voice notes and videos.
    """

    data: bytes
    content_type: str
    name: str | None = None
    duration: float | None = None


class ConversationSession:
    def __init__(
        self,
        conversation: Conversation,
        viewer_id: str,
        conversation_db: ConversationDatabase,
        message_db: MessageDatabase,
        user_db: UserDatabase,
        feed: ChangeFeed,
        uploader: AttachmentUploader,
        notifier: PushNotifier | None = None,
        settings: SyncSettings | None = None,
    ) -> None:
        if not conversation.involves(viewer_id):
            raise AuthError(f"User {viewer_id} is not a participant of conversation {conversation.id}")
        self.conversation = conversation
        self.viewer_id = viewer_id
        self.conversation_db = conversation_db
        self.message_db = message_db
        self.uploader = uploader
        self.notifier = notifier
        self.settings = settings or get_settings()
        self.delivery = DeliveryStateMachine()
        self.store = MessageStore(
            conversation.id,
            delivery=self.delivery,
            echo_match_window=timedelta(seconds=self.settings.echo_match_window_seconds),
        )
        self.reconciler = RealtimeReconciler(
            conversation.id,
            viewer_id,
            self.store,
            feed,
            message_db,
            user_db,
            settings=self.settings,
            on_remote_insert=self._on_remote_insert,
        )
        self._open = False
        self._tasks: set[asyncio.Task[None]] = set()
        self._delivered_scheduled = False

    @property
    def conversation_id(self) -> str:
        return self.conversation.id

    @property
    def is_open(self) -> bool:
        return self._open

    async def open(self) -> None:
        if self._open:
            return
        self._open = True
        logger.info(f"Opening conversation {self.conversation_id} for {self.viewer_id}")
        try:
            await self.reconciler.start()
            await self.reconciler.refetch()
        except ChatSyncError:
            await self.close()
            raise
        try:
            await self.mark_conversation_read()
        except ChatSyncError as exc:
            logger.warning(f"Read receipts for {self.conversation_id} not written: {exc}")

    async def close(self) -> None:
        self._open = False
        tasks, self._tasks = self._tasks, set()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await self.reconciler.stop()
        logger.info(f"Closed conversation {self.conversation_id}")

    async def settle(self) -> None:
        """Wait for receipts and notifications scheduled by incoming messages."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))

    def snapshot(self) -> Snapshot:
        return self.store.snapshot()

    def subscribe(self, callback: Callable[[Snapshot], None]) -> Callable[[], None]:
        return self.store.subscribe(callback)

    def watch(self) -> AsyncGenerator[Snapshot, None]:
        return self.store.watch()

    def receipt_for(self, message: Message) -> Receipt:
        return self.delivery.receipt_for(message, self.viewer_id)

    def is_failed(self, message: Message) -> bool:
        return self.store.is_failed(message)

    async def send(self, text: str | None = None, attachments: Iterable[AttachmentDraft] = ()) -> list[Message]:
        """Send 'text' and/or 'attachments'. Returns the confirmed messages in order."""
        text = text.strip() if text else None
        drafts = list(attachments)
        if not text and not drafts:
            raise ChatValidationError("A message needs text or at least one attachment")

        uploaded: list[Attachment] = []
        for draft in drafts:
            uploaded.append(
                await self.uploader.upload(draft.data, self.conversation_id, draft.content_type, draft.name, draft.duration)
            )

        created_at = get_current_timestamp()
        contents: list[tuple[str | None, Attachment | None]] = [(text, None)] if not uploaded else []
        contents += [(text if i == 0 else None, attachment) for i, attachment in enumerate(uploaded)]
        messages = [
            Message(
                conversation_id=self.conversation_id,
                sender_id=self.viewer_id,
                text=body,
                attachment=attachment,
                created_at=created_at,
                correlation_key=generate_uid(),
            )
            for body, attachment in contents
        ]
        messages = await self.reconciler.resolve_sender_names(messages)
        keys = [self.store.append_optimistic(message) for message in messages]
        logger.info(f"Sending {len(keys)} message(s) to {self.conversation_id}")

        confirmed: list[Message] = []
        failures: list[NetworkError] = []
        for key in keys:
            try:
                confirmed.append(await self._write_through(key))
            except NetworkError as exc:
                failures.append(exc)
        if failures:
            raise NetworkError(f"{len(failures)} of {len(keys)} message(s) could not be sent: {failures[-1]}")
        return confirmed

    async def retry(self, correlation_key: str) -> Message | None:
        """Write a failed message again. Returns None when it was confirmed in the meantime."""
        if self.store.echo(correlation_key) is None:
            logger.debug(f"Nothing to retry for {correlation_key}, already confirmed or discarded")
            return None
        self.store.mark_failed(correlation_key, failed=False)
        return await self._write_through(correlation_key)

    async def discard(self, correlation_key: str) -> bool:
        """Drop an unconfirmed message and the blob uploaded for it."""
        echo = self.store.echo(correlation_key)
        if echo is None or not self.store.discard_echo(correlation_key):
            return False
        if echo.message.attachment is not None:
            await self._delete_blob(echo.message.attachment)
        return True

    async def delete_message(self, message_id: str) -> bool:
        """Delete one of the viewer's own messages. Returns False when it was already gone."""
        message = self.store.get(message_id) or await self._retry(
            lambda: self.message_db.get_message_by_id(message_id), f"load message {message_id}"
        )
        if message is None:
            logger.debug(f"Message {message_id} already deleted")
            return False
        self.delivery.authorize_delete(message, self.viewer_id)

        latest = self._latest_confirmed()
        removed = await self._retry(lambda: self.message_db.delete_message(message_id), f"delete message {message_id}")
        self.store.remove(message_id)
        if not removed:
            logger.debug(f"Message {message_id} was deleted elsewhere")
            return False

        if message.attachment is not None:
            await self._delete_blob(message.attachment)
        if latest is not None and latest.id == message_id:
            await self._update_preview(self._latest_confirmed())
        logger.info(f"Deleted message {message_id} from {self.conversation_id}")
        return True

    async def mark_conversation_read(self) -> list[str]:
        return await self._mark(MessageStatus.READ)

    async def mark_delivered(self) -> list[str]:
        return await self._mark(MessageStatus.DELIVERED)

    async def _mark(self, status: MessageStatus) -> list[str]:
        ids = self.delivery.select_for_receipt(self.store.snapshot(), self.viewer_id, status)
        if not ids:
            return []
        # Applied locally first: the per-row change events of the write then merge as no-ops.
        self.store.apply_status_batch(ids, status)
        await self._retry(
            lambda: self.message_db.advance_status_for_recipient(self.conversation_id, self.viewer_id, status),
            f"mark {self.conversation_id} {status}",
        )
        logger.debug(f"Marked {len(ids)} message(s) in {self.conversation_id} as {status}")
        return ids

    async def _write_through(self, correlation_key: str) -> Message:
        echo = self.store.echo(correlation_key)
        if echo is None:
            raise ChatValidationError(f"No pending message for {correlation_key}")
        try:
            created = await self._retry(lambda: self.message_db.create_message(echo.message), f"send {correlation_key}")
        except ChatSyncError:
            self.store.mark_failed(correlation_key)
            raise
        stored = self.store.reconcile_remote(created)
        await self._update_preview(stored)
        return stored

    async def _update_preview(self, message: Message | None) -> None:
        preview = message.preview(self.settings.media_placeholder) if message is not None else ""
        try:
            current = await self.conversation_db.get_conversation_by_id(self.conversation_id) or self.conversation
            self.conversation = await self.conversation_db.update_conversation(
                current.model_copy(update={"last_message": preview, "updated_at": get_current_timestamp()})
            )
        except ChatSyncError as exc:
            logger.warning(f"Preview of {self.conversation_id} not updated: {exc}")

    async def _delete_blob(self, attachment: Attachment) -> None:
        try:
            await self.uploader.delete(attachment)
        except ChatSyncError as exc:
            logger.warning(f"Attachment blob {attachment.url} not deleted: {exc}")

    def _latest_confirmed(self) -> Message | None:
        return next((m for m in reversed(self.store.snapshot()) if m.is_confirmed), None)

    async def _on_remote_insert(self, message: Message) -> None:
        if self.notifier is not None:
            self._spawn(self.notifier.notify_incoming(message, self.viewer_id))
        # One receipt write covers every insert observed before it runs.
        if not self._delivered_scheduled:
            self._delivered_scheduled = True
            self._spawn(self._deliver_receipts())

    async def _deliver_receipts(self) -> None:
        self._delivered_scheduled = False
        try:
            await self.mark_delivered()
        except ChatSyncError as exc:
            logger.warning(f"Delivery receipts for {self.conversation_id} not written: {exc}")

    def _spawn(self, coroutine) -> None:
        task = asyncio.create_task(coroutine)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _retry(self, operation, description: str):
        return await retry_async(
            operation,
            attempts=self.settings.max_attempts,
            base_delay=self.settings.backoff_base,
            max_delay=self.settings.backoff_max,
            description=description,
        )
