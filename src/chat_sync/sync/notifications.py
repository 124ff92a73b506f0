"""
Push notifications for incoming messages.

Best effort: a missing token or a gateway failure is logged and reported as
'False', never raised, so notification trouble cannot break message handling.
"""

from loguru import logger

from chat_sync.backend.push import PushGateway
from chat_sync.config import SyncSettings, get_settings
from chat_sync.data_models.message import Message
from chat_sync.data_models.push_token import PushTokenDatabase
from chat_sync.errors import ChatSyncError


class PushNotifier:
    def __init__(
        self,
        gateway: PushGateway,
        token_db: PushTokenDatabase,
        settings: SyncSettings | None = None,
    ) -> None:
        self.gateway = gateway
        self.token_db = token_db
        self.settings = settings or get_settings()

    async def notify_incoming(self, message: Message, recipient_id: str) -> bool:
        try:
            token = await self.token_db.get_push_token(recipient_id)
        except ChatSyncError as exc:
            logger.warning(f"Push token lookup for {recipient_id} failed: {exc}")
            return False
        if token is None:
            logger.debug(f"No push token registered for {recipient_id}")
            return False

        try:
            await self.gateway.send(
                token.push_token,
                title=message.sender_name or self.settings.unknown_sender_name,
                body=message.preview(self.settings.media_placeholder),
                data={"conversation_id": message.conversation_id, "message_id": message.id, "type": "message"},
            )
        except ChatSyncError as exc:
            logger.warning(f"Push notification for message {message.id} failed: {exc}")
            return False
        logger.debug(f"Push notification sent to {recipient_id} for message {message.id}")
        return True
