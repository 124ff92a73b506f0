from chat_sync.backend.change_feed import ChangeFeed, ChangeFilter, Subscription
from chat_sync.backend.identity import CurrentUser, IdentityProvider
from chat_sync.backend.push import PushGateway
from chat_sync.backend.storage import ObjectStorage

__all__ = [
    "ChangeFeed",
    "ChangeFilter",
    "CurrentUser",
    "IdentityProvider",
    "ObjectStorage",
    "PushGateway",
    "Subscription",
]
