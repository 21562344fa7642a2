# tokenauth Services
from tokenauth.services.codec import AccessClaims, CredentialCodec
from tokenauth.services.notifier import LogNotifier, Notifier, WebhookNotifier
from tokenauth.services.rotation import RotationEngine, TokenPair
from tokenauth.services.token_store import (
    InMemoryTokenStore,
    RefreshRecord,
    SqlTokenStore,
    TokenStore,
)

__all__ = [
    "AccessClaims",
    "CredentialCodec",
    "InMemoryTokenStore",
    "LogNotifier",
    "Notifier",
    "RefreshRecord",
    "RotationEngine",
    "SqlTokenStore",
    "TokenPair",
    "TokenStore",
    "WebhookNotifier",
]
