# Credential flows, notifications and SQL persistence

from medigate.services.credentials import (
    CredentialService,
    Registration,
    TokenPair,
)
from medigate.services.notifications import (
    Notifier,
    OutboundMessage,
    OutboxNotifier,
)

__all__ = [
    "CredentialService",
    "Registration",
    "TokenPair",
    "Notifier",
    "OutboundMessage",
    "OutboxNotifier",
]
