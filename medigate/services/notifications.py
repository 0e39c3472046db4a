"""
Outbound notifications (e-mail / SMS).

Delivery is external. The core hands messages to a Notifier; the default
OutboxNotifier keeps them in memory for a delivery worker (or a test) to
collect. Codes and reset tokens travel only inside the message payload
and are never logged.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from medigate.core.clock import Clock
from medigate.core.redaction import mask_id

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OutboundMessage:
    channel: str  # email | sms
    recipient: str
    template: str
    subject_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None


class Notifier(ABC):
    """Hands messages to the delivery system."""

    @abstractmethod
    async def send(self, message: OutboundMessage) -> None:
        pass


class OutboxNotifier(Notifier):
    """In-memory outbox."""

    def __init__(self, clock: Clock):
        self._clock = clock
        self.outbox: list[OutboundMessage] = []

    async def send(self, message: OutboundMessage) -> None:
        stamped = OutboundMessage(
            channel=message.channel,
            recipient=message.recipient,
            template=message.template,
            subject_id=message.subject_id,
            payload=dict(message.payload),
            created_at=message.created_at or self._clock.now(),
        )
        self.outbox.append(stamped)
        logger.info(
            "Queued %s notification %s for %s",
            message.channel,
            message.template,
            mask_id(message.subject_id),
        )

    def latest(self, template: str, recipient: Optional[str] = None) -> Optional[OutboundMessage]:
        for message in reversed(self.outbox):
            if message.template == template and (recipient is None or message.recipient == recipient):
                return message
        return None
