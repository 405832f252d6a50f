"""Outbound email/SMS delivery contract.

The messaging service only talks to ``DeliveryChannel``; swapping in a real
provider means implementing ``send``.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from eventplanner.models.quota import Channel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OutboundMessage:
    subject: Optional[str]
    body: str


@dataclass(frozen=True)
class DeliveryResult:
    contact: str
    ok: bool
    error: Optional[str] = None


class DeliveryChannel(ABC):
    @abstractmethod
    def send(self, recipients: list[str], channel: Channel, content: OutboundMessage) -> list[DeliveryResult]:
        """Deliver ``content`` to every contact; one result per recipient, in order."""


class LoggingDeliveryChannel(DeliveryChannel):
    """Logs each message instead of sending it. Used until a provider is configured."""

    def send(self, recipients: list[str], channel: Channel, content: OutboundMessage) -> list[DeliveryResult]:
        for contact in recipients:
            logger.info(
                "%s to %s (%d chars): %s",
                channel.value, contact, len(content.body), content.subject or content.body[:40],
            )
        return [DeliveryResult(contact=contact, ok=True) for contact in recipients]


def get_delivery_channel() -> DeliveryChannel:
    """FastAPI dependency; tests override it with a recording channel."""
    return LoggingDeliveryChannel()
