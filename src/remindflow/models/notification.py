"""Channel, rendered message, and notification attempt models."""

from __future__ import annotations

from enum import StrEnum
from typing import Optional

from pydantic import BaseModel


class Channel(StrEnum):
    COMMENT = "comment"
    EMAIL = "email"
    SMS = "sms"
    WHATSAPP = "whatsapp"


class AttemptOutcome(StrEnum):
    DELIVERED = "delivered"
    FAILED = "failed"


class RenderedMessage(BaseModel):
    """Output of the template renderer."""

    subject: Optional[str] = None
    body: str


class SendReceipt(BaseModel):
    """What a channel sender returns on success."""

    success: bool = True
    delivery_id: str = ""


class Delivery(BaseModel):
    """One queued send: a recipient address plus its rendered message."""

    recipient: str
    message: RenderedMessage
    username: str = ""


class NotificationAttempt(BaseModel):
    """Ephemeral record of one dispatch, retries included. Not persisted."""

    channel: Channel
    recipient: str
    message: RenderedMessage
    attempts: int = 0
    outcome: Optional[AttemptOutcome] = None
    delivery_id: str = ""
    error_class: str = ""
    error: str = ""

    @property
    def delivered(self) -> bool:
        return self.outcome == AttemptOutcome.DELIVERED
