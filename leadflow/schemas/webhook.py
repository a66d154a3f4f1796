from datetime import datetime
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, Field


class MessageKey(BaseModel):
    id: Optional[str] = None
    remoteJid: Optional[str] = None
    fromMe: bool = False
    participant: Optional[str] = None
    remoteJidAlt: Optional[str] = None


class WebhookData(BaseModel):
    key: MessageKey = Field(default_factory=MessageKey)
    pushName: Optional[str] = None
    message: Optional[dict[str, Any]] = None
    messageType: Optional[str] = None
    messageTimestamp: Optional[int] = None


class WebhookPayload(BaseModel):
    """Evolution API style webhook body."""

    event: Optional[str] = None
    instance: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("instance", "instanceId", "instance_id"),
    )
    data: WebhookData = Field(default_factory=WebhookData)
    sender: Optional[str] = None


class InboundEvent(BaseModel):
    """Provider-neutral inbound event consumed by the gateway."""

    provider_message_id: Optional[str] = None
    raw_contact_identifier: str = ""
    participant_identifier: Optional[str] = None
    text: str = ""
    message_type: str = "text"
    provider_timestamp: Optional[datetime] = None
    sender_name: Optional[str] = None
    from_me: bool = False
    event_type: str = "messages.upsert"


class WebhookResponse(BaseModel):
    success: bool
    message: str
    reason: Optional[str] = None
    contact: Optional[str] = None


class InboundEnvelope(BaseModel):
    """Accepted inbound message, keyed by the normalized contact.

    ``arrival_timestamp`` is the provider's clock (often whole seconds);
    ``received_at`` is our own clock at ingestion and drives latency checks.
    """

    provider_message_id: str
    contact: str
    text: str = ""
    message_type: str = "text"
    arrival_timestamp: datetime
    received_at: Optional[datetime] = None
    is_broadcast: bool = False
    broadcast_id: Optional[str] = None
    sender_name: Optional[str] = None

    @property
    def scored_at(self) -> datetime:
        return self.received_at or self.arrival_timestamp
