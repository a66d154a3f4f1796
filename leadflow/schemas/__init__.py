from leadflow.schemas.conversation import (
    ActionType,
    AgentRole,
    BotDetectionInfo,
    ConversationState,
    HandoffInfo,
    HandoffOrigin,
    HandoffPacket,
    OutboundAction,
)
from leadflow.schemas.webhook import InboundEnvelope, InboundEvent, WebhookPayload, WebhookResponse

__all__ = [
    "ActionType",
    "AgentRole",
    "BotDetectionInfo",
    "ConversationState",
    "HandoffInfo",
    "HandoffOrigin",
    "HandoffPacket",
    "OutboundAction",
    "InboundEnvelope",
    "InboundEvent",
    "WebhookPayload",
    "WebhookResponse",
]
