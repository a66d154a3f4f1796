from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import ValidationError

from leadflow.logging_config import get_logger
from leadflow.runtime import Runtime, get_runtime
from leadflow.schemas.webhook import InboundEvent, WebhookPayload, WebhookResponse
from leadflow.services.identity_service import is_broadcast_identifier

logger = get_logger("webhook")

router = APIRouter()

TEXT_PATHS = (
    ("conversation",),
    ("extendedTextMessage", "text"),
    ("imageMessage", "caption"),
    ("videoMessage", "caption"),
    ("documentMessage", "caption"),
    ("buttonsResponseMessage", "selectedDisplayText"),
    ("listResponseMessage", "title"),
    ("templateButtonReplyMessage", "selectedDisplayText"),
)

MEDIA_TYPES = {
    "audioMessage": "audio",
    "imageMessage": "image",
    "videoMessage": "video",
    "documentMessage": "document",
    "stickerMessage": "sticker",
}


def _dig(obj: Any, path: tuple[str, ...]) -> Optional[str]:
    for key in path:
        if not isinstance(obj, dict):
            return None
        obj = obj.get(key)
    if isinstance(obj, str) and obj.strip():
        return obj.strip()
    return None


def _extract_text(message: Optional[dict]) -> str:
    if not message:
        return ""
    for path in TEXT_PATHS:
        text = _dig(message, path)
        if text:
            return text
    return ""


def _message_type(payload: WebhookPayload) -> str:
    message = payload.data.message or {}
    for key, media_type in MEDIA_TYPES.items():
        if key in message:
            return media_type
    raw_type = payload.data.messageType or ""
    return MEDIA_TYPES.get(raw_type, "text")


def _coerce_timestamp(value: Optional[int]) -> Optional[datetime]:
    if not value:
        return None
    # some providers send milliseconds
    seconds = value / 1000 if value > 10**12 else value
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def extract_inbound_event(payload: WebhookPayload) -> InboundEvent:
    """Map an Evolution-style webhook body to a provider-neutral event."""
    key = payload.data.key
    remote_jid = key.remoteJid or ""

    participant = None
    if is_broadcast_identifier(remote_jid):
        participant = key.participant or key.remoteJidAlt or payload.sender

    text = _extract_text(payload.data.message)
    message_type = _message_type(payload)
    if not text and message_type != "text":
        text = f"[{message_type}]"

    return InboundEvent(
        provider_message_id=key.id,
        raw_contact_identifier=remote_jid,
        participant_identifier=participant,
        text=text,
        message_type=message_type,
        provider_timestamp=_coerce_timestamp(payload.data.messageTimestamp),
        sender_name=payload.data.pushName,
        from_me=key.fromMe,
        event_type=(payload.event or "messages.upsert").lower(),
    )


def _check_webhook_secret(request: Request, expected: Optional[str]) -> None:
    if not expected:
        return
    provided = request.headers.get("X-Webhook-Secret") or request.query_params.get("secret")
    if not provided or provided != expected:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook secret")


@router.post("/webhook", response_model=WebhookResponse)
async def handle_webhook(request: Request, runtime: Runtime = Depends(get_runtime)):
    """Acknowledge provider webhook; processing continues in the contact queue."""
    _check_webhook_secret(request, runtime.settings.webhook_secret)

    try:
        body = await request.json()
    except ValueError:
        logger.warning("Webhook body is not JSON")
        return WebhookResponse(success=False, message="Invalid JSON", reason="invalid_payload")

    try:
        payload = WebhookPayload.model_validate(body)
    except ValidationError as e:
        logger.warning("Webhook payload rejected", extra={"context": {"errors": e.errors()[:3]}})
        return WebhookResponse(success=False, message="Invalid payload", reason="invalid_payload")

    result = runtime.gateway.ingest(extract_inbound_event(payload))
    if result.accepted:
        return WebhookResponse(success=True, message="Accepted", contact=result.contact)
    # rejected events are still acknowledged so the provider does not retry them
    return WebhookResponse(success=True, message="Ignored", reason=result.status, contact=result.contact)


@router.get("/webhook")
async def webhook_probe():
    """Health probe for provider UI checks; real webhooks must use POST."""
    return {"ok": True, "message": "Use POST with JSON payload"}
