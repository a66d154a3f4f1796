from typing import Optional, Protocol

import httpx

from leadflow.errors import DispatchError
from leadflow.logging_config import get_logger
from leadflow.schemas.conversation import ActionType, OutboundAction

logger = get_logger("sender_service")


class OutboundSender(Protocol):
    async def send(self, action: OutboundAction) -> None: ...


class EvolutionSender:
    """Delivers outbound actions through the Evolution WhatsApp API."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str],
        instance: str,
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.instance = instance
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    def _request(self, action: OutboundAction) -> tuple[str, dict]:
        if action.action_type == ActionType.SEND_AUDIO:
            audio = action.payload.get("audio_url") or action.payload.get("audio")
            if not audio:
                raise DispatchError("audio action without audio_url", contact=action.contact)
            return f"{self.base_url}/message/sendWhatsAppAudio/{self.instance}", {
                "number": action.contact,
                "audio": audio,
            }

        text = action.text
        if not text:
            raise DispatchError("text action without text", contact=action.contact)
        return f"{self.base_url}/message/sendText/{self.instance}", {"number": action.contact, "text": text}

    async def send(self, action: OutboundAction) -> None:
        url, body = self._request(action)
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["apikey"] = self.api_key

        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                response = await client.post(url, headers=headers, json=body)
        except httpx.HTTPError as e:
            logger.error(
                f"Evolution send failed: {e}",
                extra={"context": {"contact": action.contact, "action_type": action.action_type.value}},
            )
            raise DispatchError(f"transport error: {e}", contact=action.contact) from e

        logger.info(
            f"Evolution response: status={response.status_code}",
            extra={"context": {"contact": action.contact, "action_type": action.action_type.value}},
        )
        if response.status_code >= 300:
            raise DispatchError(
                f"Evolution API error: {response.status_code} - {response.text[:200]}",
                contact=action.contact,
            )


class LoggingSender:
    """Sender used when no provider is configured: logs and keeps what it sent."""

    def __init__(self) -> None:
        self.sent: list[OutboundAction] = []

    async def send(self, action: OutboundAction) -> None:
        self.sent.append(action)
        logger.info(
            "Outbound action (not delivered, no provider configured)",
            extra={
                "context": {
                    "contact": action.contact,
                    "action_type": action.action_type.value,
                    "source_message_id": action.source_message_id,
                }
            },
        )
