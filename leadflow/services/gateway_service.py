"""Webhook gateway: the only entry point for inbound provider events.

Ordering of checks: identity, replay window, staleness, then hand-off to the
per-contact queue. The webhook is acknowledged as soon as the event is
enqueued; processing happens asynchronously.
"""

import asyncio
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from leadflow.errors import CollaboratorError
from leadflow.logging_config import get_logger
from leadflow.schemas.webhook import InboundEnvelope, InboundEvent
from leadflow.services.dedup_service import ReplayWindow, build_dedup_key
from leadflow.services.identity_service import normalize_contact
from leadflow.services.queue_service import ContactQueue

logger = get_logger("gateway_service")

MESSAGE_EVENTS = frozenset({"messages.upsert", "messages.update", "messages_upsert", "messages_update"})


class RejectReason(str, Enum):
    IGNORED_EVENT = "ignored_event"
    FROM_ME = "from_me"
    UNROUTABLE = "unroutable"
    REPLAY = "replay"
    STALE = "stale"


@dataclass(frozen=True)
class IngestResult:
    accepted: bool
    reason: Optional[RejectReason] = None
    contact: Optional[str] = None
    dedup_key: Optional[str] = None
    future: Optional[asyncio.Future] = field(default=None, compare=False, repr=False)

    @property
    def status(self) -> str:
        return "accepted" if self.accepted else self.reason.value


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Gateway:
    def __init__(
        self,
        queue: ContactQueue,
        handler: Callable[[InboundEnvelope], Awaitable[Any]],
        replay_window: Optional[ReplayWindow] = None,
        *,
        stale_seconds: float = 300,
        default_country_code: str = "55",
        clock: Callable[[], datetime] = utcnow,
    ):
        self.queue = queue
        self.handler = handler
        self.replay_window = replay_window if replay_window is not None else ReplayWindow()
        self.stale_after = timedelta(seconds=stale_seconds)
        self.default_country_code = default_country_code
        self._clock = clock
        self.stats: Counter = Counter()

    def _reject(self, reason: RejectReason, **context: Any) -> IngestResult:
        self.stats[reason.value] += 1
        level = logger.debug if reason in (RejectReason.REPLAY, RejectReason.FROM_ME) else logger.info
        level("Inbound event rejected", extra={"context": {"reason": reason.value, **context}})
        return IngestResult(
            accepted=False,
            reason=reason,
            contact=context.get("contact"),
            dedup_key=context.get("dedup_key"),
        )

    def _is_replay(self, key: str, now: datetime) -> bool:
        try:
            return self.replay_window.check_and_record(key, now)
        except Exception as e:
            # replay window unavailable: accept, idempotency downstream covers it
            self.stats["dedup_errors"] += 1
            logger.warning(f"Replay window check failed, accepting event: {e}", extra={"context": {"key": key}})
            return False

    async def _handle(self, envelope: InboundEnvelope) -> Any:
        try:
            return await self.handler(envelope)
        except CollaboratorError as e:
            # a redelivery of this id must reach the engine again
            self.replay_window.forget(envelope.provider_message_id)
            self.stats["released"] += 1
            logger.warning(
                "Processing failed, dedup key released for redelivery",
                extra={
                    "context": {
                        "contact": envelope.contact,
                        "message_id": envelope.provider_message_id,
                        "error": e.message,
                    }
                },
            )
            raise

    def ingest(self, event: InboundEvent) -> IngestResult:
        """Validate and enqueue one inbound event. Must run inside the event loop."""
        now = self._clock()
        self.stats["received"] += 1

        if event.event_type not in MESSAGE_EVENTS:
            return self._reject(RejectReason.IGNORED_EVENT, event_type=event.event_type)
        if event.from_me:
            return self._reject(RejectReason.FROM_ME, message_id=event.provider_message_id)

        identity = normalize_contact(
            event.raw_contact_identifier,
            event.participant_identifier,
            default_country_code=self.default_country_code,
        )
        if not identity.routable:
            return self._reject(
                RejectReason.UNROUTABLE,
                raw=event.raw_contact_identifier,
                detail=identity.reason,
            )

        arrival = event.provider_timestamp or now
        key = build_dedup_key(event.provider_message_id, identity.key, event.text, arrival)
        if self._is_replay(key, now):
            return self._reject(RejectReason.REPLAY, contact=identity.key, dedup_key=key)

        if now - arrival > self.stale_after:
            return self._reject(
                RejectReason.STALE,
                contact=identity.key,
                dedup_key=key,
                age_seconds=int((now - arrival).total_seconds()),
            )

        envelope = InboundEnvelope(
            provider_message_id=key,
            contact=identity.key,
            text=event.text,
            message_type=event.message_type,
            arrival_timestamp=arrival,
            received_at=now,
            is_broadcast=identity.is_broadcast,
            broadcast_id=identity.broadcast_id,
            sender_name=event.sender_name,
        )
        future = self.queue.enqueue(identity.key, envelope, self._handle)
        self.stats["accepted"] += 1
        logger.info(
            "Inbound event accepted",
            extra={
                "context": {
                    "contact": identity.key,
                    "message_id": key,
                    "queue_depth": self.queue.depth(identity.key),
                    "broadcast": identity.is_broadcast,
                }
            },
        )
        return IngestResult(accepted=True, contact=identity.key, dedup_key=key, future=future)
