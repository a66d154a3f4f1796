from datetime import datetime, timedelta, timezone
from itertools import count

import pytest

from leadflow.schemas.webhook import InboundEnvelope
from leadflow.services.bot_guard import BotGuard, BotGuardConfig
from leadflow.services.conversation_service import ConversationEngine
from leadflow.services.first_response_guard import FirstResponseGuard
from leadflow.services.sender_service import LoggingSender
from leadflow.services.store_service import InMemoryConversationStore

CONTACT = "5584996250203"


class FakeClock:
    """Manually advanced wall clock plus a matching monotonic reading."""

    def __init__(self, start: datetime | None = None):
        self.current = start or datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
        self._origin = self.current

    def __call__(self) -> datetime:
        return self.current

    def monotonic(self) -> float:
        return (self.current - self._origin).total_seconds()

    def advance(self, seconds: float) -> datetime:
        self.current += timedelta(seconds=seconds)
        return self.current


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryConversationStore()


@pytest.fixture
def sender():
    return LoggingSender()


@pytest.fixture
def bot_guard(clock):
    return BotGuard(BotGuardConfig(), clock=clock)


@pytest.fixture
def first_response_guard(clock):
    return FirstResponseGuard(ttl_seconds=10.0, clock=clock.monotonic)


@pytest.fixture
def engine(store, sender, bot_guard, first_response_guard, clock):
    return ConversationEngine(
        store,
        sender,
        bot_guard=bot_guard,
        first_response_guard=first_response_guard,
        clock=clock,
    )


@pytest.fixture
def make_envelope(clock):
    ids = count(1)

    def _make(text: str, *, contact: str = CONTACT, message_id: str | None = None, **kwargs) -> InboundEnvelope:
        return InboundEnvelope(
            provider_message_id=message_id or f"MSG{next(ids):04d}",
            contact=contact,
            text=text,
            arrival_timestamp=kwargs.pop("arrival_timestamp", clock()),
            **kwargs,
        )

    return _make


@pytest.fixture
def say(engine, make_envelope, clock):
    """Send one human-paced message through the engine."""

    async def _say(text: str, **kwargs):
        clock.advance(30)
        return await engine.handle(make_envelope(text, **kwargs))

    return _say
