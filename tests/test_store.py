from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from leadflow.database import Base
from leadflow.errors import PersistenceError
from leadflow.models import ConversationStateRecord
from leadflow.schemas.conversation import ConversationState
from leadflow.services.state_machine import Phase
from leadflow.services.store_service import InMemoryConversationStore, SqlConversationStore, decode_state

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
CONTACT = "5584996250203"


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


def make_state() -> ConversationState:
    state = ConversationState.fresh(CONTACT, NOW)
    state.current_phase = Phase.BUSINESS_DISCOVERY
    state.message_count = 3
    state.qualification_data["name"] = "Carla"
    return state


class TestDecodeState:
    def test_missing_blob(self):
        loaded = decode_state(CONTACT, None)
        assert not loaded.found
        assert not loaded.corrupted

    def test_garbage_is_reported_as_corrupted(self):
        loaded = decode_state(CONTACT, '{"contact": 12, "current_phase": "nowhere"}')
        assert loaded.corrupted
        assert loaded.state is None
        assert loaded.error


class TestInMemoryStore:
    @pytest.mark.asyncio
    async def test_round_trip(self):
        store = InMemoryConversationStore()
        await store.save(CONTACT, make_state())

        loaded = await store.load(CONTACT)

        assert loaded.state == make_state()
        assert store.saves == 1
        assert store.contacts() == [CONTACT]

    @pytest.mark.asyncio
    async def test_unknown_contact(self):
        loaded = await InMemoryConversationStore().load("5511999990000")
        assert not loaded.found


class TestSqlStore:
    @pytest.mark.asyncio
    async def test_insert_then_update(self, session_factory):
        store = SqlConversationStore(session_factory)
        state = make_state()

        await store.save(CONTACT, state)
        state.current_phase = Phase.SOLUTION_PRESENTATION
        state.message_count = 4
        await store.save(CONTACT, state)

        loaded = await store.load(CONTACT)
        assert loaded.state.current_phase == Phase.SOLUTION_PRESENTATION
        assert loaded.state.qualification_data["name"] == "Carla"

        db = session_factory()
        try:
            rows = db.query(ConversationStateRecord).all()
            assert len(rows) == 1
            assert rows[0].current_phase == "solution_presentation"
            assert rows[0].message_count == 4
        finally:
            db.close()

    @pytest.mark.asyncio
    async def test_corrupted_row(self, session_factory):
        db = session_factory()
        db.add(ConversationStateRecord(contact_key=CONTACT, payload="{broken"))
        db.commit()
        db.close()

        loaded = await SqlConversationStore(session_factory).load(CONTACT)

        assert loaded.corrupted
        assert not loaded.found

    @pytest.mark.asyncio
    async def test_database_failure_raises_persistence_error(self):
        db = MagicMock()
        db.get.side_effect = OperationalError("SELECT", {}, Exception("connection refused"))
        store = SqlConversationStore(lambda: db)

        with pytest.raises(PersistenceError) as exc_info:
            await store.save(CONTACT, make_state())

        assert exc_info.value.contact == CONTACT
        db.rollback.assert_called_once()
        db.close.assert_called_once()
