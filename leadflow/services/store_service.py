"""Durable conversation state.

The core only ever talks to the ``ConversationStore`` protocol; the SQL and
in-memory implementations below are interchangeable.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional, Protocol

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from leadflow.errors import PersistenceError
from leadflow.logging_config import get_logger
from leadflow.models import ConversationStateRecord
from leadflow.schemas.conversation import ConversationState

logger = get_logger("store_service")


@dataclass(frozen=True)
class StateLoad:
    state: Optional[ConversationState] = None
    corrupted: bool = False
    error: Optional[str] = None

    @property
    def found(self) -> bool:
        return self.state is not None


class ConversationStore(Protocol):
    async def load(self, contact: str) -> StateLoad: ...

    async def save(self, contact: str, state: ConversationState) -> None: ...


def encode_state(state: ConversationState) -> str:
    return state.model_dump_json()


def decode_state(contact: str, blob: Optional[str]) -> StateLoad:
    if blob is None:
        return StateLoad()
    try:
        return StateLoad(state=ConversationState.model_validate_json(blob))
    except (ValidationError, ValueError) as e:
        logger.warning(
            "Stored conversation state is unreadable",
            extra={"context": {"contact": contact, "error": str(e)[:200]}},
        )
        return StateLoad(corrupted=True, error=str(e)[:200])


class InMemoryConversationStore:
    """Keeps serialized blobs, so it round-trips exactly like the SQL store."""

    def __init__(self) -> None:
        self._blobs: dict[str, str] = {}
        self.saves = 0

    def __len__(self) -> int:
        return len(self._blobs)

    async def load(self, contact: str) -> StateLoad:
        return decode_state(contact, self._blobs.get(contact))

    async def save(self, contact: str, state: ConversationState) -> None:
        self._blobs[contact] = encode_state(state)
        self.saves += 1

    def put_raw(self, contact: str, blob: str) -> None:
        self._blobs[contact] = blob

    def contacts(self) -> list[str]:
        return sorted(self._blobs)


class SqlConversationStore:
    """One row per contact in ``conversation_states``.

    Sessions are synchronous, so every call runs in a worker thread.
    """

    def __init__(self, session_factory: Optional[Callable[[], Session]] = None):
        if session_factory is None:
            from leadflow.database import SessionLocal

            session_factory = SessionLocal
        self._session_factory = session_factory

    async def load(self, contact: str) -> StateLoad:
        blob = await asyncio.to_thread(self._load_blob, contact)
        return decode_state(contact, blob)

    async def save(self, contact: str, state: ConversationState) -> None:
        await asyncio.to_thread(self._save_blob, contact, state)

    def _load_blob(self, contact: str) -> Optional[str]:
        db = self._session_factory()
        try:
            record = db.get(ConversationStateRecord, contact)
            return record.payload if record else None
        except SQLAlchemyError as e:
            logger.error(f"State load failed: {e}", extra={"context": {"contact": contact}})
            raise PersistenceError(f"load failed: {e}", contact=contact) from e
        finally:
            db.close()

    def _save_blob(self, contact: str, state: ConversationState) -> None:
        db = self._session_factory()
        try:
            record = db.get(ConversationStateRecord, contact)
            if record is None:
                record = ConversationStateRecord(contact_key=contact)
                db.add(record)
            record.payload = encode_state(state)
            record.current_phase = state.current_phase.value
            record.message_count = state.message_count
            record.updated_at = datetime.now(timezone.utc)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"State save failed: {e}", extra={"context": {"contact": contact}})
            raise PersistenceError(f"save failed: {e}", contact=contact) from e
        finally:
            db.close()
