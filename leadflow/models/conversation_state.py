from sqlalchemy import TIMESTAMP, Column, Integer, Text
from sqlalchemy.sql import func

from leadflow.database import Base


class ConversationStateRecord(Base):
    __tablename__ = "conversation_states"

    contact_key = Column(Text, primary_key=True)
    payload = Column(Text, nullable=False)
    current_phase = Column(Text, nullable=False, default="identification")
    message_count = Column(Integer, nullable=False, default=0)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
