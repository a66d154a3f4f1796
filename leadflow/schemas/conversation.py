from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from leadflow.services.state_machine import Phase

SIGNAL_HISTORY_LIMIT = 20
HANDOFF_HISTORY_LIMIT = 10
DIAGNOSTICS_LIMIT = 10


class AgentRole(str, Enum):
    SDR = "sdr"
    SPECIALIST = "specialist"
    SCHEDULER = "scheduler"


class ActionType(str, Enum):
    SEND_TEXT = "send_text"
    SEND_AUDIO = "send_audio"
    REQUEST_HUMAN_VERIFICATION = "request_human_verification"


class HandoffOrigin(str, Enum):
    INBOUND = "inbound"
    EXTERNAL = "external"


class HandoffInfo(BaseModel):
    from_role: AgentRole
    to_role: AgentRole
    payload: dict[str, Any] = Field(default_factory=dict)
    accepted_at: Optional[datetime] = None


class HandoffPacket(BaseModel):
    """Context copied to the receiving role.

    Profile fields (name, company, need, budget, ...) are flat extra keys.
    """

    model_config = ConfigDict(extra="allow")

    raw_response: str = ""
    origin: HandoffOrigin = HandoffOrigin.INBOUND
    from_role: Optional[AgentRole] = None
    to_role: Optional[AgentRole] = None

    def field(self, name: str) -> Any:
        return (self.model_extra or {}).get(name)

    def profile(self) -> dict[str, Any]:
        return dict(self.model_extra or {})


class BotSignalRecord(BaseModel):
    at: datetime
    score: float
    signals: list[str] = Field(default_factory=list)


class BotDetectionInfo(BaseModel):
    score: float = 0.0
    signal_history: list[BotSignalRecord] = Field(default_factory=list)
    blocked_until: Optional[datetime] = None
    blocked_from_phase: Optional[Phase] = None
    verification_attempts: int = 0

    def record(self, entry: BotSignalRecord) -> None:
        self.score = entry.score
        self.signal_history.append(entry)
        del self.signal_history[:-SIGNAL_HISTORY_LIMIT]


class OutboundAction(BaseModel):
    contact: str
    action_type: ActionType
    payload: dict[str, Any] = Field(default_factory=dict)
    source_message_id: Optional[str] = None

    @property
    def text(self) -> Optional[str]:
        return self.payload.get("text")


class ConversationState(BaseModel):
    contact: str
    current_phase: Phase = Phase.IDENTIFICATION
    message_count: int = 0
    qualification_data: dict[str, Any] = Field(default_factory=dict)
    field_sources: dict[str, Phase] = Field(default_factory=dict)
    qualification_conflicts: list[dict[str, Any]] = Field(default_factory=list)
    phase_completion: list[Phase] = Field(default_factory=list)
    owner_role: AgentRole = AgentRole.SDR
    handoff: Optional[HandoffInfo] = None
    handoff_history: list[HandoffInfo] = Field(default_factory=list)
    bot_detection: BotDetectionInfo = Field(default_factory=BotDetectionInfo)
    last_processed_message_id: Optional[str] = None
    last_action: Optional[OutboundAction] = None
    last_action_dispatched: bool = False
    greeted_at: Optional[datetime] = None
    completion_reason: Optional[str] = None
    is_broadcast: bool = False
    broadcast_id: Optional[str] = None
    diagnostics: list[dict[str, Any]] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime

    @classmethod
    def fresh(cls, contact: str, now: datetime) -> "ConversationState":
        return cls(contact=contact, created_at=now, updated_at=now)

    def mark_completed(self, phase: Phase) -> None:
        if phase not in self.phase_completion:
            self.phase_completion.append(phase)

    def add_diagnostic(self, kind: str, now: datetime, **details: Any) -> None:
        self.diagnostics.append({"kind": kind, "at": now.isoformat(), **details})
        del self.diagnostics[:-DIAGNOSTICS_LIMIT]

    def record_handoff(self, info: HandoffInfo) -> None:
        self.handoff = info
        self.handoff_history.append(info)
        del self.handoff_history[:-HANDOFF_HISTORY_LIMIT]
