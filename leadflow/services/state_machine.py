from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from leadflow.schemas.conversation import ConversationState
    from leadflow.services.intent_service import IntentSignals


class Phase(str, Enum):
    IDENTIFICATION = "identification"
    BUSINESS_DISCOVERY = "business_discovery"
    SOLUTION_PRESENTATION = "solution_presentation"
    SCHEDULING = "scheduling"
    COMPLETED = "completed"
    BLOCKED_BOT_CHECK = "blocked_bot_check"


class Move(str, Enum):
    ADVANCE = "advance"  # linear step to the next phase
    SCHEDULE = "schedule"  # jump forward to scheduling
    STAY = "stay"  # re-ask the pending question
    FAQ = "faq"  # answer inline, then re-ask
    OBJECTION = "objection"  # objection branch, then re-ask
    EXIT = "exit"  # opt-out, terminal
    BLOCK = "block"  # bot threshold crossed
    CHALLENGE = "challenge"  # still blocked, verification pending
    UNBLOCK = "unblock"  # verification accepted
    SILENT = "silent"  # terminal phase, nothing to send


LINEAR_PHASES = [
    Phase.IDENTIFICATION,
    Phase.BUSINESS_DISCOVERY,
    Phase.SOLUTION_PRESENTATION,
    Phase.SCHEDULING,
    Phase.COMPLETED,
]
PHASE_RANK = {phase: rank for rank, phase in enumerate(LINEAR_PHASES)}

PHASE_REQUIREMENTS: dict[Phase, tuple[str, ...]] = {
    Phase.IDENTIFICATION: ("name",),
    Phase.BUSINESS_DISCOVERY: ("need", "timing"),
    Phase.SOLUTION_PRESENTATION: ("interest",),
    Phase.SCHEDULING: ("meeting_slot",),
    Phase.COMPLETED: (),
}

VALID_TRANSITIONS = {
    Phase.IDENTIFICATION: [
        Phase.BUSINESS_DISCOVERY,
        Phase.SCHEDULING,
        Phase.COMPLETED,
        Phase.BLOCKED_BOT_CHECK,
    ],
    Phase.BUSINESS_DISCOVERY: [
        Phase.SOLUTION_PRESENTATION,
        Phase.SCHEDULING,
        Phase.COMPLETED,
        Phase.BLOCKED_BOT_CHECK,
    ],
    Phase.SOLUTION_PRESENTATION: [Phase.SCHEDULING, Phase.COMPLETED, Phase.BLOCKED_BOT_CHECK],
    Phase.SCHEDULING: [Phase.COMPLETED, Phase.BLOCKED_BOT_CHECK],
    Phase.COMPLETED: [],
    Phase.BLOCKED_BOT_CHECK: [
        Phase.IDENTIFICATION,
        Phase.BUSINESS_DISCOVERY,
        Phase.SOLUTION_PRESENTATION,
        Phase.SCHEDULING,
        Phase.COMPLETED,
    ],
}


class InvalidTransitionError(Exception):
    def __init__(self, from_phase: Phase, to_phase: Phase):
        self.from_phase = from_phase
        self.to_phase = to_phase
        super().__init__(f"Invalid transition: {from_phase.value} -> {to_phase.value}")


@dataclass(frozen=True)
class Transition:
    from_phase: Phase
    to_phase: Phase
    move: Move

    @property
    def changed(self) -> bool:
        return self.from_phase != self.to_phase


def can_transition(from_phase: Phase, to_phase: Phase) -> bool:
    """Check if transition is valid."""
    allowed = VALID_TRANSITIONS.get(from_phase, [])
    return to_phase in allowed


def transition(from_phase: Phase, to_phase: Phase) -> Phase:
    """Perform phase transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_phase, to_phase):
        raise InvalidTransitionError(from_phase, to_phase)
    return to_phase


def next_linear_phase(phase: Phase) -> Phase:
    if phase not in PHASE_RANK:
        raise InvalidTransitionError(phase, phase)
    rank = PHASE_RANK[phase]
    if rank + 1 >= len(LINEAR_PHASES):
        return phase
    return LINEAR_PHASES[rank + 1]


def has_value(value: Any) -> bool:
    return value is not None and value != "" and value != [] and value != {}


def missing_fields(phase: Phase, qualification_data: dict[str, Any]) -> list[str]:
    required = PHASE_REQUIREMENTS.get(phase, ())
    return [field for field in required if not has_value(qualification_data.get(field))]


def is_phase_satisfied(phase: Phase, qualification_data: dict[str, Any]) -> bool:
    return not missing_fields(phase, qualification_data)


def pending_field(phase: Phase, qualification_data: dict[str, Any]) -> Optional[str]:
    """Next qualification question to ask while in ``phase``.

    The contact's name comes first even when identification was skipped by a
    jump to scheduling; other skipped phases are not re-opened.
    """
    if phase not in PHASE_RANK or phase == Phase.COMPLETED:
        return None
    if not has_value(qualification_data.get("name")):
        return "name"
    missing = missing_fields(phase, qualification_data)
    return missing[0] if missing else None


def decide_transition(state: "ConversationState", intent: "IntentSignals") -> Transition:
    """Single transition function: (current state, classified intent) -> next phase.

    Qualification data is expected to be merged into the state before calling.
    The only backward moves are the exit path and the bot block/unblock pair.
    """
    phase = state.current_phase

    if phase == Phase.COMPLETED:
        return Transition(phase, phase, Move.SILENT)

    if intent.exit:
        return Transition(phase, Phase.COMPLETED, Move.EXIT)

    if phase == Phase.BLOCKED_BOT_CHECK:
        if intent.human_confirmed:
            resume = state.bot_detection.blocked_from_phase or Phase.IDENTIFICATION
            return Transition(phase, resume, Move.UNBLOCK)
        return Transition(phase, phase, Move.CHALLENGE)

    if intent.scheduling and PHASE_RANK[phase] < PHASE_RANK[Phase.SCHEDULING]:
        return Transition(phase, Phase.SCHEDULING, Move.SCHEDULE)

    if intent.objection:
        return Transition(phase, phase, Move.OBJECTION)

    if intent.faq:
        return Transition(phase, phase, Move.FAQ)

    if is_phase_satisfied(phase, state.qualification_data):
        return Transition(phase, next_linear_phase(phase), Move.ADVANCE)

    return Transition(phase, phase, Move.STAY)


def block(phase: Phase) -> Transition:
    """Enter blocked_bot_check from a qualification phase."""
    return Transition(phase, transition(phase, Phase.BLOCKED_BOT_CHECK), Move.BLOCK)


def is_forward(from_phase: Phase, to_phase: Phase) -> bool:
    if from_phase not in PHASE_RANK or to_phase not in PHASE_RANK:
        return True
    return PHASE_RANK[to_phase] >= PHASE_RANK[from_phase]
