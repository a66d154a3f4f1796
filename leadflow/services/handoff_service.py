from datetime import datetime
from typing import Any, Optional

from leadflow.logging_config import get_logger
from leadflow.schemas.conversation import (
    AgentRole,
    ConversationState,
    HandoffInfo,
    HandoffOrigin,
    HandoffPacket,
)
from leadflow.services.reply_service import ReplyBuilder
from leadflow.services.state_machine import Phase, has_value

logger = get_logger("handoff_service")

PHASE_OWNER: dict[Phase, AgentRole] = {
    Phase.IDENTIFICATION: AgentRole.SDR,
    Phase.BUSINESS_DISCOVERY: AgentRole.SDR,
    Phase.SOLUTION_PRESENTATION: AgentRole.SPECIALIST,
    Phase.SCHEDULING: AgentRole.SCHEDULER,
    Phase.COMPLETED: AgentRole.SCHEDULER,
}

# First phase each role works in; used by externally triggered handoffs.
ROLE_ENTRY_PHASE: dict[AgentRole, Phase] = {
    AgentRole.SDR: Phase.IDENTIFICATION,
    AgentRole.SPECIALIST: Phase.SOLUTION_PRESENTATION,
    AgentRole.SCHEDULER: Phase.SCHEDULING,
}

HANDOFF_REQUIRED_FIELDS: dict[AgentRole, tuple[str, ...]] = {
    AgentRole.SDR: (),
    AgentRole.SPECIALIST: ("name", "need"),
    AgentRole.SCHEDULER: ("name",),
}

RESERVED_PACKET_KEYS = frozenset(HandoffPacket.model_fields)

_default_replies = ReplyBuilder()


def owner_for(phase: Phase) -> Optional[AgentRole]:
    return PHASE_OWNER.get(phase)


def crosses_role_boundary(from_phase: Phase, to_phase: Phase) -> bool:
    """True when moving between phases owned by different roles.

    blocked_bot_check has no owner, so entering or leaving it never hands off.
    """
    source = owner_for(from_phase)
    target = owner_for(to_phase)
    if source is None or target is None:
        return False
    return source != target and to_phase != Phase.COMPLETED


def build_packet(
    state: ConversationState,
    from_role: Optional[AgentRole],
    to_role: AgentRole,
    *,
    raw_response: str = "",
    origin: HandoffOrigin = HandoffOrigin.INBOUND,
) -> HandoffPacket:
    profile = {
        key: value
        for key, value in state.qualification_data.items()
        if key not in RESERVED_PACKET_KEYS and has_value(value)
    }
    return HandoffPacket(
        raw_response=raw_response,
        origin=origin,
        from_role=from_role,
        to_role=to_role,
        **profile,
    )


def initiate_handoff(
    state: ConversationState,
    from_role: Optional[AgentRole],
    to_role: AgentRole,
    *,
    raw_response: str,
    origin: HandoffOrigin,
    now: datetime,
) -> HandoffPacket:
    """Copy the qualification context into a packet and make to_role the owner."""
    source = from_role or state.owner_role
    packet = build_packet(state, source, to_role, raw_response=raw_response, origin=origin)
    state.record_handoff(
        HandoffInfo(
            from_role=source,
            to_role=to_role,
            payload=packet.model_dump(mode="json"),
        )
    )
    state.owner_role = to_role
    state.updated_at = now

    logger.info(
        "Handoff initiated",
        extra={
            "context": {
                "contact": state.contact,
                "from_role": source.value,
                "to_role": to_role.value,
                "origin": origin.value,
                "fields": sorted(packet.profile()),
            }
        },
    )
    return packet


def accept_handoff(state: ConversationState, now: datetime) -> None:
    if state.handoff is not None and state.handoff.accepted_at is None:
        state.handoff.accepted_at = now


def missing_packet_fields(packet: HandoffPacket) -> list[str]:
    if packet.to_role is None:
        return []
    required = HANDOFF_REQUIRED_FIELDS.get(packet.to_role, ())
    return [field for field in required if not has_value(packet.field(field))]


def on_handoff_received(
    contact: str,
    packet: HandoffPacket,
    replies: Optional[ReplyBuilder] = None,
) -> str:
    """Initial response of the receiving role.

    Pure function of the packet: the same packet always yields the same text.
    An incomplete packet never produces an invented value; the missing field is
    asked for explicitly.
    """
    replies = replies or _default_replies
    missing = missing_packet_fields(packet)
    if missing:
        logger.info(
            "Handoff packet incomplete",
            extra={"context": {"contact": contact, "to_role": packet.to_role.value, "missing": missing}},
        )
        return replies.question(missing[0], packet.profile())

    name = packet.field("name")
    if packet.to_role == AgentRole.SPECIALIST:
        return replies.specialist_intro(name, packet.field("need"))
    if packet.to_role == AgentRole.SCHEDULER:
        return replies.scheduler_intro(name)
    return replies.question(_first_sdr_question(packet.profile()), packet.profile())


def _first_sdr_question(profile: dict[str, Any]) -> Optional[str]:
    for field in ("name", "need", "timing"):
        if not has_value(profile.get(field)):
            return field
    return None


def packet_from_state(state: ConversationState) -> Optional[HandoffPacket]:
    if state.handoff is None:
        return None
    return HandoffPacket.model_validate(state.handoff.payload)

