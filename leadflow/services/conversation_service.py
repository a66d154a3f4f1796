"""Conversation engine: one inbound envelope in, at most one outbound action out.

Runs inside the per-contact queue, so calls for the same contact never
overlap. Every mutation of the conversation state happens here.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from leadflow.errors import PersistenceError
from leadflow.logging_config import LoggerAdapter, contact_logger
from leadflow.schemas.conversation import (
    ActionType,
    AgentRole,
    BotSignalRecord,
    ConversationState,
    HandoffOrigin,
    OutboundAction,
)
from leadflow.schemas.webhook import InboundEnvelope
from leadflow.services.bot_guard import BotGuard, BotScore
from leadflow.services.first_response_guard import FirstResponseGuard
from leadflow.services.handoff_service import (
    ROLE_ENTRY_PHASE,
    accept_handoff,
    crosses_role_boundary,
    initiate_handoff,
    on_handoff_received,
    owner_for,
    packet_from_state,
)
from leadflow.services.intent_service import IntentClassifier, IntentSignals, KeywordIntentClassifier
from leadflow.services.reply_service import ReplyBuilder
from leadflow.services.result import Result
from leadflow.services.sender_service import OutboundSender
from leadflow.services.state_machine import (
    PHASE_RANK,
    Move,
    Phase,
    block,
    can_transition,
    decide_transition,
    pending_field,
    transition,
)
from leadflow.services.store_service import ConversationStore

CONFLICTS_LIMIT = 20
GREETING_MARKER = "greeting"


@dataclass(frozen=True)
class HandoffOutcome:
    action: Optional[OutboundAction]
    dispatched: bool


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def handoff_marker(role: AgentRole) -> str:
    return f"handoff:{role.value}"


class ConversationEngine:
    def __init__(
        self,
        store: ConversationStore,
        sender: OutboundSender,
        *,
        bot_guard: Optional[BotGuard] = None,
        first_response_guard: Optional[FirstResponseGuard] = None,
        classifier: Optional[IntentClassifier] = None,
        replies: Optional[ReplyBuilder] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.sender = sender
        self.bot_guard = bot_guard if bot_guard is not None else BotGuard(clock=clock)
        self.first_response_guard = first_response_guard if first_response_guard is not None else FirstResponseGuard()
        self.classifier = classifier or KeywordIntentClassifier()
        self.replies = replies or ReplyBuilder()
        self._clock = clock

    # ------------------------------------------------------------------
    # Inbound path
    # ------------------------------------------------------------------

    async def handle(self, envelope: InboundEnvelope) -> Optional[OutboundAction]:
        """Process one accepted inbound message for its contact."""
        log = contact_logger("conversation_service", envelope.contact, message_id=envelope.provider_message_id)
        try:
            return await self._handle(envelope, log)
        except PersistenceError as e:
            log.critical("Conversation state could not be persisted", context={"error": e.message})
            raise

    async def _handle(self, envelope: InboundEnvelope, log: LoggerAdapter) -> Optional[OutboundAction]:
        now = self._clock()
        state = await self.get_or_create_state(envelope.contact, now, log)

        if state.last_processed_message_id == envelope.provider_message_id:
            return await self._replay(state, log)

        state.message_count += 1
        if envelope.is_broadcast:
            state.is_broadcast = True
            state.broadcast_id = envelope.broadcast_id

        action, markers = self._process(state, envelope, now, log)
        state.last_processed_message_id = envelope.provider_message_id
        return await self._commit(state, action, markers, now, log)

    async def get_or_create_state(
        self,
        contact: str,
        now: datetime,
        log: Optional[LoggerAdapter] = None,
    ) -> ConversationState:
        loaded = await self.store.load(contact)
        if loaded.state is not None:
            return loaded.state

        state = ConversationState.fresh(contact, now)
        if loaded.corrupted:
            state.add_diagnostic("state_corrupted", now, error=loaded.error)
            (log or contact_logger("conversation_service", contact)).warning(
                "Unreadable state replaced with a fresh conversation",
                context={"error": loaded.error},
            )
        return state

    async def _replay(self, state: ConversationState, log: LoggerAdapter) -> Optional[OutboundAction]:
        action = state.last_action
        if action is not None and not state.last_action_dispatched:
            log.info("Replayed message: dispatching action that was never delivered")
            await self._dispatch(state, action, [], log)
        else:
            log.info("Replayed message: returning recorded action")
        return action

    async def _commit(
        self,
        state: ConversationState,
        action: Optional[OutboundAction],
        markers: list[str],
        now: datetime,
        log: LoggerAdapter,
    ) -> Optional[OutboundAction]:
        state.last_action = action
        state.last_action_dispatched = action is None
        state.updated_at = now
        await self.store.save(state.contact, state)

        if action is None:
            log.info("No outbound action", context={"phase": state.current_phase.value})
            return None

        await self._dispatch(state, action, markers, log)
        return action

    async def _dispatch(
        self,
        state: ConversationState,
        action: OutboundAction,
        markers: list[str],
        log: LoggerAdapter,
    ) -> None:
        issued_at = self._clock()
        await self.sender.send(action)
        for kind in markers:
            self.first_response_guard.mark_sent(state.contact, kind)
        self.bot_guard.record_outbound(state.contact, issued_at)

        state.last_action_dispatched = True
        await self.store.save(state.contact, state)
        log.info(
            "Action dispatched",
            context={
                "action_type": action.action_type.value,
                "phase": state.current_phase.value,
                "owner_role": state.owner_role.value,
            },
        )

    def _action(
        self,
        state: ConversationState,
        text: str,
        source_message_id: Optional[str],
        action_type: ActionType = ActionType.SEND_TEXT,
    ) -> OutboundAction:
        return OutboundAction(
            contact=state.contact,
            action_type=action_type,
            payload={"text": text},
            source_message_id=source_message_id,
        )

    def _process(
        self,
        state: ConversationState,
        envelope: InboundEnvelope,
        now: datetime,
        log: LoggerAdapter,
    ) -> tuple[Optional[OutboundAction], list[str]]:
        if state.current_phase == Phase.COMPLETED:
            log.info("Conversation completed, message ignored")
            return None, []

        signals = self.classifier(envelope.text, state)

        if state.current_phase == Phase.BLOCKED_BOT_CHECK:
            return self._process_blocked(state, envelope, signals, now, log)

        # opt-outs are honored even from automated senders
        if not signals.exit:
            score = self.bot_guard.score(state.contact, envelope.text, envelope.scored_at)
            state.bot_detection.record(
                BotSignalRecord(at=envelope.scored_at, score=score.score, signals=score.signals)
            )
            if score.crossed:
                return self._block(state, envelope, score, now, log), []

        self.merge_qualification(state, signals.fields, state.current_phase, now, log)
        return self._advance(state, envelope, signals, now, log)

    # ------------------------------------------------------------------
    # Qualification
    # ------------------------------------------------------------------

    def merge_qualification(
        self,
        state: ConversationState,
        fields: dict[str, Any],
        source_phase: Phase,
        now: datetime,
        log: Optional[LoggerAdapter] = None,
    ) -> list[str]:
        """Merge extracted fields; a later stage's value is never overwritten by an earlier one."""
        applied: list[str] = []
        source_rank = PHASE_RANK.get(source_phase, 0)
        for key, value in fields.items():
            current = state.qualification_data.get(key)
            if current == value:
                continue

            owner = state.field_sources.get(key)
            if current is not None and owner is not None and PHASE_RANK.get(owner, 0) > source_rank:
                self._record_conflict(state, key, current, value, source_phase, "kept_later_stage", now)
                continue

            if current is not None:
                self._record_conflict(state, key, current, value, source_phase, "replaced", now)
            state.qualification_data[key] = value
            state.field_sources[key] = source_phase
            applied.append(key)

        if applied and log is not None:
            log.info("Qualification updated", context={"fields": applied, "phase": source_phase.value})
        return applied

    def _record_conflict(
        self,
        state: ConversationState,
        key: str,
        current: Any,
        incoming: Any,
        source_phase: Phase,
        resolution: str,
        now: datetime,
    ) -> None:
        state.qualification_conflicts.append(
            {
                "field": key,
                "current": current,
                "incoming": incoming,
                "source_phase": source_phase.value,
                "resolution": resolution,
                "at": now.isoformat(),
            }
        )
        del state.qualification_conflicts[:-CONFLICTS_LIMIT]

    def _should_greet(self, state: ConversationState) -> bool:
        if state.greeted_at is not None:
            return False
        return not self.first_response_guard.was_sent(state.contact, GREETING_MARKER)

    def _advance(
        self,
        state: ConversationState,
        envelope: InboundEnvelope,
        signals: IntentSignals,
        now: datetime,
        log: LoggerAdapter,
    ) -> tuple[Optional[OutboundAction], list[str]]:
        decision = decide_transition(state, signals)
        previous = decision.from_phase
        if decision.changed:
            transition(previous, decision.to_phase)

        if decision.move == Move.SILENT:
            return None, []

        if decision.move == Move.EXIT:
            state.current_phase = Phase.COMPLETED
            state.completion_reason = "opt_out"
            self.bot_guard.clear(state.contact)
            log.info("Contact opted out", context={"from_phase": previous.value})
            return self._action(state, self.replies.opt_out(), envelope.provider_message_id), []

        if decision.move == Move.ADVANCE:
            state.mark_completed(previous)
        state.current_phase = decision.to_phase
        if decision.changed:
            log.info(
                "Phase transition",
                context={"from": previous.value, "to": decision.to_phase.value, "move": decision.move.value},
            )

        markers: list[str] = []
        parts: list[str] = []
        if self._should_greet(state):
            parts.append(self.replies.greeting())
            state.greeted_at = now
            markers.append(GREETING_MARKER)

        data = state.qualification_data
        if decision.to_phase == Phase.COMPLETED:
            state.completion_reason = "scheduled"
            parts.append(self.replies.meeting_confirmed(data))
            log.info("Meeting scheduled", context={"meeting_slot": data.get("meeting_slot")})
        elif crosses_role_boundary(previous, decision.to_phase):
            parts.append(
                self._handoff_response(
                    state,
                    owner_for(decision.to_phase),
                    raw_response=envelope.text,
                    origin=HandoffOrigin.INBOUND,
                    now=now,
                    markers=markers,
                )
            )
        else:
            if decision.move == Move.FAQ:
                parts.append(self.replies.faq(signals.faq_topic))
            elif decision.move == Move.OBJECTION:
                parts.append(self.replies.objection(signals.objection_type))
            parts.append(self.replies.question(pending_field(state.current_phase, data), data))

        return self._action(state, self.replies.join(*parts), envelope.provider_message_id), markers

    def _handoff_response(
        self,
        state: ConversationState,
        to_role: AgentRole,
        *,
        raw_response: str,
        origin: HandoffOrigin,
        now: datetime,
        markers: list[str],
    ) -> str:
        packet = initiate_handoff(
            state,
            state.owner_role,
            to_role,
            raw_response=raw_response,
            origin=origin,
            now=now,
        )
        accept_handoff(state, now)

        marker = handoff_marker(to_role)
        if self.first_response_guard.was_sent(state.contact, marker):
            # receiving role already introduced itself moments ago
            data = state.qualification_data
            return self.replies.question(pending_field(state.current_phase, data), data)
        markers.append(marker)
        return on_handoff_received(state.contact, packet, self.replies)

    # ------------------------------------------------------------------
    # Bot verification
    # ------------------------------------------------------------------

    def _block_until(self, now: datetime) -> datetime:
        return now + timedelta(seconds=self.bot_guard.config.block_seconds)

    def _block(
        self,
        state: ConversationState,
        envelope: InboundEnvelope,
        score: BotScore,
        now: datetime,
        log: LoggerAdapter,
    ) -> OutboundAction:
        decision = block(state.current_phase)
        detection = state.bot_detection
        detection.blocked_from_phase = decision.from_phase
        detection.blocked_until = self.bot_guard.block(state.contact, until=self._block_until(now))
        detection.verification_attempts = 1
        state.current_phase = decision.to_phase
        log.warning(
            "Bot threshold crossed, verification requested",
            context={"score": score.score, "signals": score.signals, "from_phase": decision.from_phase.value},
        )
        return self._action(
            state,
            self.replies.verification(),
            envelope.provider_message_id,
            ActionType.REQUEST_HUMAN_VERIFICATION,
        )

    def _process_blocked(
        self,
        state: ConversationState,
        envelope: InboundEnvelope,
        signals: IntentSignals,
        now: datetime,
        log: LoggerAdapter,
    ) -> tuple[Optional[OutboundAction], list[str]]:
        detection = state.bot_detection
        if detection.blocked_until is not None and now < detection.blocked_until:
            self.bot_guard.restore(state.contact, detection.blocked_until)

        confirmed = self.bot_guard.is_human_confirmation(envelope.text)
        decision = decide_transition(state, signals.with_verification(confirmed))

        if decision.move == Move.EXIT:
            return self._advance(state, envelope, signals, now, log)

        if decision.move == Move.UNBLOCK:
            self._unblock(state, decision.to_phase, log)
            data = state.qualification_data
            text = self.replies.join(
                self.replies.verified(),
                self.replies.question(pending_field(state.current_phase, data), data),
            )
            return self._action(state, text, envelope.provider_message_id), []

        max_attempts = self.bot_guard.config.max_verification_attempts
        if detection.blocked_until is not None and now >= detection.blocked_until:
            detection.blocked_until = self.bot_guard.block(state.contact, until=self._block_until(now))
            detection.verification_attempts = 1
            log.info("Block window expired, new verification challenge")
            return self._verification_action(state, envelope, retry=False), []

        if detection.verification_attempts < max_attempts:
            detection.verification_attempts += 1
            log.info("Verification pending", context={"attempt": detection.verification_attempts})
            return self._verification_action(state, envelope, retry=True), []

        log.info("Verification attempts exhausted, staying silent until block expires")
        return None, []

    def _verification_action(
        self,
        state: ConversationState,
        envelope: InboundEnvelope,
        retry: bool,
    ) -> OutboundAction:
        return self._action(
            state,
            self.replies.verification(retry=retry),
            envelope.provider_message_id,
            ActionType.REQUEST_HUMAN_VERIFICATION,
        )

    def _unblock(self, state: ConversationState, resume_phase: Phase, log: LoggerAdapter) -> None:
        state.current_phase = transition(Phase.BLOCKED_BOT_CHECK, resume_phase)
        detection = state.bot_detection
        detection.blocked_until = None
        detection.blocked_from_phase = None
        detection.verification_attempts = 0
        self.bot_guard.clear(state.contact)
        log.info("Contact unblocked", context={"resumed_phase": resume_phase.value})

    # ------------------------------------------------------------------
    # Operator commands (run through the same per-contact queue)
    # ------------------------------------------------------------------

    async def get_state(self, contact: str) -> Optional[ConversationState]:
        loaded = await self.store.load(contact)
        return loaded.state

    async def unblock(self, contact: str) -> Result[ConversationState]:
        """Operator override of a pending bot verification."""
        log = contact_logger("conversation_service", contact, command="unblock")
        state = await self.get_state(contact)
        if state is None:
            return Result.failure("Conversation not found", "not_found")
        if state.current_phase != Phase.BLOCKED_BOT_CHECK:
            return Result.failure(f"Cannot unblock from phase {state.current_phase.value}", "invalid_state")

        now = self._clock()
        self._unblock(state, state.bot_detection.blocked_from_phase or Phase.IDENTIFICATION, log)
        state.add_diagnostic("operator_unblock", now)
        state.updated_at = now
        await self.store.save(contact, state)
        return Result.success(state)

    async def external_handoff(
        self,
        contact: str,
        to_role: AgentRole,
        raw_response: str = "",
    ) -> Result[HandoffOutcome]:
        """Hand the conversation to ``to_role`` on an external trigger.

        Repeating the trigger for the role that already owns the conversation
        dispatches nothing.
        """
        log = contact_logger("conversation_service", contact, command="handoff", to_role=to_role.value)
        state = await self.get_state(contact)
        if state is None:
            return Result.failure("Conversation not found", "not_found")

        phase = state.current_phase
        if phase in (Phase.COMPLETED, Phase.BLOCKED_BOT_CHECK):
            return Result.failure(f"Cannot hand off from phase {phase.value}", "invalid_state")

        if state.owner_role == to_role:
            log.info("Handoff already in place, nothing dispatched")
            packet = packet_from_state(state)
            if packet is None:
                return Result.success(HandoffOutcome(action=None, dispatched=False))
            action = self._action(state, on_handoff_received(contact, packet, self.replies), None)
            return Result.success(HandoffOutcome(action=action, dispatched=False))

        target = ROLE_ENTRY_PHASE[to_role]
        if not can_transition(phase, target):
            return Result.failure(f"Cannot hand off {phase.value} -> {target.value}", "invalid_transition")

        now = self._clock()
        state.current_phase = transition(phase, target)
        markers: list[str] = []
        text = self._handoff_response(
            state,
            to_role,
            raw_response=raw_response,
            origin=HandoffOrigin.EXTERNAL,
            now=now,
            markers=markers,
        )
        log.info("External handoff", context={"from_phase": phase.value, "to_phase": target.value})
        action = self._action(state, text, None)
        await self._commit(state, action, markers, now, log)
        return Result.success(HandoffOutcome(action=action, dispatched=True))
