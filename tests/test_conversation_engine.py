from unittest.mock import AsyncMock

import pytest

from leadflow.errors import DispatchError
from leadflow.schemas.conversation import ActionType, AgentRole
from leadflow.services.conversation_service import ConversationEngine
from leadflow.services.reply_service import FIELD_QUESTIONS, MSG_OPT_OUT, ReplyBuilder
from leadflow.services.state_machine import Phase
from leadflow.services.store_service import InMemoryConversationStore, StateLoad

CONTACT = "5584996250203"
GREETING = ReplyBuilder().greeting()
MENU = "Olá! Escolha uma das opções:\n1 - Vendas\n2 - Suporte\n3 - Financeiro"


async def load(store, contact=CONTACT):
    loaded = await store.load(contact)
    return loaded.state


class TestGreetingScenario:
    @pytest.mark.asyncio
    async def test_two_greetings_get_one_greeting(self, say, store, sender):
        first = await say("Olá")
        second = await say("Olá")

        state = await load(store)
        assert state.message_count == 2
        assert state.current_phase == Phase.IDENTIFICATION
        assert GREETING in first.text
        assert GREETING not in second.text
        assert sum(GREETING in action.text for action in sender.sent) == 1

    @pytest.mark.asyncio
    async def test_guard_covers_store_that_lags(self, sender, bot_guard, first_response_guard, clock, make_envelope):
        class LaggingStore(InMemoryConversationStore):
            """Never returns what was written, like a replica that has not caught up."""

            async def load(self, contact):
                return StateLoad()

        engine = ConversationEngine(
            LaggingStore(),
            sender,
            bot_guard=bot_guard,
            first_response_guard=first_response_guard,
            clock=clock,
        )

        clock.advance(2)
        await engine.handle(make_envelope("Olá"))
        clock.advance(2)
        second = await engine.handle(make_envelope("Olá"))

        assert GREETING not in second.text
        assert sum(GREETING in action.text for action in sender.sent) == 1

    @pytest.mark.asyncio
    async def test_guard_marker_expires_after_ttl(self, sender, bot_guard, first_response_guard, clock, make_envelope):
        class LaggingStore(InMemoryConversationStore):
            async def load(self, contact):
                return StateLoad()

        engine = ConversationEngine(
            LaggingStore(), sender, bot_guard=bot_guard, first_response_guard=first_response_guard, clock=clock
        )

        await engine.handle(make_envelope("Olá"))
        clock.advance(11)
        second = await engine.handle(make_envelope("Olá"))

        assert GREETING in second.text


class TestQualificationFlow:
    @pytest.mark.asyncio
    async def test_full_funnel(self, say, store):
        await say("Oi, meu nome é Carla")
        state = await load(store)
        assert state.current_phase == Phase.BUSINESS_DISCOVERY
        assert Phase.IDENTIFICATION in state.phase_completion

        reply = await say("Preciso gerar mais leads no Instagram, é urgente")
        state = await load(store)
        assert state.current_phase == Phase.SOLUTION_PRESENTATION
        assert state.owner_role == AgentRole.SPECIALIST
        assert state.handoff.from_role == AgentRole.SDR
        assert state.handoff.accepted_at is not None
        assert "Carla" in reply.text
        assert reply.text.endswith(FIELD_QUESTIONS["interest"])

        reply = await say("Sim, faz sentido")
        state = await load(store)
        assert state.current_phase == Phase.SCHEDULING
        assert state.owner_role == AgentRole.SCHEDULER
        assert "dia e horário" in reply.text

        reply = await say("pode ser terça às 14h")
        state = await load(store)
        assert state.current_phase == Phase.COMPLETED
        assert state.completion_reason == "scheduled"
        assert state.qualification_data["meeting_slot"] == "terça 14h"
        assert "terça 14h" in reply.text
        assert state.message_count == 4

    @pytest.mark.asyncio
    async def test_advances_at_most_one_phase(self, say, store):
        await say("Oi, meu nome é Carla, preciso de mais clientes, é urgente")

        state = await load(store)
        assert state.current_phase == Phase.BUSINESS_DISCOVERY
        assert state.qualification_data["timing"] == "urgente"

    @pytest.mark.asyncio
    async def test_faq_answers_and_reasks(self, say, store):
        await say("Oi, meu nome é Carla")
        reply = await say("Quanto custa?")

        state = await load(store)
        assert state.current_phase == Phase.BUSINESS_DISCOVERY
        assert "investimento" in reply.text
        assert "principal desafio" in reply.text

    @pytest.mark.asyncio
    async def test_objection_keeps_phase(self, say, store):
        await say("Oi, meu nome é Carla")
        await say("Preciso gerar mais leads, é urgente")
        reply = await say("Achei muito caro")

        state = await load(store)
        assert state.current_phase == Phase.SOLUTION_PRESENTATION
        assert "investimento" in reply.text
        assert reply.text.endswith(FIELD_QUESTIONS["interest"])

    @pytest.mark.asyncio
    async def test_scheduling_jump_asks_missing_name(self, say, store):
        reply = await say("Quero agendar uma reunião")

        state = await load(store)
        assert state.current_phase == Phase.SCHEDULING
        assert state.owner_role == AgentRole.SCHEDULER
        assert reply.text.endswith(FIELD_QUESTIONS["name"])

        reply = await say("Carla")
        state = await load(store)
        assert state.qualification_data["name"] == "Carla"
        assert state.current_phase == Phase.SCHEDULING
        assert "dia e horário" in reply.text


class TestExit:
    @pytest.mark.asyncio
    async def test_opt_out_is_terminal(self, say, store, sender):
        await say("Oi, meu nome é Carla")
        farewell = await say("pare de me mandar mensagens")

        state = await load(store)
        assert state.current_phase == Phase.COMPLETED
        assert state.completion_reason == "opt_out"
        assert farewell.text == MSG_OPT_OUT

        sent_before = len(sender.sent)
        assert await say("oi?") is None
        assert await say("Quero agendar") is None
        assert len(sender.sent) == sent_before
        assert (await load(store)).message_count == 4


class TestIdempotency:
    @pytest.mark.asyncio
    async def test_replay_returns_recorded_action(self, engine, make_envelope, store, sender, clock):
        envelope = make_envelope("Olá", message_id="WAMID-1")
        first = await engine.handle(envelope)
        clock.advance(30)
        again = await engine.handle(envelope)

        state = await load(store)
        assert again == first
        assert state.message_count == 1
        assert len(sender.sent) == 1

    @pytest.mark.asyncio
    async def test_undelivered_action_is_redispatched_on_replay(self, store, bot_guard, first_response_guard, clock, make_envelope):
        sender = AsyncMock()
        sender.send.side_effect = [DispatchError("provider down", contact=CONTACT), None]
        engine = ConversationEngine(
            store, sender, bot_guard=bot_guard, first_response_guard=first_response_guard, clock=clock
        )
        envelope = make_envelope("Olá", message_id="WAMID-1")

        with pytest.raises(DispatchError):
            await engine.handle(envelope)
        state = await load(store)
        assert state.last_action_dispatched is False

        clock.advance(30)
        await engine.handle(envelope)

        state = await load(store)
        assert state.last_action_dispatched is True
        assert state.message_count == 1
        assert sender.send.await_count == 2


class TestCorruptedState:
    @pytest.mark.asyncio
    async def test_corrupted_blob_starts_fresh_with_diagnostic(self, say, store):
        store.put_raw(CONTACT, "{not json")

        reply = await say("Olá")

        state = await load(store)
        assert reply is not None
        assert state.message_count == 1
        assert state.diagnostics[0]["kind"] == "state_corrupted"


class TestBotVerification:
    async def _block(self, engine, make_envelope, clock):
        clock.advance(30)
        await engine.handle(make_envelope("Olá"))
        clock.advance(0.2)
        return await engine.handle(make_envelope(MENU))

    @pytest.mark.asyncio
    async def test_menu_with_fast_reply_blocks(self, engine, make_envelope, clock, store, bot_guard):
        action = await self._block(engine, make_envelope, clock)

        state = await load(store)
        assert action.action_type == ActionType.REQUEST_HUMAN_VERIFICATION
        assert state.current_phase == Phase.BLOCKED_BOT_CHECK
        assert state.bot_detection.blocked_from_phase == Phase.IDENTIFICATION
        assert set(state.bot_detection.signal_history[-1].signals) == {"numbered_menu", "fast_reply"}
        assert bot_guard.is_blocked(CONTACT)

    @pytest.mark.asyncio
    async def test_fast_reply_measured_on_receipt_not_provider_seconds(self, engine, make_envelope, clock, store):
        clock.advance(0.7)
        await engine.handle(
            make_envelope("Olá", arrival_timestamp=clock().replace(microsecond=0), received_at=clock())
        )
        clock.advance(0.15)
        action = await engine.handle(
            make_envelope(MENU, arrival_timestamp=clock().replace(microsecond=0), received_at=clock())
        )

        state = await load(store)
        assert action.action_type == ActionType.REQUEST_HUMAN_VERIFICATION
        assert state.current_phase == Phase.BLOCKED_BOT_CHECK
        assert "fast_reply" in state.bot_detection.signal_history[-1].signals

    @pytest.mark.asyncio
    async def test_reply_stamped_before_our_send_counts_as_fast(self, engine, make_envelope, clock, store):
        clock.advance(0.7)
        await engine.handle(make_envelope("Olá"))
        clock.advance(0.15)
        await engine.handle(make_envelope(MENU, arrival_timestamp=clock().replace(microsecond=0)))

        state = await load(store)
        assert state.current_phase == Phase.BLOCKED_BOT_CHECK

    @pytest.mark.asyncio
    async def test_confirmation_resumes_phase(self, engine, make_envelope, clock, store, bot_guard):
        await self._block(engine, make_envelope, clock)

        clock.advance(20)
        reply = await engine.handle(make_envelope("Sim, sou humano"))

        state = await load(store)
        assert state.current_phase == Phase.IDENTIFICATION
        assert state.bot_detection.blocked_until is None
        assert reply.action_type == ActionType.SEND_TEXT
        assert reply.text.endswith(FIELD_QUESTIONS["name"])
        assert not bot_guard.is_blocked(CONTACT)

    @pytest.mark.asyncio
    async def test_attempts_are_bounded_then_silent(self, engine, make_envelope, clock, store):
        await self._block(engine, make_envelope, clock)

        clock.advance(20)
        retry = await engine.handle(make_envelope("1"))
        clock.advance(20)
        silent = await engine.handle(make_envelope("2"))

        assert retry.action_type == ActionType.REQUEST_HUMAN_VERIFICATION
        assert silent is None
        assert (await load(store)).current_phase == Phase.BLOCKED_BOT_CHECK

    @pytest.mark.asyncio
    async def test_new_challenge_after_block_expires(self, engine, make_envelope, clock, store):
        await self._block(engine, make_envelope, clock)
        clock.advance(20)
        await engine.handle(make_envelope("1"))

        clock.advance(engine.bot_guard.config.block_seconds + 1)
        action = await engine.handle(make_envelope("oi"))

        state = await load(store)
        assert action.action_type == ActionType.REQUEST_HUMAN_VERIFICATION
        assert state.bot_detection.verification_attempts == 1
        assert state.bot_detection.blocked_until > clock()

    @pytest.mark.asyncio
    async def test_exit_while_blocked(self, engine, make_envelope, clock, store):
        await self._block(engine, make_envelope, clock)
        clock.advance(20)
        action = await engine.handle(make_envelope("sair"))

        state = await load(store)
        assert state.current_phase == Phase.COMPLETED
        assert action.text == MSG_OPT_OUT

    @pytest.mark.asyncio
    async def test_single_signal_does_not_block(self, say, store):
        await say(MENU)
        assert (await load(store)).current_phase == Phase.IDENTIFICATION


class TestOperatorCommands:
    @pytest.mark.asyncio
    async def test_unblock(self, engine, make_envelope, clock, store):
        await TestBotVerification()._block(engine, make_envelope, clock)

        result = await engine.unblock(CONTACT)

        assert result.ok
        assert result.value.current_phase == Phase.IDENTIFICATION
        assert (await load(store)).diagnostics[-1]["kind"] == "operator_unblock"

    @pytest.mark.asyncio
    async def test_unblock_requires_blocked_state(self, say, engine):
        await say("Olá")
        result = await engine.unblock(CONTACT)
        assert result.error_code == "invalid_state"

    @pytest.mark.asyncio
    async def test_unblock_unknown_contact(self, engine):
        result = await engine.unblock("5511987654321")
        assert result.error_code == "not_found"

    @pytest.mark.asyncio
    async def test_external_handoff_is_dispatched_once(self, say, engine, store, sender):
        await say("Oi, meu nome é Carla")

        first = await engine.external_handoff(CONTACT, AgentRole.SCHEDULER, "lead pediu contato")
        second = await engine.external_handoff(CONTACT, AgentRole.SCHEDULER)

        state = await load(store)
        assert first.ok and first.value.dispatched
        assert second.ok and not second.value.dispatched
        assert second.value.action.text == first.value.action.text
        assert state.current_phase == Phase.SCHEDULING
        assert state.handoff.payload["origin"] == "external"
        assert sum("dia e horário" in action.text for action in sender.sent) == 1

    @pytest.mark.asyncio
    async def test_external_handoff_cannot_skip_rules(self, say, engine):
        await say("Olá")
        result = await engine.external_handoff(CONTACT, AgentRole.SPECIALIST)
        assert result.error_code == "invalid_transition"


class TestSignalHistory:
    @pytest.mark.asyncio
    async def test_history_is_bounded(self, say, store):
        for _ in range(25):
            await say("Olá")
        state = await load(store)
        assert len(state.bot_detection.signal_history) == 20
        assert state.bot_detection.signal_history[-1].at > state.bot_detection.signal_history[0].at
