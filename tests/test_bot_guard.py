from datetime import timedelta

from leadflow.services.bot_guard import BotGuard, BotGuardConfig

MENU = "Olá! Escolha uma das opções:\n1 - Vendas\n2 - Suporte\n3 - Financeiro"
CONTACT = "5584996250203"


def make_guard(clock, **overrides):
    return BotGuard(BotGuardConfig(**overrides), clock=clock)


class TestScoring:
    def test_menu_plus_fast_reply_crosses_threshold(self, clock):
        guard = make_guard(clock)
        guard.record_outbound(CONTACT, clock())

        result = guard.score(CONTACT, MENU, clock() + timedelta(milliseconds=200))

        assert result.crossed
        assert set(result.signals) == {"numbered_menu", "fast_reply"}

    def test_single_signal_stays_below_threshold(self, clock):
        guard = make_guard(clock)

        result = guard.score(CONTACT, MENU, clock())

        assert result.signals == ["numbered_menu"]
        assert not result.crossed

    def test_human_paced_message_scores_zero(self, clock):
        guard = make_guard(clock)
        guard.record_outbound(CONTACT, clock())

        result = guard.score(CONTACT, "Oi, tudo bem? Sou o João", clock() + timedelta(seconds=12))

        assert result.score == 0
        assert result.signals == []

    def test_canned_reply_with_protocol(self, clock):
        guard = make_guard(clock)
        text = "A Loja X agradece o seu contato! Protocolo: 20240315001. Em breve um de nossos atendentes responderá."

        result = guard.score(CONTACT, text, clock())

        assert "canned_reply" in result.signals
        assert "protocol_code" in result.signals
        assert result.crossed

    def test_burst_of_messages(self, clock):
        guard = make_guard(clock, burst_count=3)
        arrival = clock()
        for offset in range(2):
            guard.score(CONTACT, "ok", arrival + timedelta(seconds=offset))

        result = guard.score(CONTACT, "ok", arrival + timedelta(seconds=2))

        assert "burst" in result.signals

    def test_arrival_before_outbound_is_fast(self, clock):
        guard = make_guard(clock)
        guard.record_outbound(CONTACT, clock() + timedelta(milliseconds=700))

        result = guard.score(CONTACT, "ok", clock())

        assert result.signals == ["fast_reply"]

    def test_times_are_not_menu_options(self, clock):
        guard = make_guard(clock)

        result = guard.score(CONTACT, "Pode ser amanhã\n10:30 ou\n14:00", clock())

        assert "numbered_menu" not in result.signals

    def test_threshold_is_configurable(self, clock):
        guard = make_guard(clock, threshold=0.5)

        assert guard.score(CONTACT, MENU, clock()).crossed

    def test_zero_weight_disables_signal(self, clock):
        guard = make_guard(clock, weights={"numbered_menu": 0.0, "fast_reply": 0.5})

        assert guard.score(CONTACT, MENU, clock()).signals == []


class TestVerification:
    def test_plain_confirmation_is_human(self, clock):
        guard = make_guard(clock)
        assert guard.is_human_confirmation("Sim, sou humano")
        assert guard.is_human_confirmation("sim")

    def test_confirmation_with_menu_is_not_human(self, clock):
        guard = make_guard(clock)
        assert not guard.is_human_confirmation("Sim\n1 - Vendas\n2 - Suporte")

    def test_non_affirmative_is_not_confirmation(self, clock):
        guard = make_guard(clock)
        assert not guard.is_human_confirmation("qual o preço?")


class TestBlocking:
    def test_block_until_expiry(self, clock):
        guard = make_guard(clock, block_seconds=60)
        until = guard.block(CONTACT)

        assert until == clock() + timedelta(seconds=60)
        assert guard.is_blocked(CONTACT)
        assert not guard.is_blocked(CONTACT, now=until)

    def test_clear_unblocks(self, clock):
        guard = make_guard(clock)
        guard.block(CONTACT)
        guard.clear(CONTACT)
        assert not guard.is_blocked(CONTACT)

    def test_restore_rehydrates_block(self, clock):
        guard = make_guard(clock)
        guard.restore(CONTACT, clock() + timedelta(minutes=5))
        assert guard.is_blocked(CONTACT)

    def test_purge_keeps_blocked_contacts(self, clock):
        guard = make_guard(clock)
        guard.score("idle", "oi", clock())
        guard.block(CONTACT)

        removed = guard.purge(clock() + timedelta(hours=2))

        assert removed == 1
        assert len(guard) == 1
