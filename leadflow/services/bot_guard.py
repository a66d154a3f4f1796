"""Bot detection guard.

Scores every inbound message with a weighted sum of independent signals.
Signals are pluggable objects; their weights and the block threshold come
from configuration, so tuning never touches the transition logic.
"""

from __future__ import annotations

import re
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Optional, Protocol

from leadflow.config import Settings
from leadflow.logging_config import get_logger

logger = get_logger("bot_guard")

IDLE_WINDOW_SECONDS = 3600
PURGE_THRESHOLD = 2048


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class BotGuardConfig:
    weights: dict[str, float] = field(
        default_factory=lambda: {
            "numbered_menu": 0.6,
            "canned_reply": 0.6,
            "protocol_code": 0.5,
            "fast_reply": 0.5,
            "burst": 0.5,
        }
    )
    threshold: float = 1.0
    window_size: int = 10
    min_human_reply_ms: int = 1000
    burst_count: int = 4
    burst_window_seconds: float = 5.0
    block_seconds: int = 3600
    max_verification_attempts: int = 2

    @classmethod
    def from_settings(cls, settings: Settings) -> "BotGuardConfig":
        return cls(
            weights=dict(settings.bot_signal_weights),
            threshold=settings.bot_block_threshold,
            window_size=settings.bot_signal_window_size,
            min_human_reply_ms=settings.bot_min_human_reply_ms,
            burst_count=settings.bot_burst_count,
            burst_window_seconds=settings.bot_burst_window_seconds,
            block_seconds=settings.bot_block_seconds,
            max_verification_attempts=settings.bot_max_verification_attempts,
        )


@dataclass
class ContactWindow:
    arrivals: deque
    last_outbound_at: Optional[datetime] = None
    blocked_until: Optional[datetime] = None
    blocked: bool = False
    last_seen_at: Optional[datetime] = None


@dataclass(frozen=True)
class SignalContext:
    text: str
    normalized: str
    arrival: datetime
    window: ContactWindow
    config: BotGuardConfig


@dataclass(frozen=True)
class BotScore:
    score: float
    signals: list[str]
    threshold: float

    @property
    def crossed(self) -> bool:
        return self.score >= self.threshold


class BotSignal(Protocol):
    name: str
    content_based: bool

    def detect(self, ctx: SignalContext) -> bool: ...


class PatternSignal:
    """Fires when any pattern matches the message text."""

    content_based = True

    def __init__(self, name: str, patterns: Iterable[re.Pattern]):
        self.name = name
        self.patterns = tuple(patterns)

    def detect(self, ctx: SignalContext) -> bool:
        return any(pattern.search(ctx.normalized) for pattern in self.patterns)


class NumberedMenuSignal:
    """Two or more numbered option lines, or an explicit "digite N" prompt."""

    name = "numbered_menu"
    content_based = True

    OPTION_LINE = re.compile(r"(?m)^\s*\*?\[?\s*\d{1,2}\s*\]?\*?\s*[-–—.)]\s*\S")
    PROMPTS = (
        re.compile(r"\b(digite|tecle|envie|responda)\s+(o\s+n[uú]mero\s+)?\d+\b"),
        re.compile(r"\b(escolha|selecione)\s+(uma\s+)?(das\s+)?op[cç]"),
        re.compile(r"\bmenu\s+(principal|de\s+op[cç][oõ]es|de\s+atendimento)\b"),
    )

    def __init__(self, min_options: int = 2):
        self.min_options = min_options

    def detect(self, ctx: SignalContext) -> bool:
        if len(self.OPTION_LINE.findall(ctx.text)) >= self.min_options:
            return True
        return any(pattern.search(ctx.normalized) for pattern in self.PROMPTS)


class FastReplySignal:
    """Reply arrived faster after our last outbound message than a human could type.

    A reply stamped before our send was issued (clock skew, a reply racing the
    send) counts as fast.
    """

    name = "fast_reply"
    content_based = False

    def detect(self, ctx: SignalContext) -> bool:
        last_outbound = ctx.window.last_outbound_at
        if last_outbound is None:
            return False
        latency_ms = (ctx.arrival - last_outbound).total_seconds() * 1000
        return latency_ms < ctx.config.min_human_reply_ms


class BurstSignal:
    """Too many inbound messages inside a short rolling window."""

    name = "burst"
    content_based = False

    def detect(self, ctx: SignalContext) -> bool:
        cutoff = ctx.arrival - timedelta(seconds=ctx.config.burst_window_seconds)
        recent = [ts for ts in ctx.window.arrivals if ts >= cutoff]
        return len(recent) >= ctx.config.burst_count


CANNED_REPLY = PatternSignal(
    "canned_reply",
    [
        re.compile(r"agradece\s+(o\s+)?(seu|sua)\s+(contato|mensagem)"),
        re.compile(r"agradecemos\s+(o\s+)?(seu|sua)\s+(contato|mensagem)"),
        re.compile(r"(mensagem|resposta)\s+autom[aá]tica"),
        re.compile(r"assistente\s+(virtual|digital|automatizad[oa])"),
        re.compile(r"fora\s+do\s+hor[aá]rio\s+(de\s+)?atendimento"),
        re.compile(r"nosso\s+hor[aá]rio\s+de\s+atendimento"),
        re.compile(r"recebemos\s+(a\s+)?sua\s+mensagem"),
        re.compile(r"sua\s+mensagem\s+foi\s+recebida"),
        re.compile(r"em\s+breve\s+um\s+(de\s+nossos\s+)?(atendentes?|consultor(es)?)"),
        re.compile(r"aguarde\s+enquanto\s+(transferimos|transfiro|direcionamos|encaminho)"),
        re.compile(r"retornaremos\s+(o\s+)?(seu\s+)?contato"),
        re.compile(r"seja\s+bem[- ]?vind[oa](\(a\))?\s+(ao?|[àa]|no)\s+\w+"),
        re.compile(r"este\s+canal\s+([ée]\s+)?exclusivo"),
    ],
)

PROTOCOL_CODE = PatternSignal(
    "protocol_code",
    [
        re.compile(r"\bprotocolo\b\s*(n[ºo°.]*\s*)?[:#-]?\s*\d{4,}"),
        re.compile(r"\bticket\s*(n[ºo°.]*\s*)?[:#-]?\s*\d{3,}"),
        re.compile(r"\batendimento\s*(n[ºo°.]*|#)\s*\d{4,}"),
    ],
)


def default_signals() -> list[BotSignal]:
    return [NumberedMenuSignal(), CANNED_REPLY, PROTOCOL_CODE, FastReplySignal(), BurstSignal()]


HUMAN_CONFIRMATION = re.compile(
    r"\b(sim|claro|sou\s+sim|sou\s+human[oa]|human[oa]|sou\s+uma\s+pessoa|sou\s+real|[óo]bvio)\b"
)


def _normalize(text: str) -> str:
    return re.sub(r"\s+", " ", (text or "").strip().casefold())


class BotGuard:
    def __init__(
        self,
        config: Optional[BotGuardConfig] = None,
        signals: Optional[list[BotSignal]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config or BotGuardConfig()
        self.signals = signals if signals is not None else default_signals()
        self._clock = clock
        self._windows: dict[str, ContactWindow] = {}

    def __len__(self) -> int:
        return len(self._windows)

    def _window(self, contact: str) -> ContactWindow:
        window = self._windows.get(contact)
        if window is None:
            if len(self._windows) >= PURGE_THRESHOLD:
                self.purge()
            window = ContactWindow(arrivals=deque(maxlen=self.config.window_size))
            self._windows[contact] = window
        return window

    def _context(self, text: str, arrival: datetime, window: ContactWindow) -> SignalContext:
        return SignalContext(
            text=text or "",
            normalized=_normalize(text),
            arrival=arrival,
            window=window,
            config=self.config,
        )

    def score(self, contact: str, message: str, arrival: datetime) -> BotScore:
        window = self._window(contact)
        window.arrivals.append(arrival)
        window.last_seen_at = arrival
        ctx = self._context(message, arrival, window)

        triggered: list[str] = []
        total = 0.0
        for signal in self.signals:
            weight = self.config.weights.get(signal.name, 0.0)
            if weight <= 0:
                continue
            if signal.detect(ctx):
                triggered.append(signal.name)
                total += weight

        result = BotScore(score=round(total, 4), signals=triggered, threshold=self.config.threshold)
        if triggered:
            logger.info(
                "Bot signals triggered",
                extra={"context": {"contact": contact, "signals": triggered, "score": result.score}},
            )
        return result

    def is_human_confirmation(self, message: str) -> bool:
        """Affirmative verification reply that carries no automated content."""
        normalized = _normalize(message)
        if not normalized or not HUMAN_CONFIRMATION.search(normalized):
            return False
        ctx = self._context(message, self._clock(), ContactWindow(arrivals=deque()))
        return not any(signal.content_based and signal.detect(ctx) for signal in self.signals)

    def record_outbound(self, contact: str, at: Optional[datetime] = None) -> None:
        window = self._window(contact)
        window.last_outbound_at = at or self._clock()

    def block(self, contact: str, until: Optional[datetime] = None) -> datetime:
        window = self._window(contact)
        window.blocked = True
        window.blocked_until = until or (self._clock() + timedelta(seconds=self.config.block_seconds))
        logger.warning(
            "Contact blocked for bot verification",
            extra={"context": {"contact": contact, "blocked_until": window.blocked_until.isoformat()}},
        )
        return window.blocked_until

    def clear(self, contact: str) -> None:
        window = self._windows.get(contact)
        if window is None:
            return
        window.blocked = False
        window.blocked_until = None
        window.arrivals.clear()
        logger.info("Bot block cleared", extra={"context": {"contact": contact}})

    def restore(self, contact: str, blocked_until: Optional[datetime]) -> None:
        """Rehydrate a block recorded in durable state (e.g. after a restart)."""
        window = self._window(contact)
        if not window.blocked:
            window.blocked = True
            window.blocked_until = blocked_until

    def is_blocked(self, contact: str, now: Optional[datetime] = None) -> bool:
        window = self._windows.get(contact)
        if window is None or not window.blocked:
            return False
        if window.blocked_until is None:
            return True
        return (now or self._clock()) < window.blocked_until

    def purge(self, now: Optional[datetime] = None) -> int:
        now = now or self._clock()
        cutoff = now - timedelta(seconds=IDLE_WINDOW_SECONDS)
        idle = [
            contact
            for contact, window in self._windows.items()
            if not window.blocked and (window.last_seen_at or window.last_outbound_at or now) < cutoff
        ]
        for contact in idle:
            del self._windows[contact]
        return len(idle)
