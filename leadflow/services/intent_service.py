import re
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import TYPE_CHECKING, Any, Iterable, Optional, Protocol

from leadflow.logging_config import get_logger
from leadflow.services.state_machine import Phase, pending_field

if TYPE_CHECKING:
    from leadflow.schemas.conversation import ConversationState

logger = get_logger("intent_service")


class IntentKind(str, Enum):
    EXIT = "exit"  # opt-out, stop messaging
    SCHEDULING = "scheduling"  # wants a meeting now
    OBJECTION = "objection"  # price/time/competitor/trust pushback
    FAQ = "faq"  # off-topic or product question
    QUALIFYING = "qualifying"  # answers a qualification question
    GREETING = "greeting"
    OTHER = "other"


@dataclass(frozen=True)
class IntentSignals:
    exit: bool = False
    scheduling: bool = False
    objection: bool = False
    faq: bool = False
    greeting: bool = False
    affirmative: bool = False
    human_confirmed: bool = False
    objection_type: Optional[str] = None
    faq_topic: Optional[str] = None
    fields: dict[str, Any] = field(default_factory=dict)

    @property
    def primary(self) -> IntentKind:
        if self.exit:
            return IntentKind.EXIT
        if self.scheduling:
            return IntentKind.SCHEDULING
        if self.objection:
            return IntentKind.OBJECTION
        if self.faq:
            return IntentKind.FAQ
        if self.fields:
            return IntentKind.QUALIFYING
        if self.greeting:
            return IntentKind.GREETING
        return IntentKind.OTHER

    def with_verification(self, confirmed: bool) -> "IntentSignals":
        return replace(self, human_confirmed=confirmed)


class IntentClassifier(Protocol):
    def __call__(self, text: str, state: "ConversationState") -> IntentSignals: ...


def normalize_for_matching(text: str) -> str:
    """Normalize text for matching short phrases (casefold + trim punctuation)."""
    if not text:
        return ""

    normalized = text.strip().casefold()
    normalized = re.sub(r"\s+", " ", normalized)
    normalized = re.sub(r"^[^\w]+|[^\w]+$", "", normalized)
    return normalized


EXIT_PATTERNS = (
    re.compile(r"^(sair|parar|pare|stop|chega|descadastrar|unsubscribe)$"),
    re.compile(r"\b(descadastr\w*|opt[- ]?out)\b"),
    re.compile(r"\bn[aã]o\s+(quero|desejo)\s+(mais\s+)?(receber|mensagens?|contato)\b"),
    re.compile(r"\bn[aã]o\s+tenho\s+(nenhum\s+)?interesse\b"),
    re.compile(r"\bn[aã]o\s+me\s+(mande|mandem|envie|enviem|contate|contatem|ligue)\b"),
    re.compile(r"\b(pare|para)\s+de\s+(me\s+)?(mandar|enviar|encher|perturbar|escrever)\b"),
    re.compile(r"\b(me\s+remov\w+|tir[ae]\s+meu\s+n[uú]mero|remov\w+\s+meu\s+(n[uú]mero|contato))\b"),
    re.compile(r"\bme\s+deix[ae]\s+em\s+paz\b"),
    re.compile(r"\bvou\s+(te\s+)?bloquear\b"),
)

SCHEDULING_PATTERNS = (
    re.compile(r"\b(agendar|marcar|remarcar)\b"),
    re.compile(r"\b(agendamento|reuni[aã]o|videochamada|call|demonstra[cç][aã]o)\b"),
    re.compile(r"\b(falar|conversar)\s+com\s+(um|uma|o|a)\s+(especialista|consultor\w*|vendedor\w*)\b"),
    re.compile(r"\bqual\s+(o\s+)?(melhor\s+)?hor[aá]rio\b"),
)

OBJECTION_PATTERNS: dict[str, tuple[re.Pattern, ...]] = {
    "price": (
        re.compile(r"\b(muito\s+caro|caro\s+demais|t[aá]\s+caro|[ée]\s+caro)\b"),
        re.compile(r"\b(n[aã]o\s+tenho|sem)\s+(verba|or[cç]amento|dinheiro|grana)\b"),
    ),
    "timing": (
        re.compile(r"\b(sem\s+tempo|n[aã]o\s+tenho\s+tempo|agora\s+n[aã]o|momento\s+ruim|mais\s+pra\s+frente)\b"),
    ),
    "competitor": (
        re.compile(
            r"\bj[aá]\s+(tenho|temos|uso|usamos|trabalho\s+com|trabalhamos\s+com)\s+"
            r"(um|uma|outro|outra)?\s*(fornecedor|ag[eê]ncia|sistema|solu[cç][aã]o|empresa|parceiro)"
        ),
    ),
    "trust": (
        re.compile(r"\b(n[aã]o\s+confio|parece\s+golpe|[ée]\s+golpe|n[aã]o\s+sei\s+se\s+funciona)\b"),
    ),
}

FAQ_PATTERNS: dict[str, tuple[re.Pattern, ...]] = {
    "pricing": (
        re.compile(r"\b(quanto\s+custa|quanto\s+[ée]|qual\s+(o|[ée]\s+o)\s+(pre[cç]o|valor|investimento))\b"),
        re.compile(r"^(e\s+)?(o\s+|os\s+)?(pre[cç]os?|valores?)$"),
    ),
    "how_it_works": (re.compile(r"\bcomo\s+(isso\s+|que\s+)?funciona\b"),),
    "who": (
        re.compile(r"\b(quem\s+([ée]|fala|est[aá]\s+falando)|com\s+quem\s+(eu\s+)?falo)\b"),
        re.compile(r"\b([ée]\s+(um\s+)?(rob[oô]|bot)|voc[eê]\s+[ée]\s+(um\s+)?(rob[oô]|bot|humano|pessoa))\b"),
    ),
    "company": (
        re.compile(r"\b(o\s+que\s+voc[eê]s\s+fazem|que\s+empresa\s+[ée]\s+essa|qual\s+[ée]\s+a\s+empresa)\b"),
    ),
}

GREETING_PATTERN = re.compile(r"^(oi+|ol[aá]|opa|e\s+a[ií]|bom\s+dia|boa\s+tarde|boa\s+noite|hey|hello|hi)\b")

AFFIRMATIVE_PATTERN = re.compile(
    r"\b(sim|claro|faz\s+sentido|gostei|interessante|quero|pode\s+ser|bora|vamos|com\s+certeza|"
    r"perfeito|show|ok|beleza|top|tenho\s+interesse)\b"
)

NAME_PATTERN = re.compile(
    r"(?i:meu\s+nome\s+[ée]|me\s+chamo|pode\s+me\s+chamar\s+de|aqui\s+[ée]\s+(?:o|a)|sou\s+(?:o|a))\s+"
    r"([A-ZÀ-Ý][a-zà-ÿ]+(?:\s+[A-ZÀ-Ý][a-zà-ÿ]+)?)"
)
COMPANY_PATTERN = re.compile(
    r"(?i:minha\s+empresa\s+[ée]|trabalho\s+n[ao]|sou\s+d[ao]|da\s+empresa|empresa\s+chamada)\s+"
    r"([\wÀ-ÿ&.\- ]{2,40}?)(?=[,.;!?]|$)"
)
NEED_PATTERN = re.compile(
    r"\b(preciso|precisamos|quero|queremos|nosso\s+desafio|meu\s+desafio|meu\s+problema|"
    r"nosso\s+problema|dificuldade\s+(?:[ée]|em|com))\s+(.{4,})"
)
TIMING_PATTERN = re.compile(
    r"\b(urgente|imediat\w+|pra\s+ontem|este\s+m[eê]s|esse\s+m[eê]s|essa\s+semana|esta\s+semana|"
    r"pr[oó]xim[oa]s?\s+(?:semana|m[eê]s|trimestre|\d+\s+(?:dias|semanas|meses))|"
    r"em\s+\d+\s+(?:dias|semanas|meses)|ainda\s+este\s+ano|sem\s+pressa|"
    r"(?:curto|m[eé]dio|longo)\s+prazo)\b"
)
BUDGET_PATTERN = re.compile(r"(r\$\s*\d[\d.,]*\s*(?:mil|k)?|\b\d+[\d.,]*\s*(?:mil|k)\s*(?:reais)?\b)")
DECISION_MAKER_PATTERN = re.compile(
    r"\b(sou\s+(?:o|a)\s+(?:dono|dona|respons[aá]vel|decisor|diretor|diretora|ceo|fundador|fundadora)|"
    r"sou\s+s[oó]ci[oa]|eu\s+(?:que\s+)?decido)\b"
)
INFLUENCER_PATTERN = re.compile(
    r"\b(preciso|tenho\s+que)\s+(?:falar|ver|alinhar)\s+com\s+(?:meu|minha|o|a)\s+"
    r"(s[oó]ci[oa]|chefe|gerente|diretor\w*)\b"
)
DAY_PATTERN = re.compile(
    r"\b(segunda|ter[cç]a|quarta|quinta|sexta|s[aá]bado|domingo|amanh[aã]|hoje|"
    r"depois\s+de\s+amanh[aã]|\d{1,2}/\d{1,2})\b"
)
TIME_PATTERN = re.compile(r"\b(\d{1,2}\s*h(?:\s*\d{2})?|\d{1,2}:\d{2}|de\s+manh[aã]|[àa]\s+tarde|[àa]\s+noite)\b")
EMAIL_PATTERN = re.compile(r"\b[\w.+-]+@[\w-]+\.[\w.]+\b")
SHORT_NAME_PATTERN = re.compile(r"^[A-Za-zÀ-ÿ]{2,}(?:\s+[A-Za-zÀ-ÿ]{2,}){0,2}$")
NOT_A_NAME = frozenset(
    {"tudo bem", "tudo bom", "obrigado", "obrigada", "valeu", "nao", "não", "talvez", "entendi", "certo"}
)


def _matches_any(normalized: str, patterns: Iterable[re.Pattern]) -> bool:
    return any(pattern.search(normalized) for pattern in patterns)


def _first_topic(normalized: str, table: dict[str, tuple[re.Pattern, ...]]) -> Optional[str]:
    for topic, patterns in table.items():
        if _matches_any(normalized, patterns):
            return topic
    return None


def extract_fields(
    text: str,
    state: "ConversationState",
    *,
    free_answer: bool = True,
    scheduling: bool = False,
) -> dict[str, Any]:
    """Heuristic extraction of qualification fields from one message.

    With ``free_answer`` the whole message may be taken as the answer to the
    pending question (a bare name, a free-form need description). A scheduling
    request ("quero agendar...") is never read as a business need.
    """
    normalized = normalize_for_matching(text)
    raw = (text or "").strip()
    fields: dict[str, Any] = {}
    if not normalized:
        return fields

    phase = state.current_phase
    pending = pending_field(phase, state.qualification_data)

    name_match = NAME_PATTERN.search(raw)
    if name_match:
        fields["name"] = name_match.group(1).strip()
    elif pending == "name" and free_answer and SHORT_NAME_PATTERN.match(raw) and normalized not in NOT_A_NAME:
        fields["name"] = raw.title()

    company_match = COMPANY_PATTERN.search(raw)
    if company_match:
        fields["company"] = company_match.group(1).strip()

    timing_match = TIMING_PATTERN.search(normalized)
    if timing_match:
        fields["timing"] = timing_match.group(1)

    budget_match = BUDGET_PATTERN.search(normalized)
    if budget_match:
        fields["budget"] = budget_match.group(1).strip()

    if DECISION_MAKER_PATTERN.search(normalized):
        fields["authority"] = "decision_maker"
    elif INFLUENCER_PATTERN.search(normalized):
        fields["authority"] = "influencer"

    need_match = None if scheduling else NEED_PATTERN.search(normalized)
    if need_match:
        fields["need"] = need_match.group(2).strip()
    elif pending == "need" and free_answer and len(normalized.split()) >= 3:
        fields["need"] = normalized

    email_match = EMAIL_PATTERN.search(raw)
    if email_match:
        fields["email"] = email_match.group(0)

    if phase == Phase.SOLUTION_PRESENTATION and AFFIRMATIVE_PATTERN.search(normalized):
        fields["interest"] = "yes"

    if phase == Phase.SCHEDULING:
        day = DAY_PATTERN.search(normalized)
        hour = TIME_PATTERN.search(normalized)
        if day or hour:
            fields["meeting_slot"] = " ".join(part.group(1) for part in (day, hour) if part)

    return fields


class KeywordIntentClassifier:
    """Regex/keyword classifier for Portuguese WhatsApp conversations.

    Pattern tables are constructor arguments, so alternative qualification
    flows are just alternative configurations of this class.
    """

    def __init__(
        self,
        exit_patterns: Iterable[re.Pattern] = EXIT_PATTERNS,
        scheduling_patterns: Iterable[re.Pattern] = SCHEDULING_PATTERNS,
        objection_patterns: Optional[dict[str, tuple[re.Pattern, ...]]] = None,
        faq_patterns: Optional[dict[str, tuple[re.Pattern, ...]]] = None,
    ):
        self.exit_patterns = tuple(exit_patterns)
        self.scheduling_patterns = tuple(scheduling_patterns)
        self.objection_patterns = objection_patterns if objection_patterns is not None else OBJECTION_PATTERNS
        self.faq_patterns = faq_patterns if faq_patterns is not None else FAQ_PATTERNS

    def __call__(self, text: str, state: "ConversationState") -> IntentSignals:
        normalized = normalize_for_matching(text)
        if not normalized:
            return IntentSignals()

        greeting = bool(GREETING_PATTERN.search(normalized))
        exit_requested = _matches_any(normalized, self.exit_patterns)
        scheduling = _matches_any(normalized, self.scheduling_patterns)
        affirmative = bool(AFFIRMATIVE_PATTERN.search(normalized))
        objection_type = _first_topic(normalized, self.objection_patterns)
        faq_topic = _first_topic(normalized, self.faq_patterns)
        free_answer = not (
            greeting or exit_requested or scheduling or affirmative or objection_type or faq_topic
        )

        signals = IntentSignals(
            exit=exit_requested,
            scheduling=scheduling,
            objection=objection_type is not None,
            faq=faq_topic is not None,
            greeting=greeting,
            affirmative=affirmative,
            objection_type=objection_type,
            faq_topic=faq_topic,
            fields=extract_fields(text, state, free_answer=free_answer, scheduling=scheduling),
        )
        logger.debug(
            "Intent classified",
            extra={"context": {"contact": state.contact, "intent": signals.primary.value}},
        )
        return signals
