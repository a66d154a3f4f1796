"""Outbound message templates.

Every reply the engine sends is built here, so wording changes never touch
the transition logic.
"""

from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

import yaml

from leadflow.logging_config import get_logger

PLAYBOOK_PATH = Path(__file__).resolve().parents[1] / "knowledge" / "sales_playbook.yaml"

logger = get_logger("reply_service")

MSG_GREETING = "Olá! Sou a {agent}, da {company}. 👋"
MSG_VERIFIED = "Obrigada pela confirmação! Vamos continuar."
MSG_VERIFICATION = (
    "Antes de continuarmos, preciso confirmar uma coisa: você é uma pessoa real? "
    "Responda *sim* para seguirmos."
)
MSG_VERIFICATION_RETRY = "Ainda preciso da sua confirmação: você é uma pessoa real? Responda *sim*."
MSG_OPT_OUT = "Tudo bem, não vou mais enviar mensagens. Se mudar de ideia, é só chamar por aqui. Até mais!"
MSG_NUDGE = "Pode me contar um pouco mais?"
MSG_FALLBACK_ANSWER = "Boa pergunta! Nosso especialista pode detalhar isso para você."

MSG_MEETING_CONFIRMED = (
    "Perfeito{name}! Reunião registrada para {slot}. "
    "Nosso especialista vai te chamar nesse horário. Até lá!"
)

FIELD_QUESTIONS = {
    "name": "Como posso te chamar?",
    "need": "{name}qual é hoje o principal desafio do seu negócio que você gostaria de resolver?",
    "timing": "{name}e para quando você precisa resolver isso?",
    "interest": "Faz sentido para você conhecer essa solução mais de perto?",
    "meeting_slot": "{name}qual dia e horário ficam melhor para uma conversa de 30 minutos?",
}

SPECIALIST_INTRO = (
    "{name}pelo que você contou sobre {need}, temos uma solução que se encaixa bem: "
    "um plano sob medida com acompanhamento semanal. "
)
SCHEDULER_INTRO = "Ótimo{name}! Vamos marcar uma conversa com nosso especialista. "


@lru_cache(maxsize=4)
def _load_yaml(path: Path) -> dict:
    if not path.exists():
        logger.warning("Playbook file not found", extra={"context": {"path": str(path)}})
        return {}
    with path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    return data if isinstance(data, dict) else {}


def load_playbook(path: Path = PLAYBOOK_PATH) -> dict[str, dict[str, str]]:
    """FAQ answers and objection replies keyed by topic."""
    data = _load_yaml(path)
    return {
        section: {str(k): str(v) for k, v in (data.get(section) or {}).items()}
        for section in ("faq", "objections")
    }


def _name_prefix(name: Optional[str], trailing: str = ", ") -> str:
    return f"{name}{trailing}" if name else ""


def _capitalize(text: str) -> str:
    return text[:1].upper() + text[1:] if text else text


class ReplyBuilder:
    def __init__(
        self,
        agent_name: str = "Leadly",
        company_name: str = "Digital Boost",
        playbook: Optional[dict[str, dict[str, str]]] = None,
    ):
        self.agent_name = agent_name
        self.company_name = company_name
        self.playbook = playbook if playbook is not None else load_playbook()

    def _fill(self, template: str, **values: Any) -> str:
        return template.format(agent=self.agent_name, company=self.company_name, **values)

    def greeting(self) -> str:
        return self._fill(MSG_GREETING)

    def question(self, field: Optional[str], data: dict[str, Any]) -> str:
        if field is None or field not in FIELD_QUESTIONS:
            return MSG_NUDGE
        return _capitalize(self._fill(FIELD_QUESTIONS[field], name=_name_prefix(data.get("name"))))

    def faq(self, topic: Optional[str]) -> str:
        answers = self.playbook.get("faq", {})
        return self._fill(answers.get(topic or "") or answers.get("how_it_works") or MSG_FALLBACK_ANSWER)

    def objection(self, objection_type: Optional[str]) -> str:
        replies = self.playbook.get("objections", {})
        return self._fill(replies.get(objection_type or "") or replies.get("timing") or MSG_FALLBACK_ANSWER)

    def verification(self, retry: bool = False) -> str:
        return MSG_VERIFICATION_RETRY if retry else MSG_VERIFICATION

    def verified(self) -> str:
        return MSG_VERIFIED

    def opt_out(self) -> str:
        return MSG_OPT_OUT

    def meeting_confirmed(self, data: dict[str, Any]) -> str:
        name = data.get("name")
        return MSG_MEETING_CONFIRMED.format(name=f", {name}" if name else "", slot=data.get("meeting_slot"))

    def specialist_intro(self, name: Optional[str], need: str) -> str:
        return _capitalize(SPECIALIST_INTRO.format(name=_name_prefix(name), need=need)) + FIELD_QUESTIONS["interest"]

    def scheduler_intro(self, name: Optional[str]) -> str:
        return SCHEDULER_INTRO.format(name=f", {name}" if name else "") + self.question("meeting_slot", {})

    @staticmethod
    def join(*parts: Optional[str]) -> str:
        return "\n\n".join(part for part in parts if part)
