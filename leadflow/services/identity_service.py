"""Canonical contact keys from raw provider identifiers.

Pure functions: no I/O, no state. Two raw forms of the same phone number
(with or without provider suffix, country code or the Brazilian ninth
mobile digit) always produce the same digits-only key. An empty key means
the identifier is unroutable.
"""

import re
from dataclasses import dataclass
from typing import Optional

from leadflow.logging_config import get_logger

logger = get_logger("identity_service")

BROADCAST_SUFFIXES = ("@lid", "@broadcast", "@g.us", "@newsletter")
MIN_DIGITS = 10
MAX_DIGITS = 13
NATIONAL_LENGTHS = (10, 11)  # DDD + 8 or 9 digit subscriber
NINTH_DIGIT_COUNTRIES = {"55"}
MOBILE_LEADING_DIGITS = "6789"

_NON_DIGIT = re.compile(r"\D")


@dataclass(frozen=True)
class ContactIdentity:
    key: str
    is_broadcast: bool = False
    broadcast_id: Optional[str] = None
    reason: Optional[str] = None

    @property
    def routable(self) -> bool:
        return bool(self.key)


def is_broadcast_identifier(raw: Optional[str]) -> bool:
    if not raw:
        return False
    lowered = raw.strip().lower()
    if any(lowered.endswith(suffix) for suffix in BROADCAST_SUFFIXES):
        return True
    local = lowered.split("@", 1)[0]
    # legacy group ids: "<creator>-<epoch>@g.us"
    return "-" in local and "@" in lowered


def _strip_suffix(raw: str) -> str:
    local = raw.strip().split("@", 1)[0]
    # multi-device form: "5584996250203:12"
    return local.split(":", 1)[0]


def normalize_phone(raw: Optional[str], default_country_code: str = "55") -> str:
    """Digits-only canonical phone, or "" when it cannot denote a phone."""
    if not raw or not isinstance(raw, str):
        return ""

    digits = _NON_DIGIT.sub("", _strip_suffix(raw))
    if len(digits) < MIN_DIGITS or len(digits) > MAX_DIGITS:
        return ""

    if len(digits) in NATIONAL_LENGTHS:
        digits = f"{default_country_code}{digits}"

    for country_code in NINTH_DIGIT_COUNTRIES:
        national = digits[len(country_code) :]
        # country + DDD(2) + 8-digit mobile subscriber -> insert the ninth digit
        if digits.startswith(country_code) and len(national) == 10 and national[2] in MOBILE_LEADING_DIGITS:
            digits = f"{country_code}{national[:2]}9{national[2:]}"

    if len(digits) > MAX_DIGITS:
        return ""
    return digits


def normalize_contact(
    raw: Optional[str],
    participant: Optional[str] = None,
    *,
    default_country_code: str = "55",
) -> ContactIdentity:
    """Resolve the routing key for an inbound event.

    Broadcast and group forms route to the participant; the broadcast id is kept
    only as metadata. Without a participant they are unroutable.
    """
    if is_broadcast_identifier(raw):
        broadcast_id = _strip_suffix(raw or "") or None
        if not participant:
            logger.info(
                "Broadcast identifier without participant",
                extra={"context": {"raw": raw}},
            )
            return ContactIdentity(
                key="",
                is_broadcast=True,
                broadcast_id=broadcast_id,
                reason="broadcast_without_participant",
            )
        key = normalize_phone(participant, default_country_code)
        return ContactIdentity(
            key=key,
            is_broadcast=True,
            broadcast_id=broadcast_id,
            reason=None if key else "invalid_participant",
        )

    key = normalize_phone(raw, default_country_code)
    return ContactIdentity(key=key, reason=None if key else "invalid_identifier")
