from __future__ import annotations

import re
from typing import Iterable

_NON_DIGIT_RE = re.compile(r"\D+")


def normalize_phone(raw: str | None) -> str:
    """Reduce a phone number to its local digits-only form.

    "+38 (050) 123-45-67", "380501234567" and "0501234567" all become
    "0501234567".
    """
    if not raw:
        return ""

    digits = _NON_DIGIT_RE.sub("", raw)
    if digits.startswith("00"):
        digits = digits[2:]

    if digits.startswith("380"):
        digits = digits[2:]
    elif digits.startswith("80"):
        digits = "0" + digits[2:]
    return digits


def phones_set(phones: Iterable[str]) -> set[str]:
    out = {normalize_phone(p) for p in phones}
    out.discard("")
    return out


def phone_matches(candidate: str, roster: Iterable[str]) -> bool:
    phone = normalize_phone(candidate)
    if not phone:
        return False
    for mine in roster:
        mine = normalize_phone(mine)
        if not mine:
            continue
        if phone in mine or mine in phone:
            return True
    return False
