from __future__ import annotations

import re
import unicodedata

_NON_ALNUM = re.compile(r"[^0-9a-zA-Z]+")
_WS = re.compile(r"\s+")


def clean_text(value: str) -> str:
    value = value.casefold()
    value = unicodedata.normalize("NFKD", value)
    value = "".join(ch for ch in value if not unicodedata.combining(ch))
    value = _NON_ALNUM.sub(" ", value)
    value = _WS.sub(" ", value).strip()
    return value


def tokenize(clean_value: str) -> list[str]:
    if not clean_value:
        return []
    return [t for t in clean_value.split(" ") if t]


def normalize_domain(value: str | None) -> str | None:
    """``"Billing <noreply@mail.GitHub.com>"`` -> ``"mail.github.com"``."""
    if not value:
        return None
    value = value.strip().lower()
    if "<" in value and ">" in value:
        value = value[value.index("<") + 1 : value.index(">")]
    if "@" in value:
        value = value.rsplit("@", 1)[1]
    value = re.sub(r"^[a-z]+://", "", value)
    value = value.split("/", 1)[0].split(":", 1)[0].strip(".")
    if value.startswith("www."):
        value = value[4:]
    return value or None


def domain_matches(domain: str | None, known: str) -> bool:
    if not domain:
        return False
    known = known.lower()
    return domain == known or domain.endswith("." + known)
