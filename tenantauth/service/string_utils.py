from __future__ import annotations

import re
import unicodedata
from typing import Iterable, List, Optional

_NON_ALNUM = re.compile(r"[^a-z0-9]")


def normalize(value: str) -> str:
    """Lower-case, strip diacritics and keep only ``[a-z0-9]``."""
    decomposed = unicodedata.normalize("NFD", value.lower())
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return _NON_ALNUM.sub("", stripped)


def capitalize(value: str) -> str:
    """Capitalize each space separated word: ``"jean PAUL"`` -> ``"Jean Paul"``."""
    return " ".join(word[:1].upper() + word[1:] for word in value.lower().split(" "))


def route(url: Optional[str]) -> str:
    """Strip one leading and one trailing slash from a configured route."""
    if not url:
        return ""
    if url.startswith("/"):
        url = url[1:]
    if url.endswith("/"):
        url = url[:-1]
    return url


def split_list(value: Optional[str | Iterable[str]]) -> List[str]:
    """Split a comma separated setting into trimmed, non-empty items."""
    if value is None:
        return []
    items = value.split(",") if isinstance(value, str) else list(value)
    return [item.strip() for item in items if item and item.strip()]


def redact_email(email: str) -> str:
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"
