"""Helpers shared by the memory and postgres storage backends."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional, Sequence, Tuple, TypeVar

from tenantauth.service.claims import parse_claim, serialize_claim
from tenantauth.storage.models import Claim

T = TypeVar("T")

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 500


def generate_uuid() -> str:
    return str(uuid.uuid4())


def normalize_email(email: str) -> str:
    return email.strip().lower()


def normalize_paging(page: int, size: int) -> Tuple[int, int]:
    """Clamp 1-based page numbers and page sizes to sane bounds."""
    page = max(1, int(page or 1))
    size = int(size or DEFAULT_PAGE_SIZE)
    size = max(1, min(size, MAX_PAGE_SIZE))
    return page, size


def paginate(items: Sequence[T], page: int, size: int) -> Tuple[List[T], int]:
    page, size = normalize_paging(page, size)
    start = (page - 1) * size
    return list(items[start : start + size]), len(items)


def ilike(value: Optional[str], pattern: Optional[str]) -> bool:
    """Case-insensitive substring match, the in-memory analogue of ``ILIKE '%x%'``."""
    if not pattern:
        return True
    return bool(value) and pattern.lower() in value.lower()


def sort_by_name(items: Sequence[T], key: Callable[[T], str]) -> List[T]:
    return sorted(items, key=lambda item: key(item).lower())


def claims_to_strings(claims: Sequence[Claim]) -> List[str]:
    return [serialize_claim(c) for c in claims]


def claims_from_strings(raw: Optional[Sequence[str]]) -> List[Claim]:
    return [parse_claim(item) for item in raw or []]


def ensure_aware(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive timestamps read back from storage as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    """Return ``row[key]`` for dict-like rows, tolerating missing columns."""
    if row is None:
        return default
    if hasattr(row, "get"):
        return row.get(key, default)
    try:
        return row[key]
    except (KeyError, IndexError, TypeError):
        return default
