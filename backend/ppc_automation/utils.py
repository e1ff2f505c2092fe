"""
Shared utility functions.
"""

import logging
import math
import re
from datetime import date, datetime, timezone
from typing import Any, Iterable, Iterator, Optional, TypeVar
from zoneinfo import ZoneInfo

logger = logging.getLogger(__name__)

T = TypeVar("T")

_ASIN_RE = re.compile(r"^b0[a-z0-9]{8}$", re.IGNORECASE)


def utcnow() -> datetime:
    """
    Return the current UTC time as a naive datetime (no tzinfo).
    Naive datetimes are used because our DB columns are TIMESTAMP WITHOUT TIME ZONE.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_local(now_utc: datetime, tz_name: str) -> datetime:
    """Convert a naive-UTC (or aware) datetime into the reference timezone."""
    if now_utc.tzinfo is None:
        now_utc = now_utc.replace(tzinfo=timezone.utc)
    return now_utc.astimezone(ZoneInfo(tz_name))


def local_today(tz_name: str, now_utc: Optional[datetime] = None) -> date:
    """Calendar date in the reference timezone (reports are dated in it)."""
    return to_local(now_utc or utcnow(), tz_name).date()


def looks_like_asin(text: Optional[str]) -> bool:
    """True for catalog identifiers such as 'B07XYZ1234' (product targets, not keywords)."""
    return bool(text) and bool(_ASIN_RE.match(text.strip()))


def chunked(items: Iterable[T], size: int) -> Iterator[list[T]]:
    """Yield consecutive lists of at most `size` items."""
    if size <= 0:
        raise ValueError("chunk size must be positive")
    batch: list[T] = []
    for item in items:
        batch.append(item)
        if len(batch) == size:
            yield batch
            batch = []
    if batch:
        yield batch


def safe_float(value: Any, default: float = 0.0) -> float:
    if value is None:
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def safe_int(value: Any, default: int = 0) -> int:
    if value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def json_number(value: float) -> Any:
    """Infinity is not valid JSON; audit payloads carry it as a string."""
    if isinstance(value, float) and math.isinf(value):
        return "Infinity"
    return value


def money(value: float) -> str:
    return f"${value:.2f}"
