"""
Utility functions shared across the app:
- parse_decimal / parse_optional_int / parse_datetime: request payload parsing
- money_str: Decimal -> "1234.50" for JSON payloads
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Optional


def parse_decimal(value: Any) -> Optional[Decimal]:
    """Parse decimal from user input (accepts comma or dot, JSON numbers or strings)."""
    if value is None or isinstance(value, bool):
        return None
    raw = str(value).strip().replace(",", ".")
    if raw == "":
        return None
    try:
        parsed = Decimal(raw)
    except (InvalidOperation, ValueError):
        return None
    if not parsed.is_finite():
        return None
    return parsed


def parse_optional_int(value: Any) -> Optional[int]:
    """Parse optional int from a payload or query string."""
    if value is None or isinstance(value, bool):
        return None
    raw = str(value).strip()
    if raw == "":
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp; a trailing 'Z' is accepted and stored as naive UTC."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    raw = str(value).strip()
    if not raw:
        return None
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def money_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))
