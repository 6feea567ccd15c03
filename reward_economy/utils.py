"""Shared utility helpers for reward-economy."""

from __future__ import annotations

import ipaddress
import json
from datetime import datetime, timezone
from typing import Any


def now_utc() -> datetime:
    """Return current UTC datetime (timezone-aware)."""
    return datetime.now(timezone.utc)


def now_ms() -> int:
    """Return current UTC time as integer epoch milliseconds."""
    return int(now_utc().timestamp() * 1000)


def today_str(ms: int | None = None) -> str:
    """Return the UTC date (YYYY-MM-DD) for an epoch-ms instant, default now."""
    if ms is None:
        return now_utc().strftime("%Y-%m-%d")
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d")


def day_start_ms(ms: int | None = None) -> int:
    """Epoch ms of 00:00 UTC on the day containing ``ms``."""
    dt = now_utc() if ms is None else datetime.fromtimestamp(ms / 1000, tz=timezone.utc)
    start = dt.replace(hour=0, minute=0, second=0, microsecond=0)
    return int(start.timestamp() * 1000)


def dumps(value: Any) -> str:
    """Compact, key-sorted JSON for storage columns."""
    return json.dumps(value, separators=(",", ":"), sort_keys=True, default=str)


def loads(raw: str | None, default: Any = None) -> Any:
    """Parse a JSON column, returning ``default`` for NULL or garbage."""
    if not raw:
        return default
    try:
        return json.loads(raw)
    except (ValueError, TypeError):
        return default


def is_private_ip(ip: str) -> bool:
    """True only for a well-formed loopback, private or link-local address."""
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return False
    return addr.is_private or addr.is_loopback or addr.is_link_local
