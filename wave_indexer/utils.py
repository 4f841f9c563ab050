"""Shared utility helpers for wave-indexer."""

from __future__ import annotations

import re
import time
from datetime import datetime, timezone

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


def normalize_address(address: object) -> str:
    """Canonical account key: lowercase, stripped. Non-strings become ''."""
    if isinstance(address, bytes):
        address = "0x" + address.hex()
    if not isinstance(address, str):
        return ""
    return address.strip().lower()


def is_address(value: str) -> bool:
    """Return True for a 0x-prefixed 20-byte hex address."""
    return bool(_ADDRESS_RE.match(value or ""))


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def now_utc() -> datetime:
    """Return current UTC datetime (timezone-aware)."""
    return datetime.now(timezone.utc)


def day_key(ts_ms: int) -> str:
    """YYYY-MM-DD (UTC) for an epoch-ms timestamp."""
    return datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d")


def month_key(ts_ms: int) -> str:
    """YYYY-MM (UTC) for an epoch-ms timestamp."""
    return datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc).strftime("%Y-%m")
