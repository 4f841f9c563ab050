"""Numeric normalizer: the only sanctioned conversion path for ledger values.

Ledger integers are uint256 and routinely exceed what a float can hold
exactly. Persistence always goes through :func:`to_decimal_string` (lossless),
arithmetic aggregation through :func:`to_safe_number` (bounded, never
NaN/Infinity). Malformed input falls back to ``"0"`` / ``0.0``; nothing here
raises.
"""

from __future__ import annotations

import logging
import math
from decimal import Decimal, InvalidOperation

logger = logging.getLogger("wave.numeric")

# Ledger timestamps below this are seconds, not milliseconds.
_SECONDS_CUTOFF = 10**12

# uint256 tops out at 78 decimal digits; anything wider is not a ledger value.
_MAX_DIGITS = 78


def _to_int(value: object) -> int | None:
    """Coerce a supported input into an exact integer, or None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            return None
        return int(value)
    if isinstance(value, Decimal):
        if not value.is_finite() or value.adjusted() >= _MAX_DIGITS:
            return None
        return int(value)
    if isinstance(value, (bytes, bytearray)):
        return int.from_bytes(value, "big") if value else None
    if isinstance(value, str):
        text = value.strip().replace("_", "")
        if not text:
            return None
        if text.lower().startswith(("0x", "-0x")):
            try:
                return int(text, 16)
            except ValueError:
                return None
        try:
            parsed = Decimal(text)
        except InvalidOperation:
            return None
        if not parsed.is_finite() or parsed.adjusted() >= _MAX_DIGITS:
            return None
        return int(parsed)
    return None


def to_decimal_string(value: object) -> str:
    """Render *value* as a base-10 integer string without precision loss.

    Accepts ints of any size, finite floats/Decimals (truncated toward zero),
    numeric strings (decimal, ``0x`` hex or exponent form) and big-endian
    bytes. Anything else yields ``"0"``.
    """
    result = _to_int(value)
    if result is None:
        logger.debug("to_decimal_string fallback to '0' for %r", value)
        return "0"
    try:
        return str(result)
    except ValueError:
        # int too wide for str() under the interpreter's digit limit
        logger.debug("to_decimal_string fallback to '0' for oversized int")
        return "0"


def to_safe_number(value: object) -> float:
    """Return a finite float for arithmetic; overflow/NaN/malformed -> 0.0."""
    if isinstance(value, float):
        if math.isfinite(value):
            return value
        logger.debug("to_safe_number fallback to 0 for %r", value)
        return 0.0
    if isinstance(value, str):
        try:
            number = float(Decimal(value.strip()))
        except (InvalidOperation, ValueError, OverflowError):
            number = None
        if number is None or not math.isfinite(number):
            integer = _to_int(value)
            number = _int_to_float(integer)
    else:
        number = _int_to_float(_to_int(value))
    if number is None or not math.isfinite(number):
        logger.debug("to_safe_number fallback to 0 for %r", value)
        return 0.0
    return number


def _int_to_float(value: int | None) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except OverflowError:
        return None


def to_int(value: object) -> int:
    """Exact integer (hex quantities, block numbers); malformed -> 0."""
    result = _to_int(value)
    return 0 if result is None else result


def to_timestamp_ms(value: object) -> int:
    """Ledger time (seconds or milliseconds) -> epoch milliseconds."""
    result = _to_int(value)
    if result is None or result < 0:
        logger.debug("to_timestamp_ms fallback to 0 for %r", value)
        return 0
    return result * 1000 if result < _SECONDS_CUTOFF else result


def payout_multiplier(stake: object, payout: object) -> float | None:
    """payout / stake rounded to 2 places, or None unless both are positive."""
    stake_num = to_safe_number(stake)
    payout_num = to_safe_number(payout)
    if stake_num <= 0 or payout_num <= 0:
        return None
    ratio = payout_num / stake_num
    return round(ratio, 2) if math.isfinite(ratio) else None