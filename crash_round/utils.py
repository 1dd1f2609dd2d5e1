# utils.py
"""
Utility functions for the Crash Round engine and service

Includes:
- Round / idempotency ID generation
- Robust Number formatting (Decimal/Float agnostic)
- Timestamped Logging wrapper
- Numeric Helpers (clamp, safe Decimal parsing)
"""

from __future__ import annotations

import secrets
import logging
from datetime import datetime
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from typing import Union, Optional

# =========================
# LOGGING CONFIG
# =========================

# Module-level logger. The app configures the root logger.
logger = logging.getLogger("crash_round.utils")

# =========================
# IDENTIFIERS
# =========================

def generate_unique_id(length: int = 8) -> str:
    """
    Generate a short, URL-safe unique ID (hex).
    Used for Round IDs.
    """
    return secrets.token_hex(length)


# =========================
# FORMATTING
# =========================

NumberType = Union[float, Decimal, int, str]

def format_balance(amount: NumberType) -> str:
    """Money for logs and receipts: '12.50'. Unparseable input shows as '0.00'."""
    return f"{safe_decimal(amount).quantize(Decimal('0.01'), rounding=ROUND_DOWN)}"


def format_multiplier(mult: Optional[NumberType]) -> str:
    """'x1.80' style label. Missing values render as the starting multiplier."""
    if mult is None:
        return "x1.00"
    return f"x{safe_decimal(mult, default='1.00').quantize(Decimal('0.01'), rounding=ROUND_DOWN)}"


def format_timestamp(ts: Optional[float] = None) -> str:
    """
    Return ISO formatted timestamp.
    Defaults to now if no timestamp provided.
    """
    try:
        dt = datetime.fromtimestamp(ts) if ts is not None else datetime.now()
    except (OverflowError, OSError, ValueError):
        dt = datetime.now()
    return dt.isoformat(timespec="seconds")


# =========================
# LOGGING / DEBUGGING
# =========================

def log(msg: str, level: str = "info", name: Optional[str] = None) -> None:
    """
    Unified logging wrapper.

    Args:
        msg: Message to log
        level: 'info', 'warning', 'error', 'debug'
        name: Logger to write to (defaults to this module's logger)
    """
    target = logging.getLogger(name) if name else logger
    timestamped_msg = f"[{format_timestamp()}] {msg}"

    lvl = level.lower()
    if lvl == "error":
        target.error(timestamped_msg)
    elif lvl == "warning":
        target.warning(timestamped_msg)
    elif lvl == "debug":
        target.debug(timestamped_msg)
    else:
        target.info(timestamped_msg)


# =========================
# MISC HELPERS
# =========================

def clamp(value: NumberType, min_value: NumberType, max_value: NumberType) -> float:
    """
    Clamp value between min and max.
    Returns float for broader compatibility.
    """
    v = float(value)
    return max(float(min_value), min(v, float(max_value)))


def safe_decimal(value: NumberType, default: str = "0.00") -> Decimal:
    """
    Safely convert input to Decimal.
    Floats go through str() so 0.1 stays 0.1.
    """
    try:
        result = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        logger.warning(f"Failed to convert {value} to Decimal, using default {default}")
        return Decimal(default)
    if not result.is_finite():
        logger.warning(f"Non-finite value {value}, using default {default}")
        return Decimal(default)
    return result
