"""Supplier and bank amount parsing.

Amounts arrive as typed by people or extracted from documents, in either
convention:

    English  "3,077.08"  comma groups thousands, dot is the decimal mark
    Turkish  "3.077,08"  dot groups thousands, comma is the decimal mark

When both separators appear, the one closer to the end is the decimal mark.
A lone comma is a decimal mark ("249,00"). A lone dot, or no separator at all,
is read as a plain decimal numeral.

Failures are returned as ``None``; nothing here raises.
"""

import math
import re
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional

_WHITESPACE = re.compile(r"\s+")
# Plain decimal numeral after normalization: no exponent, no underscores, ASCII digits only
_NUMERAL = re.compile(r"[+-]?(?:[0-9]+(?:\.[0-9]*)?|\.[0-9]+)")
_MINOR_UNIT = Decimal("100")


def normalize_amount(text) -> Optional[str]:
    """Rewrite ``text`` as a dot-decimal numeral without grouping, or None."""
    if not isinstance(text, str):
        return None

    cleaned = _WHITESPACE.sub("", text)
    last_dot = cleaned.rfind(".")
    last_comma = cleaned.rfind(",")

    if last_dot != -1 and last_comma != -1:
        if last_dot > last_comma:
            cleaned = cleaned.replace(",", "")
        else:
            cleaned = cleaned.replace(".", "").replace(",", ".")
    elif last_comma != -1:
        cleaned = cleaned.replace(",", ".")

    if not _NUMERAL.fullmatch(cleaned):
        return None
    return cleaned


def parse_amount(text) -> Optional[float]:
    """Parse a human-entered amount into a finite float.

    >>> parse_amount("3.077,08")
    3077.08
    >>> parse_amount("abc") is None
    True
    """
    normalized = normalize_amount(text)
    if normalized is None:
        return None
    try:
        value = float(normalized)
    except (ValueError, OverflowError):
        return None
    if not math.isfinite(value):
        return None
    return value


def parse_amount_minor(text) -> Optional[int]:
    """Parse an amount into integer minor units (cents, kuruş), rounding half up."""
    # Same range as parse_amount: anything a float cannot hold is refused
    if parse_amount(text) is None:
        return None
    try:
        minor = (Decimal(normalize_amount(text)) * _MINOR_UNIT).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    except InvalidOperation:
        return None
    return int(minor)


def canonical_amount(value: float) -> str:
    """Dot-decimal form of ``value`` that ``parse_amount`` reads back unchanged."""
    return format(Decimal(repr(float(value))), "f")
