"""Money helpers: integer minor units in, formatted strings out."""

from __future__ import annotations

import numbers
import re
from typing import Any

from .errors import InvalidInputError

MAJOR_AMOUNT_RE = re.compile(r"^(-)?([0-9]+)(?:\.([0-9]{1,2}))?$")
MINOR_AMOUNT_RE = re.compile(r"^-?[0-9]+$")


def ensure_minor_units(value: Any, field: str = "amount") -> int:
    """Return ``value`` as an ``int`` or raise if it is not an integer.

    Args:
        value: Candidate amount in minor units. Only integers (numpy
            integers included) are accepted; floats and strings are not.
        field: Name used in the error message.

    Returns:
        The amount as a plain Python ``int``.

    Example:
        >>> ensure_minor_units(1200)
        1200
    """
    if isinstance(value, bool):
        raise InvalidInputError(f"{field} must be an integer (minor units)")
    if isinstance(value, numbers.Integral):
        return int(value)
    raise InvalidInputError(f"{field} must be an integer (minor units): {value!r}")


def parse_minor_text(text: str, field: str = "amount") -> int:
    """Parse command-line text such as ``-2500`` as integer minor units."""
    raw = str(text).strip()
    if not MINOR_AMOUNT_RE.match(raw):
        raise InvalidInputError(f"{field} must be an integer (minor units): {raw!r}")
    return int(raw)


def parse_major_to_minor(text: str) -> int:
    """Convert a major-unit string (``319``, ``-25``, ``3.19``) to minor units.

    Example:
        >>> parse_major_to_minor("3.19")
        319
        >>> parse_major_to_minor("-0.5")
        -50
    """
    raw = str(text).strip()
    match = MAJOR_AMOUNT_RE.match(raw)
    if not match:
        raise InvalidInputError(
            f"Invalid amount (expected major units, e.g. 319 or 3.19): {raw}"
        )
    sign = -1 if match.group(1) else 1
    whole = int(match.group(2))
    frac = int((match.group(3) or "").ljust(2, "0"))
    return sign * (whole * 100 + frac)


def format_minor_plain(minor: int) -> str:
    """Render minor units as a bare decimal, e.g. ``-1234`` -> ``-12.34``."""
    sign = "-" if minor < 0 else ""
    whole, frac = divmod(abs(int(minor)), 100)
    return f"{sign}{whole}.{frac:02d}"


def format_minor(minor: int, currency: str = "") -> str:
    """Format minor units with a currency prefix and thousands separators.

    Example:
        >>> format_minor(-123456, "MYR")
        '-MYR 1,234.56'
    """
    sign = "-" if minor < 0 else ""
    whole, frac = divmod(abs(int(minor)), 100)
    number = f"{whole:,}.{frac:02d}"
    symbol = (currency or "").strip()
    return f"{sign}{symbol} {number}" if symbol else f"{sign}{number}"
