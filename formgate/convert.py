"""Strict parsers for form values, duration formatting and natural ordering."""

from __future__ import annotations

import math
import re
from datetime import timedelta
from fractions import Fraction

_INT64_MAX = 2**63 - 1
_INT64_MIN = -(2**63)

_TRUE = frozenset({"1", "t", "T", "TRUE", "true", "True"})
_FALSE = frozenset({"0", "f", "F", "FALSE", "false", "False"})

_INT_RE = re.compile(r"[+-]?[0-9]+")
_DEC_FLOAT_RE = re.compile(r"[+-]?(?:[0-9]+\.?[0-9]*|\.[0-9]+)(?:[eE][+-]?[0-9]+)?")
_HEX_FLOAT_RE = re.compile(
    r"[+-]?0[xX](?:[0-9a-fA-F]+\.?[0-9a-fA-F]*|\.[0-9a-fA-F]+)[pP][+-]?[0-9]+"
)
_SPECIAL_FLOAT_RE = re.compile(r"[+-]?inf(?:inity)?|nan", re.IGNORECASE)

_DURATION_COMPONENT_RE = re.compile(r"([0-9]*)(?:\.([0-9]*))?([^0-9.]*)")
_DURATION_UNITS = {
    "ns": 1,
    "us": 1_000,
    "\u00b5s": 1_000,
    "\u03bcs": 1_000,
    "ms": 1_000_000,
    "s": 1_000_000_000,
    "m": 60 * 1_000_000_000,
    "h": 3600 * 1_000_000_000,
}

_CHUNK_RE = re.compile(r"([0-9]+)|([^0-9]+)")


def parse_bool(value: str) -> bool:
    """Parse 1, t, T, TRUE, true, True, 0, f, F, FALSE, false or False."""
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ValueError(f'parsing "{value}": invalid syntax')


def parse_int(value: str) -> int:
    """Parse a signed decimal integer that fits in 64 bits."""
    if not _INT_RE.fullmatch(value):
        raise ValueError(f'parsing "{value}": invalid syntax')
    result = int(value)
    if not _INT64_MIN <= result <= _INT64_MAX:
        raise ValueError(f'parsing "{value}": value out of range')
    return result


def parse_float(value: str) -> float:
    """Parse a decimal or hexadecimal float, or inf, infinity and nan."""
    if _SPECIAL_FLOAT_RE.fullmatch(value):
        return float(value)
    if _HEX_FLOAT_RE.fullmatch(value):
        try:
            return float.fromhex(value)
        except OverflowError:
            raise ValueError(f'parsing "{value}": value out of range') from None
    if _DEC_FLOAT_RE.fullmatch(value):
        result = float(value)
        if math.isinf(result):
            raise ValueError(f'parsing "{value}": value out of range')
        return result
    raise ValueError(f'parsing "{value}": invalid syntax')


def parse_duration(value: str) -> timedelta:
    """Parse a duration such as "300ms", "-1.5h" or "2h45m".

    Valid units are ns, us (or µs), ms, s, m and h. The result is truncated
    to whole microseconds.
    """
    invalid = ValueError(f'invalid duration "{value}"')
    rest = value
    negative = False
    if rest[:1] in ("-", "+"):
        negative = rest[0] == "-"
        rest = rest[1:]
    if rest == "0":
        return timedelta(0)
    if not rest:
        raise invalid

    total = 0
    while rest:
        match = _DURATION_COMPONENT_RE.match(rest)
        whole, fraction, unit = match.groups()
        if not whole and not fraction:
            raise invalid
        if not unit:
            raise ValueError(f'missing unit in duration "{value}"')
        scale = _DURATION_UNITS.get(unit)
        if scale is None:
            raise ValueError(f'unknown unit "{unit}" in duration "{value}"')
        amount = Fraction(f"{whole or '0'}.{fraction or '0'}")
        total += int(amount * scale)
        if total > 2**63:
            raise invalid
        rest = rest[match.end():]

    if negative:
        total = -total
    if not _INT64_MIN <= total <= _INT64_MAX:
        raise invalid
    micros = abs(total) // 1_000
    return timedelta(microseconds=-micros if negative else micros)


def _fraction(value: int, precision: int) -> tuple[int, str]:
    whole, remainder = divmod(value, 10**precision)
    digits = f"{remainder:0{precision}d}".rstrip("0") if precision else ""
    return whole, f".{digits}" if digits else ""


def format_duration(delta: timedelta) -> str:
    """Format a duration the way :func:`parse_duration` reads it, e.g. "1h2m0.5s"."""
    nanos = ((delta.days * 86_400 + delta.seconds) * 1_000_000 + delta.microseconds) * 1_000
    if nanos == 0:
        return "0s"
    sign = "-" if nanos < 0 else ""
    nanos = abs(nanos)

    if nanos < 1_000_000_000:
        if nanos < 1_000:
            return f"{sign}{nanos}ns"
        if nanos < 1_000_000:
            whole, frac = _fraction(nanos, 3)
            return f"{sign}{whole}{frac}\u00b5s"
        whole, frac = _fraction(nanos, 6)
        return f"{sign}{whole}{frac}ms"

    seconds, frac = _fraction(nanos, 9)
    minutes, seconds = divmod(seconds, 60)
    text = f"{seconds}{frac}s"
    if minutes:
        hours, minutes = divmod(minutes, 60)
        text = f"{minutes}m{text}"
        if hours:
            text = f"{hours}h{text}"
    return sign + text


def alphanumeric_key(value: str) -> tuple:
    """Sort key ordering runs of digits by number and other text by character."""
    return tuple(
        (0, int(digits), "") if digits else (1, 0, text)
        for digits, text in _CHUNK_RE.findall(value)
    )