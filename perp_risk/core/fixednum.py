"""
Signed 128-bit fixed-point numbers with 48 fractional bits (on-chain ``I80F48``).

A value is a two's-complement integer ``raw`` read as ``raw / 2**48``. All
arithmetic is done on Python ints, so intermediates never lose precision:

- ``add``/``sub`` are range-checked (never wrapped),
- ``mul``/``div`` compute the exact quotient and round half away from zero at
  the 49th fractional bit,
- every result outside ``[-(2**127), 2**127 - 1]`` raises ``OutOfRangeError``.

Floats appear only in ``to_float()``, which is a lossy display helper.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Union

from .errors import DivideByZeroError, MalformedDataError, OutOfRangeError


FRACTIONAL_BITS = 48
SCALE = 1 << FRACTIONAL_BITS
MIN_RAW = -(1 << 127)
MAX_RAW = (1 << 127) - 1
FIXED_POINT_BYTES = 16

# Rendering used by the protocol's reference client for human display.
DISPLAY_PLACES = 20

_DECIMAL_RE = re.compile(r"^([+-]?)([0-9]*)(?:\.([0-9]*))?$")
_FRACTION_MASK = SCALE - 1
# 10**48 / 2**48, so a 48-bit fraction always has a 48-digit exact expansion.
_EXACT_FRACTION_FACTOR = 5 ** FRACTIONAL_BITS


def _require_int(value: object, *, name: str) -> int:
    if not isinstance(value, int) or isinstance(value, bool):
        raise TypeError(f"{name} must be an int")
    return int(value)


def div_round_half_away(numerator: int, denominator: int) -> int:
    """Integer quotient rounded half away from zero."""
    if denominator == 0:
        raise DivideByZeroError("division by zero")
    negative = (numerator < 0) != (denominator < 0)
    q, r = divmod(abs(numerator), abs(denominator))
    if 2 * r >= abs(denominator):
        q += 1
    return -q if negative else q


@dataclass(frozen=True, order=True, repr=False)
class FixedPoint128:
    """Immutable I80F48 value. Compare, hash and order by ``raw``."""

    raw: int

    def __post_init__(self) -> None:
        raw = _require_int(self.raw, name="raw")
        if raw < MIN_RAW or raw > MAX_RAW:
            raise OutOfRangeError()

    # -- Construction --------------------------------------------------------

    @classmethod
    def from_raw(cls, raw: int) -> FixedPoint128:
        return cls(raw)

    @classmethod
    def from_int(cls, n: int) -> FixedPoint128:
        """Lift an integer: ``raw = n * 2**48``."""
        return cls(_require_int(n, name="n") * SCALE)

    @classmethod
    def from_str(cls, text: str) -> FixedPoint128:
        """
        Parse a plain decimal string such as ``"-1.25"``.

        The decimal value is converted exactly and rounded half away from zero
        to the nearest multiple of ``2**-48``.
        """
        if not isinstance(text, str):
            raise TypeError("text must be a str")
        m = _DECIMAL_RE.match(text.strip())
        if m is None:
            raise ValueError(f"invalid decimal string: {text!r}")
        sign, int_digits, frac_digits = m.group(1), m.group(2), m.group(3) or ""
        if not int_digits and not frac_digits:
            raise ValueError(f"invalid decimal string: {text!r}")
        denominator = 10 ** len(frac_digits)
        numerator = int(int_digits or "0") * denominator + int(frac_digits or "0")
        raw = div_round_half_away(numerator * SCALE, denominator)
        return cls(-raw if sign == "-" else raw)

    @classmethod
    def from_bytes(cls, data: bytes | bytearray | memoryview) -> FixedPoint128:
        """Decode 16 little-endian two's-complement bytes."""
        if not isinstance(data, (bytes, bytearray, memoryview)):
            raise TypeError("data must be bytes")
        if len(data) != FIXED_POINT_BYTES:
            raise MalformedDataError(f"fixed-point buffer must be {FIXED_POINT_BYTES} bytes, got {len(data)}")
        return cls(int.from_bytes(bytes(data), byteorder="little", signed=True))

    def to_bytes(self) -> bytes:
        return self.raw.to_bytes(FIXED_POINT_BYTES, byteorder="little", signed=True)

    # -- Arithmetic ----------------------------------------------------------

    def add(self, other: FixedPointLike) -> FixedPoint128:
        return FixedPoint128(self.raw + _coerce(other).raw)

    def sub(self, other: FixedPointLike) -> FixedPoint128:
        return FixedPoint128(self.raw - _coerce(other).raw)

    def mul(self, other: FixedPointLike) -> FixedPoint128:
        return FixedPoint128(div_round_half_away(self.raw * _coerce(other).raw, SCALE))

    def div(self, other: FixedPointLike) -> FixedPoint128:
        divisor = _coerce(other).raw
        if divisor == 0:
            raise DivideByZeroError("fixed-point division by zero")
        return FixedPoint128(div_round_half_away(self.raw * SCALE, divisor))

    def neg(self) -> FixedPoint128:
        return FixedPoint128(-self.raw)

    def abs(self) -> FixedPoint128:
        return self if self.raw >= 0 else FixedPoint128(-self.raw)

    def floor(self) -> FixedPoint128:
        return FixedPoint128((self.raw >> FRACTIONAL_BITS) << FRACTIONAL_BITS)

    def ceil(self) -> FixedPoint128:
        return FixedPoint128(-((-self.raw >> FRACTIONAL_BITS) << FRACTIONAL_BITS))

    def min(self, other: FixedPoint128) -> FixedPoint128:
        return self if self.raw <= other.raw else other

    def max(self, other: FixedPoint128) -> FixedPoint128:
        return self if self.raw >= other.raw else other

    # -- Predicates ----------------------------------------------------------

    def is_zero(self) -> bool:
        return self.raw == 0

    def is_neg(self) -> bool:
        return self.raw < 0

    def is_pos(self) -> bool:
        return self.raw > 0

    # -- Rendering -----------------------------------------------------------

    def to_decimal_string(self, places: int | None = DISPLAY_PLACES) -> str:
        """
        Decimal rendering without binary-to-float conversion.

        ``places=None`` returns the exact terminating expansion. Otherwise the
        value is rounded half away from zero to ``places`` fractional digits
        and trailing zeros are dropped. Both forms parse back to ``self``
        through ``from_str`` as long as ``places >= 15``.
        """
        magnitude = abs(self.raw)
        if places is None:
            int_part = magnitude >> FRACTIONAL_BITS
            frac_digits = str((magnitude & _FRACTION_MASK) * _EXACT_FRACTION_FACTOR).zfill(FRACTIONAL_BITS)
        else:
            places = _require_int(places, name="places")
            if places < 0:
                raise ValueError("places must be non-negative")
            scaled = div_round_half_away(magnitude * 10**places, SCALE)
            int_part, frac = divmod(scaled, 10**places)
            frac_digits = str(frac).zfill(places) if places else ""
        frac_digits = frac_digits.rstrip("0")
        text = f"{int_part}.{frac_digits}" if frac_digits else str(int_part)
        if self.raw < 0 and text != "0":
            text = "-" + text
        return text

    def to_float(self) -> float:
        """Lossy conversion for display only; never feed the result back into risk math."""
        return self.raw / SCALE

    def __str__(self) -> str:
        return self.to_decimal_string()

    def __repr__(self) -> str:
        return f"FixedPoint128({self.to_decimal_string(None)!r})"

    # -- Operators -----------------------------------------------------------

    def __add__(self, other: object) -> FixedPoint128:
        if not _is_operand(other):
            return NotImplemented
        return self.add(other)  # type: ignore[arg-type]

    def __sub__(self, other: object) -> FixedPoint128:
        if not _is_operand(other):
            return NotImplemented
        return self.sub(other)  # type: ignore[arg-type]

    def __mul__(self, other: object) -> FixedPoint128:
        if not _is_operand(other):
            return NotImplemented
        return self.mul(other)  # type: ignore[arg-type]

    def __truediv__(self, other: object) -> FixedPoint128:
        if not _is_operand(other):
            return NotImplemented
        return self.div(other)  # type: ignore[arg-type]

    def __neg__(self) -> FixedPoint128:
        return self.neg()

    def __abs__(self) -> FixedPoint128:
        return self.abs()

    def __bool__(self) -> bool:
        return self.raw != 0


FixedPointLike = Union[FixedPoint128, int]


def _is_operand(value: object) -> bool:
    return isinstance(value, FixedPoint128) or (isinstance(value, int) and not isinstance(value, bool))


def _coerce(value: FixedPointLike) -> FixedPoint128:
    if isinstance(value, FixedPoint128):
        return value
    if isinstance(value, int) and not isinstance(value, bool):
        return FixedPoint128.from_int(value)
    raise TypeError(f"expected FixedPoint128 or int, got {type(value).__name__}")


ZERO = FixedPoint128(0)
ONE = FixedPoint128(SCALE)
MIN = FixedPoint128(MIN_RAW)
MAX = FixedPoint128(MAX_RAW)
