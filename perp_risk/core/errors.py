"""Exception types for the perp_risk engine.

Every failure raised by the pure computations is a ``RiskEngineError`` so a
caller that evaluates many accounts can skip a single bad one (see
``perp_risk.integration.scanner``). The concrete classes also subclass the
matching builtin so generic handlers keep working.
"""

from __future__ import annotations


class RiskEngineError(Exception):
    """Base class for all perp_risk failures."""


class OutOfRangeError(RiskEngineError, OverflowError):
    """Raised when a fixed-point value leaves the signed 128-bit range."""

    def __init__(self, message: str = "Number out of range") -> None:
        super().__init__(message)


class DivideByZeroError(RiskEngineError, ZeroDivisionError):
    """Raised on fixed-point division by zero."""


class MalformedDataError(RiskEngineError, ValueError):
    """Raised when an account buffer has the wrong size or inconsistent indexes."""
