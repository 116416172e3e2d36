"""
Error and warning types raised by pycreel.

Validation failures raise one of the ``CreelError`` subclasses
synchronously, before any computation. Non-fatal anomalies (lonely PSUs,
small groups, dropped rows, method fallback) are emitted through
:func:`warnings.warn` with a ``CreelWarning`` subclass and are also
recorded in the diagnostics of the returned estimate.
"""

from __future__ import annotations

from typing import Iterable


class CreelError(Exception):
    """Base class for all pycreel errors."""


class InvalidDesignError(CreelError, ValueError):
    """The declared sampling design is not usable for estimation."""


class MissingColumnError(CreelError, KeyError):
    """One or more required columns are absent from the observation table."""

    def __init__(self, missing: Iterable[str], available: Iterable[str] = ()):
        self.missing = sorted(set(missing))
        self.available = list(available)
        msg = f"Missing required column(s): {', '.join(self.missing)}"
        if self.available:
            msg += f". Available columns: {', '.join(self.available)}"
        super().__init__(msg)

    def __str__(self) -> str:
        # KeyError quotes its argument; keep the message readable
        return str(self.args[0])


class EmptySampleError(CreelError):
    """No observations remain to estimate from."""


class UnsupportedMethodError(CreelError, ValueError):
    """An unknown estimator, variance method or replicate method was requested."""


class NotYetImplementedError(CreelError, NotImplementedError):
    """A recognised option whose computation is not available yet."""


class InvalidParameterError(CreelError, ValueError):
    """An argument is outside its valid range."""


class CreelWarning(UserWarning):
    """Base class for pycreel warnings."""


class LonelyPSUWarning(CreelWarning):
    """A stratum contributed a single PSU, so its variance is undefined."""


class SmallSampleWarning(CreelWarning):
    """A group has too few observations for a stable variance."""


class DataQualityWarning(CreelWarning):
    """Rows were excluded, clamped or adjusted before estimation."""


class MethodFallbackWarning(CreelWarning):
    """The requested variance method was replaced by another."""


def require_columns(columns: Iterable[str], available: Iterable[str]) -> None:
    """Raise :class:`MissingColumnError` unless every column is available."""
    available = list(available)
    missing = [c for c in columns if c is not None and c not in available]
    if missing:
        raise MissingColumnError(missing, available)
