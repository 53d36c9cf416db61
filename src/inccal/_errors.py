"""Exception types raised by the calibration core.

Rank deficiency and insufficient information gain are not errors: they are
reported through `FactorizationResult` and `BatchResult` instead.
"""


class CalibrationError(Exception):
    """Base class for errors raised by inccal."""


class StructuralError(CalibrationError, ValueError):
    """Malformed input: dimension mismatches, unknown or duplicate design
    variables, invalid information matrices, or calls made in the wrong
    estimator state. Aborts the current call without mutating estimator
    state."""


class NumericalFailure(CalibrationError, ArithmeticError):
    """Factorization or solve could not proceed, eg because of non-finite
    entries or an empty system. The solver that raised it remains usable
    for a corrected system."""
