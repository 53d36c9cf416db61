from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

import numpy as onp

BatchStatus = Literal["accepted", "rejected_info_gain", "numerical_failure"]


@dataclass(frozen=True)
class BatchResult:
    """Outcome of closing one batch of measurements."""

    index: int
    """Zero-based index of the batch, counting rejected batches."""
    status: BatchStatus
    info_gain: float
    """Information gain over the calibration parameters. `inf` when the
    batch made new directions observable, `nan` on numerical failure."""
    rank: int
    """Rank of the system solved for this batch."""
    num_cols: int
    num_measurements: int
    num_error_terms: int
    num_new_variables: int
    num_iterations: int
    cost_before: float
    cost_after: float
    num_outliers: int
    message: str = ""

    @property
    def accepted(self) -> bool:
        return self.status == "accepted"


@dataclass(frozen=True)
class ErrorStatistics:
    """Running statistics over the raw residuals of accepted error terms."""

    name: str | None
    """Error term name the statistics were grouped by, `None` for all terms."""
    num_error_terms: int
    mean: onp.ndarray
    variance: onp.ndarray
    standard_deviation: onp.ndarray
    max_abs: onp.ndarray
    """Largest absolute error per residual component."""
    mean_mahalanobis_squared: float
    num_outliers: int


@dataclass(frozen=True)
class CalibrationResult:
    """Final output of an `IncrementalEstimator`.

    When no batch was ever accepted, `is_initialized` is False and every
    estimate field is None.
    """

    is_initialized: bool

    values: dict[str, onp.ndarray] | None
    """Final value of every active design variable, keyed by name."""
    standard_deviations: dict[str, onp.ndarray] | None
    """Marginal standard deviations, in tangent coordinates. NaN along
    unobservable components."""
    null_space: onp.ndarray | None
    """Orthonormal basis of unobservable directions in parameter
    coordinates, `(num_cols, num_cols - rank)`."""
    null_space_scaled: onp.ndarray | None
    """Same basis in column-scaled coordinates."""
    column_labels: tuple[str, ...] | None
    """Row labels of the null space bases, eg `"offset[1]"`."""
    rank: int | None
    num_cols: int | None

    residuals: tuple[onp.ndarray, ...] | None
    """Raw residual of every accepted error term, in insertion order."""
    mahalanobis_squared: onp.ndarray | None
    initial_cost: float | None
    final_cost: float | None

    num_measurements: int
    num_measurements_accepted: int
    num_batches: int
    num_batches_accepted: int
    num_outliers: int
    batches: tuple[BatchResult, ...]

    @property
    def is_rank_deficient(self) -> bool:
        return (
            self.rank is not None and self.num_cols is not None and self.rank < self.num_cols
        )
