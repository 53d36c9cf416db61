from __future__ import annotations

import math
from typing import Literal, Sequence

import jax_dataclasses as jdc
import numpy as onp
from loguru import logger

from ._error_terms import ErrorTerm
from ._errors import StructuralError


@jdc.pytree_dataclass
class RobustWeightingConfig:
    loss: jdc.Static[Literal["huber", "cauchy_tail", "none"]] = "huber"
    """Robust loss used to compute per-error-term weights.

    - "huber": weight `k / m` beyond the threshold `k`.
    - "cauchy_tail": weight `1 / (1 + ((m - k) / k)^2)` beyond the threshold.
    - "none": every weight stays at 1.
    """
    threshold: float = 3.0
    """Mahalanobis norm `m = sqrt(e^T information e)` below which an error term
    keeps its full weight."""
    max_iterations: jdc.Static[int] = 10
    """Maximum number of re-weight / re-solve rounds per batch."""
    weight_tolerance: float = 1e-3
    """Weights are considered stable once no weight changes by more than this."""


class RobustWeightingPolicy:
    """M-estimator down-weighting of residuals with large Mahalanobis norm.

    Weights are in [0, 1], equal to 1 at or below the threshold, and
    monotonically non-increasing in the Mahalanobis norm. Outliers are never
    removed, only down-weighted.
    """

    def __init__(self, config: RobustWeightingConfig = RobustWeightingConfig()) -> None:
        if not config.threshold > 0.0:
            raise StructuralError(
                f"Robust weighting threshold must be positive, got {config.threshold}."
            )
        if config.max_iterations < 1:
            raise StructuralError("Robust weighting needs at least one iteration.")
        self.config = config

    def compute_weight(self, mahalanobis_norm: float | onp.ndarray) -> float | onp.ndarray:
        m = onp.asarray(mahalanobis_norm, dtype=onp.float64)
        k = self.config.threshold
        with onp.errstate(divide="ignore", invalid="ignore"):
            if self.config.loss == "huber":
                weight = onp.where(m <= k, 1.0, k / m)
            elif self.config.loss == "cauchy_tail":
                weight = onp.where(m <= k, 1.0, 1.0 / (1.0 + ((m - k) / k) ** 2))
            elif self.config.loss == "none":
                weight = onp.ones_like(m)
            else:
                raise StructuralError(f"Unknown robust loss '{self.config.loss}'.")
        # Non-finite residuals get no influence at all.
        weight = onp.where(onp.isfinite(m), weight, 0.0)
        weight = onp.clip(weight, 0.0, 1.0)
        if weight.ndim == 0:
            return float(weight)
        return weight

    def reweight(self, error_terms: Sequence[ErrorTerm]) -> float:
        """Update the weight of every error term from its cached residual.
        Returns the largest absolute weight change."""
        max_change = 0.0
        num_downweighted = 0
        for term in error_terms:
            if term.raw_residual is None:
                raise StructuralError(
                    f"Error term '{term.get_name()}' must be evaluated before re-weighting."
                )
            weight = self.compute_weight(math.sqrt(term.mahalanobis_squared()))
            assert isinstance(weight, float)
            max_change = max(max_change, abs(weight - term.weight))
            term.weight = weight
            term.chi2 = weight * term.mahalanobis_squared()
            if weight < 1.0:
                num_downweighted += 1

        logger.debug(
            "Re-weighted {} error terms, {} down-weighted, max weight change {:.2e}",
            len(error_terms),
            num_downweighted,
            max_change,
        )
        return max_change
