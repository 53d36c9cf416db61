from __future__ import annotations

import enum
import math
from typing import Literal, Sequence

import jax_dataclasses as jdc
import numpy as onp
from loguru import logger

from ._error_terms import ErrorTerm
from ._errors import NumericalFailure, StructuralError
from ._factorization import FactorizationConfig
from ._linear_solver import CholeskyLinearSolver, LinearSolver, QrLinearSolver
from ._results import BatchResult, BatchStatus, CalibrationResult, ErrorStatistics
from ._robust import RobustWeightingConfig, RobustWeightingPolicy
from ._sparse_system import SparseSystemBuilder
from ._variables import DesignVariable, Var, VarStore, VarStoreSnapshot


@jdc.pytree_dataclass
class EstimatorConfig:
    info_gain_delta: float = 0.2
    """A batch is kept only if its information gain over the calibration
    parameters is strictly greater than this, in nats."""
    batch_size: jdc.Static[int] = 1
    """Number of measurements that close a batch."""
    use_diagonal_conditioner: jdc.Static[bool] = False
    """Add prior rows for active design variables that no error term observes."""
    num_threads: jdc.Static[int] = 1
    """Worker threads used to evaluate residuals and Jacobians."""
    max_iterations: jdc.Static[int] = 20
    """Maximum number of Gauss-Newton iterations per re-weighting round."""
    convergence_tolerance: float = 1e-8
    """Gauss-Newton terminates when the update norm falls below this."""
    outlier_threshold: float = 9.0
    """An error term is counted as an outlier when its Mahalanobis-squared
    distance exceeds `outlier_threshold * residual_dim`."""
    robust_weighting: RobustWeightingConfig = RobustWeightingConfig(loss="none")
    """Robust re-weighting. Disabled by default."""
    factorization: FactorizationConfig = FactorizationConfig()
    """Rank-revealing factorization options. Only used by the QR solver."""
    linear_solver: jdc.Static[Literal["qr", "dense_cholesky", "cholmod"]] = "qr"
    """Linear solver variant. The Cholesky variants cannot report unobservable
    directions."""
    verbose: jdc.Static[bool] = False
    """Log every Gauss-Newton iteration."""


class EstimatorState(enum.Enum):
    IDLE = enum.auto()
    ACCUMULATING = enum.auto()
    SOLVING = enum.auto()
    EVALUATING = enum.auto()
    ACCEPTED = enum.auto()
    REJECTED = enum.auto()
    FINALIZING = enum.auto()
    DONE = enum.auto()


def make_linear_solver(config: EstimatorConfig) -> LinearSolver:
    """Create the linear solver selected by an estimator config."""
    builder = SparseSystemBuilder(use_diagonal_conditioner=config.use_diagonal_conditioner)
    policy = RobustWeightingPolicy(config.robust_weighting)
    if config.linear_solver == "qr":
        return QrLinearSolver(config.factorization, builder=builder, robust_policy=policy)
    elif config.linear_solver in ("dense_cholesky", "cholmod"):
        return CholeskyLinearSolver(
            backend=config.linear_solver, builder=builder, robust_policy=policy
        )
    else:
        raise StructuralError(f"Unknown linear solver '{config.linear_solver}'.")


def _observable_log_det(
    covariance: onp.ndarray, null_space: onp.ndarray, null_space_scaled: onp.ndarray
) -> tuple[float, int]:
    """Log-determinant and rank of a marginal covariance, restricted to the
    directions of its parameters that no unobservable direction touches.

    Args:
        covariance: Observable covariance of the parameters.
        null_space: Rows of the null space basis for the same parameters.
        null_space_scaled: Same rows of the column-scaled null space basis.
            The number of unobservable directions is decided on these, so
            that it does not depend on parameter units.
    """
    dim = covariance.shape[0]
    num_unobservable = 0
    if null_space_scaled.shape[1] > 0:
        singular_values = onp.linalg.svd(null_space_scaled, compute_uv=False)
        num_unobservable = int(onp.sum(singular_values > 1e-8))
    rank = dim - num_unobservable
    if rank == 0:
        return 0.0, 0

    if num_unobservable == 0:
        reduced = covariance
    else:
        basis = onp.linalg.svd(null_space, full_matrices=True)[0][:, num_unobservable:]
        reduced = basis.T @ covariance @ basis
    sign, log_det = onp.linalg.slogdet(0.5 * (reduced + reduced.T))
    if sign <= 0.0 or not math.isfinite(log_det):
        raise NumericalFailure("Observable calibration covariance is not positive definite.")
    return float(log_det), rank


class IncrementalEstimator:
    """Estimates design variables from a stream of measurements.

    Measurements are grouped into batches. When a batch closes, the problem
    made of all accepted error terms plus the batch is re-solved, and the
    batch is kept only if it shrinks the observable covariance of the
    calibration parameters enough. Rejected batches, and batches that fail
    numerically, are rolled back entirely: design variable values, the set of
    variables, and every error term cache are restored exactly.

    Example:
        >>> estimator = IncrementalEstimator(EstimatorConfig(batch_size=10))
        >>> offset = estimator.add_variable(DesignVariable("offset", [0.0]))
        >>> for z in measurements:
        ...     estimator.add_measurement([measure(offset, z, information=1e4)])
        >>> result = estimator.finalize()
    """

    def __init__(
        self,
        config: EstimatorConfig = EstimatorConfig(),
        linear_solver: LinearSolver | None = None,
    ) -> None:
        if config.batch_size < 1:
            raise StructuralError(f"Batch size must be positive, got {config.batch_size}.")
        if config.max_iterations < 1:
            raise StructuralError("Estimator needs at least one iteration.")
        self.config = config
        self.store = VarStore()
        self.solver = linear_solver if linear_solver is not None else make_linear_solver(config)
        self.state = EstimatorState.IDLE

        self._accepted_terms = list[ErrorTerm]()
        self._pending_terms = list[ErrorTerm]()
        self._pending_num_measurements = 0
        self._pending_new_vars = list[Var]()
        self._batch_snapshot: VarStoreSnapshot | None = None
        self._batches = list[BatchResult]()

        # Observable information about the calibration parameters, as of the
        # last accepted batch.
        self._theta_log_det: float | None = None
        self._theta_rank = 0

        self._initial_cost: float | None = None
        self._final_cost: float | None = None
        self._num_measurements = 0
        self._num_measurements_accepted = 0
        self._result: CalibrationResult | None = None

    # Accessors.

    @property
    def accepted_error_terms(self) -> tuple[ErrorTerm, ...]:
        return tuple(self._accepted_terms)

    @property
    def batches(self) -> tuple[BatchResult, ...]:
        return tuple(self._batches)

    @property
    def num_pending_measurements(self) -> int:
        return self._pending_num_measurements

    @property
    def num_measurements(self) -> int:
        return self._num_measurements

    @property
    def num_measurements_accepted(self) -> int:
        return self._num_measurements_accepted

    @property
    def num_batches_accepted(self) -> int:
        return sum(1 for batch in self._batches if batch.accepted)

    @property
    def initial_cost(self) -> float | None:
        return self._initial_cost

    @property
    def final_cost(self) -> float | None:
        return self._final_cost

    @property
    def is_initialized(self) -> bool:
        return self._theta_log_det is not None

    @property
    def num_outliers(self) -> int:
        return self._count_outliers(self._accepted_terms)

    # Input.

    def _check_open(self) -> None:
        if self.state in (EstimatorState.FINALIZING, EstimatorState.DONE):
            raise StructuralError("Estimator was finalized, no more data can be added.")

    def _open_batch(self) -> None:
        if self._batch_snapshot is None:
            self._batch_snapshot = self.store.snapshot()
        self.state = EstimatorState.ACCUMULATING

    def add_variable(self, variable: DesignVariable) -> Var:
        """Register a design variable and return its handle. The variable
        belongs to the pending batch: it is removed again if that batch is
        rejected."""
        self._check_open()
        self._open_batch()
        var = self.store.add(variable)
        self._pending_new_vars.append(var)
        return var

    def add_measurement(self, error_terms: Sequence[ErrorTerm]) -> BatchResult | None:
        """Add the error terms of one measurement to the pending batch.

        Returns the batch result if this measurement closed a batch, otherwise
        None.
        """
        self._check_open()
        error_terms = tuple(error_terms)
        if len(error_terms) == 0:
            raise StructuralError("A measurement needs at least one error term.")

        known = set(map(id, self._accepted_terms)) | set(map(id, self._pending_terms))
        for term in error_terms:
            if id(term) in known:
                raise StructuralError(f"Error term '{term.get_name()}' was already added.")
            known.add(id(term))
            for var in term.variables:
                if var not in self.store:
                    raise StructuralError(
                        f"Error term '{term.get_name()}' references unknown design variable {var}."
                    )

        self._open_batch()
        self._pending_terms.extend(error_terms)
        self._pending_num_measurements += 1
        self._num_measurements += 1

        if self._pending_num_measurements >= self.config.batch_size:
            return self.process_batch()
        return None

    # Batch processing.

    def process_batch(self) -> BatchResult | None:
        """Close the pending batch, regardless of its size, and decide whether
        to keep it. Returns None if nothing is pending."""
        self._check_open()
        if self._pending_num_measurements == 0:
            return None
        assert self._batch_snapshot is not None

        batch_terms = tuple(self._pending_terms)
        candidate_terms = self._accepted_terms + list(batch_terms)
        term_caches = [(t.weight, t.chi2, t.raw_residual) for t in self._accepted_terms]
        index = len(self._batches)
        num_measurements = self._pending_num_measurements
        num_new_variables = len(self._pending_new_vars)

        self.state = EstimatorState.SOLVING
        try:
            cost_before, cost_after, num_iterations = self._optimize(candidate_terms)
            self.state = EstimatorState.EVALUATING
            theta_log_det, theta_rank = self._calibration_information()
        except StructuralError:
            self._rollback(term_caches)
            raise
        except NumericalFailure as e:
            logger.warning("Batch {} failed numerically: {}", index, e)
            self._rollback(term_caches)
            return self._record(
                index,
                "numerical_failure",
                info_gain=math.nan,
                rank=-1,
                num_cols=-1,
                num_measurements=num_measurements,
                num_error_terms=len(batch_terms),
                num_new_variables=num_new_variables,
                num_iterations=0,
                cost_before=math.nan,
                cost_after=math.nan,
                num_outliers=0,
                message=str(e),
            )

        info_gain = self._information_gain(theta_log_det, theta_rank)
        rank = self.solver.rank
        num_cols = self.solver.system.layout.num_cols

        if info_gain > self.config.info_gain_delta:
            self._accepted_terms = candidate_terms
            self._theta_log_det = theta_log_det
            self._theta_rank = theta_rank
            if self._initial_cost is None:
                self._initial_cost = cost_before
            self._final_cost = cost_after
            self._num_measurements_accepted += num_measurements
            self._clear_pending()
            status: BatchStatus = "accepted"
            num_outliers = self._count_outliers(batch_terms)
        else:
            self._rollback(term_caches)
            status = "rejected_info_gain"
            num_outliers = 0

        logger.info(
            "Batch {} {}: info_gain={:.3f} rank={}/{} cost={:.4e}->{:.4e}",
            index,
            status,
            info_gain,
            rank,
            num_cols,
            cost_before,
            cost_after,
        )
        return self._record(
            index,
            status,
            info_gain=info_gain,
            rank=rank,
            num_cols=num_cols,
            num_measurements=num_measurements,
            num_error_terms=len(batch_terms),
            num_new_variables=num_new_variables,
            num_iterations=num_iterations,
            cost_before=cost_before,
            cost_after=cost_after,
            num_outliers=num_outliers,
        )

    def _record(self, index: int, status: BatchStatus, **kwargs) -> BatchResult:
        result = BatchResult(index=index, status=status, **kwargs)
        self._batches.append(result)
        self.state = (
            EstimatorState.ACCEPTED if status == "accepted" else EstimatorState.REJECTED
        )
        return result

    def _clear_pending(self) -> None:
        self._pending_terms = []
        self._pending_num_measurements = 0
        self._pending_new_vars = []
        self._batch_snapshot = None

    def _rollback(self, term_caches: list[tuple[float, float, onp.ndarray | None]]) -> None:
        """Restore the state from before the pending batch was opened."""
        assert self._batch_snapshot is not None
        self.store.restore(self._batch_snapshot)
        for term, (weight, chi2, raw_residual) in zip(self._accepted_terms, term_caches):
            term.weight = weight
            term.chi2 = chi2
            term.raw_residual = raw_residual
        self.solver.set_problem(self.store, self._accepted_terms)
        self._clear_pending()
        self.state = EstimatorState.REJECTED

    def _optimize(self, error_terms: Sequence[ErrorTerm]) -> tuple[float, float, int]:
        """Gauss-Newton on all given error terms, with outer robust
        re-weighting rounds. Returns the cost before and after optimization
        and the number of linear solves."""
        config = self.config
        solver = self.solver
        solver.set_problem(self.store, error_terms)

        cost_before = solver.builder.evaluate_residuals(
            self.store, error_terms, config.num_threads
        )
        use_robust = config.robust_weighting.loss != "none"
        num_rounds = config.robust_weighting.max_iterations if use_robust else 1

        num_iterations = 0
        for robust_round in range(num_rounds):
            if use_robust:
                solver.builder.evaluate_residuals(self.store, error_terms, config.num_threads)
                weight_change = solver.robust_policy.reweight(error_terms)
                if robust_round > 0 and weight_change < config.robust_weighting.weight_tolerance:
                    break

            for _ in range(config.max_iterations):
                system = solver.build_system(config.num_threads)
                dx = solver.solve_system()
                num_iterations += 1
                for var, start_col, tangent_dim in zip(
                    system.layout.vars, system.layout.start_cols, system.layout.tangent_dims
                ):
                    self.store.retract(var, dx[start_col : start_col + tangent_dim])

                step_norm = float(onp.linalg.norm(dx))
                if config.verbose:
                    logger.info(
                        "Iteration #{}: cost={:.4e} step_norm={:.2e}",
                        num_iterations,
                        system.cost(),
                        step_norm,
                    )
                if step_norm < config.convergence_tolerance:
                    break

        # Relinearize at the final values. This also refreshes every error
        # term's cached residual.
        solver.build_system(config.num_threads)
        return cost_before, solver.compute_cost(), num_iterations

    def _calibration_columns(self) -> onp.ndarray:
        layout = self.solver.system.layout
        calibration_vars = [v for v in layout.vars if self.store.get(v).is_calibration]
        if len(calibration_vars) == 0:
            # Without calibration parameters, every active variable counts.
            calibration_vars = list(layout.vars)
        return layout.column_indices(calibration_vars)

    def _calibration_information(self) -> tuple[float, int]:
        solver = self.solver
        columns = self._calibration_columns()
        null_space = solver.null_space[columns]
        if isinstance(solver, QrLinearSolver):
            null_space_scaled = solver.null_space_scaled[columns]
        else:
            null_space_scaled = null_space
        return _observable_log_det(
            solver.covariance_block(columns), null_space, null_space_scaled
        )

    def _information_gain(self, theta_log_det: float, theta_rank: int) -> float:
        """Half the log-volume reduction of the observable calibration
        covariance, ie the entropy reduction of a Gaussian estimate."""
        if self._theta_log_det is None or theta_rank > self._theta_rank:
            return math.inf
        if theta_rank < self._theta_rank:
            return -math.inf
        return 0.5 * (self._theta_log_det - theta_log_det)

    def _count_outliers(self, error_terms: Sequence[ErrorTerm]) -> int:
        count = 0
        for term in error_terms:
            if term.raw_residual is None:
                continue
            threshold = self.config.outlier_threshold * term.raw_residual.shape[0]
            if term.mahalanobis_squared() > threshold:
                count += 1
        return count

    # Statistics.

    def _terms_named(self, name: str | None) -> list[ErrorTerm]:
        terms = [
            t
            for t in self._accepted_terms
            if (name is None or t.get_name() == name) and t.raw_residual is not None
        ]
        if len(terms) == 0:
            raise StructuralError(
                "No accepted error terms" + ("" if name is None else f" named '{name}'") + "."
            )
        return terms

    def errors(self, name: str | None = None) -> tuple[tuple[onp.ndarray, ...], onp.ndarray]:
        """Raw residuals and Mahalanobis-squared distances of accepted error
        terms, optionally filtered by name."""
        terms = self._terms_named(name)
        residuals = tuple(t.raw_residual.copy() for t in terms)  # type: ignore
        return residuals, onp.array([t.mahalanobis_squared() for t in terms])

    def error_statistics(self, name: str | None = None) -> ErrorStatistics:
        """Per-component statistics of accepted residuals. All selected error
        terms must have the same residual dimension."""
        terms = self._terms_named(name)
        residuals, mahalanobis_squared = self.errors(name)
        if len({r.shape[0] for r in residuals}) != 1:
            raise StructuralError(
                "Residual dimensions differ, error statistics must be grouped by name."
            )
        stacked = onp.stack(residuals, axis=0)
        variance = onp.var(stacked, axis=0)
        return ErrorStatistics(
            name=name,
            num_error_terms=len(terms),
            mean=onp.mean(stacked, axis=0),
            variance=variance,
            standard_deviation=onp.sqrt(variance),
            max_abs=onp.max(onp.abs(stacked), axis=0),
            mean_mahalanobis_squared=float(onp.mean(mahalanobis_squared)),
            num_outliers=self._count_outliers(terms),
        )

    # Output.

    def finalize(self) -> CalibrationResult:
        """Process any pending measurements, then compute final estimates,
        marginal standard deviations and the unobservable basis. No data can
        be added afterward."""
        if self._result is not None:
            return self._result
        if self._pending_num_measurements > 0:
            self.process_batch()
        elif self._batch_snapshot is not None:
            # Variables added without any measurement.
            self._rollback([(t.weight, t.chi2, t.raw_residual) for t in self._accepted_terms])

        self.state = EstimatorState.FINALIZING
        num_batches = len(self._batches)
        counts = dict(
            num_measurements=self._num_measurements,
            num_measurements_accepted=self._num_measurements_accepted,
            num_batches=num_batches,
            num_batches_accepted=self.num_batches_accepted,
            batches=tuple(self._batches),
        )

        if not self.is_initialized:
            logger.warning("No batch was accepted, estimates are uninitialized.")
            result = CalibrationResult(
                is_initialized=False,
                values=None,
                standard_deviations=None,
                null_space=None,
                null_space_scaled=None,
                column_labels=None,
                rank=None,
                num_cols=None,
                residuals=None,
                mahalanobis_squared=None,
                initial_cost=None,
                final_cost=None,
                num_outliers=0,
                **counts,
            )
        else:
            solver = self.solver
            solver.set_problem(self.store, self._accepted_terms)
            system = solver.build_system(self.config.num_threads)
            values = dict[str, onp.ndarray]()
            standard_deviations = dict[str, onp.ndarray]()
            for var in system.layout.vars:
                variable = self.store.get(var)
                values[variable.name] = variable.value.copy()
                standard_deviations[variable.name] = solver.marginal_standard_deviation(var)

            null_space = solver.null_space
            if isinstance(solver, QrLinearSolver):
                null_space_scaled = solver.null_space_scaled
            else:
                null_space_scaled = null_space

            residuals, mahalanobis_squared = self.errors()
            result = CalibrationResult(
                is_initialized=True,
                values=values,
                standard_deviations=standard_deviations,
                null_space=null_space,
                null_space_scaled=null_space_scaled,
                column_labels=system.layout.labels(self.store),
                rank=solver.rank,
                num_cols=system.layout.num_cols,
                residuals=residuals,
                mahalanobis_squared=mahalanobis_squared,
                initial_cost=self._initial_cost,
                final_cost=solver.compute_cost(),
                num_outliers=self.num_outliers,
                **counts,
            )
            logger.info(
                "Finalized: {}/{} batches accepted, rank {}/{}, {} outliers",
                result.num_batches_accepted,
                num_batches,
                result.rank,
                result.num_cols,
                result.num_outliers,
            )

        self.solver.close()
        self.state = EstimatorState.DONE
        self._result = result
        return result
