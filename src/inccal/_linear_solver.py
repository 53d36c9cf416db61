from __future__ import annotations

import abc
from typing import Any, Literal, Sequence

import jax
import numpy as onp
import scipy.sparse
from jax import numpy as jnp
from loguru import logger
from overrides import EnforceOverrides, overrides

from ._error_terms import ErrorTerm
from ._errors import NumericalFailure, StructuralError
from ._factorization import (
    FactorizationConfig,
    FactorizationContext,
    FactorizationResult,
    RankRevealingFactorizer,
)
from ._robust import RobustWeightingPolicy
from ._sparse_system import SparseSystem, SparseSystemBuilder
from ._variables import Var, VarStore


class LinearSolver(abc.ABC, EnforceOverrides):
    """Linear solver interface for incremental calibration problems.

    A solver is pointed at a problem with `set_problem()`, then alternates
    between `build_system()` and `solve_system()`. Every build invalidates
    the cached factorization held in the solver's `FactorizationContext`.
    """

    def __init__(
        self,
        builder: SparseSystemBuilder | None = None,
        robust_policy: RobustWeightingPolicy | None = None,
    ) -> None:
        self.builder = builder if builder is not None else SparseSystemBuilder()
        self.robust_policy = (
            robust_policy if robust_policy is not None else RobustWeightingPolicy()
        )
        self.context = FactorizationContext()
        self._store: VarStore | None = None
        self._error_terms: tuple[ErrorTerm, ...] = ()
        self._system: SparseSystem | None = None
        self._update: onp.ndarray | None = None

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Name of the solver, for diagnostics."""

    def set_problem(self, store: VarStore, error_terms: Sequence[ErrorTerm]) -> None:
        self._store = store
        self._error_terms = tuple(error_terms)
        self._invalidate()

    def _invalidate(self) -> None:
        self._system = None
        self._update = None
        self.context.invalidate()

    @property
    def system(self) -> SparseSystem:
        if self._system is None:
            raise StructuralError(f"{self.name}: build_system() has not been called.")
        return self._system

    def build_system(
        self, num_threads: int = 1, use_robust_weighting: bool = False
    ) -> SparseSystem:
        """Build the linear system at the current design variable values,
        optionally re-weighting error terms first."""
        if self._store is None:
            raise StructuralError(f"{self.name}: set_problem() has not been called.")
        store = self._store
        self._invalidate()

        if use_robust_weighting:
            self.builder.evaluate_residuals(store, self._error_terms, num_threads)
            self.robust_policy.reweight(self._error_terms)

        system = self.builder.build(store, self._error_terms, num_threads)
        for var in store:
            store.get(var).column_offset = None
        for var, start_col in zip(system.layout.vars, system.layout.start_cols):
            store.get(var).column_offset = start_col
        self._system = system
        return system

    def _check_solvable(self) -> SparseSystem:
        system = self.system
        if system.layout.num_cols == 0:
            raise NumericalFailure(f"{self.name}: system has no active design variables.")
        if not onp.all(onp.isfinite(system.residual)):
            raise NumericalFailure(f"{self.name}: residual vector contains non-finite entries.")
        return system

    @abc.abstractmethod
    def solve_system(self) -> onp.ndarray:
        """Solve for the update `dx` that minimizes `||J dx + b||^2`."""

    def compute_covariance_quadratic_form(self, vector: onp.ndarray | None = None) -> float:
        """Compute `v^T J^T J v` as `||J v||^2`, without forming `J^T J`.

        Defaults to the last update returned by `solve_system()`."""
        if vector is None:
            if self._update is None:
                raise StructuralError(f"{self.name}: solve_system() has not been called.")
            vector = self._update
        system = self.system
        vector = onp.asarray(vector, dtype=onp.float64)
        if vector.shape != (system.layout.num_cols,):
            raise StructuralError(
                f"Expected a vector of shape {(system.layout.num_cols,)}, got {vector.shape}."
            )
        Jv = system.jacobian @ vector
        return float(Jv @ Jv)

    def compute_rhs(self) -> onp.ndarray:
        """Negative gradient `-J^T b`, eg for steepest descent steps."""
        system = self.system
        return -(system.jacobian.T @ system.residual)

    def compute_cost(self) -> float:
        return self.system.cost()

    @property
    @abc.abstractmethod
    def rank(self) -> int:
        """Numerical rank of the current system."""

    @property
    @abc.abstractmethod
    def null_space(self) -> onp.ndarray:
        """Orthonormal basis of unobservable directions, `(num_cols, k)`."""

    @abc.abstractmethod
    def _covariance_block(
        self, rows: onp.ndarray | slice, cols: onp.ndarray | slice
    ) -> onp.ndarray: ...

    def _to_columns(self, columns: Var | onp.ndarray | slice) -> onp.ndarray | slice:
        if isinstance(columns, Var):
            return self.system.layout.columns(columns)
        return columns

    def covariance_block(
        self,
        rows: Var | onp.ndarray | slice,
        cols: Var | onp.ndarray | slice | None = None,
    ) -> onp.ndarray:
        """Block of `(J^T J)^{-1}` (observable part only, if rank deficient).
        Rows and columns can be given as design variable handles."""
        rows = self._to_columns(rows)
        cols = rows if cols is None else self._to_columns(cols)
        return self._covariance_block(rows, cols)

    def observable_covariance(self, columns: Var | onp.ndarray | slice) -> onp.ndarray:
        """Square covariance block of a group of columns."""
        return self.covariance_block(columns)

    def marginal_standard_deviation(self, var: Var) -> onp.ndarray:
        """Per-component standard deviation of a design variable. NaN along
        components that are touched by an unobservable direction."""
        columns = self.system.layout.columns(var)
        std = onp.sqrt(onp.maximum(onp.diag(self.covariance_block(columns)), 0.0))
        std[self.unobservable_mask()[columns]] = onp.nan
        return std

    def unobservable_mask(self) -> onp.ndarray:
        """True for every parameter coordinate touched by the null space."""
        null_space = self.null_space
        if null_space.shape[1] == 0:
            return onp.zeros(null_space.shape[0], dtype=bool)
        return onp.linalg.norm(null_space, axis=1) > 1e-8

    def close(self) -> None:
        """Release cached factorizations."""
        self._invalidate()
        self.context.release()

    def __enter__(self) -> LinearSolver:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


class QrLinearSolver(LinearSolver):
    """Rank-revealing QR solver. Updates are zero along unobservable
    directions, and the null space and observable covariance are available
    after each solve."""

    def __init__(
        self,
        config: FactorizationConfig = FactorizationConfig(),
        builder: SparseSystemBuilder | None = None,
        robust_policy: RobustWeightingPolicy | None = None,
    ) -> None:
        super().__init__(builder=builder, robust_policy=robust_policy)
        self.factorizer = RankRevealingFactorizer(config)

    @property
    @overrides
    def name(self) -> str:
        return "qr_rank_revealing"

    def _latent_columns(self, system: SparseSystem) -> onp.ndarray:
        """Columns of design variables that are not calibration parameters.
        These are eliminated block by block."""
        assert self._store is not None
        mask = onp.zeros(system.layout.num_cols, dtype=bool)
        for var, start_col, tangent_dim in zip(
            system.layout.vars, system.layout.start_cols, system.layout.tangent_dims
        ):
            if not self._store.get(var).is_calibration:
                mask[start_col : start_col + tangent_dim] = True
        return mask

    @property
    def factorization(self) -> FactorizationResult:
        system = self._check_solvable()
        cached = self.context.get(system.generation)
        if cached is None:
            cached = self.factorizer.factorize(
                system.jacobian, eliminate=self._latent_columns(system)
            )
            self.context.store(system.generation, cached)
        return cached

    @overrides
    def solve_system(self) -> onp.ndarray:
        system = self._check_solvable()
        factorization = self.factorization
        dx = factorization.solve(-system.residual)
        if not onp.all(onp.isfinite(dx)):
            raise NumericalFailure(f"{self.name}: update contains non-finite entries.")
        self._update = dx
        return dx

    @property
    @overrides
    def rank(self) -> int:
        return self.factorization.rank

    @property
    @overrides
    def null_space(self) -> onp.ndarray:
        return self.factorization.null_space

    @property
    def null_space_scaled(self) -> onp.ndarray:
        return self.factorization.null_space_scaled

    @overrides
    def _covariance_block(
        self, rows: onp.ndarray | slice, cols: onp.ndarray | slice
    ) -> onp.ndarray:
        return self.factorization.covariance_block(rows, cols)


class CholeskyLinearSolver(LinearSolver):
    """Normal-equations solver. Faster than QR for large sparse problems, but
    cannot detect rank deficiency: a small diagonal regularization keeps the
    factorization defined, and the reported rank is always full."""

    def __init__(
        self,
        backend: Literal["dense_cholesky", "cholmod"] = "dense_cholesky",
        regularization: float = 1e-5,
        builder: SparseSystemBuilder | None = None,
        robust_policy: RobustWeightingPolicy | None = None,
    ) -> None:
        super().__init__(builder=builder, robust_policy=robust_policy)
        self.backend = backend
        self.regularization = regularization

    @property
    @overrides
    def name(self) -> str:
        return f"cholesky_{self.backend}"

    def _factorize(self) -> Any:
        system = self._check_solvable()
        cached = self.context.get(system.generation)
        if cached is not None:
            return cached

        if self.backend == "dense_cholesky":
            ATA = (system.jacobian.T @ system.jacobian).toarray()
            ATA[onp.diag_indices_from(ATA)] += self.regularization
            cho_factor = jax.scipy.linalg.cho_factor(jnp.asarray(ATA))
            if not bool(jnp.all(jnp.isfinite(cho_factor[0]))):
                raise NumericalFailure(f"{self.name}: Cholesky factorization failed.")
            factor: Any = cho_factor
        elif self.backend == "cholmod":
            factor = self._cholmod_factorize(system)
        else:
            raise StructuralError(f"Unknown Cholesky backend '{self.backend}'.")

        self.context.store(system.generation, factor)
        return factor

    def _cholmod_factorize(self, system: SparseSystem) -> Any:
        import sksparse.cholmod

        # Matrix is transposed when we convert CSR to CSC.
        A_T = scipy.sparse.csc_matrix(system.jacobian.T)

        # Cache sparsity pattern analysis.
        cache_key = (A_T.indices.tobytes(), A_T.indptr.tobytes(), A_T.shape)
        analysis = self.context.get_analysis(cache_key)
        if analysis is None:
            analysis = sksparse.cholmod.analyze_AAt(A_T)
            self.context.store_analysis(cache_key, analysis)
        try:
            return analysis.cholesky_AAt(A_T, beta=self.regularization)
        except sksparse.cholmod.CholmodError as e:
            raise NumericalFailure(f"{self.name}: {e}") from e

    def _solve_normal_equations(self, rhs: onp.ndarray) -> onp.ndarray:
        factor = self._factorize()
        if self.backend == "dense_cholesky":
            out = jax.scipy.linalg.cho_solve(factor, jnp.asarray(rhs))
        else:
            out = factor.solve_A(rhs)
        return onp.asarray(out, dtype=onp.float64)

    @overrides
    def solve_system(self) -> onp.ndarray:
        self._check_solvable()
        dx = self._solve_normal_equations(self.compute_rhs())
        if not onp.all(onp.isfinite(dx)):
            raise NumericalFailure(f"{self.name}: update contains non-finite entries.")
        self._update = dx
        return dx

    @property
    @overrides
    def rank(self) -> int:
        return self._check_solvable().layout.num_cols

    @property
    @overrides
    def null_space(self) -> onp.ndarray:
        return onp.zeros((self._check_solvable().layout.num_cols, 0))

    @overrides
    def _covariance_block(
        self, rows: onp.ndarray | slice, cols: onp.ndarray | slice
    ) -> onp.ndarray:
        num_cols = self._check_solvable().layout.num_cols
        col_indices = onp.arange(num_cols)[cols]
        unit_vectors = onp.zeros((num_cols, col_indices.shape[0]))
        unit_vectors[col_indices, onp.arange(col_indices.shape[0])] = 1.0
        if self.backend == "dense_cholesky":
            columns = self._solve_normal_equations(unit_vectors)
        else:
            columns = onp.stack(
                [self._solve_normal_equations(e) for e in unit_vectors.T], axis=1
            )
        logger.debug("Computed {} covariance columns with {}", col_indices.shape[0], self.name)
        return columns[rows]
