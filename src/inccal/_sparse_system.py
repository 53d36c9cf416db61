from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Mapping, Sequence

import numpy as onp
import scipy.sparse
from loguru import logger

from ._error_terms import ErrorTerm
from ._errors import StructuralError
from ._variables import DesignVariable, Var, VarStore


@dataclass(frozen=True)
class ColumnLayout:
    """Describes which Jacobian columns are allocated to each active design
    variable. A pure function of the active set and its activation order."""

    vars: tuple[Var, ...]
    """Active variables, in column order."""
    start_cols: tuple[int, ...]
    """First column of each variable."""
    tangent_dims: tuple[int, ...]
    """Number of columns of each variable."""
    num_cols: int

    @staticmethod
    def make(store: VarStore) -> ColumnLayout:
        active = store.active_vars()
        start_cols = list[int]()
        tangent_dims = list[int]()
        col = 0
        for var in active:
            tangent_dim = store.get(var).tangent_dim
            assert tangent_dim is not None
            start_cols.append(col)
            tangent_dims.append(tangent_dim)
            col += tangent_dim
        return ColumnLayout(
            vars=active,
            start_cols=tuple(start_cols),
            tangent_dims=tuple(tangent_dims),
            num_cols=col,
        )

    def __contains__(self, var: object) -> bool:
        return var in self.vars

    def columns(self, var: Var) -> slice:
        try:
            index = self.vars.index(var)
        except ValueError:
            raise StructuralError(f"{var} is not active in this layout.") from None
        start = self.start_cols[index]
        return slice(start, start + self.tangent_dims[index])

    def column_indices(self, vars: Sequence[Var]) -> onp.ndarray:
        """Concatenated column indices for a group of variables."""
        if len(vars) == 0:
            return onp.zeros(0, dtype=onp.int64)
        return onp.concatenate(
            [onp.arange(self.columns(v).start, self.columns(v).stop) for v in vars]
        )

    def labels(self, store: VarStore) -> tuple[str, ...]:
        """Human-readable label for every column, eg `"offset[1]"`."""
        out = list[str]()
        for var, dim in zip(self.vars, self.tangent_dims):
            name = store.get(var).name
            out.extend(f"{name}[{i}]" for i in range(dim))
        return tuple(out)


@dataclass(frozen=True)
class SparseSystem:
    """Whitened, weighted linear system. The parameter update solves
    `jacobian @ dx ~= -residual` in the least-squares sense."""

    jacobian: scipy.sparse.csr_matrix
    residual: onp.ndarray
    layout: ColumnLayout
    row_slices: tuple[slice, ...]
    """Rows owned by each error term, in the order the terms were given."""
    num_conditioner_rows: int
    """Synthetic diagonal rows appended after all error-term rows."""
    generation: int
    """Increases with every build. Used to invalidate cached factorizations."""

    @property
    def shape(self) -> tuple[int, int]:
        return self.jacobian.shape  # type: ignore

    def cost(self) -> float:
        """Sum of weighted squared residuals. Conditioner rows have zero
        residual, so they do not contribute."""
        return float(self.residual @ self.residual)


class SparseSystemBuilder:
    """Assembles the sparse Jacobian and weighted residual vector from a set of
    error terms and the design variables they reference.

    Residuals and Jacobians are evaluated on a read-only snapshot of the
    variable values. With `num_threads > 1` the per-term evaluations run in a
    bounded worker pool; every term writes into its own slot, and the matrix
    is assembled in term order afterward, so results do not depend on the
    number of workers.
    """

    def __init__(self, use_diagonal_conditioner: bool = False) -> None:
        self.use_diagonal_conditioner = use_diagonal_conditioner
        self._generation = 0

    def _check_terms(self, store: VarStore, error_terms: Sequence[ErrorTerm]) -> None:
        seen = set[int]()
        for term in error_terms:
            if id(term) in seen:
                raise StructuralError(
                    f"Error term '{term.get_name()}' was included more than once."
                )
            seen.add(id(term))
            for var in term.variables:
                if var not in store:
                    raise StructuralError(
                        f"Error term '{term.get_name()}' references unknown design variable {var}."
                    )

    @staticmethod
    def _map(num_threads: int, fn, items: Sequence) -> list:
        # `Executor.map()` yields results in submission order.
        if num_threads <= 1 or len(items) <= 1:
            return [fn(item) for item in items]
        with ThreadPoolExecutor(max_workers=num_threads) as executor:
            return list(executor.map(fn, items))

    def evaluate_residuals(
        self,
        store: VarStore,
        error_terms: Sequence[ErrorTerm],
        num_threads: int = 1,
    ) -> float:
        """Evaluate all residuals, update the error term caches and return the
        total chi-squared cost."""
        self._check_terms(store, error_terms)
        values = store.values()
        residuals = self._map(num_threads, lambda term: term.residual(values), error_terms)
        cost = 0.0
        for term, residual in zip(error_terms, residuals):
            term.commit_residual(residual)
            cost += term.chi2
        return cost

    def build(
        self,
        store: VarStore,
        error_terms: Sequence[ErrorTerm],
        num_threads: int = 1,
    ) -> SparseSystem:
        """Build `(J, b)` for the current values of the active design
        variables."""
        self._check_terms(store, error_terms)
        layout = ColumnLayout.make(store)
        values: Mapping[int, onp.ndarray] = store.values()

        def linearize(term: ErrorTerm) -> tuple[onp.ndarray, onp.ndarray]:
            variables = [store.get(var) for var in term.variables]
            return term.linearize(values, variables)

        linearized = self._map(num_threads, linearize, error_terms)

        # Assemble in a fixed order.
        rows = list[onp.ndarray]()
        cols = list[onp.ndarray]()
        entries = list[onp.ndarray]()
        residual_parts = list[onp.ndarray]()
        row_slices = list[slice]()
        observed = onp.zeros(layout.num_cols, dtype=bool)
        row = 0
        for term, (raw_residual, raw_jacobian) in zip(error_terms, linearized):
            term.commit_residual(raw_residual)
            residual, jacobian = term.whiten(raw_residual, raw_jacobian)
            residual_dim = residual.shape[0]

            jac_col = 0
            for var in term.variables:
                tangent_dim = store.get(var).tangent_dim
                assert tangent_dim is not None
                block = jacobian[:, jac_col : jac_col + tangent_dim]
                jac_col += tangent_dim
                if var not in layout:
                    # Inactive variables are held fixed.
                    continue
                start_col = layout.columns(var).start
                observed[start_col : start_col + tangent_dim] |= onp.any(block != 0.0, axis=0)
                block_rows, block_cols = onp.meshgrid(
                    onp.arange(row, row + residual_dim),
                    onp.arange(start_col, start_col + tangent_dim),
                    indexing="ij",
                )
                rows.append(block_rows.ravel())
                cols.append(block_cols.ravel())
                entries.append(block.ravel())

            residual_parts.append(residual)
            row_slices.append(slice(row, row + residual_dim))
            row += residual_dim

        # Diagonal conditioner: components that no error term observes would
        # otherwise leave zero columns behind.
        num_conditioner_rows = 0
        if self.use_diagonal_conditioner:
            for var, start_col, tangent_dim in zip(
                layout.vars, layout.start_cols, layout.tangent_dims
            ):
                unobserved = start_col + onp.flatnonzero(
                    ~observed[start_col : start_col + tangent_dim]
                )
                if unobserved.shape[0] == 0:
                    continue
                variable: DesignVariable = store.get(var)
                num_unobserved = unobserved.shape[0]
                rows.append(onp.arange(row, row + num_unobserved))
                cols.append(unobserved)
                entries.append(onp.full(num_unobserved, 1.0 / variable.prior_sigma))
                residual_parts.append(onp.zeros(num_unobserved))
                row += num_unobserved
                num_conditioner_rows += num_unobserved
                logger.debug(
                    "Conditioning {}/{} unobserved components of design variable '{}'"
                    " with sigma={}",
                    num_unobserved,
                    tangent_dim,
                    variable.name,
                    variable.prior_sigma,
                )

        jacobian = scipy.sparse.coo_matrix(
            (
                onp.concatenate(entries) if entries else onp.zeros(0),
                (
                    onp.concatenate(rows) if rows else onp.zeros(0, dtype=onp.int64),
                    onp.concatenate(cols) if cols else onp.zeros(0, dtype=onp.int64),
                ),
            ),
            shape=(row, layout.num_cols),
        ).tocsr()
        residual = onp.concatenate(residual_parts) if residual_parts else onp.zeros(0)

        self._generation += 1
        logger.debug(
            "Built system #{} with {} rows, {} columns, {} nonzeros",
            self._generation,
            jacobian.shape[0],
            jacobian.shape[1],
            jacobian.nnz,
        )
        return SparseSystem(
            jacobian=jacobian,
            residual=residual,
            layout=layout,
            row_slices=tuple(row_slices),
            num_conditioner_rows=num_conditioner_rows,
            generation=self._generation,
        )
