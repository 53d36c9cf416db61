"""Rank-revealing factorization of the calibration Jacobian."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Hashable

import jax_dataclasses as jdc
import numpy as onp
import scipy.linalg
import scipy.sparse
import scipy.sparse.csgraph
from loguru import logger

from ._errors import NumericalFailure


@jdc.pytree_dataclass
class FactorizationConfig:
    rank_tolerance: float = 1e-9
    """A singular value of a (column-scaled) block of the Jacobian is treated
    as zero when it falls below `rank_tolerance` times the largest singular
    value of the same block."""
    column_scaling: jdc.Static[bool] = True
    """Scale every Jacobian column to unit norm before factorizing. Makes the
    rank decision insensitive to the units of each parameter."""


def _canonicalize_signs(basis: onp.ndarray) -> onp.ndarray:
    """Flip basis columns so that their largest-magnitude entry is positive."""
    if basis.shape[1] == 0:
        return basis
    # Ties are broken toward the first entry, also when they are only equal
    # up to rounding.
    magnitudes = onp.abs(basis)
    pivots = onp.argmax(magnitudes >= (1.0 - 1e-9) * magnitudes.max(axis=0), axis=0)
    signs = onp.sign(basis[pivots, onp.arange(basis.shape[1])])
    signs[signs == 0.0] = 1.0
    return basis * signs[None, :]


def _orthonormalize(basis: onp.ndarray) -> onp.ndarray:
    if basis.shape[1] == 0:
        return basis
    q, _ = scipy.linalg.qr(basis, mode="economic")
    return _canonicalize_signs(q)


def _svd(matrix: onp.ndarray) -> tuple[onp.ndarray, onp.ndarray, onp.ndarray]:
    """Full SVD, also for matrices without rows."""
    num_rows, num_cols = matrix.shape
    if num_rows == 0:
        return onp.zeros((0, 0)), onp.zeros(0), onp.eye(num_cols)
    try:
        u, s, vt = scipy.linalg.svd(matrix, full_matrices=True)
    except (onp.linalg.LinAlgError, ValueError) as e:
        raise NumericalFailure(f"Factorization failed: {e}") from e
    if not onp.all(onp.isfinite(s)):
        raise NumericalFailure("Factorization produced non-finite singular values.")
    return u, s, vt


def _numerical_rank(singular_values: onp.ndarray, tolerance: float) -> int:
    if singular_values.shape[0] == 0 or singular_values[0] <= 0.0:
        return 0
    return int(onp.sum(singular_values > tolerance * singular_values[0]))


def _group_columns(
    columns: scipy.sparse.csr_matrix,
) -> tuple[onp.ndarray, onp.ndarray, int]:
    """Group columns into connected components of columns that share a row.

    Returns the component of every row (-1 for rows that touch none of the
    columns), the component of every column, and the number of components.
    """
    num_rows, num_cols = columns.shape
    if num_cols == 0:
        return onp.full(num_rows, -1), onp.zeros(0, dtype=onp.int64), 0

    pattern = columns.copy()
    pattern.eliminate_zeros()
    pattern.data = onp.ones_like(pattern.data)
    num_groups, col_group = scipy.sparse.csgraph.connected_components(
        (pattern.T @ pattern).tocsr(), directed=False
    )

    row_group = onp.full(num_rows, -1)
    touched = onp.diff(pattern.indptr) > 0
    row_group[touched] = col_group[pattern.indices[pattern.indptr[:-1][touched]]]
    return row_group, col_group, num_groups


def _split_groups(labels: onp.ndarray, num_groups: int) -> list[onp.ndarray]:
    """Indices of every group, in increasing order. Negative labels are
    dropped."""
    if num_groups == 0:
        return []
    order = onp.argsort(labels, kind="stable")
    start = int(onp.count_nonzero(labels < 0))
    counts = onp.bincount(labels[labels >= 0], minlength=num_groups)
    return onp.split(order[start:], onp.cumsum(counts)[:-1])


@dataclass(frozen=True)
class _EliminatedBlock:
    """Eliminated columns that only share rows with each other, factorized on
    those rows. In column-scaled coordinates, the block's own columns are
    `A = U @ diag(s) @ Vt`, and `coupling = U1^T @ B` where `B` holds the kept
    columns of the same rows.
    """

    rows: onp.ndarray
    cols: onp.ndarray
    rank: int
    s: onp.ndarray
    """Non-zero singular values, `(rank,)`."""
    u1t: onp.ndarray
    u2t: onp.ndarray
    v1: onp.ndarray
    v2: onp.ndarray
    coupling: onp.ndarray

    def back_substitute(self, rhs: onp.ndarray, kept_values: onp.ndarray) -> onp.ndarray:
        """Values of the block's columns that solve its observable rows
        `U1^T (A x + B kept_values) = rhs`, with no component along `V2`."""
        projected = rhs - self.coupling @ kept_values
        return self.v1 @ (projected.T / self.s).T


@dataclass(frozen=True)
class FactorizationResult:
    """Rank-revealing factorization of a column-scaled Jacobian `J @ D`.

    Eliminated columns are factorized first, in independent blocks: every
    block is a group of columns that share rows, and its rows are rotated so
    that the block's columns only appear in `rank` of them. The remaining
    rows form a reduced system over the kept columns, which is column-scaled
    again and factorized with a column-pivoted QR followed by an SVD of the
    triangular factor:

        T @ E[:, perm] = Q @ R,   R = U @ diag(s) @ Vt

    When no column is eliminated, `T = J @ D`. Everything needed to solve for
    an update, to extract blocks of the observable covariance, and to report
    unobservable directions is kept here.
    """

    num_cols: int
    rank: int
    singular_values: onp.ndarray
    """Singular values of all factorized blocks, descending, padded with
    zeros. Without eliminated columns, these are the singular values of the
    column-scaled Jacobian."""
    null_space: onp.ndarray
    """Orthonormal basis of unobservable directions, in parameter
    coordinates. Shape `(num_cols, num_cols - rank)`."""
    null_space_scaled: onp.ndarray
    """Orthonormal basis of unobservable directions, in column-scaled
    coordinates. Shape `(num_cols, num_cols - rank)`."""
    column_scales: onp.ndarray
    _blocks: tuple[_EliminatedBlock, ...]
    _kept_cols: onp.ndarray
    _reduced_rows: onp.ndarray
    _reduced_scales: onp.ndarray
    _reduced_rank: int
    _q: onp.ndarray
    _u: onp.ndarray
    _s: onp.ndarray
    _vt: onp.ndarray
    _perm: onp.ndarray
    _cache: dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def is_rank_deficient(self) -> bool:
        return self.rank < self.num_cols

    def _reduced_map(self) -> onp.ndarray:
        """`(num_kept, reduced_rank)` map from observable coordinates of the
        reduced system to kept columns, in column-scaled coordinates. Its
        image under the reduced system has orthonormal columns."""
        out = onp.zeros((self._kept_cols.shape[0], self._reduced_rank))
        out[self._perm] = (
            self._vt[: self._reduced_rank].T / self._s[None, : self._reduced_rank]
        )
        return out * self._reduced_scales[:, None]

    def solve(self, rhs: onp.ndarray) -> onp.ndarray:
        """Least-squares solution of `J @ dx ~= rhs`. The component of `dx`
        along the null space is zero."""
        assert rhs.ndim == 1
        kept = onp.zeros(self._kept_cols.shape[0])
        if self._reduced_rank > 0:
            reduced_rhs = [block.u2t @ rhs[block.rows] for block in self._blocks]
            reduced_rhs.append(rhs[self._reduced_rows])
            projected = self._u[:, : self._reduced_rank].T @ (
                self._q.T @ onp.concatenate(reduced_rhs)
            )
            kept = self._reduced_map() @ projected

        dx = onp.zeros(self.num_cols)
        dx[self._kept_cols] = kept
        for block in self._blocks:
            dx[block.cols] = block.back_substitute(block.u1t @ rhs[block.rows], kept)
        return self.project_out_null_space(self.column_scales * dx)

    def project_out_null_space(self, x: onp.ndarray) -> onp.ndarray:
        if self.null_space.shape[1] == 0:
            return x
        return x - self.null_space @ (self.null_space.T @ x)

    def _range_basis(self) -> tuple[onp.ndarray, scipy.sparse.csr_matrix]:
        """`G`, in parameter coordinates, such that `J @ G` has orthonormal
        columns spanning the range of `J`. Split into a dense part for the
        reduced system and a block-diagonal sparse part for the eliminated
        blocks."""
        cached = self._cache.get("range_basis")
        if cached is not None:
            return cached

        kept_map = self._reduced_map()
        dense = onp.zeros((self.num_cols, self._reduced_rank))
        dense[self._kept_cols] = kept_map

        rows = list[onp.ndarray]()
        cols = list[onp.ndarray]()
        entries = list[onp.ndarray]()
        offset = 0
        for block in self._blocks:
            dense[block.cols] = block.back_substitute(
                onp.zeros((block.rank, self._reduced_rank)), kept_map
            )
            block_rows, block_cols = onp.meshgrid(
                block.cols, onp.arange(offset, offset + block.rank), indexing="ij"
            )
            rows.append(block_rows.ravel())
            cols.append(block_cols.ravel())
            entries.append((block.v1 / block.s[None, :]).ravel())
            offset += block.rank

        sparse = scipy.sparse.coo_matrix(
            (
                onp.concatenate(entries) if entries else onp.zeros(0),
                (
                    onp.concatenate(rows) if rows else onp.zeros(0, dtype=onp.int64),
                    onp.concatenate(cols) if cols else onp.zeros(0, dtype=onp.int64),
                ),
            ),
            shape=(self.num_cols, offset),
        ).tocsr()
        out = (
            dense * self.column_scales[:, None],
            (scipy.sparse.diags(self.column_scales) @ sparse).tocsr(),
        )
        self._cache["range_basis"] = out
        return out

    def covariance_factor(self, rows: onp.ndarray | slice = slice(None)) -> onp.ndarray:
        """Rows of `F`, where `F @ F.T` is the observable covariance
        `(J^T J)^+`. `F` has one column per observable direction."""
        dense, sparse = self._range_basis()
        factor = onp.concatenate([dense[rows], sparse[rows].toarray()], axis=1)
        if self.null_space.shape[1] == 0:
            return factor

        coupling = self._cache.get("null_space_coupling")
        if coupling is None:
            coupling = onp.concatenate(
                [self.null_space.T @ dense, onp.asarray(sparse.T @ self.null_space).T],
                axis=1,
            )
            self._cache["null_space_coupling"] = coupling
        return factor - self.null_space[rows] @ coupling

    def covariance_block(
        self, rows: onp.ndarray | slice, cols: onp.ndarray | slice | None = None
    ) -> onp.ndarray:
        """Block of the observable covariance, without forming it densely."""
        row_factor = self.covariance_factor(rows)
        if cols is None:
            return row_factor @ row_factor.T
        return row_factor @ self.covariance_factor(cols).T

    def unobservable_mask(self, tolerance: float = 1e-8) -> onp.ndarray:
        """True for every parameter coordinate that the null space touches."""
        if self.null_space.shape[1] == 0:
            return onp.zeros(self.num_cols, dtype=bool)
        return onp.linalg.norm(self.null_space, axis=1) > tolerance


class RankRevealingFactorizer:
    """Factorizes the Jacobian and reports its numerical rank and null space.

    The normal equations are never formed: all solves go through orthogonal
    factorizations of blocks of `J` itself. Columns passed as `eliminate`,
    typically latent states that each touch a few rows, are factorized in
    small independent blocks, so dense work is only done on the reduced
    system over the remaining columns.
    """

    def __init__(self, config: FactorizationConfig = FactorizationConfig()) -> None:
        self.config = config

    def factorize(
        self,
        jacobian: scipy.sparse.spmatrix | onp.ndarray,
        eliminate: onp.ndarray | None = None,
    ) -> FactorizationResult:
        """Factorize a Jacobian.

        Args:
            jacobian: Sparse or dense matrix of shape `(num_rows, num_cols)`.
            eliminate: Boolean mask over columns to eliminate block by block
                before the others are factorized. None eliminates nothing.
        """
        config = self.config
        jacobian = scipy.sparse.csr_matrix(jacobian, dtype=onp.float64)
        num_rows, num_cols = jacobian.shape

        if num_cols == 0:
            raise NumericalFailure("Cannot factorize a system with no columns.")
        if num_rows == 0:
            raise NumericalFailure("Cannot factorize a system with no rows.")
        if not onp.all(onp.isfinite(jacobian.data)):
            raise NumericalFailure("Jacobian contains non-finite entries.")

        if config.column_scaling:
            column_norms = onp.sqrt(
                onp.asarray(jacobian.multiply(jacobian).sum(axis=0)).ravel()
            )
            column_scales = onp.where(column_norms > 0.0, 1.0 / column_norms, 1.0)
        else:
            column_scales = onp.ones(num_cols)
        scaled = (jacobian @ scipy.sparse.diags(column_scales)).tocsr()

        if eliminate is None:
            eliminate = onp.zeros(num_cols, dtype=bool)
        eliminate = onp.asarray(eliminate, dtype=bool)
        assert eliminate.shape == (num_cols,)
        eliminated_cols = onp.flatnonzero(eliminate)
        kept_cols = onp.flatnonzero(~eliminate)

        # Eliminated blocks.
        row_group, col_group, num_groups = _group_columns(
            scaled[:, eliminated_cols].tocsr()
        )
        blocks = list[_EliminatedBlock]()
        reduced_parts = list[onp.ndarray]()
        all_singular_values = list[onp.ndarray]()
        for rows, group_cols in zip(
            _split_groups(row_group, num_groups), _split_groups(col_group, num_groups)
        ):
            cols = eliminated_cols[group_cols]
            block_rows = scaled[rows]
            u, s, vt = _svd(block_rows[:, cols].toarray())
            if kept_cols.shape[0] > 0:
                kept_part = block_rows[:, kept_cols].toarray()
            else:
                kept_part = onp.zeros((rows.shape[0], 0))
            rank = _numerical_rank(s, config.rank_tolerance)
            u1t = u[:, :rank].T
            u2t = u[:, rank:].T
            blocks.append(
                _EliminatedBlock(
                    rows=rows,
                    cols=cols,
                    rank=rank,
                    s=s[:rank],
                    u1t=u1t,
                    u2t=u2t,
                    v1=vt[:rank].T,
                    v2=vt[rank:].T,
                    coupling=u1t @ kept_part,
                )
            )
            reduced_parts.append(u2t @ kept_part)
            all_singular_values.append(s)

        # Reduced system over the kept columns.
        reduced_rows = onp.flatnonzero(row_group < 0)
        if kept_cols.shape[0] > 0 and reduced_rows.shape[0] > 0:
            reduced_parts.append(scaled[reduced_rows][:, kept_cols].toarray())
        else:
            reduced_parts.append(onp.zeros((reduced_rows.shape[0], kept_cols.shape[0])))
        reduced = onp.concatenate(reduced_parts, axis=0)

        reduced_scales = onp.ones(kept_cols.shape[0])
        if config.column_scaling and kept_cols.shape[0] > 0:
            # Columns that elimination left numerically empty stay empty.
            norms = onp.linalg.norm(reduced, axis=0)
            empty = norms <= config.rank_tolerance
            reduced_scales = onp.where(empty, 1.0, 1.0 / onp.where(empty, 1.0, norms))
            reduced = reduced * reduced_scales[None, :]
            reduced[:, empty] = 0.0

        num_kept = kept_cols.shape[0]
        if num_kept == 0 or reduced.shape[0] == 0:
            q = onp.zeros((reduced.shape[0], 0))
            u = onp.zeros((0, 0))
            s = onp.zeros(0)
            vt = onp.eye(num_kept)
            perm = onp.arange(num_kept)
        else:
            try:
                q, r, perm = scipy.linalg.qr(reduced, mode="economic", pivoting=True)
            except (onp.linalg.LinAlgError, ValueError) as e:
                raise NumericalFailure(f"Factorization failed: {e}") from e
            # `r` has shape (min(num_rows, num_kept), num_kept).
            u, s, vt = _svd(r)
        reduced_rank = _numerical_rank(s, config.rank_tolerance)
        all_singular_values.append(s)

        # Null space, in column-scaled coordinates. Right singular vectors
        # beyond the rank span the null space of the reduced system; the
        # eliminated columns follow by back-substitution.
        null_parts = list[onp.ndarray]()
        reduced_null = onp.zeros((num_kept, num_kept - reduced_rank))
        reduced_null[perm] = vt[reduced_rank:].T
        reduced_null = reduced_null * reduced_scales[:, None]
        if reduced_null.shape[1] > 0:
            part = onp.zeros((num_cols, reduced_null.shape[1]))
            part[kept_cols] = reduced_null
            for block in blocks:
                part[block.cols] = block.back_substitute(
                    onp.zeros((block.rank, reduced_null.shape[1])), reduced_null
                )
            null_parts.append(part)
        for block in blocks:
            if block.v2.shape[1] > 0:
                part = onp.zeros((num_cols, block.v2.shape[1]))
                part[block.cols] = block.v2
                null_parts.append(part)
        if len(null_parts) > 0:
            null_basis = onp.concatenate(null_parts, axis=1)
        else:
            null_basis = onp.zeros((num_cols, 0))
        null_space_scaled = _orthonormalize(null_basis)
        null_space = _orthonormalize(column_scales[:, None] * null_basis)

        rank = reduced_rank + sum(block.rank for block in blocks)
        if rank < num_cols:
            logger.info(
                "Jacobian is rank deficient: rank {} of {} columns", rank, num_cols
            )
        if len(blocks) > 0:
            logger.debug(
                "Eliminated {} columns in {} blocks, reduced system is {}x{}",
                eliminated_cols.shape[0],
                len(blocks),
                reduced.shape[0],
                num_kept,
            )

        concatenated = -onp.sort(-onp.concatenate(all_singular_values))
        singular_values = onp.zeros(num_cols)
        singular_values[: concatenated.shape[0]] = concatenated
        return FactorizationResult(
            num_cols=num_cols,
            rank=rank,
            singular_values=singular_values,
            null_space=null_space,
            null_space_scaled=null_space_scaled,
            column_scales=column_scales,
            _blocks=tuple(blocks),
            _kept_cols=kept_cols,
            _reduced_rows=reduced_rows,
            _reduced_scales=reduced_scales,
            _reduced_rank=reduced_rank,
            _q=q,
            _u=u,
            _s=s,
            _vt=vt,
            _perm=perm,
        )


class FactorizationContext:
    """Caller-owned cache for factorizations and symbolic analyses.

    A cached entry is tied to the generation of the system it was computed
    from: asking for a different generation is a miss, and `invalidate()` is
    called on every rebuild. Nothing is shared between contexts.
    """

    def __init__(self) -> None:
        self._generation: int | None = None
        self._result: Any = None
        self._analysis_cache = dict[Hashable, Any]()
        self._max_analysis_cache_size = 16

    def get(self, generation: int) -> Any:
        if self._generation != generation:
            return None
        return self._result

    def store(self, generation: int, result: Any) -> None:
        self._generation = generation
        self._result = result

    def invalidate(self) -> None:
        self._generation = None
        self._result = None

    def get_analysis(self, key: Hashable) -> Any:
        """Symbolic analyses only depend on the sparsity pattern, so they can
        outlive a single system."""
        return self._analysis_cache.get(key, None)

    def store_analysis(self, key: Hashable, analysis: Any) -> None:
        self._analysis_cache[key] = analysis
        if len(self._analysis_cache) > self._max_analysis_cache_size:
            self._analysis_cache.pop(next(iter(self._analysis_cache)))

    def release(self) -> None:
        self.invalidate()
        self._analysis_cache.clear()

    def __enter__(self) -> FactorizationContext:
        return self

    def __exit__(self, *args: Any) -> None:
        self.release()
