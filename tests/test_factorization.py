"""Tests for the rank-revealing factorizer."""

import numpy as onp
import pytest
import scipy.sparse

import inccal


def _dependent_columns(num_rows: int, num_independent: int, num_dependent: int):
    rng = onp.random.default_rng(0)
    independent = rng.normal(size=(num_rows, num_independent))
    mixing = rng.normal(size=(num_independent, num_dependent))
    return onp.concatenate([independent, independent @ mixing], axis=1)


@pytest.mark.parametrize("num_dependent", [0, 1, 3])
def test_rank_and_null_space(num_dependent: int):
    """k dependent columns give rank n - k, and a null space orthogonal to
    every row of J."""
    J = _dependent_columns(20, 5, num_dependent)
    result = inccal.RankRevealingFactorizer().factorize(scipy.sparse.csr_matrix(J))

    num_cols = 5 + num_dependent
    assert result.num_cols == num_cols
    assert result.rank == 5
    assert result.is_rank_deficient == (num_dependent > 0)
    assert result.null_space.shape == (num_cols, num_dependent)
    assert result.null_space_scaled.shape == (num_cols, num_dependent)
    onp.testing.assert_allclose(J @ result.null_space, 0.0, atol=1e-8)
    onp.testing.assert_allclose(
        result.null_space.T @ result.null_space, onp.eye(num_dependent), atol=1e-10
    )


def test_sum_only_null_space():
    J = onp.ones((3, 2))
    result = inccal.RankRevealingFactorizer().factorize(J)
    assert result.rank == 1
    onp.testing.assert_allclose(
        result.null_space[:, 0], onp.array([1.0, -1.0]) / onp.sqrt(2.0), atol=1e-10
    )
    onp.testing.assert_array_equal(result.unobservable_mask(), [True, True])


def test_column_scaling():
    """Rank decisions do not depend on the units of each parameter."""
    J = onp.array([[1e6, 0.0], [0.0, 1e-6], [1e6, 1e-6]])
    assert inccal.RankRevealingFactorizer().factorize(J).rank == 2

    unscaled = inccal.RankRevealingFactorizer(
        inccal.FactorizationConfig(column_scaling=False)
    ).factorize(J)
    assert unscaled.rank == 1


def test_null_space_forms_differ_with_scaling():
    J = onp.array([[1.0, 100.0], [2.0, 200.0]])
    result = inccal.RankRevealingFactorizer().factorize(J)
    assert result.rank == 1
    onp.testing.assert_allclose(J @ result.null_space, 0.0, atol=1e-8)
    # In scaled coordinates both columns have unit norm, so the null direction
    # weights them equally.
    onp.testing.assert_allclose(
        onp.abs(result.null_space_scaled[:, 0]), onp.ones(2) / onp.sqrt(2.0), atol=1e-10
    )


def test_solve_matches_least_squares():
    rng = onp.random.default_rng(1)
    J = rng.normal(size=(10, 4))
    b = rng.normal(size=10)
    result = inccal.RankRevealingFactorizer().factorize(J)
    onp.testing.assert_allclose(
        result.solve(b), onp.linalg.lstsq(J, b, rcond=None)[0], rtol=1e-9, atol=1e-12
    )
    onp.testing.assert_allclose(
        result.covariance_block(slice(None)), onp.linalg.inv(J.T @ J), rtol=1e-8, atol=1e-12
    )
    onp.testing.assert_allclose(
        result.covariance_block(onp.array([0, 1]), onp.array([3])),
        onp.linalg.inv(J.T @ J)[:2, 3:],
        rtol=1e-8,
        atol=1e-12,
    )


def test_rank_deficient_solve():
    """Updates and covariances have no component along the null space."""
    J = onp.array([[1.0, 1.0, 0.0], [2.0, 2.0, 0.0], [0.0, 0.0, 3.0]])
    b = onp.array([1.0, 2.0, 3.0])
    result = inccal.RankRevealingFactorizer().factorize(J)
    assert result.rank == 2

    dx = result.solve(b)
    onp.testing.assert_allclose(dx, onp.linalg.pinv(J) @ b, atol=1e-10)
    onp.testing.assert_allclose(result.null_space.T @ dx, 0.0, atol=1e-12)

    covariance = result.covariance_block(slice(None))
    onp.testing.assert_allclose(covariance, onp.linalg.pinv(J.T @ J), atol=1e-10)
    onp.testing.assert_allclose(covariance @ result.null_space, 0.0, atol=1e-10)
    onp.testing.assert_array_equal(result.unobservable_mask(), [True, True, False])


def _block_angular(rng: onp.random.Generator):
    """Four groups of two latent columns, each touching its own three rows,
    plus two shared columns that touch every row."""
    num_cols = 10
    kept = onp.array([0, 5])
    latent = onp.setdiff1d(onp.arange(num_cols), kept)
    J = onp.zeros((14, num_cols))
    for k in range(4):
        rows = slice(3 * k, 3 * k + 3)
        J[rows, latent[2 * k : 2 * k + 2]] = rng.normal(size=(3, 2))
        J[rows, kept] = rng.normal(size=(3, 2))
    J[12:, kept] = rng.normal(size=(2, 2))
    eliminate = onp.zeros(num_cols, dtype=bool)
    eliminate[latent] = True
    return J, kept, latent, eliminate


def test_eliminated_columns():
    """Eliminating latent columns block by block gives the same solution and
    covariance as factorizing the whole Jacobian."""
    J, _, _, eliminate = _block_angular(onp.random.default_rng(2))
    b = onp.random.default_rng(3).normal(size=J.shape[0])
    result = inccal.RankRevealingFactorizer().factorize(
        scipy.sparse.csr_matrix(J), eliminate=eliminate
    )
    assert result.rank == 10
    assert not result.is_rank_deficient
    assert result.singular_values.shape == (10,)

    onp.testing.assert_allclose(
        result.solve(b), onp.linalg.lstsq(J, b, rcond=None)[0], rtol=1e-8, atol=1e-10
    )
    onp.testing.assert_allclose(
        result.covariance_block(slice(None)), onp.linalg.inv(J.T @ J), rtol=1e-7, atol=1e-10
    )
    onp.testing.assert_allclose(
        result.covariance_block(onp.array([0, 5]), onp.array([1, 2, 9])),
        onp.linalg.inv(J.T @ J)[onp.ix_([0, 5], [1, 2, 9])],
        rtol=1e-7,
        atol=1e-10,
    )


def test_eliminated_columns_rank_deficient():
    """Unobservable directions among latent columns, and between a shared
    column and a latent one, are both reported."""
    J, kept, latent, eliminate = _block_angular(onp.random.default_rng(4))
    J[:, latent[1]] = 3.0 * J[:, latent[0]]
    J[:, kept[1]] = J[:, latent[2]]
    b = onp.random.default_rng(5).normal(size=J.shape[0])

    eliminated = inccal.RankRevealingFactorizer().factorize(J, eliminate=eliminate)
    dense = inccal.RankRevealingFactorizer().factorize(J)
    assert eliminated.rank == dense.rank == 8
    assert eliminated.null_space.shape == (10, 2)
    onp.testing.assert_allclose(J @ eliminated.null_space, 0.0, atol=1e-8)
    onp.testing.assert_allclose(
        eliminated.null_space @ eliminated.null_space.T,
        dense.null_space @ dense.null_space.T,
        atol=1e-8,
    )
    onp.testing.assert_array_equal(eliminated.unobservable_mask(), dense.unobservable_mask())

    onp.testing.assert_allclose(
        eliminated.solve(b), onp.linalg.pinv(J, rcond=1e-10) @ b, atol=1e-8
    )
    onp.testing.assert_allclose(
        eliminated.covariance_block(slice(None)),
        onp.linalg.pinv(J.T @ J, rcond=1e-10),
        atol=1e-7,
    )


def test_numerical_failures():
    factorizer = inccal.RankRevealingFactorizer()
    with pytest.raises(inccal.NumericalFailure):
        factorizer.factorize(onp.zeros((3, 0)))
    with pytest.raises(inccal.NumericalFailure):
        factorizer.factorize(onp.zeros((0, 3)))
    with pytest.raises(inccal.NumericalFailure):
        factorizer.factorize(onp.array([[1.0, onp.nan]]))
    with pytest.raises(inccal.NumericalFailure):
        factorizer.factorize(onp.array([[1.0, onp.inf]]))


def test_zero_jacobian():
    result = inccal.RankRevealingFactorizer().factorize(onp.zeros((2, 2)))
    assert result.rank == 0
    assert result.null_space.shape == (2, 2)
    onp.testing.assert_array_equal(result.solve(onp.ones(2)), onp.zeros(2))


def test_factorization_context():
    context = inccal.FactorizationContext()
    assert context.get(1) is None
    context.store(1, "factorization")
    assert context.get(1) == "factorization"
    assert context.get(2) is None

    context.invalidate()
    assert context.get(1) is None

    with inccal.FactorizationContext() as context:
        for i in range(20):
            context.store_analysis(i, str(i))
        assert context.get_analysis(0) is None
        assert context.get_analysis(19) == "19"
    assert context.get_analysis(19) is None
